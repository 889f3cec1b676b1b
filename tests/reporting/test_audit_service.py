"""Unit tests for AuditService reporting."""

import json
from unittest.mock import Mock

import pandas as pd
import pytest

from medvault.domain.enums import AuditDecision, EntityType
from medvault.domain.ports import StorageError
from medvault.reporting.audit_service import AuditService, entries_to_dataframe


@pytest.fixture
def audit_service(audit_writer, evaluator):
    return AuditService(audit_writer, evaluator)


@pytest.fixture
def activity(service, clinician, front_desk, patient):
    service.create(clinician, patient)
    service.view(front_desk, EntityType.PATIENT, "P001")
    service.delete(front_desk, EntityType.PATIENT, "P001")


class TestAuditService:
    """Test suite for AuditService."""

    def test_get_audit_logs(self, audit_service, administrator, activity, audit_writer):
        """Test paginated logs for an administrator."""
        total_before = audit_writer.count()
        result = audit_service.get_audit_logs(administrator, limit=5)

        assert result.is_success()
        response = result.value
        assert len(response.logs) == 5
        assert response.pagination.total == total_before + 1
        assert response.pagination.has_next
        assert not response.pagination.has_previous
        assert response.logs[0].action == "search"
        assert response.logs[0].entity_type == "audit_log"

    def test_get_audit_logs_filtered(self, audit_service, administrator, activity):
        """Test filtering by decision."""
        result = audit_service.get_audit_logs(administrator, decision=AuditDecision.DENY)
        assert result.is_success()
        assert [log.action for log in result.value.logs] == ["delete"]

    def test_front_desk_cannot_read_audit(self, audit_service, front_desk, audit_writer):
        """Test that reading the audit trail is itself authorized and audited."""
        result = audit_service.get_audit_logs(front_desk)
        assert result.error_type == "PolicyDeny"
        assert audit_writer.query(entity_type="audit_log")[0].decision == AuditDecision.DENY

    def test_summary(self, audit_service, administrator, activity):
        """Test counts by decision and action."""
        result = audit_service.get_summary(administrator)
        assert result.is_success()
        summary = result.value
        assert summary.by_decision["deny"] == 1
        assert summary.by_action["create"] >= 2
        assert summary.by_event_type["KEY_MANAGEMENT"] == 1
        assert summary.last_24h == summary.total

    def test_summary_requires_aggregate_right(self, audit_service, clinician):
        """Test that clinicians may search but not summarize the audit trail."""
        assert audit_service.get_summary(clinician).error_type == "PolicyDeny"

    def test_export_csv(self, audit_service, administrator, activity, tmp_path):
        """Test CSV export to a file."""
        output = tmp_path / "audit.csv"
        result = audit_service.export_audit_logs(administrator, fmt="csv", output_path=str(output))

        assert result.value == str(output)
        df = pd.read_csv(output)
        assert {"audit_id", "actor_id", "action", "decision", "details"} <= set(df.columns)
        assert "delete" in set(df["action"])

    def test_export_json_filtered(self, audit_service, administrator, activity):
        """Test JSON export to a string with filters."""
        result = audit_service.export_audit_logs(administrator, fmt="json", action="delete")
        rows = json.loads(result.value)
        assert len(rows) == 1
        assert rows[0]["decision"] == "deny"
        assert rows[0]["actor_roles"] == "front_desk"

    def test_export_unsupported_format(self, audit_service, administrator):
        """Test that unknown formats fail before any authorization."""
        assert audit_service.export_audit_logs(administrator, fmt="xml").error_type == "InvalidFormat"

    def test_store_failure_is_reported(self, evaluator, administrator):
        """Test that a failing read path becomes an AuditServiceError result."""
        writer = Mock()
        writer.query.side_effect = StorageError("down")
        result = AuditService(writer, evaluator).get_audit_logs(administrator)
        assert result.error_type == "AuditServiceError"

    def test_entries_to_dataframe_empty(self):
        """Test that an empty trail yields an empty frame with all columns."""
        df = entries_to_dataframe([])
        assert df.empty
        assert "audit_id" in df.columns
