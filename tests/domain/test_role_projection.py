"""Unit tests for RoleProjection."""

from datetime import date

import pytest

from medvault.domain.entities import MedicalKnowledgeRecord
from medvault.domain.enums import EntityType, Role, Visibility
from medvault.domain.services.role_projection import RoleProjection, mask_value


class TestRoleProjection:
    """Test suite for RoleProjection."""

    def test_clinician_sees_clinical_fields(self, projection, patient):
        """Test that a clinician sees diagnosis, medications and SSN in plaintext."""
        view = projection.project(patient, {Role.CLINICIAN})
        assert view["lastName"] == "Smith"
        assert view["diagnosis"] == ["Hypertension"]
        assert view["medications"] == ["Lisinopril"]
        assert view["ssn"] == "123-45-6789"
        assert view["birthDate"] == "1980-05-17"

    def test_front_desk_omits_diagnosis(self, projection, patient):
        """Test that front desk sees demographics, masked SSN and no clinical keys."""
        view = projection.project(patient, {Role.FRONT_DESK})
        assert view["lastName"] == "Smith"
        assert view["ssn"] == "***-**-6789"
        assert view["insuranceDetails"] == {"provider": "Acme Health", "policy": "AC-991"}
        assert "diagnosis" not in view
        assert "medications" not in view
        assert "notes" not in view

    def test_omitted_fields_are_absent_not_null(self, projection, patient):
        """Test that omitted fields do not appear as keys at all."""
        view = projection.project(patient, {Role.FRONT_DESK})
        assert None not in [view.get(key, "absent") for key in ("diagnosis", "notesHistory")]
        assert set(view).isdisjoint({"diagnosis", "notesHistory", "primaryDoctorId"})

    def test_output_shape_independent_of_values(self, projection, patient):
        """Test that a record with empty clinical fields yields the same keys."""
        sparse = patient.with_changes({"diagnosis": [], "notes": None, "ssn": None})
        assert list(projection.project(sparse, {Role.CARE_SUPPORT})) == list(
            projection.project(patient, {Role.CARE_SUPPORT})
        )

    def test_administrator_forbidden_clinical_fields(self, projection, patient):
        """Test that administrator's forbidden set removes fields another role could see."""
        view = projection.project(patient, {Role.ADMINISTRATOR, Role.CLINICIAN})
        assert "diagnosis" not in view
        assert "ssn" not in view
        assert view["insuranceDetails"]["provider"] == "Acme Health"
        assert view["primaryDoctorId"] == "dr-house"

    def test_most_permissive_wins(self, projection):
        """Test that visible beats masked across held roles."""
        visibility = projection.visibility_for(EntityType.PATIENT, {Role.FRONT_DESK, Role.CLINICIAN})
        assert visibility["ssn"] == Visibility.VISIBLE

    def test_empty_roles_project_nothing(self, projection, patient):
        """Test that an empty role set yields an empty view."""
        assert projection.project(patient, set()) == {}

    def test_field_order_follows_model(self, projection, patient):
        """Test that projected keys keep declaration order."""
        view = projection.project(patient, {Role.CLINICIAN})
        keys = list(view)
        assert keys[0] == "id"
        assert keys.index("firstName") < keys.index("ssn") < keys.index("notes")

    def test_medical_knowledge_public_view(self, projection):
        """Test the reduced medical knowledge view for front desk."""
        record = MedicalKnowledgeRecord(
            id="MK-001", title="Hypertension guideline", content="Full text",
            summary="Short", tags=["cardiology"],
        )
        view = projection.project(record, {Role.FRONT_DESK})
        assert view == {
            "id": "MK-001", "title": "Hypertension guideline", "summary": "Short",
            "tags": ["cardiology"], "specialties": [],
        }

    def test_custom_visibility_table(self, patient):
        """Test projection through an injected table."""
        projection = RoleProjection(
            visibility={EntityType.PATIENT: {Role.FRONT_DESK: {"id": Visibility.VISIBLE, "email": Visibility.MASKED}}},
            forbidden={},
        )
        assert projection.project(patient, {Role.FRONT_DESK}) == {"id": "P001", "email": "j***@example.com"}


class TestMaskValue:
    """Test suite for mask_value."""

    @pytest.mark.parametrize("field,value,expected", [
        ("ssn", "123-45-6789", "***-**-6789"),
        ("phoneNumber", "(555) 123-4567", "***-***-4567"),
        ("email", "jane@example.org", "j***@example.org"),
        ("notes", "Long free text", "***xt"),
        ("code", "abc", "***"),
        ("diagnosis", ["Hypertension"], "[REDACTED]"),
        ("insuranceDetails", {"provider": "Acme"}, "[REDACTED]"),
        ("birthDate", date(1980, 5, 17), "****-**-**"),
        ("ssn", None, "***"),
        ("confidenceLevel", 7, "***"),
    ])
    def test_mask_value(self, field, value, expected):
        """Test masking rules per value shape."""
        assert mask_value(field, value) == expected
