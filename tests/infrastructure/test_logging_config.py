"""Unit tests for structured logging and the operation context."""

import json
import logging

from medvault.domain.enums import Action, AuditDecision, AuditEventType
from medvault.infrastructure.logging_config import (
    OperationContextFilter,
    StructuredFormatter,
    bind_audit_id,
    get_operation_context,
    operation_context,
)


def make_record(message: str = "key created") -> logging.LogRecord:
    return logging.LogRecord("medvault", logging.INFO, __file__, 1, message, None, None)


class TestOperationContext:
    """Test suite for operation_context and OperationContextFilter."""

    def test_filter_copies_context(self):
        """Test that records emitted inside a block carry its identifiers."""
        record = make_record()
        with operation_context(actor_id="dr-house", operation="view", entity_type="patient"):
            OperationContextFilter().filter(record)

        assert record.actor_id == "dr-house"
        assert record.operation == "view"
        assert record.audit_id == "-"

    def test_context_reset_after_block(self):
        """Test that the context does not outlive its block."""
        with operation_context(actor_id="dr-house"):
            pass
        assert get_operation_context() == {}

        record = make_record()
        OperationContextFilter().filter(record)
        assert record.actor_id == "-"

    def test_nested_blocks_extend(self):
        """Test that an inner block adds to the outer context."""
        with operation_context(actor_id="dr-house"):
            with operation_context(operation="edit", ignored="x"):
                assert get_operation_context() == {"actor_id": "dr-house", "operation": "edit"}
            assert get_operation_context() == {"actor_id": "dr-house"}

    def test_bind_audit_id(self):
        """Test that the latest audit id is bound inside an operation only."""
        bind_audit_id("outside")
        assert get_operation_context() == {}

        with operation_context(operation="create"):
            bind_audit_id("a-1")
            assert get_operation_context()["audit_id"] == "a-1"

    def test_audit_writer_binds_entry_id(self, audit_writer, clinician):
        """Test that a written audit entry id appears in the context."""
        with operation_context(operation="view"):
            entry = audit_writer.record(clinician, AuditEventType.DATA_ACCESS, Action.VIEW, AuditDecision.GRANT)
            assert get_operation_context()["audit_id"] == entry.audit_id


class TestStructuredFormatter:
    """Test suite for StructuredFormatter."""

    def test_secret_extra_fields_redacted(self):
        """Test that extra fields named like secrets are redacted."""
        record = make_record()
        record.extra_fields = {"master_key": "abc", "key_alt_name": "k1", "collection": "patient"}

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["message"] == "key created"
        assert payload["master_key"] == "[REDACTED]"
        assert payload["key_alt_name"] == "[REDACTED]"
        assert payload["collection"] == "patient"

    def test_context_rendered(self):
        """Test that set context fields are grouped and unset ones dropped."""
        record = make_record()
        with operation_context(actor_id="ops-1", operation="init-keys"):
            OperationContextFilter().filter(record)

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["context"] == {"actor_id": "ops-1", "operation": "init-keys"}

    def test_no_context_key_without_context(self):
        """Test that records logged outside an operation have no context object."""
        payload = json.loads(StructuredFormatter().format(make_record()))
        assert "context" not in payload
