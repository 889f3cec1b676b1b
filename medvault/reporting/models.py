"""Pydantic models for audit reporting.

This module defines the response models for audit log queries and summaries.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from medvault.domain.access_models import AuditEntry


class AuditLogEntryView(BaseModel):
    """Single audit log entry as reported."""

    audit_id: str = Field(..., description="Unique audit log identifier")
    timestamp: datetime = Field(..., description="When the event occurred (UTC)")
    actor_id: str = Field(..., description="Who performed the action")
    actor_roles: list[str] = Field(default_factory=list, description="Roles held at the time")
    event_type: str = Field(..., description="POLICY_DECISION, DATA_ACCESS, DATA_MUTATION or KEY_MANAGEMENT")
    action: str = Field(..., description="Requested action")
    entity_type: Optional[str] = Field(None, description="Target entity type")
    entity_id: Optional[str] = Field(None, description="Target record identifier")
    decision: str = Field(..., description="grant or deny")
    details: dict[str, Any] = Field(default_factory=dict, description="Additional event details")

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> 'AuditLogEntryView':
        return cls(
            audit_id=entry.audit_id,
            timestamp=entry.timestamp,
            actor_id=entry.actor_id,
            actor_roles=list(entry.actor_roles),
            event_type=entry.event_type.value,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            decision=entry.decision.value,
            details=dict(entry.details),
        )


class PaginationMeta(BaseModel):
    """Pagination metadata."""

    total: int = Field(..., description="Total number of records")
    limit: int = Field(..., description="Number of records per page")
    offset: int = Field(..., description="Current offset")
    has_next: bool = Field(..., description="Whether there are more records")
    has_previous: bool = Field(..., description="Whether there are previous records")


class AuditSummary(BaseModel):
    """Aggregate counts over the audit trail."""

    total: int = Field(..., description="Entries matching the filters")
    last_24h: int = Field(..., description="Entries in the last 24 hours")
    by_decision: dict[str, int] = Field(default_factory=dict)
    by_action: dict[str, int] = Field(default_factory=dict)
    by_event_type: dict[str, int] = Field(default_factory=dict)


class AuditLogsResponse(BaseModel):
    """Response model for audit logs query."""

    logs: list[AuditLogEntryView] = Field(..., description="List of audit log entries")
    pagination: PaginationMeta = Field(..., description="Pagination metadata")
