"""Access-control value objects.

Principals, policy subjects, policy decisions and audit entries. All models
are immutable: an audit entry in particular is never updated after creation.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from medvault.domain.enums import (
    Action,
    AuditDecision,
    AuditEventType,
    Decision,
    EntityType,
    Role,
)

MAX_AUDIT_PAGE_SIZE = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Principal(BaseModel):
    """An authenticated caller with a resolved role set.

    Parameters:
        actor_id: Stable identity of the caller (user id or service name)
        roles: Roles resolved by the authentication layer
        linked_record_id: Patient record owned by a patient_self caller
    """

    model_config = ConfigDict(frozen=True)

    actor_id: str = Field(..., min_length=1)
    roles: frozenset[Role] = Field(default_factory=frozenset)
    linked_record_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.roles)

    def role_names(self) -> list[str]:
        return sorted(role.value for role in self.roles)


class SubjectRef(BaseModel):
    """The target of a record-scoped action, built from plain fields only.

    ``owner_id`` is the patient record the subject belongs to; for a patient
    record that is its own id.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    owner_id: Optional[str] = None


class PolicyDecision(BaseModel):
    """Result of one policy evaluation.

    ``outcome`` keeps abstain distinguishable from deny for tests and
    diagnostics; callers should use ``effective`` or ``is_granted``.
    """

    model_config = ConfigDict(frozen=True)

    outcome: Decision
    action: Action
    entity_type: EntityType
    entity_id: Optional[str] = None
    reason: str
    matched_roles: tuple[str, ...] = ()
    audit_id: Optional[str] = None

    @property
    def effective(self) -> Decision:
        return Decision.GRANT if self.outcome == Decision.GRANT else Decision.DENY

    @property
    def is_granted(self) -> bool:
        return self.outcome == Decision.GRANT

    @property
    def is_missing_subject(self) -> bool:
        return self.reason == "MissingSubject"


class AuditEntry(BaseModel):
    """Immutable audit trail entry."""

    model_config = ConfigDict(frozen=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    actor_id: str
    actor_roles: tuple[str, ...] = ()
    event_type: AuditEventType
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    decision: AuditDecision
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are interpreted as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class AuditQuery(BaseModel):
    """Filters for the audit read path."""

    model_config = ConfigDict(frozen=True)

    since: Optional[datetime] = None
    until: Optional[datetime] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    actor_id: Optional[str] = None
    decision: Optional[AuditDecision] = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("limit")
    @classmethod
    def cap_limit(cls, v: int) -> int:
        return min(v, MAX_AUDIT_PAGE_SIZE)

    @field_validator("since", "until")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def matches(self, entry: AuditEntry) -> bool:
        """Check whether an entry satisfies every filter (limit/offset ignored)."""
        if self.since and entry.timestamp < self.since:
            return False
        if self.until and entry.timestamp > self.until:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.entity_type and entry.entity_type != self.entity_type:
            return False
        if self.entity_id and entry.entity_id != self.entity_id:
            return False
        if self.event_type and entry.event_type != self.event_type:
            return False
        if self.actor_id and entry.actor_id != self.actor_id:
            return False
        if self.decision and entry.decision != self.decision:
            return False
        return True
