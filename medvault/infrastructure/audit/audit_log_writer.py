"""Audit Log Writer.

Append-only, fail-closed writer for the audit trail, plus the compliance read
path (filtered queries and rolling counts).

Security Impact:
    - Every policy decision and data mutation is persisted before the caller
      observes the result of the audited operation
    - Transient store failures are retried with bounded exponential backoff;
      if the store stays unreachable, AuditWriteFailure is raised and the
      audited operation fails with it (fail-closed, never fail-open)
    - Entries are immutable; the writer offers no update or delete

Architecture:
    - Infrastructure layer component over an AuditStorePort
    - Injected into the Policy Evaluator, Key Vault Client and services
"""

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Union

from medvault.domain.access_models import (
    MAX_AUDIT_PAGE_SIZE,
    AuditEntry,
    AuditQuery,
    Principal,
    utcnow,
)
from medvault.domain.enums import AuditDecision, AuditEventType
from medvault.domain.ports import AuditSinkPort, AuditStorePort, AuditWriteFailure, StorageError
from medvault.infrastructure.logging_config import bind_audit_id

logger = logging.getLogger(__name__)


def _as_value(value: Union[str, Enum, None]) -> Optional[str]:
    if isinstance(value, Enum):
        return value.value
    return value


class AuditLogWriter(AuditSinkPort):
    """Fail-closed writer and reader for audit entries.

    Parameters:
        store: Append-only audit store
        retry_attempts: Total attempts per append (default 3)
        retry_base_delay: Base backoff delay in seconds (default 50 ms)
        max_page_size: Cap on entries returned by ``query``
        sleep: Sleep function, injectable for tests
        clock: UTC clock, injectable for tests

    Example Usage:
        ```python
        writer = AuditLogWriter(store)
        writer.record(principal, AuditEventType.DATA_ACCESS, "view",
                      AuditDecision.GRANT, entity_type="patient", entity_id="P001")
        recent = writer.query(since=yesterday, entity_type="patient")
        ```
    """

    def __init__(
        self,
        store: AuditStorePort,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
        max_page_size: int = MAX_AUDIT_PAGE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base_delay = retry_base_delay
        self._max_page_size = min(max_page_size, MAX_AUDIT_PAGE_SIZE)
        self._sleep = sleep
        self._clock = clock

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Persist one entry.

        Returns:
            AuditEntry: The persisted entry

        Raises:
            AuditWriteFailure: If the store is still failing after bounded retries
        """
        for attempt in range(1, self._retry_attempts + 1):
            try:
                self._store.insert_entry(entry)
                bind_audit_id(entry.audit_id)
                logger.debug(f"Audit entry {entry.audit_id} written ({entry.event_type.value} {entry.action})")
                return entry
            except StorageError as e:
                if attempt == self._retry_attempts:
                    logger.error(
                        f"Audit write failed after {attempt} attempts "
                        f"(audit_id={entry.audit_id}, action={entry.action}): {e}"
                    )
                    raise AuditWriteFailure(
                        "Audit entry could not be persisted",
                        details={"audit_id": entry.audit_id, "action": entry.action, "attempts": attempt},
                    ) from None
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"Audit write failed (attempt {attempt}), retrying in {delay:.3f}s")
                self._sleep(delay)
        raise AssertionError("unreachable")

    def record(
        self,
        principal: Principal,
        event_type: AuditEventType,
        action: Union[str, Enum],
        decision: AuditDecision,
        entity_type: Union[str, Enum, None] = None,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEntry:
        """Build an entry for ``principal`` and append it."""
        return self.append(AuditEntry(
            timestamp=self._clock(),
            actor_id=principal.actor_id,
            actor_roles=tuple(principal.role_names()),
            event_type=event_type,
            action=_as_value(action),
            entity_type=_as_value(entity_type),
            entity_id=entity_id,
            decision=decision,
            details=details or {},
        ))

    def query(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        action: Union[str, Enum, None] = None,
        entity_type: Union[str, Enum, None] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        decision: Optional[AuditDecision] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Entries matching every given filter, newest first, at most ``max_page_size``."""
        audit_query = self._build_query(
            since=since, until=until, action=action, entity_type=entity_type,
            event_type=event_type, actor_id=actor_id, decision=decision,
            entity_id=entity_id, limit=max(1, min(limit, self._max_page_size)), offset=offset,
        )
        entries = self._store.query_entries(audit_query)
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)[: audit_query.limit]

    def count(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        action: Union[str, Enum, None] = None,
        entity_type: Union[str, Enum, None] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        decision: Optional[AuditDecision] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        """Number of entries matching the filters (all entries when none are given)."""
        return self._store.count_entries(self._build_query(
            since=since, until=until, action=action, entity_type=entity_type,
            event_type=event_type, actor_id=actor_id, decision=decision, entity_id=entity_id,
        ))

    def count_last_24h(self, **filters: Any) -> int:
        return self.count(since=self._clock() - timedelta(hours=24), **filters)

    def iter_all(self, page_size: Optional[int] = None, **filters: Any) -> Iterable[AuditEntry]:
        """Iterate every matching entry page by page, newest first."""
        size = min(page_size or self._max_page_size, self._max_page_size)
        offset = 0
        while True:
            page = self.query(limit=size, offset=offset, **filters)
            yield from page
            if len(page) < size:
                return
            offset += size

    @staticmethod
    def _build_query(**filters: Any) -> AuditQuery:
        filters["action"] = _as_value(filters.get("action"))
        filters["entity_type"] = _as_value(filters.get("entity_type"))
        return AuditQuery(**{k: v for k, v in filters.items() if v is not None})
