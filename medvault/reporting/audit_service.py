"""Audit reporting service.

This service provides compliance reporting over the audit trail: paginated
queries, aggregate summaries and CSV/JSON export. Reading the audit trail is
itself access-controlled and audited.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

import pandas as pd

from medvault.domain.access_models import MAX_AUDIT_PAGE_SIZE, AuditEntry, Principal
from medvault.domain.enums import Action, AuditDecision, AuditEventType, EntityType
from medvault.domain.ports import Result, StorageError
from medvault.domain.services.policy_evaluator import PolicyEvaluator
from medvault.infrastructure.audit.audit_log_writer import AuditLogWriter
from medvault.reporting.models import (
    AuditLogEntryView,
    AuditLogsResponse,
    AuditSummary,
    PaginationMeta,
)

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("csv", "json")
EXPORT_COLUMNS = [
    "audit_id", "timestamp", "actor_id", "actor_roles", "event_type",
    "action", "entity_type", "entity_id", "decision", "details",
]


def entries_to_dataframe(entries: List[AuditEntry]) -> pd.DataFrame:
    """Flatten audit entries into a DataFrame with one row per entry."""
    rows = [AuditLogEntryView.from_entry(entry).model_dump(mode="json") for entry in entries]
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    if not df.empty:
        df["actor_roles"] = df["actor_roles"].apply(lambda roles: ",".join(roles))
        df["details"] = df["details"].apply(lambda details: json.dumps(details, sort_keys=True))
    return df


class AuditService:
    """Service for querying, summarizing and exporting audit logs.

    Parameters:
        writer: Audit Log Writer (read path and auditing of report access)
        evaluator: Policy Evaluator guarding the audit_log entity type
    """

    def __init__(self, writer: AuditLogWriter, evaluator: PolicyEvaluator):
        self.writer = writer
        self.evaluator = evaluator

    def get_audit_logs(
        self,
        principal: Principal,
        limit: int = 100,
        offset: int = 0,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        decision: Optional[AuditDecision] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Result[AuditLogsResponse]:
        """Get audit logs with filtering and pagination, newest first.

        Parameters:
            limit: Maximum number of records to return (1-500)
            offset: Number of records to skip

        Returns:
            Result containing AuditLogsResponse or error
        """
        denied = self._authorize(principal, Action.SEARCH)
        if denied is not None:
            return denied

        limit = max(1, min(limit, MAX_AUDIT_PAGE_SIZE))
        filters = dict(
            since=since, until=until, action=action, entity_type=entity_type,
            event_type=event_type, decision=decision, actor_id=actor_id,
        )
        try:
            entries = self.writer.query(limit=limit, offset=offset, **filters)
            total = self.writer.count(**filters)
        except StorageError as e:
            error_msg = f"Failed to get audit logs: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(error_msg, error_type="AuditServiceError")

        pagination = PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            has_next=(offset + limit) < total,
            has_previous=offset > 0,
        )
        return Result.success_result(AuditLogsResponse(
            logs=[AuditLogEntryView.from_entry(entry) for entry in entries],
            pagination=pagination,
        ))

    def get_summary(self, principal: Principal, since: Optional[datetime] = None) -> Result[AuditSummary]:
        """Counts by decision, action and event type (over entries since ``since``)."""
        denied = self._authorize(principal, Action.VIEW_AGGREGATE_STATS)
        if denied is not None:
            return denied

        try:
            df = entries_to_dataframe(list(self.writer.iter_all(since=since)))
            last_24h = self.writer.count_last_24h()
        except StorageError as e:
            error_msg = f"Failed to summarize audit logs: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(error_msg, error_type="AuditServiceError")

        def counts(column: str) -> dict[str, int]:
            if df.empty:
                return {}
            return {str(k): int(v) for k, v in df[column].value_counts().items()}

        return Result.success_result(AuditSummary(
            total=len(df),
            last_24h=last_24h,
            by_decision=counts("decision"),
            by_action=counts("action"),
            by_event_type=counts("event_type"),
        ))

    def export_audit_logs(
        self,
        principal: Principal,
        fmt: str = "csv",
        output_path: Optional[str] = None,
        **filters: Any,
    ) -> Result[str]:
        """Export every matching entry as CSV or JSON.

        Returns:
            Result containing the exported text, or the output path when one is given
        """
        if fmt not in EXPORT_FORMATS:
            return Result.failure_result(
                f"Unsupported export format: {fmt}", error_type="InvalidFormat",
                error_details={"supported": list(EXPORT_FORMATS)},
            )
        denied = self._authorize(principal, Action.SEARCH)
        if denied is not None:
            return denied

        try:
            df = entries_to_dataframe(list(self.writer.iter_all(**filters)))
        except StorageError as e:
            error_msg = f"Failed to export audit logs: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(error_msg, error_type="AuditServiceError")

        if fmt == "csv":
            content = df.to_csv(index=False)
        else:
            content = df.to_json(orient="records", indent=2)

        logger.info(f"Exported {len(df)} audit entries as {fmt} for {principal.actor_id}")
        if output_path is None:
            return Result.success_result(content)

        Path(output_path).write_text(content, encoding="utf-8")
        return Result.success_result(output_path)

    def _authorize(self, principal: Principal, action: Action) -> Optional[Result]:
        decision = self.evaluator.evaluate(principal, action, entity_type=EntityType.AUDIT_LOG)
        if decision.is_granted:
            return None
        return Result.failure_result(
            f"Access denied: {action.value} on audit_log",
            error_type="PolicyDeny",
            error_details={"reason": decision.reason, "audit_id": decision.audit_id},
        )
