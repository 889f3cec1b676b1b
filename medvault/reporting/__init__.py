"""Audit reporting: paginated queries, summaries and CSV/JSON export."""

from medvault.reporting.audit_service import AuditService

__all__ = ["AuditService"]
