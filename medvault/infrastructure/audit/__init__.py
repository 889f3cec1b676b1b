"""Audit infrastructure components.

This package provides the fail-closed audit log writer used by the policy
evaluator, the key vault client and the record access service.
"""

from medvault.infrastructure.audit.audit_log_writer import AuditLogWriter

__all__ = ['AuditLogWriter']
