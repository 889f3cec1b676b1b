"""Structured logging configuration.

Log lines carry the operation context (actor, operation, entity type and,
once written, the audit entry id) so every line can be joined to the audit
trail. The context lives in a context variable set by the record access
service around each operation; a logging filter copies it onto each record.

Security Impact:
    - Extra fields whose names suggest secrets are redacted before emission
    - Only identifiers are placed in the context, never field values
    - PHI values are never passed to loggers by MedVault code

Architecture:
    - Uses contextvars, so the context follows the worker thread running an
      operation and never leaks between concurrent operations
    - Logging works without a context (CLI start-up, tests)
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("actor_id", "operation", "entity_type", "audit_id")
_SECRET_MARKERS = ("key", "password", "secret", "token")

_operation_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("operation_context", default=None)


def get_operation_context() -> Dict[str, Any]:
    """Current operation context, empty outside an operation."""
    return dict(_operation_context.get() or {})


@contextmanager
def operation_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Bind identifiers to every log record emitted inside the block.

    Nested blocks extend the enclosing context; unknown names are ignored.

    Example Usage:
        ```python
        with operation_context(actor_id="dr-house", operation="view"):
            logger.info("Viewing record")
        ```
    """
    merged = get_operation_context()
    merged.update({name: value for name, value in fields.items() if name in CONTEXT_FIELDS})
    token = _operation_context.set(merged)
    try:
        yield merged
    finally:
        _operation_context.reset(token)


def bind_audit_id(audit_id: str) -> None:
    """Record the latest audit entry id in the current operation context."""
    context = _operation_context.get()
    if context is not None:
        context["audit_id"] = audit_id


class OperationContextFilter(logging.Filter):
    """Copies the operation context onto log records.

    Unset fields are rendered as ``-`` so plain-text format strings can
    reference them unconditionally.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _operation_context.get() or {}
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, context.get(name, "-"))
        return True


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        name: "[REDACTED]" if any(marker in name.lower() for marker in _SECRET_MARKERS) else value
        for name, value in fields.items()
    }


class StructuredFormatter(logging.Formatter):
    """JSON formatter; one object per line with the operation context inline."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {
            name: getattr(record, name)
            for name in CONTEXT_FIELDS
            if getattr(record, name, "-") != "-"
        }
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(_sanitize(record.extra_fields))

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO"):
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # stderr keeps CLI tables on stdout clean
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(OperationContextFilter())

    if use_json:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(operation)s actor=%(actor_id)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("duckdb").setLevel(logging.WARNING)
