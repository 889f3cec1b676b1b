"""Domain Ports - Abstract Contracts and Error Taxonomy.

This module defines the Port interfaces (abstract contracts) that storage
adapters must implement, the Result type used for expected failures, and the
exception hierarchy used for everything else.

Security Impact:
    - Error messages never carry key material, plaintext values or stack traces
    - Each error exposes a stable ``kind`` so the presentation layer can map it
      to a response without inspecting implementation detail
    - Stores only ever see wrapped keys and encrypted documents

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (in-memory, DuckDB) implement these ports
    - Services receive ports by injection, never construct them inline
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, List, Optional, Tuple, TypeVar, Union

from medvault.domain.access_models import AuditEntry, AuditQuery

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating expected failures without exceptions.

    Policy denials and missing subjects are normal outcomes of an access
    request, not system errors, so services return them as failed Results.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Stable error kind (PolicyDeny, MissingSubject, NotFound, ...)
        error_details: Additional error context (never PHI)

    Example:
        ```python
        result = service.view(principal, EntityType.PATIENT, "P001")
        if result.is_success():
            render(result.value)
        elif result.error_type == "PolicyDeny":
            forbid()
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Error kind; defaults to the exception's ``kind`` or class name
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        if error_type is None and isinstance(error, Exception):
            error_type = getattr(error, "kind", type(error).__name__)

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type or "UnknownError",
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class MedVaultError(Exception):
    """Base exception for all MedVault errors.

    Attributes:
        kind: Stable error kind exposed to callers
        details: Non-sensitive context (field names, record ids, operation)
    """

    kind = "MedVaultError"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class StorageError(MedVaultError):
    """Raised when a backing store cannot be reached or fails transiently.

    This is the only error kind that is retried locally.

    Attributes:
        operation: The storage operation that failed
    """

    kind = "StorageError"

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


class DuplicateKeyError(MedVaultError):
    """Raised when an insert violates a uniqueness constraint."""

    kind = "DuplicateKey"


class KeyVaultUnavailable(MedVaultError):
    """Raised when the key vault store cannot be reached after bounded retries."""

    kind = "KeyVaultUnavailable"


class KeyCorrupt(MedVaultError):
    """Raised when a key exists under an alt-name but cannot be unwrapped.

    Fatal: implies key material loss. Never retried silently.
    """

    kind = "KeyCorrupt"


class SchemaMismatch(MedVaultError):
    """Raised when stored data disagrees with the field's configured classification.

    Fatal: indicates a migration or configuration bug.
    """

    kind = "SchemaMismatch"


class DecryptionFailure(MedVaultError):
    """Raised when a ciphertext is malformed, truncated or fails authentication.

    Fatal for the record being decoded. Callers must treat it as a data
    integrity failure, never as absence of data.
    """

    kind = "DecryptionFailure"


class AuditWriteFailure(MedVaultError):
    """Raised when an audit entry cannot be persisted after bounded retries.

    Fatal to the enclosing operation (fail-closed).
    """

    kind = "AuditWriteFailure"


class MissingSubject(MedVaultError):
    """Raised when a record-scoped action has no target record."""

    kind = "MissingSubject"


class Unavailable(MedVaultError):
    """Raised when an operation exceeds its timeout. Retryable."""

    kind = "Unavailable"


# ============================================================================
# Storage Records and Queries
# ============================================================================

@dataclass(frozen=True)
class StoredDataKey:
    """A data encryption key as persisted in the key vault (wrapped).

    Attributes:
        key_id: Unique key identifier (UUID string)
        key_alt_name: Alternate name, unique within the vault
        wrapped_key: DEK encrypted with the master key (Fernet token)
        master_key_id: Identifier of the master key that wrapped it
        created_at: Creation timestamp (UTC)
    """
    key_id: str
    key_alt_name: str
    wrapped_key: bytes
    master_key_id: str
    created_at: datetime


@dataclass(frozen=True)
class FieldQuery:
    """A single-field criterion against stored documents.

    For encrypted fields ``equals`` is compared with the blob's ciphertext and
    ``low``/``high`` with the blob's order token (inclusive). For plain fields
    ``equals`` is compared with the stored value.
    """
    field: str
    equals: Any = None
    low: Optional[int] = None
    high: Optional[int] = None
    encrypted: bool = True

    @property
    def is_range(self) -> bool:
        return self.low is not None or self.high is not None

    def matches(self, document: dict) -> bool:
        """Evaluate the criterion against one stored document."""
        stored = document.get(self.field)
        if not self.encrypted:
            return stored == self.equals
        if not isinstance(stored, dict):
            return False
        if self.is_range:
            order = stored.get("ord")
            if order is None:
                return False
            if self.low is not None and order < self.low:
                return False
            if self.high is not None and order > self.high:
                return False
            return True
        return stored.get("ct") == self.equals


@dataclass(frozen=True)
class DocumentQuery:
    """Several field criteria joined by AND.

    An empty criteria tuple matches every document.
    """
    criteria: Tuple[FieldQuery, ...] = ()

    def matches(self, document: dict) -> bool:
        return all(criterion.matches(document) for criterion in self.criteria)


QueryLike = Union[FieldQuery, DocumentQuery, None]


def criteria_of(query: QueryLike) -> Tuple[FieldQuery, ...]:
    """Flatten a single criterion, a compound query or None into a tuple of criteria."""
    if query is None:
        return ()
    if isinstance(query, FieldQuery):
        return (query,)
    return query.criteria


# ============================================================================
# Ports
# ============================================================================

class KeyVaultStorePort(ABC):
    """Abstract contract for persisting wrapped data encryption keys.

    Implementations must enforce uniqueness of ``key_alt_name`` so that two
    concurrent first-time creators converge on a single surviving key.
    """

    @abstractmethod
    def find_by_alt_name(self, key_alt_name: str) -> Optional[StoredDataKey]:
        """Return the key stored under ``key_alt_name`` or None.

        Raises:
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def insert_key(self, key: StoredDataKey) -> None:
        """Insert a new wrapped key.

        Raises:
            DuplicateKeyError: If a key with the same alt-name already exists
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def list_keys(self) -> List[StoredDataKey]:
        """Return all stored keys, oldest first."""
        pass


class AuditSinkPort(ABC):
    """Write side of the audit trail as seen by domain services."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry:
        """Persist one entry or raise AuditWriteFailure. Never fails silently."""
        pass


class AuditStorePort(ABC):
    """Abstract contract for the append-only audit store.

    There is deliberately no update or delete operation.
    """

    @abstractmethod
    def insert_entry(self, entry: AuditEntry) -> None:
        """Atomically append one entry.

        Raises:
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def query_entries(self, query: AuditQuery) -> List[AuditEntry]:
        """Return matching entries ordered by timestamp descending."""
        pass

    @abstractmethod
    def count_entries(self, query: AuditQuery) -> int:
        """Return the number of entries matching the query filters (ignores limit/offset)."""
        pass


class DocumentStorePort(ABC):
    """Abstract contract for the encrypted document store.

    Documents are JSON-compatible dictionaries keyed by ``_id`` within a
    collection. The store never sees plaintext for classified fields.
    """

    @abstractmethod
    def insert_document(self, collection: str, document: dict) -> str:
        """Insert a document and return its id.

        Raises:
            DuplicateKeyError: If a document with the same ``_id`` exists
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def replace_document(self, collection: str, doc_id: str, document: dict) -> bool:
        """Replace a document. Returns False if it did not exist."""
        pass

    @abstractmethod
    def find_document(self, collection: str, doc_id: str) -> Optional[dict]:
        """Return a document by id or None."""
        pass

    @abstractmethod
    def find_documents(
        self,
        collection: str,
        query: QueryLike = None,
        limit: int = 100
    ) -> List[dict]:
        """Return documents matching every criterion of ``query`` (all documents if None)."""
        pass

    @abstractmethod
    def count_documents(self, collection: str, query: QueryLike = None) -> int:
        """Return the number of documents matching ``query`` (ignores any limit)."""
        pass

    @abstractmethod
    def delete_document(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        pass
