"""Record Access Service.

Composes the policy evaluator, record codec, role projection and audit writer
into the record operations the request layer calls.

Security Impact:
    - Authorization happens before decryption: the policy subject is built from
      the stored document's plain identifier only
    - Every granted data access or mutation is audited before the result is
      returned; an audit failure fails the operation
    - A mutation whose audit entry cannot be written is rolled back, so the
      store never holds a change the audit trail does not explain
    - Callers only ever receive role-projected views, never decrypted entities
    - Policy denials are returned as failed Results; system errors propagate
      with their kind preserved

Concurrency:
    - Each operation runs under one timeout; expiry raises Unavailable, which is
      neither a grant nor a deny
    - Mutations check the same deadline around the store write; a write that
      lands after expiry is undone and its audit entry is followed by a
      rollback entry
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from medvault.domain.access_models import PolicyDecision, Principal, utcnow
from medvault.domain.entities import SensitiveEntity, entity_class_for
from medvault.domain.enums import Action, AuditDecision, AuditEventType, EntityType
from medvault.domain.ports import (
    AuditWriteFailure,
    DocumentStorePort,
    DuplicateKeyError,
    QueryLike,
    Result,
    StorageError,
    Unavailable,
    criteria_of,
)
from medvault.domain.services.policy_evaluator import PolicyEvaluator
from medvault.domain.services.role_projection import RoleProjection
from medvault.infrastructure.audit.audit_log_writer import AuditLogWriter
from medvault.infrastructure.logging_config import operation_context
from medvault.infrastructure.settings import settings
from medvault.services.record_codec import RecordCodec

logger = logging.getLogger(__name__)

T = TypeVar('T')

ERROR_POLICY_DENY = "PolicyDeny"
ERROR_MISSING_SUBJECT = "MissingSubject"
ERROR_NOT_FOUND = "NotFound"
ERROR_VALIDATION = "ValidationError"
ERROR_INVALID_QUERY = "InvalidQuery"

# Writing these fields needs the field-group action on top of create/edit
FIELD_WRITE_ACTIONS: Dict[EntityType, Dict[str, Action]] = {
    EntityType.PATIENT: {
        "ssn": Action.EDIT_SENSITIVE_SUBSET,
        "notes": Action.EDIT_SENSITIVE_SUBSET,
        "notesHistory": Action.EDIT_SENSITIVE_SUBSET,
        "diagnosis": Action.EDIT_DIAGNOSIS,
        "medications": Action.EDIT_MEDICATIONS,
        "insuranceDetails": Action.EDIT_INSURANCE,
    },
}


@dataclass(frozen=True)
class RecordPage:
    """Projected records returned by a search.

    Attributes:
        records: Role-projected views, one per readable record
        failures: Records that could not be decrypted, as {"record_id", "error_type"}
    """
    records: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)


class OperationDeadline:
    """Point in time after which an operation must not commit.

    Parameters:
        operation: Operation name, used in the Unavailable error
        timeout: Seconds from construction
        clock: Monotonic clock
    """

    def __init__(self, operation: str, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.operation = operation
        self.timeout = timeout
        self._clock = clock
        self._expires_at = clock() + timeout

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self) -> None:
        """Raise Unavailable once the deadline has passed."""
        if self.expired:
            raise Unavailable(
                f"Operation {self.operation} timed out",
                details={"operation": self.operation, "timeout": self.timeout},
            )


class RecordAccessService:
    """Role-filtered record operations over the encrypted document store.

    Parameters:
        store: Encrypted document store
        codec: Record Codec
        evaluator: Policy Evaluator
        projection: Role Projection
        audit_writer: Audit Log Writer for data access/mutation entries
        timeout: Seconds allowed per operation (defaults to settings)
        executor: Executor running operations under the timeout

    Example Usage:
        ```python
        result = service.view(principal, EntityType.PATIENT, "P001")
        if result.is_success():
            payload = result.value
        elif result.error_type == "PolicyDeny":
            ...
        ```
    """

    def __init__(
        self,
        store: DocumentStorePort,
        codec: RecordCodec,
        evaluator: PolicyEvaluator,
        projection: RoleProjection,
        audit_writer: AuditLogWriter,
        timeout: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._store = store
        self._codec = codec
        self._evaluator = evaluator
        self._projection = projection
        self._audit = audit_writer
        self._timeout = timeout if timeout is not None else settings.operation_timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.worker_threads, thread_name_prefix="medvault"
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create(self, principal: Principal, entity: SensitiveEntity) -> Result[Dict[str, Any]]:
        """Encrypt and store a new record; returns the creator's projected view."""
        return self._guarded(
            "create", principal, lambda deadline: self._create(deadline, principal, entity), entity.entity_type
        )

    def view(self, principal: Principal, entity_type: EntityType, entity_id: Optional[str]) -> Result[Dict[str, Any]]:
        """Projected view of one record."""
        return self._guarded(
            "view", principal, lambda deadline: self._view(principal, entity_type, entity_id, Action.VIEW), entity_type
        )

    def view_own(self, principal: Principal) -> Result[Dict[str, Any]]:
        """Projected view of the patient record linked to ``principal``."""
        return self._guarded("view_own", principal, lambda deadline: self._view(
            principal, EntityType.PATIENT, principal.linked_record_id, Action.VIEW_OWN_RECORD_ONLY
        ), EntityType.PATIENT)

    def edit(
        self,
        principal: Principal,
        entity_type: EntityType,
        entity_id: Optional[str],
        changes: Dict[str, Any],
    ) -> Result[Dict[str, Any]]:
        """Apply ``changes`` (storage or attribute names) to a record."""
        return self._guarded("edit", principal, lambda deadline: self._edit(
            deadline, principal, entity_type, entity_id, changes
        ), entity_type)

    def delete(self, principal: Principal, entity_type: EntityType, entity_id: Optional[str]) -> Result[str]:
        return self._guarded(
            "delete", principal, lambda deadline: self._delete(deadline, principal, entity_type, entity_id), entity_type
        )

    def search_equal(
        self,
        principal: Principal,
        entity_type: EntityType,
        field_name: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> Result[RecordPage]:
        """Records whose ``field_name`` equals ``value`` (deterministic or plain fields)."""
        return self._guarded("search_equal", principal, lambda deadline: self._search(
            principal, entity_type, limit, "equality", [field_name],
            lambda: self._codec.equality_query(entity_type, field_name, value),
        ), entity_type)

    def search_range(
        self,
        principal: Principal,
        entity_type: EntityType,
        field_name: str,
        low: Any = None,
        high: Any = None,
        limit: Optional[int] = None,
    ) -> Result[RecordPage]:
        """Records whose range-classified ``field_name`` lies in [low, high]."""
        return self._guarded("search_range", principal, lambda deadline: self._search(
            principal, entity_type, limit, "range", [field_name],
            lambda: self._codec.range_query(entity_type, field_name, low, high),
        ), entity_type)

    def search(
        self,
        principal: Principal,
        entity_type: EntityType,
        equals: Optional[Mapping[str, Any]] = None,
        ranges: Optional[Mapping[str, Tuple[Any, Any]]] = None,
        limit: Optional[int] = None,
    ) -> Result[RecordPage]:
        """Records matching every equality and range criterion.

        Parameters:
            principal: Caller
            entity_type: Entity type searched
            equals: Storage name -> value, for deterministic and plain fields
            ranges: Storage name -> (low, high) for range fields; either bound may be None
            limit: Maximum records returned (defaults to settings)
        """
        fields = sorted({*(equals or {}), *(ranges or {})})
        return self._guarded("search", principal, lambda deadline: self._search(
            principal, entity_type, limit, "criteria", fields,
            lambda: self._compound_query(entity_type, equals, ranges),
        ), entity_type)

    def count(
        self,
        principal: Principal,
        entity_type: EntityType,
        equals: Optional[Mapping[str, Any]] = None,
        ranges: Optional[Mapping[str, Tuple[Any, Any]]] = None,
    ) -> Result[int]:
        """Number of records matching every criterion; no criteria counts the collection.

        Nothing is decrypted, so the count includes records a search would
        report as failures.
        """
        return self._guarded("count", principal, lambda deadline: self._count(
            principal, entity_type, equals, ranges
        ), entity_type)

    def search_stats(self, principal: Principal, entity_type: EntityType) -> Result[Dict[str, Any]]:
        """Searchability summary for ``entity_type``.

        Returns:
            Result with {"entity_type", "total", "fields_by_class"}; the field
            lists name which fields support equality, range or no search.
        """
        return self._guarded(
            "search_stats", principal, lambda deadline: self._search_stats(principal, entity_type), entity_type
        )

    def list_records(self, principal: Principal, entity_type: EntityType, limit: Optional[int] = None) -> Result[RecordPage]:
        return self._guarded("list_records", principal, lambda deadline: self._search(
            principal, entity_type, limit, "list", [], lambda: None,
        ), entity_type)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------

    def _create(self, deadline: OperationDeadline, principal: Principal, entity: SensitiveEntity) -> Result[Dict[str, Any]]:
        entity_type = entity.entity_type
        decision = self._evaluator.evaluate(principal, Action.CREATE, entity_type=entity_type)
        if not decision.is_granted:
            return self._denied(decision)

        populated = [
            info.alias or attribute
            for attribute, info in type(entity).model_fields.items()
            if getattr(entity, attribute) not in (None, [], {})
        ]
        denied = self._check_field_writes(principal, entity, populated)
        if denied is not None:
            return denied

        document = self._codec.to_storage(entity)
        collection = entity_type.value

        def insert() -> bool:
            self._store.insert_document(collection, document)
            return True

        try:
            self._commit(
                deadline, principal, Action.CREATE, entity_type, entity.id,
                apply=insert,
                undo=lambda: self._store.delete_document(collection, entity.id),
                details={"fields": populated},
            )
        except DuplicateKeyError as e:
            return Result.failure_result(e, error_details={"entity_id": entity.id})

        logger.info(f"Created {entity_type.value} {entity.id} by {principal.actor_id}")
        return Result.success_result(self._projection.project(entity, principal.roles))

    def _view(
        self,
        principal: Principal,
        entity_type: EntityType,
        entity_id: Optional[str],
        action: Action,
    ) -> Result[Dict[str, Any]]:
        document, decision = self._authorize_record(principal, entity_type, entity_id, action)
        if not decision.is_granted:
            return self._denied(decision)
        if document is None:
            return self._not_found(entity_type, entity_id)

        entity = self._codec.from_storage(document, entity_type)
        view = self._projection.project(entity, principal.roles)
        self._audit.record(
            principal, AuditEventType.DATA_ACCESS, action, AuditDecision.GRANT,
            entity_type=entity_type, entity_id=entity_id, details={"fields": list(view)},
        )
        return Result.success_result(view)

    def _edit(
        self,
        deadline: OperationDeadline,
        principal: Principal,
        entity_type: EntityType,
        entity_id: Optional[str],
        changes: Dict[str, Any],
    ) -> Result[Dict[str, Any]]:
        document, decision = self._authorize_record(principal, entity_type, entity_id, Action.EDIT)
        if not decision.is_granted:
            return self._denied(decision)
        if document is None:
            return self._not_found(entity_type, entity_id)

        model = entity_class_for(entity_type)
        changed = [self._storage_name(model, key) for key in changes]
        entity = self._codec.from_storage(document, entity_type)
        denied = self._check_field_writes(principal, entity, changed)
        if denied is not None:
            return denied

        stamped = dict(changes)
        if "updated_at" in model.model_fields:
            stamped["updatedAt"] = utcnow()
        try:
            updated = entity.with_changes(stamped)
        except ValueError as e:
            # Pydantic messages can echo input values; report field names only
            return Result.failure_result(
                "Invalid changes", error_type=ERROR_VALIDATION,
                error_details={"fields": sorted(changed), "reason": type(e).__name__},
            )

        collection = entity_type.value
        replacement = self._codec.to_storage(updated)
        committed = self._commit(
            deadline, principal, Action.EDIT, entity_type, entity_id,
            apply=lambda: self._store.replace_document(collection, entity_id, replacement),
            undo=lambda: self._store.replace_document(collection, entity_id, document),
            details={"fields": sorted(changed)},
        )
        if not committed:
            return self._not_found(entity_type, entity_id)
        return Result.success_result(self._projection.project(updated, principal.roles))

    def _delete(
        self,
        deadline: OperationDeadline,
        principal: Principal,
        entity_type: EntityType,
        entity_id: Optional[str],
    ) -> Result[str]:
        document, decision = self._authorize_record(principal, entity_type, entity_id, Action.DELETE)
        if not decision.is_granted:
            return self._denied(decision)
        if document is None:
            return self._not_found(entity_type, entity_id)

        collection = entity_type.value
        committed = self._commit(
            deadline, principal, Action.DELETE, entity_type, entity_id,
            apply=lambda: self._store.delete_document(collection, entity_id),
            undo=lambda: self._store.insert_document(collection, document),
        )
        if not committed:
            return self._not_found(entity_type, entity_id)

        logger.info(f"Deleted {entity_type.value} {entity_id} by {principal.actor_id}")
        return Result.success_result(entity_id)

    def _search(
        self,
        principal: Principal,
        entity_type: EntityType,
        limit: Optional[int],
        mode: str,
        fields: List[str],
        build_query: Callable[[], QueryLike],
    ) -> Result[RecordPage]:
        decision = self._evaluator.evaluate(principal, Action.SEARCH, entity_type=entity_type)
        if not decision.is_granted:
            return self._denied(decision)

        try:
            query = build_query()
        except ValueError as e:
            return Result.failure_result(
                str(e), error_type=ERROR_INVALID_QUERY, error_details={"fields": fields}
            )

        documents = self._store.find_documents(entity_type.value, query, limit or settings.search_limit)
        page = RecordPage()
        for result in self._codec.from_storage_many(documents, entity_type):
            if result.is_success():
                page.records.append(self._projection.project(result.value, principal.roles))
            else:
                page.failures.append({
                    "record_id": (result.error_details or {}).get("record_id"),
                    "error_type": result.error_type,
                })

        self._audit.record(
            principal, AuditEventType.DATA_ACCESS, Action.SEARCH, AuditDecision.GRANT,
            entity_type=entity_type,
            details={"mode": mode, "fields": fields, "matched": page.count, "failed": len(page.failures)},
        )
        return Result.success_result(page)

    def _count(
        self,
        principal: Principal,
        entity_type: EntityType,
        equals: Optional[Mapping[str, Any]],
        ranges: Optional[Mapping[str, Tuple[Any, Any]]],
    ) -> Result[int]:
        decision = self._evaluator.evaluate(principal, Action.VIEW_AGGREGATE_STATS, entity_type=entity_type)
        if not decision.is_granted:
            return self._denied(decision)

        fields = sorted({*(equals or {}), *(ranges or {})})
        try:
            query = self._codec.criteria_query(entity_type, equals, ranges)
        except ValueError as e:
            return Result.failure_result(
                str(e), error_type=ERROR_INVALID_QUERY, error_details={"fields": fields}
            )

        total = self._store.count_documents(entity_type.value, query)
        self._audit.record(
            principal, AuditEventType.DATA_ACCESS, Action.VIEW_AGGREGATE_STATS, AuditDecision.GRANT,
            entity_type=entity_type, details={"mode": "count", "fields": fields, "matched": total},
        )
        return Result.success_result(total)

    def _search_stats(self, principal: Principal, entity_type: EntityType) -> Result[Dict[str, Any]]:
        decision = self._evaluator.evaluate(principal, Action.VIEW_AGGREGATE_STATS, entity_type=entity_type)
        if not decision.is_granted:
            return self._denied(decision)

        stats = {
            "entity_type": entity_type.value,
            "total": self._store.count_documents(entity_type.value),
            "fields_by_class": self._codec.fields_by_class(entity_type),
        }
        self._audit.record(
            principal, AuditEventType.DATA_ACCESS, Action.VIEW_AGGREGATE_STATS, AuditDecision.GRANT,
            entity_type=entity_type, details={"mode": "search_stats", "matched": stats["total"]},
        )
        return Result.success_result(stats)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _compound_query(
        self,
        entity_type: EntityType,
        equals: Optional[Mapping[str, Any]],
        ranges: Optional[Mapping[str, Tuple[Any, Any]]],
    ) -> QueryLike:
        query = self._codec.criteria_query(entity_type, equals, ranges)
        if not criteria_of(query):
            raise ValueError("A search needs at least one criterion")
        return query

    def _commit(
        self,
        deadline: OperationDeadline,
        principal: Principal,
        action: Action,
        entity_type: EntityType,
        entity_id: Optional[str],
        apply: Callable[[], bool],
        undo: Callable[[], Any],
        details: Optional[dict] = None,
    ) -> bool:
        """Apply one store mutation and audit it, undoing the mutation if either step fails.

        Returns:
            bool: False if ``apply`` reports that the target no longer exists

        Raises:
            AuditWriteFailure: If the mutation could not be audited; the store is restored
            Unavailable: If the deadline passed before the mutation was audited
        """
        deadline.check()
        if not apply():
            return False

        try:
            deadline.check()
            entry = self._audit.record(
                principal, AuditEventType.DATA_MUTATION, action, AuditDecision.GRANT,
                entity_type=entity_type, entity_id=entity_id, details=details,
            )
            if deadline.expired:
                self._audit.record(
                    principal, AuditEventType.DATA_MUTATION, f"rollback_{action.value}", AuditDecision.GRANT,
                    entity_type=entity_type, entity_id=entity_id,
                    details={"rolled_back_audit_id": entry.audit_id, "reason": "timeout"},
                )
                deadline.check()
        except (AuditWriteFailure, Unavailable) as e:
            self._rollback(action, entity_type, entity_id, undo, e)
            raise
        return True

    @staticmethod
    def _rollback(
        action: Action,
        entity_type: EntityType,
        entity_id: Optional[str],
        undo: Callable[[], Any],
        cause: Exception,
    ) -> None:
        logger.warning(f"Rolling back {action.value} of {entity_type.value} {entity_id}: {type(cause).__name__}")
        try:
            undo()
        except (StorageError, DuplicateKeyError) as e:
            # The caller re-raises the original failure; the store now disagrees with the audit trail
            logger.critical(f"Rollback of {action.value} on {entity_type.value} {entity_id} failed: {e}")

    def _authorize_record(
        self,
        principal: Principal,
        entity_type: EntityType,
        entity_id: Optional[str],
        action: Action,
    ) -> tuple[Optional[dict], PolicyDecision]:
        """Fetch the stored document and evaluate ``action`` on it, before any decryption.

        A missing document still yields a subject built from the requested id, so
        unauthorized callers cannot learn which records exist.
        """
        if not entity_id:
            return None, self._evaluator.evaluate(principal, action, entity_type=entity_type)

        document = self._store.find_document(entity_type.value, entity_id)
        if document is not None:
            subject = self._codec.subject_of(document, entity_type)
        else:
            subject = entity_class_for(entity_type).subject_for(entity_id)
        return document, self._evaluator.evaluate(principal, action, subject=subject)

    def _check_field_writes(
        self,
        principal: Principal,
        entity: SensitiveEntity,
        storage_names: Iterable[str],
    ) -> Optional[Result]:
        field_actions = FIELD_WRITE_ACTIONS.get(entity.entity_type, {})
        required = sorted({field_actions[name] for name in storage_names if name in field_actions}, key=lambda a: a.value)
        for action in required:
            decision = self._evaluator.evaluate(principal, action, subject=entity.as_subject())
            if not decision.is_granted:
                return self._denied(decision)
        return None

    @staticmethod
    def _storage_name(model: type, key: str) -> str:
        info = model.model_fields.get(key)
        if info is not None:
            return info.alias or key
        return key

    @staticmethod
    def _denied(decision: PolicyDecision) -> Result:
        details = {
            "action": decision.action.value,
            "entity_type": decision.entity_type.value,
            "outcome": decision.outcome.value,
            "reason": decision.reason,
            "audit_id": decision.audit_id,
        }
        if decision.is_missing_subject:
            return Result.failure_result(
                f"{decision.action.value} requires a target record",
                error_type=ERROR_MISSING_SUBJECT, error_details=details,
            )
        return Result.failure_result(
            f"Access denied: {decision.action.value} on {decision.entity_type.value}",
            error_type=ERROR_POLICY_DENY, error_details=details,
        )

    @staticmethod
    def _not_found(entity_type: EntityType, entity_id: Optional[str]) -> Result:
        return Result.failure_result(
            f"{entity_type.value} {entity_id} not found",
            error_type=ERROR_NOT_FOUND,
            error_details={"entity_type": entity_type.value, "entity_id": entity_id},
        )

    def _guarded(
        self,
        operation: str,
        principal: Principal,
        call: Callable[[OperationDeadline], T],
        entity_type: Optional[EntityType] = None,
    ) -> T:
        """Run ``call`` on a worker under the operation timeout and logging context."""
        deadline = OperationDeadline(operation, self._timeout)

        def run() -> T:
            with operation_context(
                actor_id=principal.actor_id,
                operation=operation,
                entity_type=entity_type.value if entity_type is not None else None,
            ):
                return call(deadline)

        future = self._executor.submit(run)
        try:
            return future.result(timeout=self._timeout)
        except FuturesTimeoutError:
            future.cancel()
            logger.error(f"Operation {operation} exceeded {self._timeout}s timeout")
            raise Unavailable(
                f"Operation {operation} timed out", details={"operation": operation, "timeout": self._timeout}
            ) from None
