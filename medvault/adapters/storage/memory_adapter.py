"""In-memory Storage Adapter.

Implements the key vault, audit and document store ports with plain Python
containers guarded by a lock. Used by the test suite and for ephemeral
development runs (``MV_DB_TYPE=memory``).

Documents are copied through JSON on the way in and out so callers can never
mutate stored state by reference, and so that non-JSON values are rejected the
same way a real store would reject them.
"""

import json
import logging
import threading
from typing import Dict, List, Optional

from medvault.domain.access_models import AuditEntry, AuditQuery
from medvault.domain.ports import (
    AuditStorePort,
    DocumentStorePort,
    DuplicateKeyError,
    KeyVaultStorePort,
    QueryLike,
    StorageError,
    StoredDataKey,
    criteria_of,
)

logger = logging.getLogger(__name__)


def _copy_document(document: dict, operation: str) -> dict:
    try:
        return json.loads(json.dumps(document))
    except (TypeError, ValueError) as e:
        raise StorageError(f"Document is not JSON-serializable: {e}", operation=operation) from e


class InMemoryAdapter(KeyVaultStorePort, AuditStorePort, DocumentStorePort):
    """Thread-safe in-memory implementation of all storage ports."""

    def __init__(self):
        self._lock = threading.RLock()
        self._keys: Dict[str, StoredDataKey] = {}
        self._audit: List[AuditEntry] = []
        self._documents: Dict[str, Dict[str, dict]] = {}

    # ------------------------------------------------------------------
    # KeyVaultStorePort
    # ------------------------------------------------------------------

    def find_by_alt_name(self, key_alt_name: str) -> Optional[StoredDataKey]:
        with self._lock:
            return self._keys.get(key_alt_name)

    def insert_key(self, key: StoredDataKey) -> None:
        with self._lock:
            if key.key_alt_name in self._keys:
                raise DuplicateKeyError(
                    f"Key alt-name already exists: {key.key_alt_name}",
                    details={"key_alt_name": key.key_alt_name},
                )
            self._keys[key.key_alt_name] = key

    def list_keys(self) -> List[StoredDataKey]:
        with self._lock:
            return sorted(self._keys.values(), key=lambda k: k.created_at)

    # ------------------------------------------------------------------
    # AuditStorePort
    # ------------------------------------------------------------------

    def insert_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def query_entries(self, query: AuditQuery) -> List[AuditEntry]:
        with self._lock:
            matching = [entry for entry in self._audit if query.matches(entry)]
        matching.sort(key=lambda e: e.timestamp, reverse=True)
        return matching[query.offset:query.offset + query.limit]

    def count_entries(self, query: AuditQuery) -> int:
        with self._lock:
            return sum(1 for entry in self._audit if query.matches(entry))

    # ------------------------------------------------------------------
    # DocumentStorePort
    # ------------------------------------------------------------------

    def insert_document(self, collection: str, document: dict) -> str:
        doc_id = document.get("_id")
        if not doc_id:
            raise StorageError("Document has no _id", operation="insert_document")
        stored = _copy_document(document, "insert_document")
        with self._lock:
            documents = self._documents.setdefault(collection, {})
            if doc_id in documents:
                raise DuplicateKeyError(
                    f"Document already exists in {collection}: {doc_id}",
                    details={"collection": collection, "doc_id": doc_id},
                )
            documents[doc_id] = stored
        return doc_id

    def replace_document(self, collection: str, doc_id: str, document: dict) -> bool:
        stored = _copy_document(document, "replace_document")
        with self._lock:
            documents = self._documents.get(collection, {})
            if doc_id not in documents:
                return False
            documents[doc_id] = stored
            return True

    def find_document(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            document = self._documents.get(collection, {}).get(doc_id)
            return _copy_document(document, "find_document") if document is not None else None

    def _matching(self, collection: str, query: QueryLike) -> List[dict]:
        criteria = criteria_of(query)
        with self._lock:
            stored = self._documents.get(collection, {})
            documents = [stored[doc_id] for doc_id in sorted(stored)]
        return [doc for doc in documents if all(criterion.matches(doc) for criterion in criteria)]

    def find_documents(
        self,
        collection: str,
        query: QueryLike = None,
        limit: int = 100
    ) -> List[dict]:
        matching = self._matching(collection, query)
        return [_copy_document(doc, "find_documents") for doc in matching[:limit]]

    def count_documents(self, collection: str, query: QueryLike = None) -> int:
        return len(self._matching(collection, query))

    def delete_document(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._documents.get(collection, {}).pop(doc_id, None) is not None

    def close(self) -> None:
        logger.debug("In-memory adapter closed")
