"""DuckDB Storage Adapter.

This adapter implements the key vault, audit and document store ports on
DuckDB, an in-process database, either file-backed or ``:memory:``.

Security Impact:
    - Only wrapped data keys and encrypted documents are written
    - The audit table is append-only: the adapter issues no UPDATE or DELETE on it
    - ``key_alt_name`` is UNIQUE, so concurrent key creation converges on one key

Architecture:
    - Implements the storage ports (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - A single connection is shared and serialized by a lock
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

import duckdb

from medvault.domain.access_models import AuditEntry, AuditQuery
from medvault.domain.enums import AuditDecision, AuditEventType
from medvault.domain.ports import (
    AuditStorePort,
    DocumentStorePort,
    DuplicateKeyError,
    KeyVaultStorePort,
    QueryLike,
    Result,
    StorageError,
    StoredDataKey,
    criteria_of,
)
from medvault.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class DuckDBAdapter(KeyVaultStorePort, AuditStorePort, DocumentStorePort):
    """DuckDB implementation of the MedVault storage ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        from medvault.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        result = adapter.initialize_schema()
        if result.is_success():
            adapter.insert_document("patient", document)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                ) from e
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema (tables and indexes).

        Creates tables for:
        - key_vault: Wrapped data encryption keys
        - audit_log: Immutable audit trail
        - documents: Encrypted entity documents

        Returns:
            Result[None]: Success or failure result
        """
        try:
            with self._lock:
                conn = self._get_connection()

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS key_vault (
                        key_id VARCHAR PRIMARY KEY,
                        key_alt_name VARCHAR NOT NULL UNIQUE,
                        wrapped_key BLOB NOT NULL,
                        master_key_id VARCHAR NOT NULL,
                        created_at TIMESTAMP NOT NULL
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS audit_log (
                        audit_id VARCHAR PRIMARY KEY,
                        event_type VARCHAR NOT NULL,
                        event_timestamp TIMESTAMP NOT NULL,
                        actor_id VARCHAR NOT NULL,
                        actor_roles VARCHAR,
                        action VARCHAR NOT NULL,
                        entity_type VARCHAR,
                        entity_id VARCHAR,
                        decision VARCHAR NOT NULL,
                        details JSON
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        collection VARCHAR NOT NULL,
                        doc_id VARCHAR NOT NULL,
                        body JSON NOT NULL,
                        updated_at TIMESTAMP NOT NULL,
                        PRIMARY KEY (collection, doc_id)
                    )
                """)

                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(event_timestamp)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity_type ON audit_log(entity_type)")

                self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _run(self, operation: str, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run ``work`` under the connection lock, mapping DuckDB errors."""
        with self._lock:
            if not self._initialized:
                init_result = self.initialize_schema()
                if not init_result.is_success():
                    raise StorageError(init_result.error, operation=operation)
            try:
                return work(self._get_connection())
            except duckdb.ConstraintException as e:
                raise DuplicateKeyError(
                    f"Uniqueness constraint violated during {operation}",
                    details={"operation": operation},
                ) from e
            except duckdb.Error as e:
                logger.error(f"DuckDB {operation} failed: {str(e)}")
                raise StorageError(f"DuckDB {operation} failed: {str(e)}", operation=operation) from e

    # ------------------------------------------------------------------
    # KeyVaultStorePort
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_key(row: tuple) -> StoredDataKey:
        return StoredDataKey(
            key_id=row[0],
            key_alt_name=row[1],
            wrapped_key=bytes(row[2]),
            master_key_id=row[3],
            created_at=_to_aware_utc(row[4]),
        )

    def find_by_alt_name(self, key_alt_name: str) -> Optional[StoredDataKey]:
        row = self._run("find_key", lambda conn: conn.execute(
            "SELECT key_id, key_alt_name, wrapped_key, master_key_id, created_at "
            "FROM key_vault WHERE key_alt_name = ?",
            [key_alt_name],
        ).fetchone())
        return self._row_to_key(row) if row else None

    def insert_key(self, key: StoredDataKey) -> None:
        self._run("insert_key", lambda conn: conn.execute(
            "INSERT INTO key_vault (key_id, key_alt_name, wrapped_key, master_key_id, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [key.key_id, key.key_alt_name, key.wrapped_key, key.master_key_id, _to_naive_utc(key.created_at)],
        ))
        logger.debug(f"Stored wrapped data key (key_id={key.key_id})")

    def list_keys(self) -> List[StoredDataKey]:
        rows = self._run("list_keys", lambda conn: conn.execute(
            "SELECT key_id, key_alt_name, wrapped_key, master_key_id, created_at "
            "FROM key_vault ORDER BY created_at"
        ).fetchall())
        return [self._row_to_key(row) for row in rows]

    # ------------------------------------------------------------------
    # AuditStorePort
    # ------------------------------------------------------------------

    def insert_entry(self, entry: AuditEntry) -> None:
        self._run("insert_audit_entry", lambda conn: conn.execute("""
            INSERT INTO audit_log (
                audit_id, event_type, event_timestamp, actor_id, actor_roles,
                action, entity_type, entity_id, decision, details
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            entry.audit_id,
            entry.event_type.value,
            _to_naive_utc(entry.timestamp),
            entry.actor_id,
            json.dumps(list(entry.actor_roles)),
            entry.action,
            entry.entity_type,
            entry.entity_id,
            entry.decision.value,
            json.dumps(entry.details, default=str),
        ]))

    @staticmethod
    def _where(query: AuditQuery) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.since is not None:
            clauses.append("event_timestamp >= ?")
            params.append(_to_naive_utc(query.since))
        if query.until is not None:
            clauses.append("event_timestamp <= ?")
            params.append(_to_naive_utc(query.until))
        for column, value in (
            ("action", query.action),
            ("entity_type", query.entity_type),
            ("entity_id", query.entity_id),
            ("actor_id", query.actor_id),
            ("event_type", query.event_type.value if query.event_type else None),
            ("decision", query.decision.value if query.decision else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_entry(row: tuple) -> AuditEntry:
        return AuditEntry(
            audit_id=row[0],
            event_type=AuditEventType(row[1]),
            timestamp=_to_aware_utc(row[2]),
            actor_id=row[3],
            actor_roles=tuple(json.loads(row[4])) if row[4] else (),
            action=row[5],
            entity_type=row[6],
            entity_id=row[7],
            decision=AuditDecision(row[8]),
            details=json.loads(row[9]) if row[9] else {},
        )

    def query_entries(self, query: AuditQuery) -> List[AuditEntry]:
        where, params = self._where(query)
        rows = self._run("query_audit_entries", lambda conn: conn.execute(
            f"""
            SELECT audit_id, event_type, event_timestamp, actor_id, actor_roles,
                   action, entity_type, entity_id, decision, details
            FROM audit_log {where}
            ORDER BY event_timestamp DESC
            LIMIT ? OFFSET ?
            """,
            params + [query.limit, query.offset],
        ).fetchall())
        return [self._row_to_entry(row) for row in rows]

    def count_entries(self, query: AuditQuery) -> int:
        where, params = self._where(query)
        row = self._run("count_audit_entries", lambda conn: conn.execute(
            f"SELECT COUNT(*) FROM audit_log {where}", params
        ).fetchone())
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # DocumentStorePort
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(document: dict, operation: str) -> str:
        try:
            return json.dumps(document)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Document is not JSON-serializable: {e}", operation=operation) from e

    def insert_document(self, collection: str, document: dict) -> str:
        doc_id = document.get("_id")
        if not doc_id:
            raise StorageError("Document has no _id", operation="insert_document")
        body = self._encode(document, "insert_document")
        self._run("insert_document", lambda conn: conn.execute(
            "INSERT INTO documents (collection, doc_id, body, updated_at) VALUES (?, ?, ?, ?)",
            [collection, doc_id, body, _to_naive_utc(datetime.now(timezone.utc))],
        ))
        return doc_id

    def replace_document(self, collection: str, doc_id: str, document: dict) -> bool:
        body = self._encode(document, "replace_document")

        def work(conn: duckdb.DuckDBPyConnection) -> bool:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE collection = ? AND doc_id = ?", [collection, doc_id]
            ).fetchone()
            if not exists:
                return False
            conn.execute(
                "UPDATE documents SET body = ?, updated_at = ? WHERE collection = ? AND doc_id = ?",
                [body, _to_naive_utc(datetime.now(timezone.utc)), collection, doc_id],
            )
            return True

        return self._run("replace_document", work)

    def find_document(self, collection: str, doc_id: str) -> Optional[dict]:
        row = self._run("find_document", lambda conn: conn.execute(
            "SELECT body FROM documents WHERE collection = ? AND doc_id = ?", [collection, doc_id]
        ).fetchone())
        return json.loads(row[0]) if row else None

    @staticmethod
    def _document_where(collection: str, query: QueryLike, operation: str) -> tuple[str, list[Any]]:
        """WHERE clause with one AND-ed condition per criterion."""
        sql = "WHERE collection = ?"
        params: list[Any] = [collection]

        for criterion in criteria_of(query):
            if not _FIELD_NAME.match(criterion.field):
                raise StorageError(f"Invalid field name: {criterion.field}", operation=operation)
            if not criterion.encrypted:
                expected = criterion.equals if isinstance(criterion.equals, str) else json.dumps(criterion.equals)
                sql += " AND json_extract_string(body, ?) = ?"
                params += [f"$.{criterion.field}", expected]
            elif criterion.is_range:
                order_expr = "CAST(json_extract_string(body, ?) AS BIGINT)"
                if criterion.low is not None:
                    sql += f" AND {order_expr} >= ?"
                    params += [f"$.{criterion.field}.ord", criterion.low]
                if criterion.high is not None:
                    sql += f" AND {order_expr} <= ?"
                    params += [f"$.{criterion.field}.ord", criterion.high]
            else:
                sql += " AND json_extract_string(body, ?) = ?"
                params += [f"$.{criterion.field}.ct", criterion.equals]
        return sql, params

    def find_documents(
        self,
        collection: str,
        query: QueryLike = None,
        limit: int = 100
    ) -> List[dict]:
        where, params = self._document_where(collection, query, "find_documents")
        rows = self._run("find_documents", lambda conn: conn.execute(
            f"SELECT body FROM documents {where} ORDER BY doc_id LIMIT ?", params + [limit]
        ).fetchall())
        return [json.loads(row[0]) for row in rows]

    def count_documents(self, collection: str, query: QueryLike = None) -> int:
        where, params = self._document_where(collection, query, "count_documents")
        row = self._run("count_documents", lambda conn: conn.execute(
            f"SELECT COUNT(*) FROM documents {where}", params
        ).fetchone())
        return row[0] if row else 0

    def delete_document(self, collection: str, doc_id: str) -> bool:
        def work(conn: duckdb.DuckDBPyConnection) -> bool:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE collection = ? AND doc_id = ?", [collection, doc_id]
            ).fetchone()
            if not exists:
                return False
            conn.execute("DELETE FROM documents WHERE collection = ? AND doc_id = ?", [collection, doc_id])
            return True

        return self._run("delete_document", work)

    def close(self) -> None:
        """Close storage connection and release resources."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB connection")
                except duckdb.Error as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
