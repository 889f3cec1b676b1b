"""Tests for the DuckDB and in-memory storage adapters.

Both adapters are run through the same contract checks; DuckDB-specific
behavior (file persistence, schema initialization) is tested separately.
"""

from datetime import datetime, timedelta, timezone

import pytest

from medvault.adapters.storage import DuckDBAdapter, InMemoryAdapter
from medvault.domain.access_models import AuditEntry, AuditQuery
from medvault.domain.enums import AuditDecision, AuditEventType
from medvault.domain.ports import DocumentQuery, DuplicateKeyError, FieldQuery, StorageError, StoredDataKey
from medvault.infrastructure.config_manager import DatabaseConfig

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def data_key(alt_name="k1", key_id="id-1"):
    return StoredDataKey(
        key_id=key_id, key_alt_name=alt_name, wrapped_key=b"\x00wrapped\xff",
        master_key_id="local", created_at=NOW,
    )


def audit_entry(minutes_ago=0, **overrides):
    data = dict(
        timestamp=NOW - timedelta(minutes=minutes_ago), actor_id="dr-house",
        actor_roles=("clinician",), event_type=AuditEventType.POLICY_DECISION,
        action="view", entity_type="patient", entity_id="P001",
        decision=AuditDecision.GRANT, details={"reason": "Allowed"},
    )
    data.update(overrides)
    return AuditEntry(**data)


def document(doc_id, last_name_ct, order, doctor="dr-house"):
    return {
        "_id": doc_id,
        "_type": "patient",
        "lastName": {"_enc": 1, "alg": "deterministic", "key": "k", "ct": last_name_ct},
        "birthDate": {"_enc": 1, "alg": "range", "key": "k", "ct": "xx", "ord": order},
        "primaryDoctorId": doctor,
    }


@pytest.fixture(params=["memory", "duckdb"])
def adapter(request):
    if request.param == "memory":
        instance = InMemoryAdapter()
    else:
        instance = DuckDBAdapter(db_path=":memory:")
        assert instance.initialize_schema().is_success()
    yield instance
    instance.close()


class TestStorageContract:
    """Test suite for behavior shared by every storage adapter."""

    def test_key_roundtrip(self, adapter):
        """Test storing and reading a wrapped key."""
        adapter.insert_key(data_key())
        stored = adapter.find_by_alt_name("k1")
        assert stored.key_id == "id-1"
        assert stored.wrapped_key == b"\x00wrapped\xff"
        assert stored.created_at == NOW
        assert adapter.find_by_alt_name("missing") is None

    def test_key_alt_name_unique(self, adapter):
        """Test that a second key under the same alt-name is rejected."""
        adapter.insert_key(data_key())
        with pytest.raises(DuplicateKeyError):
            adapter.insert_key(data_key(key_id="id-2"))
        assert [k.key_id for k in adapter.list_keys()] == ["id-1"]

    def test_audit_roundtrip_and_order(self, adapter):
        """Test that entries come back intact, newest first."""
        adapter.insert_entry(audit_entry(minutes_ago=10))
        adapter.insert_entry(audit_entry(minutes_ago=1, action="search", entity_id=None))

        entries = adapter.query_entries(AuditQuery())
        assert [e.action for e in entries] == ["search", "view"]
        assert entries[1].details == {"reason": "Allowed"}
        assert entries[1].actor_roles == ("clinician",)
        assert entries[1].timestamp == NOW - timedelta(minutes=10)

    def test_audit_filters_and_count(self, adapter):
        """Test filtered queries, paging and counts."""
        for i in range(5):
            adapter.insert_entry(audit_entry(minutes_ago=i, decision=AuditDecision.DENY if i % 2 else AuditDecision.GRANT))

        assert adapter.count_entries(AuditQuery(decision=AuditDecision.DENY)) == 2
        assert adapter.count_entries(AuditQuery(since=NOW - timedelta(minutes=2))) == 3
        assert len(adapter.query_entries(AuditQuery(limit=2, offset=4))) == 1

    def test_document_crud(self, adapter):
        """Test insert, find, replace and delete."""
        adapter.insert_document("patient", document("P001", "ct-smith", 10))
        assert adapter.find_document("patient", "P001")["primaryDoctorId"] == "dr-house"
        assert adapter.find_document("medical_knowledge", "P001") is None

        assert adapter.replace_document("patient", "P001", document("P001", "ct-smith", 10, doctor="dr-who"))
        assert adapter.find_document("patient", "P001")["primaryDoctorId"] == "dr-who"
        assert not adapter.replace_document("patient", "P404", document("P404", "x", 1))

        assert adapter.delete_document("patient", "P001")
        assert not adapter.delete_document("patient", "P001")
        assert adapter.find_document("patient", "P001") is None

    def test_duplicate_document(self, adapter):
        """Test that document ids are unique within a collection."""
        adapter.insert_document("patient", document("P001", "a", 1))
        with pytest.raises(DuplicateKeyError):
            adapter.insert_document("patient", document("P001", "b", 2))

    def test_find_by_ciphertext(self, adapter):
        """Test equality search on an encrypted field's ciphertext."""
        adapter.insert_document("patient", document("P001", "ct-smith", 10))
        adapter.insert_document("patient", document("P002", "ct-jones", 20))
        adapter.insert_document("patient", document("P003", "ct-smith", 30))

        found = adapter.find_documents("patient", FieldQuery(field="lastName", equals="ct-smith"))
        assert sorted(d["_id"] for d in found) == ["P001", "P003"]

    def test_find_by_order_range(self, adapter):
        """Test inclusive interval search on order tokens."""
        for i, order in enumerate((10, 20, 30), start=1):
            adapter.insert_document("patient", document(f"P00{i}", "ct", order))

        found = adapter.find_documents("patient", FieldQuery(field="birthDate", low=20, high=30))
        assert sorted(d["_id"] for d in found) == ["P002", "P003"]
        found = adapter.find_documents("patient", FieldQuery(field="birthDate", high=10))
        assert [d["_id"] for d in found] == ["P001"]

    def test_find_by_plain_field(self, adapter):
        """Test equality on an unencrypted field."""
        adapter.insert_document("patient", document("P001", "a", 1, doctor="dr-a"))
        adapter.insert_document("patient", document("P002", "b", 2, doctor="dr-b"))

        found = adapter.find_documents(
            "patient", FieldQuery(field="primaryDoctorId", equals="dr-b", encrypted=False)
        )
        assert [d["_id"] for d in found] == ["P002"]

    def test_find_respects_limit(self, adapter):
        """Test the result limit."""
        for i in range(5):
            adapter.insert_document("patient", document(f"P00{i}", "a", i))
        assert len(adapter.find_documents("patient", limit=3)) == 3

    def test_find_by_compound_query(self, adapter):
        """Test that every criterion of a compound query must match."""
        adapter.insert_document("patient", document("P001", "ct-smith", 10, doctor="dr-a"))
        adapter.insert_document("patient", document("P002", "ct-smith", 30, doctor="dr-a"))
        adapter.insert_document("patient", document("P003", "ct-smith", 20, doctor="dr-b"))
        adapter.insert_document("patient", document("P004", "ct-jones", 20, doctor="dr-a"))

        query = DocumentQuery(criteria=(
            FieldQuery(field="lastName", equals="ct-smith"),
            FieldQuery(field="birthDate", low=15, high=35),
            FieldQuery(field="primaryDoctorId", equals="dr-a", encrypted=False),
        ))
        assert [d["_id"] for d in adapter.find_documents("patient", query)] == ["P002"]
        assert len(adapter.find_documents("patient", DocumentQuery())) == 4

    def test_count_documents(self, adapter):
        """Test counting a collection with and without criteria."""
        adapter.insert_document("patient", document("P001", "ct-smith", 10))
        adapter.insert_document("patient", document("P002", "ct-smith", 20))
        adapter.insert_document("patient", document("P003", "ct-jones", 30))
        adapter.insert_document("medical_knowledge", {"_id": "MK-001", "_type": "medical_knowledge"})

        assert adapter.count_documents("patient") == 3
        assert adapter.count_documents("patient", FieldQuery(field="lastName", equals="ct-smith")) == 2
        assert adapter.count_documents("patient", DocumentQuery(criteria=(
            FieldQuery(field="lastName", equals="ct-smith"),
            FieldQuery(field="birthDate", low=15),
        ))) == 1
        assert adapter.count_documents("empty") == 0

    def test_document_without_id_rejected(self, adapter):
        """Test that documents need an _id."""
        with pytest.raises(StorageError):
            adapter.insert_document("patient", {"_type": "patient"})


class TestDuckDBAdapter:
    """Test suite for DuckDB-specific behavior."""

    def test_file_backed_persistence(self, tmp_path):
        """Test that data survives reopening the database file."""
        db_path = str(tmp_path / "vault.duckdb")
        adapter = DuckDBAdapter(db_config=DatabaseConfig(db_type="duckdb", db_path=db_path))
        adapter.initialize_schema()
        adapter.insert_key(data_key())
        adapter.insert_document("patient", document("P001", "ct", 1))
        adapter.close()

        reopened = DuckDBAdapter(db_path=db_path)
        try:
            assert reopened.find_by_alt_name("k1").key_id == "id-1"
            assert reopened.find_document("patient", "P001")["_type"] == "patient"
        finally:
            reopened.close()

    def test_schema_initialized_lazily(self):
        """Test that the first operation initializes the schema."""
        adapter = DuckDBAdapter()
        try:
            assert adapter.list_keys() == []
        finally:
            adapter.close()

    def test_rejects_non_duckdb_config(self):
        """Test that a memory config is rejected by the DuckDB adapter."""
        with pytest.raises(StorageError):
            DuckDBAdapter(db_config=DatabaseConfig(db_type="memory"))

    def test_rejects_unsafe_field_name(self):
        """Test that query field names are validated before use in SQL."""
        adapter = DuckDBAdapter()
        try:
            with pytest.raises(StorageError):
                adapter.find_documents("patient", FieldQuery(field="x') OR 1=1 --", equals="a"))
        finally:
            adapter.close()


class TestInMemoryAdapter:
    """Test suite for in-memory specific behavior."""

    def test_documents_are_copied(self):
        """Test that callers cannot mutate stored documents by reference."""
        adapter = InMemoryAdapter()
        original = document("P001", "ct", 1)
        adapter.insert_document("patient", original)
        original["primaryDoctorId"] = "tampered"

        fetched = adapter.find_document("patient", "P001")
        fetched["primaryDoctorId"] = "tampered-again"
        assert adapter.find_document("patient", "P001")["primaryDoctorId"] == "dr-house"

    def test_non_json_document_rejected(self):
        """Test that non-serializable documents are rejected."""
        with pytest.raises(StorageError):
            InMemoryAdapter().insert_document("patient", {"_id": "P001", "when": object()})
