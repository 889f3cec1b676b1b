"""Shared fixtures for the MedVault test suite."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from medvault.adapters.storage import InMemoryAdapter
from medvault.domain.access_models import Principal
from medvault.domain.entities import PatientRecord
from medvault.domain.enums import Role
from medvault.domain.services.policy_evaluator import PolicyEvaluator
from medvault.domain.services.role_projection import RoleProjection
from medvault.infrastructure.audit.audit_log_writer import AuditLogWriter
from medvault.infrastructure.encryption.field_encryption import FieldEncryptionEngine
from medvault.infrastructure.encryption.key_vault import KeyVaultClient
from medvault.infrastructure.encryption.master_key import MasterKey
from medvault.services.record_access_service import RecordAccessService
from medvault.services.record_codec import RecordCodec


def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def store():
    adapter = InMemoryAdapter()
    yield adapter
    adapter.close()


@pytest.fixture
def master_key():
    return MasterKey.generate(key_id="test-master")


@pytest.fixture
def audit_writer(store):
    return AuditLogWriter(store, sleep=no_sleep)


@pytest.fixture
def key_vault(store, master_key, audit_writer):
    return KeyVaultClient(store, master_key, audit_writer=audit_writer, sleep=no_sleep)


@pytest.fixture
def engine(key_vault):
    return FieldEncryptionEngine(key_vault)


@pytest.fixture
def codec(engine):
    return RecordCodec(engine)


@pytest.fixture
def evaluator(audit_writer):
    return PolicyEvaluator(audit_writer)


@pytest.fixture
def projection():
    return RoleProjection()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def service(store, codec, evaluator, projection, audit_writer, executor):
    return RecordAccessService(store, codec, evaluator, projection, audit_writer, timeout=5.0, executor=executor)


@pytest.fixture
def clinician():
    return Principal(actor_id="dr-house", roles=frozenset({Role.CLINICIAN}))


@pytest.fixture
def front_desk():
    return Principal(actor_id="desk-01", roles=frozenset({Role.FRONT_DESK}))


@pytest.fixture
def care_support():
    return Principal(actor_id="nurse-01", roles=frozenset({Role.CARE_SUPPORT}))


@pytest.fixture
def administrator():
    return Principal(actor_id="admin-01", roles=frozenset({Role.ADMINISTRATOR}))


@pytest.fixture
def patient_self():
    return Principal(actor_id="patient-p001", roles=frozenset({Role.PATIENT_SELF}), linked_record_id="P001")


@pytest.fixture
def patient():
    return PatientRecord(
        id="P001",
        first_name="John",
        last_name="Smith",
        email="john.smith@example.com",
        phone_number="555-123-4567",
        birth_date=date(1980, 5, 17),
        ssn="123-45-6789",
        diagnosis=["Hypertension"],
        medications=["Lisinopril"],
        insurance_details={"provider": "Acme Health", "policy": "AC-991"},
        notes="Follow up in 3 months",
        primary_doctor_id="dr-house",
    )
