"""Unit tests for sensitive entities and the encryption schema registry."""

from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from medvault.domain.encryption_schema import (
    DEFAULT_SCHEMA,
    EncryptionSchema,
    qualified_name,
    split_qualified_name,
)
from medvault.domain.entities import MedicalKnowledgeRecord, PatientRecord, entity_class_for
from medvault.domain.enums import EncryptionClass, EntityType


class TestPatientRecord:
    """Test suite for PatientRecord."""

    def test_storage_names_are_camel_case(self):
        """Test that storage names are camelCase aliases."""
        names = PatientRecord.storage_names()
        assert "firstName" in names
        assert "insuranceDetails" in names
        assert PatientRecord.attribute_for("notesHistory") == "notes_history"
        assert PatientRecord.attribute_for("unknown") is None

    def test_populate_by_alias(self):
        """Test construction from storage names."""
        record = PatientRecord.model_validate({"id": "P001", "lastName": "Smith"})
        assert record.last_name == "Smith"

    @pytest.mark.parametrize("bad_id", ["", "ab", "P 001", "P001;DROP", "x" * 65])
    def test_invalid_identifier(self, bad_id):
        """Test identifier validation."""
        with pytest.raises(ValidationError):
            PatientRecord(id=bad_id)

    def test_invalid_ssn(self):
        """Test SSN shape validation."""
        with pytest.raises(ValidationError):
            PatientRecord(id="P001", ssn="12-345-678")

    def test_future_birth_date_rejected(self):
        """Test that future birth dates are rejected."""
        with pytest.raises(ValidationError):
            PatientRecord(id="P001", birth_date=date.today() + timedelta(days=1))

    def test_invalid_email_rejected(self):
        """Test email validation."""
        with pytest.raises(ValidationError):
            PatientRecord(id="P001", email="not-an-email")

    def test_record_is_frozen(self, patient):
        """Test that entities are immutable."""
        with pytest.raises(ValidationError):
            patient.last_name = "Jones"

    def test_with_changes(self, patient):
        """Test that with_changes accepts storage and attribute names."""
        updated = patient.with_changes({"lastName": "Jones", "notes": "Stable"})
        assert updated.last_name == "Jones"
        assert updated.notes == "Stable"
        assert patient.last_name == "Smith"

    def test_with_changes_rejects_id(self, patient):
        """Test that the identifier cannot be changed."""
        with pytest.raises(ValueError):
            patient.with_changes({"id": "P002"})

    def test_with_changes_rejects_unknown_field(self, patient):
        """Test that unknown fields are rejected."""
        with pytest.raises(ValueError):
            patient.with_changes({"favouriteColour": "blue"})

    def test_subject_is_owned_by_record(self, patient):
        """Test that a patient record is its own owner."""
        subject = patient.as_subject()
        assert subject.entity_type == EntityType.PATIENT
        assert subject.entity_id == "P001"
        assert subject.owner_id == "P001"

    def test_knowledge_subject_has_no_owner(self):
        """Test that medical knowledge records have no owner."""
        assert MedicalKnowledgeRecord.subject_for("MK-001").owner_id is None

    def test_entity_class_for(self):
        """Test model lookup per entity type."""
        assert entity_class_for(EntityType.PATIENT) is PatientRecord
        with pytest.raises(KeyError):
            entity_class_for(EntityType.AUDIT_LOG)


class TestEncryptionSchema:
    """Test suite for EncryptionSchema."""

    def test_default_classifications(self):
        """Test the patient field classifications."""
        assert DEFAULT_SCHEMA.classification_of("patient.lastName") == EncryptionClass.DETERMINISTIC
        assert DEFAULT_SCHEMA.classification_of("patient.birthDate") == EncryptionClass.RANGE
        assert DEFAULT_SCHEMA.classification_of("patient.diagnosis") == EncryptionClass.RANDOM
        assert DEFAULT_SCHEMA.classification_of("patient.primaryDoctorId") is None
        assert DEFAULT_SCHEMA.classification_of("lastName") is None

    def test_medical_knowledge_unclassified(self):
        """Test that medical knowledge carries no encrypted fields."""
        assert dict(DEFAULT_SCHEMA.fields_for(EntityType.MEDICAL_KNOWLEDGE)) == {}

    def test_schema_is_read_only(self):
        """Test that the registry cannot be mutated at runtime."""
        with pytest.raises(TypeError):
            DEFAULT_SCHEMA.fields_for(EntityType.PATIENT)["notes"] = EncryptionClass.DETERMINISTIC

    def test_qualified_names(self):
        """Test qualified name helpers."""
        assert qualified_name(EntityType.PATIENT, "ssn") == "patient.ssn"
        assert split_qualified_name("patient.ssn") == (EntityType.PATIENT, "ssn")
        with pytest.raises(ValueError):
            split_qualified_name("ssn")

    def test_custom_key_alt_name(self):
        """Test that every field maps to the configured data key."""
        schema = EncryptionSchema(key_alt_name="tenant-a")
        assert schema.key_alt_name_for("patient.ssn") == "tenant-a"
        assert "patient.ssn" in schema.qualified_fields()
