"""Sensitive Entity Definitions.

This module defines the plaintext domain models for the records MedVault
stores. Instances only ever exist in memory: the Record Codec encrypts them
before persistence and reconstitutes them after a granted read.

Security Impact:
    - Classified attributes (see encryption_schema) never reach storage in plaintext
    - Identifiers are immutable for the lifetime of the record
    - Type safety enforced at runtime via Pydantic V2

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are frozen; edits produce a new instance via ``with_changes``
    - Storage names are the camelCase aliases of the Python attribute names
"""

import re
from datetime import date, datetime, timezone
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medvault.domain.access_models import SubjectRef
from medvault.domain.enums import EntityType

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,64}$")
_SSN_PATTERN = re.compile(r"^\d{3}-?\d{2}-?\d{4}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SensitiveEntity(BaseModel):
    """Base class for entities handled by the Record Codec.

    Subclasses set ``entity_type`` and declare their attributes; which of them
    are encrypted is decided by the schema registry, not by the model.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    entity_type: ClassVar[EntityType]

    id: str = Field(..., description="Immutable record identifier")

    @field_validator("id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Validate record identifier format.

        Security Impact: identifiers are stored and queried in plaintext, so
        they are restricted to a safe alphabet.
        """
        v_stripped = v.strip() if isinstance(v, str) else v
        if not v_stripped or not _ID_PATTERN.match(v_stripped):
            raise ValueError(
                "Identifier must be 3-64 characters of letters, digits, '-' or '_'"
            )
        return v_stripped

    @classmethod
    def storage_names(cls) -> list[str]:
        """Storage (alias) names of all attributes, in declaration order."""
        return [info.alias or name for name, info in cls.model_fields.items()]

    @classmethod
    def attribute_for(cls, storage_name: str) -> Optional[str]:
        """Map a storage name back to the Python attribute name."""
        for name, info in cls.model_fields.items():
            if (info.alias or name) == storage_name:
                return name
        return None

    @classmethod
    def subject_for(cls, entity_id: str) -> SubjectRef:
        """Policy subject for a record of this type, from its identifier alone."""
        return SubjectRef(entity_type=cls.entity_type, entity_id=entity_id)

    def as_subject(self) -> SubjectRef:
        return type(self).subject_for(self.id)

    def with_changes(self, changes: dict[str, Any]) -> "SensitiveEntity":
        """Return a validated copy with ``changes`` applied.

        Parameters:
            changes: Mapping of storage or attribute names to new values

        Raises:
            ValueError: If a change targets the identifier or an unknown field
        """
        data = self.model_dump(by_alias=True)
        for key, value in changes.items():
            attribute = key if key in type(self).model_fields else type(self).attribute_for(key)
            if attribute is None:
                raise ValueError(f"Unknown field: {key}")
            if attribute == "id":
                raise ValueError("Record identifier is immutable")
            alias = type(self).model_fields[attribute].alias or attribute
            data[alias] = value
        return type(self).model_validate(data)


class PatientRecord(SensitiveEntity):
    """Patient demographic and clinical record.

    Security Impact: nearly every attribute is PHI. Classification per field is
    declared in ``medvault.domain.encryption_schema``:
        - firstName, lastName, email, phoneNumber: deterministic (equality search)
        - birthDate: range (interval search)
        - ssn, diagnosis, medications, insuranceDetails, notes, notesHistory: random

    Parameters:
        id: Patient identifier (plain, used for ownership checks)
        first_name: Given name
        last_name: Family name
        email: Contact email
        phone_number: Contact phone
        birth_date: Date of birth
        ssn: National identifier
        diagnosis: Diagnosis list
        medications: Medication list
        insurance_details: Insurance provider/policy information
        notes: Free-text clinical notes
        notes_history: Prior versions of notes with author and timestamp
        primary_doctor_id: Assigned clinician (plain)
        created_at: Creation timestamp (plain)
        updated_at: Last modification timestamp (plain)
    """

    entity_type: ClassVar[EntityType] = EntityType.PATIENT

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    birth_date: Optional[date] = None
    ssn: Optional[str] = None
    diagnosis: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    insurance_details: Optional[dict[str, Any]] = None
    notes: Optional[str] = None
    notes_history: list[dict[str, Any]] = Field(default_factory=list)
    primary_doctor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return v
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v

    @field_validator("ssn")
    @classmethod
    def validate_ssn(cls, v: Optional[str]) -> Optional[str]:
        """Validate SSN shape (NNN-NN-NNNN, dashes optional)."""
        if v is None or v == "":
            return v
        if not _SSN_PATTERN.match(v.strip()):
            raise ValueError("SSN must have the form NNN-NN-NNNN")
        return v.strip()

    @field_validator("birth_date")
    @classmethod
    def validate_birth_date(cls, v: Optional[date]) -> Optional[date]:
        """Reject future dates and dates before 1900."""
        if v is None:
            return v
        if v > date.today():
            raise ValueError("Date of birth cannot be in the future")
        if v.year < 1900:
            raise ValueError("Date of birth cannot be before 1900")
        return v

    @classmethod
    def subject_for(cls, entity_id: str) -> SubjectRef:
        # A patient record is owned by the patient it describes
        return SubjectRef(entity_type=cls.entity_type, entity_id=entity_id, owner_id=entity_id)


class MedicalKnowledgeRecord(SensitiveEntity):
    """Reference medical knowledge (guidelines, drug interactions, criteria).

    Contains no PHI, so no attribute is classified; the record still goes
    through the codec and the role projection like any other entity.
    """

    entity_type: ClassVar[EntityType] = EntityType.MEDICAL_KNOWLEDGE

    title: str = Field(..., min_length=1)
    content: str = ""
    summary: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    specialties: list[str] = Field(default_factory=list)
    source: str = "internal"
    source_url: Optional[str] = None
    confidence_level: int = Field(default=5, ge=1, le=10)
    evidence_level: int = Field(default=3, ge=1, le=5)
    related_conditions: list[str] = Field(default_factory=list)
    related_medications: list[str] = Field(default_factory=list)
    requires_review: bool = False
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


ENTITY_MODELS: dict[EntityType, type[SensitiveEntity]] = {
    EntityType.PATIENT: PatientRecord,
    EntityType.MEDICAL_KNOWLEDGE: MedicalKnowledgeRecord,
}


def entity_class_for(entity_type: EntityType) -> type[SensitiveEntity]:
    """Return the model class for an entity type.

    Raises:
        KeyError: If the entity type has no stored representation
    """
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise KeyError(f"No entity model registered for {entity_type.value}") from None
