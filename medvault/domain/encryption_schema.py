"""Encryption schema registry.

Fixed mapping from qualified field name (``"<entity_type>.<storageName>"``) to
its encryption class. A field keeps one classification for the lifetime of the
schema; changing it is a re-encryption migration, not a runtime operation, so
the registry is exposed only through read-only mappings.
"""

from types import MappingProxyType
from typing import Mapping, Optional

from medvault.domain.enums import EncryptionClass, EntityType

DEFAULT_KEY_ALT_NAME = "primary-phi-key"

_PATIENT_FIELDS = {
    "firstName": EncryptionClass.DETERMINISTIC,
    "lastName": EncryptionClass.DETERMINISTIC,
    "email": EncryptionClass.DETERMINISTIC,
    "phoneNumber": EncryptionClass.DETERMINISTIC,
    "birthDate": EncryptionClass.RANGE,
    "ssn": EncryptionClass.RANDOM,
    "diagnosis": EncryptionClass.RANDOM,
    "medications": EncryptionClass.RANDOM,
    "insuranceDetails": EncryptionClass.RANDOM,
    "notes": EncryptionClass.RANDOM,
    "notesHistory": EncryptionClass.RANDOM,
}

_SCHEMA: Mapping[EntityType, Mapping[str, EncryptionClass]] = MappingProxyType({
    EntityType.PATIENT: MappingProxyType(_PATIENT_FIELDS),
    EntityType.MEDICAL_KNOWLEDGE: MappingProxyType({}),
})


def qualified_name(entity_type: EntityType, storage_name: str) -> str:
    return f"{entity_type.value}.{storage_name}"


def split_qualified_name(field: str) -> tuple[EntityType, str]:
    """Split ``"patient.lastName"`` into ``(EntityType.PATIENT, "lastName")``.

    Raises:
        ValueError: If the name is not qualified or the entity type is unknown
    """
    entity_part, sep, storage_name = field.partition(".")
    if not sep or not storage_name:
        raise ValueError(f"Field name must be qualified as '<entity_type>.<field>': {field}")
    return EntityType(entity_part), storage_name


class EncryptionSchema:
    """Read-only view over the field classification registry."""

    def __init__(
        self,
        fields: Optional[Mapping[EntityType, Mapping[str, EncryptionClass]]] = None,
        key_alt_name: str = DEFAULT_KEY_ALT_NAME,
    ):
        source = fields if fields is not None else _SCHEMA
        self._fields: Mapping[EntityType, Mapping[str, EncryptionClass]] = MappingProxyType({
            entity_type: MappingProxyType(dict(mapping))
            for entity_type, mapping in source.items()
        })
        self.key_alt_name = key_alt_name

    def fields_for(self, entity_type: EntityType) -> Mapping[str, EncryptionClass]:
        """Classified storage names for an entity type (empty if none)."""
        return self._fields.get(entity_type, MappingProxyType({}))

    def classification_of(self, field: str) -> Optional[EncryptionClass]:
        """Classification of a qualified field name, or None if unclassified."""
        try:
            entity_type, storage_name = split_qualified_name(field)
        except ValueError:
            return None
        return self.fields_for(entity_type).get(storage_name)

    def is_classified(self, entity_type: EntityType, storage_name: str) -> bool:
        return storage_name in self.fields_for(entity_type)

    def key_alt_name_for(self, field: str) -> str:
        """Alt-name of the DEK protecting ``field``.

        A single DEK covers every classified field, which keeps deterministic
        ciphertexts comparable across records.
        """
        return self.key_alt_name

    def qualified_fields(self) -> list[str]:
        return [
            qualified_name(entity_type, storage_name)
            for entity_type, mapping in self._fields.items()
            for storage_name in mapping
        ]


DEFAULT_SCHEMA = EncryptionSchema()
