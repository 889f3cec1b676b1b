"""Record Codec.

Maps plaintext entities to their encrypted storage documents and back.

Document layout:
    {"_id": "<id>", "_type": "<entity_type>", "<field>": <plain value or encrypted blob>, ...}

Security Impact:
    - Every classified attribute is encrypted before the document is built;
      None-valued classified attributes are left out rather than stored as null
    - Decoding never caches plaintext; each call is a pure function of the
      document and the key state
    - Errors name the record id and field, never a value
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from medvault.domain.access_models import SubjectRef
from medvault.domain.encryption_schema import qualified_name
from medvault.domain.entities import SensitiveEntity, entity_class_for
from medvault.domain.enums import EncryptionClass, EntityType
from medvault.domain.ports import DecryptionFailure, DocumentQuery, FieldQuery, Result, SchemaMismatch
from medvault.infrastructure.encryption.field_encryption import EncryptedValue, FieldEncryptionEngine

logger = logging.getLogger(__name__)

ID_KEY = "_id"
TYPE_KEY = "_type"


class RecordCodec:
    """Converts entities to and from encrypted documents.

    Parameters:
        engine: Field Encryption Engine; its schema decides what is encrypted
    """

    def __init__(self, engine: FieldEncryptionEngine):
        self._engine = engine
        self._schema = engine.schema

    def to_storage(self, entity: SensitiveEntity) -> dict:
        """Encode ``entity`` as a storage document.

        Raises:
            SchemaMismatch: If the schema references an unclassified field
            ValueError: If a classified value cannot be encrypted
            KeyVaultUnavailable, KeyCorrupt: From the key vault
        """
        entity_type = entity.entity_type
        classified = self._schema.fields_for(entity_type)
        plain = entity.model_dump(mode="json", by_alias=True)

        document: dict = {ID_KEY: entity.id, TYPE_KEY: entity_type.value}
        for attribute, info in type(entity).model_fields.items():
            storage_name = info.alias or attribute
            if attribute == "id":
                continue
            if storage_name in classified:
                value = getattr(entity, attribute)
                if value is None:
                    continue
                encrypted = self._engine.encrypt(qualified_name(entity_type, storage_name), value)
                document[storage_name] = encrypted.to_document()
            else:
                document[storage_name] = plain[storage_name]
        return document

    def from_storage(self, document: dict, entity_type: Optional[EntityType] = None) -> SensitiveEntity:
        """Decode a storage document into its entity.

        Absent classified fields decode to the model default.

        Raises:
            SchemaMismatch: If the document type disagrees with ``entity_type``, a
                classified field is stored unencrypted, or the result fails validation
            DecryptionFailure: If a classified field cannot be decrypted
        """
        entity_type = self._resolve_type(document, entity_type)
        record_id = document[ID_KEY]
        model = entity_class_for(entity_type)
        classified = self._schema.fields_for(entity_type)

        data: dict = {"id": record_id}
        for storage_name, value in document.items():
            if storage_name in (ID_KEY, TYPE_KEY):
                continue
            if storage_name in classified:
                if not EncryptedValue.is_blob(value):
                    raise SchemaMismatch(
                        f"Field {storage_name} of record {record_id} is not stored encrypted",
                        details={"record_id": record_id, "field": storage_name},
                    )
                data[storage_name] = self._decrypt(entity_type, record_id, storage_name, value)
            elif EncryptedValue.is_blob(value):
                raise SchemaMismatch(
                    f"Field {storage_name} of record {record_id} is encrypted but not classified",
                    details={"record_id": record_id, "field": storage_name},
                )
            elif model.attribute_for(storage_name) is not None:
                data[storage_name] = value
            else:
                logger.debug(f"Ignoring unknown field {storage_name} on {entity_type.value} {record_id}")

        try:
            return model.model_validate(data)
        except ValidationError as e:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
            raise SchemaMismatch(
                f"Record {record_id} does not match the {entity_type.value} model",
                details={"record_id": record_id, "fields": fields},
            ) from None

    def from_storage_many(
        self,
        documents: List[dict],
        entity_type: Optional[EntityType] = None,
    ) -> List[Result[SensitiveEntity]]:
        """Decode several documents, isolating per-record decryption failures.

        SchemaMismatch still propagates: it indicates a migration bug, not a bad record.
        """
        results: List[Result[SensitiveEntity]] = []
        for document in documents:
            try:
                results.append(Result.success_result(self.from_storage(document, entity_type)))
            except DecryptionFailure as e:
                logger.error(f"Skipping undecryptable record {document.get(ID_KEY)}: {e}")
                results.append(Result.failure_result(e, error_details=e.details))
        return results

    def subject_of(self, document: dict, entity_type: Optional[EntityType] = None) -> SubjectRef:
        """Policy subject from the plain identifier fields only (no decryption)."""
        entity_type = self._resolve_type(document, entity_type)
        return entity_class_for(entity_type).subject_for(document[ID_KEY])

    def equality_query(self, entity_type: EntityType, storage_name: str, value: Any) -> FieldQuery:
        """Translate ``storage_name == value`` into a stored-document criterion.

        Raises:
            SchemaMismatch: If the field is classified but not deterministic
            ValueError: If the field is unknown or the value does not fit its type
        """
        self._require_field(entity_type, storage_name)
        if self._schema.is_classified(entity_type, storage_name):
            token = self._engine.equality_token(qualified_name(entity_type, storage_name), value)
            return FieldQuery(field=storage_name, equals=token)
        if storage_name == "id":
            return FieldQuery(field=ID_KEY, equals=value, encrypted=False)
        stored = self._stored_form(entity_type, storage_name, value)
        return FieldQuery(field=storage_name, equals=stored, encrypted=False)

    def range_query(self, entity_type: EntityType, storage_name: str, low: Any = None, high: Any = None) -> FieldQuery:
        """Translate ``low <= storage_name <= high`` into an order-token criterion.

        Raises:
            SchemaMismatch: If the field is not range-classified
        """
        self._require_field(entity_type, storage_name)
        low_token, high_token = self._engine.range_tokens(
            qualified_name(entity_type, storage_name), low, high
        )
        return FieldQuery(field=storage_name, low=low_token, high=high_token)

    def criteria_query(
        self,
        entity_type: EntityType,
        equals: Optional[Mapping[str, Any]] = None,
        ranges: Optional[Mapping[str, Tuple[Any, Any]]] = None,
    ) -> DocumentQuery:
        """Combine equality and range criteria into one AND-ed query.

        Parameters:
            entity_type: Entity type searched
            equals: Storage name -> value, for deterministic and plain fields
            ranges: Storage name -> (low, high), either bound may be None

        Raises:
            SchemaMismatch: If a field does not support the requested comparison
            ValueError: If a field is unknown or a range has no bound
        """
        criteria = [
            self.equality_query(entity_type, storage_name, value)
            for storage_name, value in (equals or {}).items()
        ]
        criteria += [
            self.range_query(entity_type, storage_name, low, high)
            for storage_name, (low, high) in (ranges or {}).items()
        ]
        return DocumentQuery(criteria=tuple(criteria))

    def fields_by_class(self, entity_type: EntityType) -> Dict[str, List[str]]:
        """Classified storage names of ``entity_type`` grouped by encryption class."""
        grouped: Dict[str, List[str]] = {encryption_class.value: [] for encryption_class in EncryptionClass}
        for storage_name, encryption_class in self._schema.fields_for(entity_type).items():
            grouped[encryption_class.value].append(storage_name)
        return grouped

    @staticmethod
    def _stored_form(entity_type: EntityType, storage_name: str, value: Any) -> Any:
        """``value`` as ``to_storage`` writes it for an unclassified field."""
        model = entity_class_for(entity_type)
        annotation = model.model_fields[model.attribute_for(storage_name)].annotation
        adapter = TypeAdapter(annotation)
        try:
            return adapter.dump_python(adapter.validate_python(value), mode="json")
        except ValidationError:
            raise ValueError(f"Value does not fit field {storage_name} of {entity_type.value}") from None

    def _decrypt(self, entity_type: EntityType, record_id: str, storage_name: str, blob: dict) -> Any:
        try:
            return self._engine.decrypt(qualified_name(entity_type, storage_name), blob)
        except DecryptionFailure:
            raise DecryptionFailure(
                f"Failed to decrypt field {storage_name} of record {record_id}",
                details={"record_id": record_id, "field": storage_name},
            ) from None

    @staticmethod
    def _resolve_type(document: dict, entity_type: Optional[EntityType]) -> EntityType:
        if ID_KEY not in document:
            raise SchemaMismatch("Stored document has no _id")
        stored_type = document.get(TYPE_KEY)
        if stored_type is not None:
            try:
                resolved = EntityType(stored_type)
            except ValueError:
                raise SchemaMismatch(
                    f"Record {document[ID_KEY]} has unknown type {stored_type}",
                    details={"record_id": document[ID_KEY]},
                ) from None
            if entity_type is not None and resolved != entity_type:
                raise SchemaMismatch(
                    f"Record {document[ID_KEY]} is a {resolved.value}, expected {entity_type.value}",
                    details={"record_id": document[ID_KEY]},
                )
            return resolved
        if entity_type is None:
            raise SchemaMismatch(
                f"Record {document[ID_KEY]} has no _type", details={"record_id": document[ID_KEY]}
            )
        return entity_type

    @staticmethod
    def _require_field(entity_type: EntityType, storage_name: str) -> None:
        if entity_class_for(entity_type).attribute_for(storage_name) is None:
            raise ValueError(f"Unknown field {storage_name} for {entity_type.value}")
