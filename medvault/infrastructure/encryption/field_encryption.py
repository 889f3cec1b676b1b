"""Field Encryption Engine.

Encrypts and decrypts single field values according to the field's declared
encryption class, using AES-256-GCM from ``cryptography`` with a data key from
the Key Vault Client.

Security Impact:
    - Deterministic: nonce = HMAC-SHA256(mac_key, class | field | plaintext)[:12],
      so equal plaintexts of one field produce byte-identical ciphertext
    - Range: random nonce plus an order token (value image * 2**16 + 2 keyed bytes)
      stored beside the ciphertext for interval search
    - Random: fresh 12-byte nonce per call
    - Associated data binds every ciphertext to its field and class, so a blob
      copied to another field fails authentication
    - Errors name the field, never the value

Blob layout (as stored in documents):
    {"_enc": 1, "alg": "<class>", "key": "<alt name>", "ct": "<base64 nonce|ct>", "ord": <int>}
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medvault.domain.encryption_schema import DEFAULT_SCHEMA, EncryptionSchema
from medvault.domain.enums import EncryptionClass
from medvault.domain.ports import DecryptionFailure, SchemaMismatch
from medvault.infrastructure.encryption.key_vault import KeyHandle, KeyVaultClient

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16
ORDER_SHIFT = 2 ** 16
MAX_RANGE_MAGNITUDE = 2 ** 40


@dataclass(frozen=True)
class EncryptedValue:
    """An encrypted field value.

    Attributes:
        alg: Encryption class the value was encrypted under
        key_alt_name: Alt-name of the data key
        ciphertext: Base64 of nonce followed by AES-GCM ciphertext and tag
        order: Order token (range class only)
    """
    alg: EncryptionClass
    key_alt_name: str
    ciphertext: str
    order: Optional[int] = None

    def to_document(self) -> dict:
        blob = {
            "_enc": BLOB_VERSION,
            "alg": self.alg.value,
            "key": self.key_alt_name,
            "ct": self.ciphertext,
        }
        if self.order is not None:
            blob["ord"] = self.order
        return blob

    @staticmethod
    def is_blob(value: Any) -> bool:
        return isinstance(value, dict) and "_enc" in value

    @classmethod
    def from_document(cls, blob: dict, field: str = "") -> 'EncryptedValue':
        """Parse a stored blob.

        Raises:
            DecryptionFailure: If the blob is structurally malformed
        """
        try:
            if blob["_enc"] != BLOB_VERSION:
                raise ValueError("unsupported blob version")
            order = blob.get("ord")
            if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
                raise ValueError("order token must be an integer")
            ciphertext = blob["ct"]
            key_alt_name = blob["key"]
            if not isinstance(ciphertext, str) or not isinstance(key_alt_name, str):
                raise ValueError("ciphertext and key must be strings")
            return cls(
                alg=EncryptionClass(blob["alg"]),
                key_alt_name=key_alt_name,
                ciphertext=ciphertext,
                order=order,
            )
        except (KeyError, TypeError, ValueError):
            raise DecryptionFailure(
                f"Malformed encrypted blob for field {field}",
                details={"field": field},
            ) from None


# ============================================================================
# Type-tagged plaintext serialization
# ============================================================================

def _tag(value: Any) -> Any:
    if value is None:
        return ["n"]
    if isinstance(value, bool):
        return ["b", value]
    if isinstance(value, int):
        return ["i", value]
    if isinstance(value, float):
        return ["f", value]
    if isinstance(value, str):
        return ["s", value]
    if isinstance(value, datetime):
        return ["dt", value.isoformat()]
    if isinstance(value, date):
        return ["d", value.isoformat()]
    if isinstance(value, (list, tuple)):
        return ["l", [_tag(item) for item in value]]
    if isinstance(value, dict):
        if not all(isinstance(key, str) for key in value):
            raise ValueError("Mapping keys must be strings")
        return ["m", {key: _tag(item) for key, item in value.items()}]
    raise ValueError(f"Unsupported value type: {type(value).__name__}")


def _untag(tagged: Any) -> Any:
    kind = tagged[0]
    if kind == "n":
        return None
    if kind in ("b", "i", "f", "s"):
        return tagged[1]
    if kind == "dt":
        return datetime.fromisoformat(tagged[1])
    if kind == "d":
        return date.fromisoformat(tagged[1])
    if kind == "l":
        return [_untag(item) for item in tagged[1]]
    if kind == "m":
        return {key: _untag(item) for key, item in tagged[1].items()}
    raise ValueError(f"Unknown type tag: {kind}")


def serialize_plaintext(value: Any) -> bytes:
    """Canonical bytes of a value (stable across calls for equal values)."""
    return json.dumps(_tag(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def deserialize_plaintext(data: bytes) -> Any:
    return _untag(json.loads(data.decode("utf-8")))


def range_image(value: Any, field: Optional[str] = None) -> int:
    """Integer image of a range-class value.

    int -> itself, date -> proleptic ordinal, datetime -> epoch seconds
    (naive datetimes are taken as UTC).

    Raises:
        SchemaMismatch: If the type is not int, date or datetime
        ValueError: If the magnitude exceeds 2**40
    """
    if isinstance(value, bool) or not isinstance(value, (int, date)):
        raise SchemaMismatch(
            f"Range fields support int, date and datetime, not {type(value).__name__}",
            details={"field": field, "type": type(value).__name__},
        )
    if isinstance(value, datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        image = math.floor(aware.timestamp())
    elif isinstance(value, date):
        image = value.toordinal()
    else:
        image = value

    if abs(image) >= MAX_RANGE_MAGNITUDE:
        raise ValueError("Range value magnitude out of bounds")
    return image


class FieldEncryptionEngine:
    """Encrypts/decrypts field values by their schema classification.

    Parameters:
        key_vault: Key Vault Client supplying data keys
        schema: Field classification registry
    """

    def __init__(self, key_vault: KeyVaultClient, schema: EncryptionSchema = DEFAULT_SCHEMA):
        self._key_vault = key_vault
        self._schema = schema

    @property
    def schema(self) -> EncryptionSchema:
        return self._schema

    def classification_for(self, field: str) -> EncryptionClass:
        """Classification of a qualified field name.

        Raises:
            SchemaMismatch: If the field is not classified
        """
        classification = self._schema.classification_of(field)
        if classification is None:
            raise SchemaMismatch(f"Field {field} is not classified for encryption", details={"field": field})
        return classification

    def encrypt(self, field: str, value: Any) -> Optional[EncryptedValue]:
        """Encrypt a value for ``field``. Returns None for None.

        Raises:
            SchemaMismatch: If the field is not classified, or a range value is not int, date or datetime
            ValueError: If the value type cannot be serialized
            KeyVaultUnavailable, KeyCorrupt: From the key vault
        """
        classification = self.classification_for(field)
        if value is None:
            return None

        key = self._key_vault.get_or_create_data_key(self._schema.key_alt_name_for(field))
        plaintext = serialize_plaintext(value)
        order = None

        if classification == EncryptionClass.DETERMINISTIC:
            nonce = self._mac(key, classification, field, plaintext)[:NONCE_BYTES]
        elif classification == EncryptionClass.RANGE:
            order = self._order_token(key, field, range_image(value, field))
            nonce = os.urandom(NONCE_BYTES)
        else:
            nonce = os.urandom(NONCE_BYTES)

        sealed = AESGCM(key.enc_key).encrypt(nonce, plaintext, self._aad(field, classification))
        return EncryptedValue(
            alg=classification,
            key_alt_name=key.key_alt_name,
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            order=order,
        )

    def decrypt(self, field: str, blob: Union[EncryptedValue, dict]) -> Any:
        """Decrypt a stored value for ``field``.

        Raises:
            SchemaMismatch: If the field is unclassified, the stored value is not
                a blob, or the blob's algorithm differs from the field's class
            DecryptionFailure: If the blob is malformed, truncated or tampered
        """
        classification = self.classification_for(field)

        if isinstance(blob, EncryptedValue):
            encrypted = blob
        elif EncryptedValue.is_blob(blob):
            encrypted = EncryptedValue.from_document(blob, field)
        else:
            raise SchemaMismatch(f"Field {field} is not stored encrypted", details={"field": field})

        if encrypted.alg != classification:
            raise SchemaMismatch(
                f"Field {field} stored as {encrypted.alg.value}, configured as {classification.value}",
                details={"field": field, "stored": encrypted.alg.value, "configured": classification.value},
            )
        if classification == EncryptionClass.RANGE and encrypted.order is None:
            raise DecryptionFailure(f"Range field {field} is missing its order token", details={"field": field})

        try:
            raw = base64.b64decode(encrypted.ciphertext, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionFailure(f"Ciphertext for field {field} is not valid base64", details={"field": field}) from None

        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise DecryptionFailure(f"Ciphertext for field {field} is truncated", details={"field": field})

        key = self._key_vault.get_or_create_data_key(encrypted.key_alt_name)
        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = AESGCM(key.enc_key).decrypt(nonce, sealed, self._aad(field, classification))
            return deserialize_plaintext(plaintext)
        except InvalidTag:
            logger.error(f"Authentication failed decrypting field {field}")
            raise DecryptionFailure(f"Ciphertext for field {field} failed authentication", details={"field": field}) from None
        except (ValueError, KeyError, IndexError, TypeError, UnicodeDecodeError):
            raise DecryptionFailure(f"Plaintext for field {field} is malformed", details={"field": field}) from None

    def equality_token(self, field: str, value: Any) -> str:
        """Ciphertext a deterministic field stores for ``value``.

        Raises:
            SchemaMismatch: If the field is not deterministic
            ValueError: If value is None
        """
        if self.classification_for(field) != EncryptionClass.DETERMINISTIC:
            raise SchemaMismatch(f"Field {field} does not support equality search", details={"field": field})
        if value is None:
            raise ValueError("Cannot search for a null value")
        return self.encrypt(field, value).ciphertext

    def range_tokens(self, field: str, low: Any = None, high: Any = None) -> Tuple[Optional[int], Optional[int]]:
        """Inclusive order-token bounds for an interval over a range field.

        Raises:
            SchemaMismatch: If the field is not range-classified or a bound is not int, date or datetime
            ValueError: If both bounds are None
        """
        if self.classification_for(field) != EncryptionClass.RANGE:
            raise SchemaMismatch(f"Field {field} does not support range search", details={"field": field})
        if low is None and high is None:
            raise ValueError("Range search needs at least one bound")

        low_token = range_image(low, field) * ORDER_SHIFT if low is not None else None
        high_token = range_image(high, field) * ORDER_SHIFT + (ORDER_SHIFT - 1) if high is not None else None
        return low_token, high_token

    @staticmethod
    def _aad(field: str, classification: EncryptionClass) -> bytes:
        return f"{field}|{classification.value}".encode("utf-8")

    @staticmethod
    def _mac(key: KeyHandle, classification: EncryptionClass, field: str, payload: bytes) -> bytes:
        message = classification.value.encode("utf-8") + b"\x00" + field.encode("utf-8") + b"\x00" + payload
        return hmac.new(key.mac_key, message, hashlib.sha256).digest()

    def _order_token(self, key: KeyHandle, field: str, image: int) -> int:
        noise = self._mac(key, EncryptionClass.RANGE, field, str(image).encode("ascii"))[:2]
        return image * ORDER_SHIFT + int.from_bytes(noise, "big")
