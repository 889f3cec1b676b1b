"""Key Vault Client.

Retrieves and creates master-wrapped data encryption keys (DEKs) by alternate
name. This is the only component that ever holds raw key material.

Security Impact:
    - DEKs are persisted only in wrapped form (Fernet under the master key)
    - Key creation is a privileged operation: logged at WARNING and audited
    - A wrapped key that fails to unwrap raises KeyCorrupt and is never replaced

Concurrency:
    - Cache reads are lock-free; creation is serialized per process by a lock
    - Cross-process creation races are resolved by the store's uniqueness
      constraint on the alt-name: the loser re-reads and adopts the winner's key
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from medvault.domain.access_models import AuditEntry
from medvault.domain.enums import AuditDecision, AuditEventType
from medvault.domain.ports import (
    AuditSinkPort,
    DuplicateKeyError,
    KeyCorrupt,
    KeyVaultStorePort,
    KeyVaultUnavailable,
    StorageError,
    StoredDataKey,
)
from medvault.infrastructure.encryption.master_key import InvalidToken, MasterKey

logger = logging.getLogger(__name__)

T = TypeVar('T')

AES_KEY_BYTES = 32
MAC_KEY_BYTES = 32
DATA_KEY_BYTES = AES_KEY_BYTES + MAC_KEY_BYTES


@dataclass(frozen=True)
class KeyHandle:
    """Unwrapped data encryption key.

    Attributes:
        key_id: Vault identifier of the key
        key_alt_name: Alternate name the key was requested by
        enc_key: 32-byte AES-256-GCM key
        mac_key: 32-byte HMAC-SHA256 key (deterministic nonces, order tokens)
    """
    key_id: str
    key_alt_name: str
    enc_key: bytes = field(repr=False)
    mac_key: bytes = field(repr=False)


class KeyVaultClient:
    """Client over a KeyVaultStorePort.

    Parameters:
        store: Backing key vault store
        master_key: Master key used to wrap/unwrap DEKs
        audit_writer: Optional audit writer; key creation is recorded when set
        retry_attempts: Attempts per store call before KeyVaultUnavailable
        retry_base_delay: Base delay (seconds) for exponential backoff
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        store: KeyVaultStorePort,
        master_key: MasterKey,
        audit_writer: Optional[AuditSinkPort] = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._master_key = master_key
        self._audit_writer = audit_writer
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._cache: Dict[str, KeyHandle] = {}
        self._lock = threading.Lock()

    def get_or_create_data_key(self, key_alt_name: str, actor_id: str = "system") -> KeyHandle:
        """Return the DEK stored under ``key_alt_name``, creating it on first use.

        Parameters:
            key_alt_name: Alternate name of the key
            actor_id: Identity recorded if the key has to be created

        Returns:
            KeyHandle: The same key material on every call for the same alt-name

        Raises:
            KeyVaultUnavailable: If the store cannot be reached after bounded retries
            KeyCorrupt: If the stored key cannot be unwrapped or has the wrong size
        """
        cached = self._cache.get(key_alt_name)
        if cached is not None:
            return cached

        with self._lock:
            cached = self._cache.get(key_alt_name)
            if cached is not None:
                return cached

            stored = self._call_store(
                "find_key", lambda: self._store.find_by_alt_name(key_alt_name)
            )
            if stored is None:
                stored = self._create_key(key_alt_name, actor_id)

            handle = self._unwrap(stored)
            self._cache[key_alt_name] = handle
            return handle

    def list_keys(self) -> List[Dict[str, Any]]:
        """Key metadata for every stored key. Never includes key material."""
        keys = self._call_store("list_keys", self._store.list_keys)
        return [
            {
                "key_id": key.key_id,
                "key_alt_name": key.key_alt_name,
                "master_key_id": key.master_key_id,
                "created_at": key.created_at,
                "cached": key.key_alt_name in self._cache,
            }
            for key in keys
        ]

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _create_key(self, key_alt_name: str, actor_id: str) -> StoredDataKey:
        material = os.urandom(DATA_KEY_BYTES)
        candidate = StoredDataKey(
            key_id=str(uuid.uuid4()),
            key_alt_name=key_alt_name,
            wrapped_key=self._master_key.wrap(material),
            master_key_id=self._master_key.key_id,
            created_at=datetime.now(timezone.utc),
        )

        try:
            self._call_store("insert_key", lambda: self._store.insert_key(candidate))
        except DuplicateKeyError:
            # Another creator won the race; adopt its key
            logger.info(f"Data key '{key_alt_name}' created concurrently; using existing key")
            winner = self._call_store(
                "find_key", lambda: self._store.find_by_alt_name(key_alt_name)
            )
            if winner is None:
                raise KeyVaultUnavailable(
                    f"Data key '{key_alt_name}' reported as duplicate but not found",
                    details={"key_alt_name": key_alt_name},
                ) from None
            return winner

        logger.warning(
            f"Created data encryption key '{key_alt_name}' (key_id={candidate.key_id}, "
            f"master_key_id={candidate.master_key_id}) by {actor_id}"
        )
        if self._audit_writer is not None:
            self._audit_writer.append(AuditEntry(
                actor_id=actor_id,
                event_type=AuditEventType.KEY_MANAGEMENT,
                action="create_data_key",
                entity_type="data_key",
                entity_id=candidate.key_id,
                decision=AuditDecision.GRANT,
                details={"key_alt_name": key_alt_name, "master_key_id": candidate.master_key_id},
            ))
        return candidate

    def _unwrap(self, stored: StoredDataKey) -> KeyHandle:
        try:
            material = self._master_key.unwrap(stored.wrapped_key)
        except (InvalidToken, TypeError, ValueError):
            logger.error(f"Data key '{stored.key_alt_name}' failed to unwrap (key_id={stored.key_id})")
            raise KeyCorrupt(
                f"Data key '{stored.key_alt_name}' cannot be unwrapped",
                details={"key_alt_name": stored.key_alt_name, "key_id": stored.key_id},
            ) from None

        if len(material) != DATA_KEY_BYTES:
            logger.error(f"Data key '{stored.key_alt_name}' has invalid length (key_id={stored.key_id})")
            raise KeyCorrupt(
                f"Data key '{stored.key_alt_name}' has invalid length",
                details={"key_alt_name": stored.key_alt_name, "key_id": stored.key_id},
            )

        return KeyHandle(
            key_id=stored.key_id,
            key_alt_name=stored.key_alt_name,
            enc_key=material[:AES_KEY_BYTES],
            mac_key=material[AES_KEY_BYTES:],
        )

    def _call_store(self, operation: str, call: Callable[[], T]) -> T:
        """Run a store call, retrying StorageError with exponential backoff."""
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return call()
            except StorageError as e:
                if attempt == self._retry_attempts:
                    logger.error(f"Key vault {operation} failed after {attempt} attempts: {e}")
                    raise KeyVaultUnavailable(
                        f"Key vault unavailable during {operation}",
                        details={"operation": operation, "attempts": attempt},
                    ) from None
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"Key vault {operation} failed (attempt {attempt}), retrying in {delay:.3f}s")
                self._sleep(delay)
        raise AssertionError("unreachable")
