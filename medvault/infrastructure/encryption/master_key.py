"""Master key resolution and key wrapping.

The master key never encrypts field values. It only wraps and unwraps data
encryption keys (DEKs) held in the key vault, using Fernet (AES-128-CBC with
HMAC-SHA256), so a tampered or foreign wrapped key is detected on unwrap.

Security Impact:
    - Master key material is read from SecretStr config, never logged
    - The ephemeral fallback key is for development only and is logged as a warning
    - Key files are created with 0600 permissions
"""

import base64
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from medvault.infrastructure.config_manager import EncryptionConfig

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000


class MasterKey:
    """Fernet master key used to wrap data encryption keys.

    Parameters:
        key: Base64-encoded 32-byte Fernet key
        key_id: Identifier stored alongside every wrapped DEK
    """

    def __init__(self, key: bytes, key_id: str = "local"):
        try:
            self._cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError("Invalid master key format. Key must be a base64-encoded 32-byte key.") from e
        self.key_id = key_id

    def wrap(self, data_key: bytes) -> bytes:
        return self._cipher.encrypt(data_key)

    def unwrap(self, wrapped_key: bytes) -> bytes:
        """Unwrap a data key.

        Raises:
            InvalidToken: If the wrapped key was tampered with or wrapped by another master key
        """
        return self._cipher.decrypt(wrapped_key)

    @classmethod
    def generate(cls, key_id: str = "ephemeral") -> 'MasterKey':
        return cls(Fernet.generate_key(), key_id=key_id)

    def __repr__(self) -> str:
        return f"MasterKey(key_id={self.key_id!r})"


def derive_key_from_password(password: str, salt: str) -> bytes:
    """Derive a Fernet key from a password with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode('utf-8'),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode('utf-8')))


def load_or_create_key_file(path: str) -> bytes:
    """Read a master key file, creating it with a fresh key if missing.

    Security Impact:
        - New key files are written with 0600 permissions
        - A warning is logged if an existing file is group/world readable
    """
    key_file = Path(path)
    if key_file.exists():
        if key_file.stat().st_mode & 0o077 != 0:
            logger.warning(f"Master key file has overly permissive permissions: {path}")
        return key_file.read_bytes().strip()

    key = Fernet.generate_key()
    fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(key)
    logger.warning(f"Generated new master key file at {path}; back it up, losing it loses all data")
    return key


def resolve_master_key(config: Optional[EncryptionConfig] = None) -> MasterKey:
    """Resolve the master key from configuration.

    Sources, in order: explicit key, password derivation, key file. With none
    configured an ephemeral key is generated; data encrypted under it cannot
    be read after the process exits.

    Raises:
        ValueError: If a configured key is malformed
    """
    config = config or EncryptionConfig()

    if config.master_key is not None:
        return MasterKey(config.master_key.get_secret_value().encode('utf-8'), key_id=config.master_key_id)

    if config.master_key_password is not None:
        key = derive_key_from_password(config.master_key_password.get_secret_value(), config.master_key_salt)
        return MasterKey(key, key_id=config.master_key_id)

    if config.master_key_path:
        return MasterKey(load_or_create_key_file(config.master_key_path), key_id=config.master_key_id)

    logger.warning(
        "No MV_MASTER_KEY, MV_MASTER_KEY_PASSWORD or MV_MASTER_KEY_PATH found. "
        "Using ephemeral master key (NOT SECURE for production!)."
    )
    return MasterKey.generate()


__all__ = ["MasterKey", "InvalidToken", "derive_key_from_password", "load_or_create_key_file", "resolve_master_key"]
