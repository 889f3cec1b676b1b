"""Encryption infrastructure components.

This package provides the master key, the Key Vault Client and the Field
Encryption Engine.
"""

from medvault.infrastructure.encryption.field_encryption import EncryptedValue, FieldEncryptionEngine
from medvault.infrastructure.encryption.key_vault import KeyHandle, KeyVaultClient
from medvault.infrastructure.encryption.master_key import MasterKey, resolve_master_key

__all__ = [
    'EncryptedValue',
    'FieldEncryptionEngine',
    'KeyHandle',
    'KeyVaultClient',
    'MasterKey',
    'resolve_master_key',
]
