"""Configuration Manager for Secure Credential Handling.

This module provides the configuration manager for storage, master key and
audit settings. Master key material and passwords are held as ``SecretStr``
so they never appear in logs, reprs or error messages.

Security Impact:
    - Key material is never logged or exposed in error messages
    - Supports environment variables (with optional .env file) and JSON files
    - Validates configuration before use

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

from medvault.domain.encryption_schema import DEFAULT_KEY_ALT_NAME

logger = logging.getLogger(__name__)

ENV_PREFIX = "MV_"


class DatabaseConfig(BaseModel):
    """Storage backend configuration.

    Parameters:
        db_type: Backend type ('duckdb' or 'memory')
        db_path: Path to the DuckDB file, or ':memory:'
    """

    db_type: str = Field(default="duckdb", description="Storage backend (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate database directory exists (if a path is provided)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        # File may not exist yet, its directory must
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    def get_connection_string(self) -> str:
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_type}' has no connection string")


class EncryptionConfig(BaseModel):
    """Master key and data key configuration.

    The master key is resolved from the first configured source: ``master_key``
    (base64 Fernet key), ``master_key_password`` (PBKDF2-derived) or
    ``master_key_path`` (key file). With none set, an ephemeral key is used.

    Security Impact:
        - Key material and passwords are SecretStr (never logged)
    """

    master_key: Optional[SecretStr] = Field(None, description="Base64 Fernet master key (secret)")
    master_key_password: Optional[SecretStr] = Field(None, description="Master key password (secret)")
    master_key_salt: str = Field(default="medvault-master-salt")
    master_key_path: Optional[str] = Field(None, description="Path to master key file")
    master_key_id: str = Field(default="local")
    key_alt_name: str = Field(default=DEFAULT_KEY_ALT_NAME, min_length=1)
    vault_retry_attempts: int = Field(default=3, ge=1, le=10)
    vault_retry_base_delay: float = Field(default=0.05, ge=0.0)


class AuditConfig(BaseModel):
    """Audit writer configuration.

    Parameters:
        retry_attempts: Total attempts per append before failing closed
        retry_base_delay: Base delay in seconds for exponential backoff
        max_page_size: Upper bound on entries returned by one query
    """

    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.05, ge=0.0)
    max_page_size: int = Field(default=500, ge=1, le=500)


class ConfigManager:
    """Configuration manager for storage, encryption and audit settings.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()
        enc_config = config.get_encryption_config()

        config = ConfigManager.from_file("medvault.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._encryption_config: Optional[EncryptionConfig] = None
        self._audit_config: Optional[AuditConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - MV_DB_TYPE: Storage backend (duckdb, memory)
            - MV_DB_PATH: Path to DuckDB file
            - MV_MASTER_KEY: Base64 Fernet master key (secret)
            - MV_MASTER_KEY_PASSWORD: Password for PBKDF2 derivation (secret)
            - MV_MASTER_KEY_SALT: Salt for PBKDF2 derivation
            - MV_MASTER_KEY_PATH: Path to master key file
            - MV_MASTER_KEY_ID: Identifier recorded with wrapped keys
            - MV_KEY_ALT_NAME: Alt-name of the data encryption key
            - MV_AUDIT_RETRY_ATTEMPTS / MV_AUDIT_RETRY_BASE_DELAY
            - MV_AUDIT_MAX_PAGE_SIZE

        Parameters:
            env_file: Optional .env file; defaults to ``.env`` in the working directory

        Returns:
            ConfigManager instance
        """
        env_path = env_file or Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            return os.getenv(f"{ENV_PREFIX}{name}", default)

        config_data: Dict[str, Any] = {
            "database": {
                "db_type": env("DB_TYPE", "duckdb"),
                "db_path": env("DB_PATH"),
            },
            "encryption": {
                "master_key": env("MASTER_KEY"),
                "master_key_password": env("MASTER_KEY_PASSWORD"),
                "master_key_salt": env("MASTER_KEY_SALT", "medvault-master-salt"),
                "master_key_path": env("MASTER_KEY_PATH"),
                "master_key_id": env("MASTER_KEY_ID", "local"),
                "key_alt_name": env("KEY_ALT_NAME", DEFAULT_KEY_ALT_NAME),
            },
            "audit": {
                "retry_attempts": int(env("AUDIT_RETRY_ATTEMPTS", "3")),
                "retry_base_delay": float(env("AUDIT_RETRY_BASE_DELAY", "0.05")),
                "max_page_size": int(env("AUDIT_MAX_PAGE_SIZE", "500")),
            },
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Security Impact:
            - File permissions should be restricted (600) when it holds key material

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for files holding key material."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}") from e

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._section("database"))
        return self._database_config

    def get_encryption_config(self) -> EncryptionConfig:
        """Get encryption configuration.

        Security Impact:
            - Secrets are wrapped in SecretStr before validation
        """
        if self._encryption_config is None:
            data = self._section("encryption")
            for secret_key in ("master_key", "master_key_password"):
                if data.get(secret_key):
                    data[secret_key] = SecretStr(data[secret_key])
            self._encryption_config = EncryptionConfig(**data)
        return self._encryption_config

    def get_audit_config(self) -> AuditConfig:
        if self._audit_config is None:
            self._audit_config = AuditConfig(**self._section("audit"))
        return self._audit_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key (e.g. "database.db_path")."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def _section(self, name: str) -> Dict[str, Any]:
        # Drop unset values so model defaults apply
        return {k: v for k, v in dict(self._config_data.get(name, {})).items() if v is not None}


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment (DuckDB in-memory by default)."""
    return ConfigManager.from_environment().get_database_config()
