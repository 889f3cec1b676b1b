"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from medvault import __version__
from medvault.infrastructure.config_manager import ConfigManager, DatabaseConfig

# Application metadata
APP_NAME = "MedVault"
APP_VERSION = __version__

# Single timeout around each record access operation (seconds)
DEFAULT_OPERATION_TIMEOUT = 5.0

DEFAULT_SEARCH_LIMIT = 100


class Settings:
    """Application settings loaded from configuration manager and environment."""

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("MV_APP_NAME", APP_NAME)
        self.operation_timeout = float(os.getenv("MV_OPERATION_TIMEOUT", str(DEFAULT_OPERATION_TIMEOUT)))
        self.search_limit = int(os.getenv("MV_SEARCH_LIMIT", str(DEFAULT_SEARCH_LIMIT)))
        self.worker_threads = int(os.getenv("MV_WORKER_THREADS", "4"))

        self.log_level = os.getenv("MV_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("MV_LOG_JSON", "false").lower() == "true"

    @property
    def config_manager(self) -> ConfigManager:
        """Configuration manager, loaded lazily on first access."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        if self.db_config.db_type == "duckdb":
            return self.db_config.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_config.db_type}' does not use db_path")


# Global settings instance
settings = Settings()
