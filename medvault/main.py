"""Application wiring for MedVault.

This module builds the storage adapter and the injected component graph
(key vault client, field encryption engine, codec, policy evaluator,
projection, audit writer and services) from configuration.

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is selected via the configuration manager
    - Every collaborator is constructed once here and injected, never per request
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from medvault.adapters.storage import DuckDBAdapter, InMemoryAdapter
from medvault.domain.encryption_schema import EncryptionSchema
from medvault.domain.services.policy_evaluator import PolicyEvaluator
from medvault.domain.services.role_projection import RoleProjection
from medvault.infrastructure.audit.audit_log_writer import AuditLogWriter
from medvault.infrastructure.config_manager import ConfigManager, DatabaseConfig
from medvault.infrastructure.encryption.field_encryption import FieldEncryptionEngine
from medvault.infrastructure.encryption.key_vault import KeyVaultClient
from medvault.infrastructure.encryption.master_key import MasterKey, resolve_master_key
from medvault.reporting.audit_service import AuditService
from medvault.services.record_access_service import RecordAccessService
from medvault.services.record_codec import RecordCodec

logger = logging.getLogger(__name__)

StorageAdapter = Union[DuckDBAdapter, InMemoryAdapter]


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> StorageAdapter:
    """Create storage adapter based on configuration.

    Raises:
        ValueError: If database type is unsupported
        StorageError: If the DuckDB schema cannot be initialized
    """
    db_config = db_config or ConfigManager.from_environment().get_database_config()

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        adapter = DuckDBAdapter(db_config=db_config)
        schema_result = adapter.initialize_schema()
        if not schema_result.is_success():
            raise RuntimeError(f"Schema initialization failed: {schema_result.error}")
        return adapter
    elif db_config.db_type == "memory":
        logger.info("Initializing in-memory storage adapter")
        return InMemoryAdapter()
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


@dataclass
class MedVaultApplication:
    """The wired component graph."""
    storage: StorageAdapter
    audit_writer: AuditLogWriter
    key_vault: KeyVaultClient
    engine: FieldEncryptionEngine
    codec: RecordCodec
    evaluator: PolicyEvaluator
    projection: RoleProjection
    records: RecordAccessService
    audit_reports: AuditService

    def close(self) -> None:
        self.records.close()
        self.storage.close()


def build_application(
    config: Optional[ConfigManager] = None,
    storage: Optional[StorageAdapter] = None,
    master_key: Optional[MasterKey] = None,
    timeout: Optional[float] = None,
) -> MedVaultApplication:
    """Wire every component from configuration.

    Parameters:
        config: Configuration manager (defaults to environment)
        storage: Storage adapter override (defaults to the configured backend)
        master_key: Master key override (defaults to the configured source)
        timeout: Per-operation timeout override in seconds
    """
    config = config or ConfigManager.from_environment()
    encryption_config = config.get_encryption_config()
    audit_config = config.get_audit_config()

    storage = storage or create_storage_adapter(config.get_database_config())
    audit_writer = AuditLogWriter(
        storage,
        retry_attempts=audit_config.retry_attempts,
        retry_base_delay=audit_config.retry_base_delay,
        max_page_size=audit_config.max_page_size,
    )
    key_vault = KeyVaultClient(
        storage,
        master_key or resolve_master_key(encryption_config),
        audit_writer=audit_writer,
        retry_attempts=encryption_config.vault_retry_attempts,
        retry_base_delay=encryption_config.vault_retry_base_delay,
    )
    engine = FieldEncryptionEngine(key_vault, EncryptionSchema(key_alt_name=encryption_config.key_alt_name))
    codec = RecordCodec(engine)
    evaluator = PolicyEvaluator(audit_writer)
    projection = RoleProjection()

    return MedVaultApplication(
        storage=storage,
        audit_writer=audit_writer,
        key_vault=key_vault,
        engine=engine,
        codec=codec,
        evaluator=evaluator,
        projection=projection,
        records=RecordAccessService(storage, codec, evaluator, projection, audit_writer, timeout=timeout),
        audit_reports=AuditService(audit_writer, evaluator),
    )
