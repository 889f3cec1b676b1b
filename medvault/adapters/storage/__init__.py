"""Storage adapters for MedVault.

This module contains storage adapters that implement the key vault, audit and
document store ports.
"""

from medvault.adapters.storage.duckdb_adapter import DuckDBAdapter
from medvault.adapters.storage.memory_adapter import InMemoryAdapter

__all__ = ["DuckDBAdapter", "InMemoryAdapter"]
