"""Host record store adapters.

This module contains the record stores implementing RecordStorePort and
CatalogStorePort for the host data-capture project.
"""

from registry_transfer.adapters.records.duckdb_store import DuckDBRecordStore
from registry_transfer.adapters.records.memory_store import InMemoryRecordStore

__all__ = ["DuckDBRecordStore", "InMemoryRecordStore"]
