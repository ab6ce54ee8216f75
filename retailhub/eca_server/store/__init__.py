"""
Backing store abstraction for the ECA server.

This module provides a pluggable store interface supporting:
- SQLite (single database file shared by all tenants)
- In-memory (for testing and the explicit degraded fallback)

Invariants:
    - Create-if-absent and transition-if-status-matches use the store's
      atomic primitives, never read-then-write
    - Store failures surface as ExternalStoreError
"""

from .base import (
    TABLES,
    Condition,
    StoreBackend,
    TableDef,
    UnknownColumnError,
    UnknownTableError,
    between,
    gte,
    in_,
    lte,
    ne,
    not_null,
)
from .factory import create_store, open_store
from .memory_store import InMemoryStore
from .sqlite_store import SqliteStore

__all__ = [
    # Interface and catalog
    "StoreBackend",
    "TableDef",
    "TABLES",
    "UnknownTableError",
    "UnknownColumnError",
    # Filter conditions
    "Condition",
    "between",
    "gte",
    "in_",
    "lte",
    "ne",
    "not_null",
    # Factory
    "create_store",
    "open_store",
    # Implementations
    "SqliteStore",
    "InMemoryStore",
]
