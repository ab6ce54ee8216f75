"""
In-memory backing store for testing.

This module provides a StoreBackend that keeps every table in process
memory, for:
- Unit and integration tests (injected in place of SQLite)
- Local development without a database file
- The explicit degraded fallback in development/test environments

Invariants:
    - All data is lost on process exit
    - Same insert-if-absent and conditional update semantics as SqliteStore
    - Rows are copied on the way in and out; callers never share state
      with the store

How to change safely:
    - Keep semantics identical to SqliteStore; tests run against both
    - Add features to help with testing scenarios, not production ones
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ExternalStoreError
from .base import Row, StoreBackend, get_table, matches_filter, order_columns

logger = logging.getLogger(__name__)


class InMemoryStore(StoreBackend):
    """In-memory implementation of StoreBackend.

    Thread safety:
        Writes are serialized by an asyncio lock. Safe to use from
        multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryStore()
        >>> await store.connect()
        >>> row, inserted = await store.insert_row("entities", {...})
    """

    name = "memory"

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Row]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._connected = False
        self.fail_operations: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryStore connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryStore closed")

    async def ping(self) -> bool:
        return self._connected

    def _check(self, operation: str, table: str) -> None:
        if not self._connected:
            raise ExternalStoreError(operation, table)
        if operation in self.fail_operations or table in self.fail_operations:
            raise ExternalStoreError(operation, table)

    async def get_by_key(self, table: str, key: Dict[str, Any]) -> Optional[Row]:
        self._check("get_by_key", table)
        get_table(table).check_columns(key)
        for row in self._tables[table].values():
            if matches_filter(row, key):
                return copy.deepcopy(row)
        return None

    async def insert_row(self, table: str, row: Row) -> Tuple[Row, bool]:
        self._check("insert_row", table)
        table_def = get_table(table)
        table_def.check_columns(row)

        async with self._lock:
            rows = self._tables[table]
            key_values = [row.get(column) for column in table_def.unique_key]
            if table_def.unique_key and all(value is not None for value in key_values):
                key = dict(zip(table_def.unique_key, key_values))
                if table_def.active_column:
                    key[table_def.active_column] = None
                for existing in rows.values():
                    if matches_filter(existing, key):
                        return copy.deepcopy(existing), False

            if row["id"] in rows:
                raise ExternalStoreError("insert_row", table)

            stored = {column: None for column in table_def.columns}
            stored.update(copy.deepcopy(row))
            rows[row["id"]] = stored
            return copy.deepcopy(stored), True

    async def update_rows_matching(
        self,
        table: str,
        filters: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> List[Row]:
        self._check("update_rows_matching", table)
        table_def = get_table(table)
        table_def.check_columns(filters)
        table_def.check_columns(patch)

        async with self._lock:
            updated = []
            for row in self._tables[table].values():
                if matches_filter(row, filters):
                    row.update(copy.deepcopy(patch))
                    updated.append(copy.deepcopy(row))
            return updated

    async def query_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order: Sequence[str] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        self._check("query_rows", table)
        table_def = get_table(table)
        if filters:
            table_def.check_columns(filters)

        rows = [
            row for row in self._tables[table].values()
            if not filters or matches_filter(row, filters)
        ]
        # Stable sorts applied last-key-first give multi-column ordering
        for column, desc in reversed(order_columns(order)):
            table_def.check_columns([column])
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)

        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count_rows(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        self._check("count_rows", table)
        return len(await self.query_rows(table, filters))

    def clear(self) -> None:
        """Drop all rows (testing helper)."""
        self._tables.clear()

    def table_size(self, table: str) -> int:
        """Number of rows in a table (testing helper)."""
        return len(self._tables[table])
