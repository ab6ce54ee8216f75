"""
Backing store abstraction for the ECA server.

This module defines the StoreBackend interface all backends must implement,
the table catalog, and the filter conditions accepted by queries.

The engine needs exactly four primitives from a store:
- get_by_key: point lookup by equality on key columns
- insert_row: atomic insert-if-absent on the table's unique key
- update_rows_matching: atomic conditional update (update-if-matches-filter)
- query_rows: filtered, ordered, paginated scan

Invariants:
    - insert_row never creates a second row with the same unique key; on
      conflict it returns the existing row and inserted=False
    - update_rows_matching applies the patch only to rows that match the
      filter at the moment of the update, and returns exactly those rows
    - JSON columns round-trip as dicts/lists; other columns as scalars
    - Backend failures surface as ExternalStoreError

How to change safely:
    - New tables must be added to TABLES and to every backend's schema
    - Column names are validated against the catalog; never interpolate
      caller-provided names without check_columns()
    - Interface changes require updating all implementations
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class UnknownTableError(Exception):
    """Table is not part of the catalog."""
    pass


class UnknownColumnError(Exception):
    """Column is not part of the table definition."""
    pass


@dataclass(frozen=True)
class TableDef:
    """Definition of one logical table.

    Attributes:
        name: Table name
        columns: All column names
        json_columns: Columns stored as JSON text
        unique_key: Columns forming the insert-if-absent key (empty = none)
        active_column: Column that must be NULL for a row to take part in
            the unique key (soft-delete marker)
    """

    name: str
    columns: Tuple[str, ...]
    json_columns: FrozenSet[str] = field(default_factory=frozenset)
    unique_key: Tuple[str, ...] = ()
    active_column: Optional[str] = None

    def check_columns(self, names: Iterable[str]) -> None:
        for name in names:
            if name not in self.columns:
                raise UnknownColumnError(f"Unknown column '{name}' in table '{self.name}'")


TABLES: Dict[str, TableDef] = {
    table.name: table
    for table in (
        TableDef(
            name="entities",
            columns=(
                "id", "tenant_id", "entity_type", "external_id", "attributes",
                "created_at", "updated_at", "deleted_at",
            ),
            json_columns=frozenset({"attributes"}),
            unique_key=("tenant_id", "entity_type", "external_id"),
            active_column="deleted_at",
        ),
        TableDef(
            name="relationships",
            columns=(
                "id", "tenant_id", "relationship_type", "source_id", "target_id",
                "attributes", "created_at",
            ),
            json_columns=frozenset({"attributes"}),
        ),
        TableDef(
            name="transactions",
            columns=(
                "id", "tenant_id", "transaction_type", "external_id", "status",
                "attributes", "version", "created_at", "updated_at",
            ),
            json_columns=frozenset({"attributes"}),
            unique_key=("tenant_id", "transaction_type", "external_id"),
        ),
        TableDef(
            name="business_events",
            columns=(
                "id", "tenant_id", "entity_type", "entity_id", "event_code",
                "event_data", "created_at",
            ),
            json_columns=frozenset({"event_data"}),
        ),
        TableDef(
            name="snapshots",
            columns=(
                "id", "tenant_id", "snapshot_type", "snapshot_key", "value",
                "snapshot_date", "version", "created_at", "updated_at",
            ),
            json_columns=frozenset({"value"}),
            unique_key=("tenant_id", "snapshot_key"),
        ),
        TableDef(
            name="webhook_logs",
            columns=(
                "id", "tenant_id", "flow", "action", "payload", "status",
                "response", "error_message", "processing_time_ms", "created_at",
            ),
            json_columns=frozenset({"payload", "response"}),
        ),
    )
}


def get_table(name: str) -> TableDef:
    try:
        return TABLES[name]
    except KeyError:
        raise UnknownTableError(f"Unknown table '{name}'")


@dataclass(frozen=True)
class Condition:
    """A non-equality filter condition on one column.

    Plain values in a filter mean equality (None means IS NULL).
    """

    op: str
    value: Any = None

    def matches(self, actual: Any) -> bool:
        if self.op == "in":
            return actual in self.value
        if self.op == "ne":
            return actual != self.value
        if self.op == "not_null":
            return actual is not None
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lte":
            return actual <= self.value
        raise ValueError(f"Unsupported condition operator '{self.op}'")


def in_(values: Iterable[Any]) -> Condition:
    return Condition("in", tuple(values))


def ne(value: Any) -> Condition:
    return Condition("ne", value)


def gte(value: Any) -> Condition:
    return Condition("gte", value)


def lte(value: Any) -> Condition:
    return Condition("lte", value)


def not_null() -> Condition:
    return Condition("not_null")


def between(lower: Any = None, upper: Any = None) -> List[Condition]:
    """Range conditions for one column (either bound optional)."""
    conditions = []
    if lower is not None:
        conditions.append(gte(lower))
    if upper is not None:
        conditions.append(lte(upper))
    return conditions


def matches_filter(row: Row, filters: Dict[str, Any]) -> bool:
    """Evaluate a filter against an in-memory row."""
    for column, expected in filters.items():
        actual = row.get(column)
        for condition in _as_conditions(expected):
            if isinstance(condition, Condition):
                if not condition.matches(actual):
                    return False
            elif condition is None:
                if actual is not None:
                    return False
            elif actual != condition:
                return False
    return True


def _as_conditions(expected: Any) -> List[Any]:
    if isinstance(expected, list):
        return expected
    return [expected]


class StoreBackend(ABC):
    """Interface every backing store implements.

    All methods are coroutines. Filters map column names to a value
    (equality), None (IS NULL), a Condition, or a list of Conditions
    (all must hold). Order entries are column names, prefixed with '-'
    for descending.
    """

    name = "abstract"

    @abstractmethod
    async def connect(self) -> None:
        """Open the store and ensure the schema exists."""

    @abstractmethod
    async def close(self) -> None:
        """Release store resources."""

    @abstractmethod
    async def ping(self) -> bool:
        """Cheap liveness check."""

    @abstractmethod
    async def get_by_key(self, table: str, key: Dict[str, Any]) -> Optional[Row]:
        """Return the first row matching the key columns, or None."""

    @abstractmethod
    async def insert_row(self, table: str, row: Row) -> Tuple[Row, bool]:
        """Insert a row unless its unique key already exists.

        Returns:
            (row, inserted) where row is the stored row: the new one when
            inserted is True, the pre-existing one otherwise.
        """

    @abstractmethod
    async def update_rows_matching(
        self,
        table: str,
        filters: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> List[Row]:
        """Atomically apply patch to rows matching filters; return them updated."""

    @abstractmethod
    async def query_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order: Sequence[str] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        """Return rows matching filters, ordered and paginated."""

    @abstractmethod
    async def count_rows(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count rows matching filters."""


def order_columns(order: Sequence[str]) -> List[Tuple[str, bool]]:
    """Split order entries into (column, descending) pairs."""
    return [(entry.lstrip("-"), entry.startswith("-")) for entry in order]
