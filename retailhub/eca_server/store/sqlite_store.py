"""
SQLite backing store for the ECA server.

This module stores every tenant's graph in a single SQLite database:
- entities, relationships and transactions (the graph)
- business_events (audit trail of processed actions)
- snapshots (incrementally maintained aggregates)
- webhook_logs (best-effort outcome log of the ingestion pipeline)

Invariants:
    - Every write runs inside BEGIN IMMEDIATE ... COMMIT (one writer at a time)
    - Insert-if-absent relies on UNIQUE indexes plus ON CONFLICT DO NOTHING,
      never on a separate read before the insert
    - Conditional updates select and update the matching rows inside the
      same write transaction
    - busy_timeout bounds how long any call waits for the database lock
    - Every call runs in a worker thread, never on the event loop
    - sqlite3 errors never escape; they are logged and wrapped in
      ExternalStoreError

How to change safely:
    - Schema migrations must be backward compatible (add columns, not rename)
    - Keep _create_schema() in sync with base.TABLES
    - Test with concurrent writers before changing locking behavior

Table schema:
    entities:      id, tenant_id, entity_type, external_id, attributes (JSON),
                   created_at, updated_at, deleted_at
                   UNIQUE (tenant_id, entity_type, external_id) WHERE deleted_at IS NULL
    relationships: id, tenant_id, relationship_type, source_id, target_id,
                   attributes (JSON), created_at
    transactions:  id, tenant_id, transaction_type, external_id, status,
                   attributes (JSON), version, created_at, updated_at
                   UNIQUE (tenant_id, transaction_type, external_id)
    business_events: id, tenant_id, entity_type, entity_id, event_code,
                   event_data (JSON), created_at
    snapshots:     id, tenant_id, snapshot_type, snapshot_key, value (JSON),
                   snapshot_date, version, created_at, updated_at
                   UNIQUE (tenant_id, snapshot_key)
    webhook_logs:  id, tenant_id, flow, action, payload (JSON), status,
                   response (JSON), error_message, processing_time_ms, created_at
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ExternalStoreError
from .base import Condition, Row, StoreBackend, TableDef, get_table, order_columns

logger = logging.getLogger(__name__)

_SQL_OPERATORS = {"ne": "!=", "gte": ">=", "lte": "<="}


class SqliteStore(StoreBackend):
    """SQLite implementation of StoreBackend.

    Thread safety:
        Each operation runs in a worker thread (asyncio.to_thread) and
        opens its own connection there. SQLite serializes writers via
        BEGIN IMMEDIATE; readers proceed concurrently in WAL mode.

    Example:
        >>> store = SqliteStore("/var/lib/retailhub/eca.db")
        >>> await store.connect()
        >>> row, inserted = await store.insert_row("entities", {...})
    """

    name = "sqlite"

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout (deadline for lock waits)
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._connected = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self, operation: str, table: str) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE, wrapping sqlite errors."""
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            logger.error(
                f"SQLite {operation} failed on {table}: {e}",
                extra={"operation": operation, "table": table},
            )
            raise ExternalStoreError(operation, table) from e

    @contextmanager
    def _read(self, operation: str, table: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._get_connection() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(
                f"SQLite {operation} failed on {table}: {e}",
                extra={"operation": operation, "table": table},
            )
            raise ExternalStoreError(operation, table) from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entities (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                external_id TEXT,
                attributes TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted_at INTEGER
            );

            CREATE UNIQUE INDEX IF NOT EXISTS uq_entities_external
                ON entities(tenant_id, entity_type, external_id)
                WHERE deleted_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(tenant_id, entity_type);

            CREATE TABLE IF NOT EXISTS relationships (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                attributes TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_relationships_source
                ON relationships(tenant_id, source_id);
            CREATE INDEX IF NOT EXISTS idx_relationships_target
                ON relationships(tenant_id, target_id);

            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                transaction_type TEXT NOT NULL,
                external_id TEXT,
                status TEXT NOT NULL,
                attributes TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_external
                ON transactions(tenant_id, transaction_type, external_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_type_created
                ON transactions(tenant_id, transaction_type, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_transactions_status
                ON transactions(tenant_id, status);

            CREATE TABLE IF NOT EXISTS business_events (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                event_code TEXT NOT NULL,
                event_data TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_entity
                ON business_events(tenant_id, entity_id);

            CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                snapshot_type TEXT NOT NULL,
                snapshot_key TEXT NOT NULL,
                value TEXT NOT NULL DEFAULT '{}',
                snapshot_date TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS uq_snapshots_key
                ON snapshots(tenant_id, snapshot_key);

            CREATE TABLE IF NOT EXISTS webhook_logs (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                flow TEXT NOT NULL,
                action TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL,
                response TEXT NOT NULL DEFAULT '{}',
                error_message TEXT,
                processing_time_ms INTEGER,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_webhook_logs_flow
                ON webhook_logs(flow, created_at DESC);

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        try:
            with self._get_connection() as conn:
                self._create_schema(conn)
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite store at {self.db_path}: {e}")
            raise ExternalStoreError("connect") from e
        self._connected = True
        logger.info(f"SQLite store ready: {self.db_path}")

    async def close(self) -> None:
        self._connected = False

    async def ping(self) -> bool:
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            logger.warning("SQLite ping failed", exc_info=True)
            return False

    # --- Row encoding ---

    @staticmethod
    def _encode(table: TableDef, row: Row) -> Dict[str, Any]:
        return {
            column: json.dumps(value) if column in table.json_columns else value
            for column, value in row.items()
        }

    @staticmethod
    def _decode(table: TableDef, row: sqlite3.Row) -> Row:
        data = dict(row)
        for column in table.json_columns:
            if data.get(column) is not None:
                data[column] = json.loads(data[column])
        return data

    @staticmethod
    def _where(table: TableDef, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        """Build a WHERE clause from a filter mapping."""
        if not filters:
            return "", []

        table.check_columns(filters)
        clauses: List[str] = []
        params: List[Any] = []
        for column, expected in filters.items():
            conditions = expected if isinstance(expected, list) else [expected]
            for condition in conditions:
                if isinstance(condition, Condition):
                    if condition.op == "in":
                        if not condition.value:
                            clauses.append("0")
                            continue
                        placeholders = ", ".join("?" for _ in condition.value)
                        clauses.append(f"{column} IN ({placeholders})")
                        params.extend(condition.value)
                    elif condition.op == "not_null":
                        clauses.append(f"{column} IS NOT NULL")
                    elif condition.op == "ne":
                        clauses.append(f"{column} IS NOT ?")
                        params.append(condition.value)
                    else:
                        clauses.append(f"{column} {_SQL_OPERATORS[condition.op]} ?")
                        params.append(condition.value)
                elif condition is None:
                    clauses.append(f"{column} IS NULL")
                else:
                    clauses.append(f"{column} = ?")
                    params.append(condition)

        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), params

    # --- Primitives ---

    def _get_by_key(self, table: str, key: Dict[str, Any]) -> Optional[Row]:
        table_def = get_table(table)
        where, params = self._where(table_def, key)
        with self._read("get_by_key", table) as conn:
            row = conn.execute(f"SELECT * FROM {table}{where} LIMIT 1", params).fetchone()
        return self._decode(table_def, row) if row else None

    def _insert_row(self, table: str, row: Row) -> Tuple[Row, bool]:
        table_def = get_table(table)
        table_def.check_columns(row)
        encoded = self._encode(table_def, row)
        columns = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)

        with self._write_transaction("insert_row", table) as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
                "ON CONFLICT DO NOTHING",
                list(encoded.values()),
            )
            if cursor.rowcount == 1:
                stored = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?", (row["id"],)
                ).fetchone()
                return self._decode(table_def, stored), True

            key = {column: row.get(column) for column in table_def.unique_key}
            if table_def.active_column:
                key[table_def.active_column] = None
            where, params = self._where(table_def, key)
            existing = conn.execute(f"SELECT * FROM {table}{where} LIMIT 1", params).fetchone()

        if existing is None:
            # The conflict was on the primary key, not the unique key
            raise ExternalStoreError("insert_row", table)
        logger.debug(f"Insert into {table} hit existing unique key", extra={"key": key})
        return self._decode(table_def, existing), False

    def _update_rows_matching(
        self,
        table: str,
        filters: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> List[Row]:
        table_def = get_table(table)
        table_def.check_columns(patch)
        where, params = self._where(table_def, filters)
        encoded = self._encode(table_def, patch)
        assignments = ", ".join(f"{column} = ?" for column in encoded)

        with self._write_transaction("update_rows_matching", table) as conn:
            ids = [
                r["id"]
                for r in conn.execute(f"SELECT id FROM {table}{where}", params).fetchall()
            ]
            if not ids:
                return []
            id_placeholders = ", ".join("?" for _ in ids)
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id IN ({id_placeholders})",
                [*encoded.values(), *ids],
            )
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE id IN ({id_placeholders})", ids
            ).fetchall()
        return [self._decode(table_def, r) for r in rows]

    def _query_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order: Sequence[str] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        table_def = get_table(table)
        where, params = self._where(table_def, filters)
        sql = f"SELECT * FROM {table}{where}"

        if order:
            pairs = order_columns(order)
            table_def.check_columns(column for column, _ in pairs)
            sql += " ORDER BY " + ", ".join(
                f"{column} {'DESC' if desc else 'ASC'}" for column, desc in pairs
            )
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = [*params, limit, offset]
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params = [*params, offset]

        with self._read("query_rows", table) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._decode(table_def, r) for r in rows]

    def _count_rows(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        table_def = get_table(table)
        where, params = self._where(table_def, filters)
        with self._read("count_rows", table) as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM {table}{where}", params).fetchone()
        return row["n"]

    # --- StoreBackend interface ---
    #
    # Each call runs in a worker thread on its own connection, so the event
    # loop keeps serving requests and asyncio deadlines fire while a call
    # waits on the database lock.

    async def get_by_key(self, table: str, key: Dict[str, Any]) -> Optional[Row]:
        return await asyncio.to_thread(self._get_by_key, table, key)

    async def insert_row(self, table: str, row: Row) -> Tuple[Row, bool]:
        return await asyncio.to_thread(self._insert_row, table, row)

    async def update_rows_matching(
        self,
        table: str,
        filters: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> List[Row]:
        return await asyncio.to_thread(self._update_rows_matching, table, filters, patch)

    async def query_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order: Sequence[str] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        return await asyncio.to_thread(
            self._query_rows, table, filters, order, limit, offset
        )

    async def count_rows(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return await asyncio.to_thread(self._count_rows, table, filters)
