"""
Unit tests for the backing store primitives.

Every test runs against both SqliteStore and InMemoryStore.

Tests cover:
- Insert-if-absent on unique keys
- Conditional updates
- Filtered, ordered, paginated queries
- Catalog checks
"""

import asyncio
import sqlite3
import tempfile
from pathlib import Path

import pytest

from retailhub.eca_server.store import (
    InMemoryStore,
    SqliteStore,
    UnknownColumnError,
    UnknownTableError,
    between,
    in_,
    ne,
    not_null,
)


def entity_row(row_id, external_id="SKU-1", tenant_id="tenant_1", created_at=1000, **extra):
    row = {
        "id": row_id,
        "tenant_id": tenant_id,
        "entity_type": "PRODUCT",
        "external_id": external_id,
        "attributes": {"name": f"Product {external_id}"},
        "created_at": created_at,
        "updated_at": created_at,
        "deleted_at": None,
    }
    row.update(extra)
    return row


class TestStoreBackends:
    """Tests shared by every StoreBackend implementation."""

    @pytest.fixture(params=["sqlite", "memory"])
    async def store(self, request):
        """Connected store of each kind."""
        if request.param == "memory":
            store = InMemoryStore()
            await store.connect()
            yield store
            await store.close()
            return

        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteStore(str(Path(tmpdir) / "eca.db"), wal_mode=False)
            await store.connect()
            yield store
            await store.close()

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        """Inserted rows round-trip, JSON columns included."""
        row, inserted = await store.insert_row("entities", entity_row("e1"))

        assert inserted is True
        assert row["attributes"] == {"name": "Product SKU-1"}

        fetched = await store.get_by_key("entities", {"id": "e1"})
        assert fetched["external_id"] == "SKU-1"
        assert fetched["attributes"]["name"] == "Product SKU-1"

    @pytest.mark.asyncio
    async def test_insert_conflict_returns_existing(self, store):
        """A second insert on the unique key returns the first row."""
        await store.insert_row("entities", entity_row("e1"))
        row, inserted = await store.insert_row(
            "entities", entity_row("e2", attributes={"name": "Other"})
        )

        assert inserted is False
        assert row["id"] == "e1"
        assert row["attributes"] == {"name": "Product SKU-1"}
        assert await store.count_rows("entities") == 1

    @pytest.mark.asyncio
    async def test_unique_key_is_per_tenant(self, store):
        """The same external id can exist in two tenants."""
        _, first = await store.insert_row("entities", entity_row("e1", tenant_id="a"))
        _, second = await store.insert_row("entities", entity_row("e2", tenant_id="b"))

        assert first and second

    @pytest.mark.asyncio
    async def test_deleted_rows_leave_the_unique_key(self, store):
        """A soft-deleted entity does not block a new one with its key."""
        await store.insert_row("entities", entity_row("e1", deleted_at=5))
        row, inserted = await store.insert_row("entities", entity_row("e2"))

        assert inserted is True
        assert row["id"] == "e2"

    @pytest.mark.asyncio
    async def test_rows_without_key_never_conflict(self, store):
        """Transactions without external id are always inserted."""
        for row_id in ("t1", "t2"):
            _, inserted = await store.insert_row(
                "transactions",
                {
                    "id": row_id,
                    "tenant_id": "tenant_1",
                    "transaction_type": "INVENTORY_MOVEMENT",
                    "external_id": None,
                    "status": "executed",
                    "attributes": {},
                    "version": 0,
                    "created_at": 1,
                    "updated_at": 1,
                },
            )
            assert inserted is True

    @pytest.mark.asyncio
    async def test_conditional_update(self, store):
        """Only rows matching the filter are updated and returned."""
        await store.insert_row("entities", entity_row("e1"))

        updated = await store.update_rows_matching(
            "entities", {"id": "e1", "deleted_at": None}, {"deleted_at": 42}
        )
        assert [r["deleted_at"] for r in updated] == [42]

        again = await store.update_rows_matching(
            "entities", {"id": "e1", "deleted_at": None}, {"deleted_at": 43}
        )
        assert again == []

        fetched = await store.get_by_key("entities", {"id": "e1"})
        assert fetched["deleted_at"] == 42

    @pytest.mark.asyncio
    async def test_query_filters_order_and_pagination(self, store):
        """query_rows applies conditions, ordering, limit and offset."""
        for i in range(5):
            await store.insert_row(
                "entities", entity_row(f"e{i}", external_id=f"SKU-{i}", created_at=1000 + i)
            )

        newest = await store.query_rows("entities", {"tenant_id": "tenant_1"}, order=["-created_at"], limit=2)
        assert [r["id"] for r in newest] == ["e4", "e3"]

        page = await store.query_rows(
            "entities", {"tenant_id": "tenant_1"}, order=["created_at"], limit=2, offset=2
        )
        assert [r["id"] for r in page] == ["e2", "e3"]

        ranged = await store.query_rows(
            "entities", {"created_at": between(1001, 1003)}, order=["created_at"]
        )
        assert [r["id"] for r in ranged] == ["e1", "e2", "e3"]

        chosen = await store.query_rows("entities", {"id": in_(["e0", "e4"])}, order=["id"])
        assert [r["id"] for r in chosen] == ["e0", "e4"]

        others = await store.count_rows("entities", {"id": ne("e0")})
        assert others == 4

        assert await store.count_rows("entities", {"id": in_([])}) == 0
        assert await store.count_rows("entities", {"external_id": not_null()}) == 5

    @pytest.mark.asyncio
    async def test_unknown_table_and_column(self, store):
        """Names outside the catalog are rejected."""
        with pytest.raises(UnknownTableError):
            await store.get_by_key("nope", {"id": "x"})

        with pytest.raises(UnknownColumnError):
            await store.query_rows("entities", {"drop_table": 1})

    @pytest.mark.asyncio
    async def test_ping(self, store):
        """A connected store answers ping."""
        assert await store.ping() is True


class TestSqliteStoreDeadlines:
    """SqliteStore calls leave the event loop free while they wait."""

    @pytest.mark.asyncio
    async def test_deadline_fires_while_waiting_for_lock(self, tmp_path):
        """A caller's deadline expires while another writer holds the lock."""
        db_path = tmp_path / "eca.db"
        store = SqliteStore(str(db_path), wal_mode=False, busy_timeout_ms=2000)
        await store.connect()

        blocker = sqlite3.connect(str(db_path), isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(store.insert_row("entities", entity_row("e1")), timeout=0.2)
            assert loop.time() - started < 1.5
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

    @pytest.mark.asyncio
    async def test_concurrent_inserts_share_unique_key(self, tmp_path):
        """Concurrent inserts of the same key produce exactly one row."""
        store = SqliteStore(str(tmp_path / "eca.db"))
        await store.connect()

        results = await asyncio.gather(
            *(store.insert_row("entities", entity_row(f"e{i}")) for i in range(5))
        )

        assert sum(1 for _, inserted in results if inserted) == 1
        assert {row["id"] for row, _ in results} == {
            next(row["id"] for row, inserted in results if inserted)
        }
        assert await store.count_rows("entities") == 1
