"""
Unit tests for the snapshot updater.

Tests cover:
- Delta accumulation from zero
- Last movement bookkeeping
- Concurrent deltas
- Contention exhaustion
"""

import asyncio

import pytest

from retailhub.eca_server.apply import SnapshotUpdater, stock_key
from retailhub.eca_server.errors import ExternalStoreError
from retailhub.eca_server.schema.types import SnapshotType
from retailhub.eca_server.store import InMemoryStore


class ConflictingStore(InMemoryStore):
    """Store whose conditional updates always lose the race."""

    async def update_rows_matching(self, table, filters, patch):
        if table == "snapshots":
            return []
        return await super().update_rows_matching(table, filters, patch)


class TestSnapshotUpdater:
    """Tests for SnapshotUpdater."""

    @pytest.fixture
    async def store(self):
        store = InMemoryStore()
        await store.connect()
        return store

    @pytest.fixture
    def snapshots(self, store):
        return SnapshotUpdater(store)

    def test_stock_key(self):
        """Stock keys combine product and location ids."""
        assert stock_key("p1", "l1") == "stock_p1_l1"

    @pytest.mark.asyncio
    async def test_deltas_accumulate(self, snapshots):
        """+5, -2, +1 leaves 4 in stock."""
        key = stock_key("p1", "l1")
        await snapshots.apply_delta("t1", key, 5, "DC_RECEIPT", "tx-1")
        await snapshots.apply_delta("t1", key, -2, "SALE", "tx-2")
        snapshot = await snapshots.apply_delta("t1", key, 1, "RETURN", "tx-3")

        assert snapshot.value["current_stock"] == 4
        assert snapshot.value["last_movement"] == "RETURN"
        assert snapshot.value["last_movement_ref"] == "tx-3"
        assert snapshot.snapshot_type == SnapshotType.INVENTORY
        assert snapshot.version == 2

    @pytest.mark.asyncio
    async def test_unknown_key_starts_at_zero(self, snapshots):
        """A first negative delta goes below zero."""
        snapshot = await snapshots.apply_delta("t1", stock_key("p1", "l1"), -3, "SALE", "tx-1")
        assert snapshot.value["current_stock"] == -3
        assert await snapshots.current_stock("t1", "p2", "l1") == 0

    @pytest.mark.asyncio
    async def test_context_is_kept(self, snapshots):
        """Descriptive context values are stored with the stock level."""
        snapshot = await snapshots.apply_delta(
            "t1", stock_key("p1", "l1"), 2, "ADJUSTMENT", "tx-1",
            context={"product_external_id": "SKU-1"},
        )
        assert snapshot.value["product_external_id"] == "SKU-1"

    @pytest.mark.asyncio
    async def test_concurrent_deltas_are_all_applied(self, store):
        """No delta is lost when writers race on one key."""
        snapshots = SnapshotUpdater(store, max_attempts=50)
        key = stock_key("p1", "l1")

        await asyncio.gather(
            *(snapshots.apply_delta("t1", key, 1, "ADJUSTMENT", f"tx-{i}") for i in range(20))
        )

        assert await snapshots.current_stock("t1", "p1", "l1") == 20

    @pytest.mark.asyncio
    async def test_contention_exhaustion_raises(self):
        """Losing every compare-and-set ends with ExternalStoreError."""
        store = ConflictingStore()
        await store.connect()
        snapshots = SnapshotUpdater(store, max_attempts=3)
        key = stock_key("p1", "l1")
        await snapshots.apply_delta("t1", key, 1, "ADJUSTMENT", "tx-1")

        with pytest.raises(ExternalStoreError):
            await snapshots.apply_delta("t1", key, 1, "ADJUSTMENT", "tx-2")

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, snapshots):
        """The same key in two tenants holds two stock levels."""
        key = stock_key("p1", "l1")
        await snapshots.apply_delta("t1", key, 5, "ADJUSTMENT", None)
        await snapshots.apply_delta("t2", key, 1, "ADJUSTMENT", None)

        assert await snapshots.current_stock("t1", "p1", "l1") == 5
        assert await snapshots.current_stock("t2", "p1", "l1") == 1
        assert await snapshots.count_snapshots("t1") == 1
        listed = await snapshots.list_snapshots("t1", SnapshotType.INVENTORY)
        assert [s.snapshot_key for s in listed] == [key]
