"""
Unit tests for the transaction store.

Tests cover:
- Creation at initial statuses only
- Idempotent creation by external id
- Transitions and the append-only state history
- Stale transitions
- Filtered listing
"""

import pytest

from retailhub.eca_server.apply import TransactionStore
from retailhub.eca_server.errors import TransitionError
from retailhub.eca_server.schema.types import ReturnStatus, SaleStatus, TransactionType
from retailhub.eca_server.store import InMemoryStore

RETURN = TransactionType.DOCUMENT_RETURN


class TestTransactionStore:
    """Tests for TransactionStore."""

    @pytest.fixture
    async def transactions(self):
        """Transaction store on an in-memory backend."""
        store = InMemoryStore()
        await store.connect()
        return TransactionStore(store)

    @pytest.mark.asyncio
    async def test_create_writes_initial_history(self, transactions):
        """A new transaction starts with one history entry from None."""
        tx, created = await transactions.create(
            "t1", RETURN, ReturnStatus.AWAITING, "R-1", {"reason": "size"}
        )

        assert created is True
        assert tx.status == "awaiting"
        assert tx.version == 0
        assert tx.attributes["reason"] == "size"
        assert len(tx.state_history) == 1
        assert tx.state_history[0]["from"] is None
        assert tx.state_history[0]["to"] == "awaiting"

    @pytest.mark.asyncio
    async def test_create_rejects_non_initial_status(self, transactions):
        """Transactions cannot be created mid-lifecycle."""
        with pytest.raises(TransitionError):
            await transactions.create("t1", RETURN, ReturnStatus.COMPLETED, "R-1")

    @pytest.mark.asyncio
    async def test_create_is_idempotent_by_external_id(self, transactions):
        """A second create with the same external id returns the first."""
        first, _ = await transactions.create("t1", RETURN, "awaiting", "R-1", {"n": 1})
        second, created = await transactions.create("t1", RETURN, "awaiting", "R-1", {"n": 2})

        assert created is False
        assert second.id == first.id
        assert second.attributes["n"] == 1

    @pytest.mark.asyncio
    async def test_transition_appends_history(self, transactions):
        """Each transition appends exactly one entry and merges attributes."""
        tx, _ = await transactions.create("t1", RETURN, "awaiting", "R-1", {"reason": "size"})

        tx, record = await transactions.transition("t1", tx, "completed", {"refund_amount": 50.0})

        assert tx.status == "completed"
        assert tx.version == 1
        assert record.from_status == "awaiting"
        assert record.to_status == "completed"
        assert tx.attributes["reason"] == "size"
        assert tx.attributes["refund_amount"] == 50.0
        assert [h["to"] for h in tx.state_history] == ["awaiting", "completed"]
        assert tx.state_history[1]["attributes"] == {"refund_amount": 50.0}

        tx, _ = await transactions.transition("t1", tx, ReturnStatus.STORE_TRANSFER)
        assert [h["to"] for h in tx.state_history] == ["awaiting", "completed", "store_transfer"]

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_transaction_unchanged(self, transactions):
        """A rejected transition writes nothing."""
        tx, _ = await transactions.create("t1", RETURN, "awaiting", "R-1")

        with pytest.raises(TransitionError):
            await transactions.transition("t1", tx, "store_transfer")

        stored = await transactions.get("t1", tx.id)
        assert stored.status == "awaiting"
        assert len(stored.state_history) == 1

    @pytest.mark.asyncio
    async def test_stale_transition_raises(self, transactions):
        """A transition from an outdated read loses to the first writer."""
        tx, _ = await transactions.create(
            "t1", TransactionType.DOCUMENT_SALE, SaleStatus.COMPLETED, "S-1"
        )
        await transactions.transition("t1", tx, SaleStatus.CANCELLED)

        with pytest.raises(TransitionError, match="no longer in status"):
            await transactions.transition("t1", tx, SaleStatus.CANCELLED)

        stored = await transactions.get("t1", tx.id)
        assert len(stored.state_history) == 2

    @pytest.mark.asyncio
    async def test_history_cannot_be_overwritten(self, transactions):
        """Caller attributes never replace state_history."""
        tx, _ = await transactions.create("t1", RETURN, "awaiting", "R-1")

        tx, _ = await transactions.transition("t1", tx, "completed", {"state_history": []})

        assert len(tx.state_history) == 2

    @pytest.mark.asyncio
    async def test_get_by_external_id(self, transactions):
        """Lookup is scoped by tenant and type."""
        tx, _ = await transactions.create("t1", RETURN, "awaiting", "R-1")

        assert (await transactions.get_by_external_id("t1", RETURN, "R-1")).id == tx.id
        assert await transactions.get_by_external_id("t2", RETURN, "R-1") is None
        assert await transactions.get_by_external_id(
            "t1", TransactionType.DOCUMENT_SALE, "R-1"
        ) is None

    @pytest.mark.asyncio
    async def test_list_and_count(self, transactions):
        """Listing filters by type and status."""
        a, _ = await transactions.create("t1", RETURN, "awaiting", "R-1")
        await transactions.create("t1", RETURN, "awaiting", "R-2")
        await transactions.create("t1", TransactionType.DOCUMENT_SALE, "completed", "S-1")
        await transactions.transition("t1", a, "completed")

        awaiting = await transactions.list_transactions("t1", RETURN, status="awaiting")
        assert [t.external_id for t in awaiting] == ["R-2"]

        assert await transactions.count_transactions("t1", RETURN) == 2
        assert await transactions.count_transactions("t1") == 3
        assert await transactions.count_transactions("t1", external_id="S-1") == 1
