"""
Integration tests for the action processor.

Tests cover:
- Sales, purchase, transfer, returns and inventory flows end to end
- Reference preconditions
- Rejected transitions leaving no trace
- Stock snapshots maintained by movements
- Audit events
"""

import pytest

from retailhub.eca_server.apply import ActionProcessor
from retailhub.eca_server.errors import (
    ExternalStoreError,
    NotFoundError,
    PreconditionError,
    TransitionError,
    UnsupportedEventError,
    ValidationError,
)
from retailhub.eca_server.schema.types import EntityType, RelationshipType, TransactionType
from retailhub.eca_server.store import InMemoryStore

TENANT = "tenant_1"


def sale_payload(external_id="S-1", **overrides):
    payload = {
        "external_id": external_id,
        "location_external_id": "STORE-1",
        "customer_external_id": "C-1",
        "customer_name": "Ana",
        "items": [
            {"product_external_id": "SKU-1", "quantity": 2, "unit_price": 50.0},
            {"product_external_id": "SKU-2", "quantity": 1, "unit_price": 120.0},
        ],
    }
    payload.update(overrides)
    return payload


class TestActionProcessor:
    """Integration tests for ActionProcessor."""

    @pytest.fixture
    async def store(self):
        """Connected in-memory store."""
        store = InMemoryStore()
        await store.connect()
        return store

    @pytest.fixture
    def processor(self, store):
        """Processor with the default tables and rules."""
        return ActionProcessor(store)

    async def stock(self, processor, product, location):
        product_entity = await processor.entities.get_by_external_id(TENANT, EntityType.PRODUCT, product)
        location_entity = await processor.entities.get_by_external_id(TENANT, EntityType.LOCATION, location)
        return await processor.snapshots.current_stock(TENANT, product_entity.id, location_entity.id)

    # --- Sales ---

    @pytest.mark.asyncio
    async def test_register_sale(self, processor, store):
        """A sale creates entities, item links, movements and stock deltas."""
        result = await processor.process("sales", "register_sale", TENANT, sale_payload())

        sale = await processor.transactions.get(TENANT, result.transaction_id)
        assert sale.transaction_type == TransactionType.DOCUMENT_SALE
        assert sale.status == "completed"
        assert sale.external_id == "S-1"
        assert result.state_transition is None

        # location, customer and two products
        assert len(result.entity_ids) == 4
        customer = await processor.entities.get_by_external_id(TENANT, EntityType.CUSTOMER, "C-1")
        assert customer.attributes == {"name": "Ana"}

        items = await processor.relationships.list_from(
            TENANT, sale.id, RelationshipType.CONTAINS_ITEM
        )
        assert sorted(r.attributes["quantity"] for r in items) == [1, 2]
        assert {r.attributes["product_external_id"] for r in items} == {"SKU-1", "SKU-2"}

        assert len(result.movement_ids) == 2
        movement = await processor.transactions.get(TENANT, result.movement_ids[0])
        assert movement.transaction_type == TransactionType.INVENTORY_MOVEMENT
        assert movement.status == "executed"
        assert movement.attributes["movement_type"] == "SALE"
        assert movement.attributes["qty_change"] < 0
        caused_by = await processor.relationships.list_from(
            TENANT, movement.id, RelationshipType.CAUSED_BY_DOCUMENT
        )
        assert [r.target_id for r in caused_by] == [sale.id]

        assert await self.stock(processor, "SKU-1", "STORE-1") == -2
        assert await self.stock(processor, "SKU-2", "STORE-1") == -1

        # 2 entity links + 2 items + 3 edges per movement
        assert len(result.relationship_ids) == 10
        assert result.records_processed == 1 + 4 + 10
        assert result.records_failed == 0
        assert "created as completed" in result.message

        events = await processor.list_events(TENANT, entity_id=sale.id)
        assert [e.event_code for e in events] == ["sale_registered"]
        assert events[0].event_data["action"] == "register_sale"

    @pytest.mark.asyncio
    async def test_repeated_sale_is_rejected(self, processor, store):
        """Re-posting a sale cannot re-enter its current status."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())

        with pytest.raises(TransitionError):
            await processor.process("sales", "register_sale", TENANT, sale_payload())

        assert await processor.transactions.count_transactions(
            TENANT, TransactionType.DOCUMENT_SALE
        ) == 1
        assert await self.stock(processor, "SKU-1", "STORE-1") == -2

    @pytest.mark.asyncio
    async def test_cancel_sale_restocks(self, processor):
        """Cancelling with items puts them back into stock."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())

        result = await processor.process(
            "sales",
            "cancel_sale",
            TENANT,
            {
                "external_id": "S-1",
                "reason": "customer gave up",
                "location_external_id": "STORE-1",
                "items": [{"product_external_id": "SKU-1", "quantity": 2}],
            },
        )

        assert result.state_transition == {"from": "completed", "to": "cancelled"}
        assert await self.stock(processor, "SKU-1", "STORE-1") == 0
        sale = await processor.transactions.get(TENANT, result.transaction_id)
        assert [h["to"] for h in sale.state_history] == ["completed", "cancelled"]
        assert sale.attributes["reason"] == "customer gave up"

    @pytest.mark.asyncio
    async def test_cancel_sale_restocks_at_sale_location(self, processor):
        """Without a location, items go back to the store the sale was made at."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())
        assert await self.stock(processor, "SKU-1", "STORE-1") == -2

        result = await processor.process(
            "sales",
            "cancel_sale",
            TENANT,
            {"external_id": "S-1", "items": [{"product_external_id": "SKU-1", "quantity": 2}]},
        )

        assert result.state_transition == {"from": "completed", "to": "cancelled"}
        assert len(result.movement_ids) == 1
        assert await self.stock(processor, "SKU-1", "STORE-1") == 0

    @pytest.mark.asyncio
    async def test_restock_without_any_location_is_rejected(self, processor, store):
        """A restock with no location in the payload or the document writes nothing."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())
        await processor.process(
            "returns",
            "request_return",
            TENANT,
            {
                "external_id": "R-1",
                "sale_external_id": "S-1",
                "items": [{"product_external_id": "SKU-1", "quantity": 1}],
            },
        )
        transactions = store.table_size("transactions")

        with pytest.raises(ValidationError) as exc_info:
            await processor.process(
                "returns",
                "complete_return",
                TENANT,
                {"external_id": "R-1", "items": [{"product_external_id": "SKU-1", "quantity": 1}]},
            )

        assert exc_info.value.field_name == "location_external_id"
        assert store.table_size("transactions") == transactions
        returned = await processor.transactions.get_by_external_id(
            TENANT, TransactionType.DOCUMENT_RETURN, "R-1"
        )
        assert returned.status == "awaiting"

    @pytest.mark.asyncio
    async def test_payment_requires_completed_sale(self, processor):
        """Payments reference an existing, completed sale."""
        payment = {"external_id": "P-1", "sale_external_id": "S-1", "amount": 220.0}

        with pytest.raises(NotFoundError):
            await processor.process("sales", "register_payment", TENANT, payment)

        await processor.process("sales", "register_sale", TENANT, sale_payload())
        result = await processor.process("sales", "register_payment", TENANT, payment)

        edges = await processor.relationships.list_from(
            TENANT, result.transaction_id, RelationshipType.RELATES_TO_DOCUMENT
        )
        assert edges[0].attributes == {"external_id": "S-1"}

        await processor.process("sales", "cancel_sale", TENANT, {"external_id": "S-1"})
        with pytest.raises(PreconditionError) as exc_info:
            await processor.process(
                "sales", "register_payment", TENANT, {**payment, "external_id": "P-2"}
            )
        assert exc_info.value.details["current_status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_payment_rule(self, processor):
        """The default rule rejects non-positive payments before any write."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())

        with pytest.raises(PreconditionError, match="Payments have a positive amount"):
            await processor.process(
                "sales",
                "register_payment",
                TENANT,
                {"external_id": "P-1", "sale_external_id": "S-1", "amount": 0},
            )

        assert await processor.transactions.count_transactions(TENANT, TransactionType.PAYMENT) == 0

    # --- Returns ---

    @pytest.mark.asyncio
    async def test_return_flow(self, processor):
        """request_return -> complete_return restocks; completing twice fails."""
        await processor.process("sales", "register_sale", TENANT, sale_payload())
        returned = {
            "external_id": "R-1",
            "sale_external_id": "S-1",
            "location_external_id": "STORE-1",
            "items": [{"product_external_id": "SKU-1", "quantity": 1}],
        }

        requested = await processor.process("returns", "request_return", TENANT, returned)
        completed = await processor.process(
            "returns",
            "complete_return",
            TENANT,
            {"external_id": "R-1", "location_external_id": "STORE-1", "items": returned["items"]},
        )

        assert completed.transaction_id == requested.transaction_id
        assert completed.state_transition == {"from": "awaiting", "to": "completed"}
        assert await self.stock(processor, "SKU-1", "STORE-1") == -1

        with pytest.raises(PreconditionError):
            await processor.process("returns", "complete_return", TENANT, {"external_id": "R-1"})

    @pytest.mark.asyncio
    async def test_complete_unknown_return(self, processor):
        """Transition actions need an existing transaction."""
        with pytest.raises(NotFoundError):
            await processor.process("returns", "complete_return", TENANT, {"external_id": "R-404"})

    @pytest.mark.asyncio
    async def test_transfer_between_stores(self, processor):
        """An internal transfer moves stock out of one store and into another."""
        result = await processor.process(
            "returns",
            "transfer_between_stores",
            TENANT,
            {
                "external_id": "IT-1",
                "origin_location_external_id": "STORE-1",
                "destination_location_external_id": "STORE-2",
                "items": [{"product_external_id": "SKU-1", "quantity": 4}],
            },
        )

        assert len(result.movement_ids) == 2
        assert await self.stock(processor, "SKU-1", "STORE-1") == -4
        assert await self.stock(processor, "SKU-1", "STORE-2") == 4

    # --- Purchase ---

    @pytest.mark.asyncio
    async def test_purchase_flow(self, processor):
        """Order to settled receipt, with the order moved to pre_settlement."""
        items = [{"product_external_id": "SKU-1", "quantity": 10, "unit_cost": 12.5}]
        order = await processor.process(
            "purchase",
            "create_order",
            TENANT,
            {"external_id": "PO-1", "supplier_external_id": "SUP-1", "supplier_name": "Acme", "items": items},
        )
        await processor.process("purchase", "approve_order", TENANT, {"external_id": "PO-1"})
        invoice = await processor.process(
            "purchase",
            "register_invoice",
            TENANT,
            {"external_id": "NF-1", "order_external_id": "PO-1", "supplier_external_id": "SUP-1", "items": items},
        )

        order_tx = await processor.transactions.get(TENANT, order.transaction_id)
        assert order_tx.status == "pre_settlement"
        assert [h["to"] for h in order_tx.state_history] == ["pending", "approved", "pre_settlement"]
        assert order_tx.state_history[-1]["attributes"] == {"caused_by": invoice.transaction_id}

        for action in ("arrive_at_dc", "start_check"):
            await processor.process("purchase", action, TENANT, {"external_id": "NF-1"})
        checked = await processor.process(
            "purchase",
            "scan_items",
            TENANT,
            {
                "external_id": "NF-1",
                "items": [{"product_external_id": "SKU-1", "quantity_expected": 10, "quantity_received": 10}],
            },
        )
        assert checked.state_transition == {"from": "in_check", "to": "check_ok"}

        settled = await processor.process(
            "purchase",
            "settle_receipt",
            TENANT,
            {"external_id": "NF-1", "location_external_id": "DC-1", "items": items},
        )
        assert settled.state_transition == {"from": "check_ok", "to": "settled"}
        assert await self.stock(processor, "SKU-1", "DC-1") == 10

        supplier = await processor.entities.get_by_external_id(TENANT, EntityType.SUPPLIER, "SUP-1")
        assert supplier.attributes["name"] == "Acme"

    @pytest.mark.asyncio
    async def test_order_is_invoiced_once(self, processor):
        """An order already invoiced cannot be invoiced again."""
        items = [{"product_external_id": "SKU-1", "quantity": 1}]
        await processor.process(
            "purchase", "create_order", TENANT,
            {"external_id": "PO-1", "supplier_external_id": "SUP-1", "items": items},
        )
        await processor.process(
            "purchase", "register_invoice", TENANT,
            {"external_id": "NF-1", "order_external_id": "PO-1"},
        )

        with pytest.raises(PreconditionError):
            await processor.process(
                "purchase", "register_invoice", TENANT,
                {"external_id": "NF-2", "order_external_id": "PO-1"},
            )

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_history(self, processor):
        """A skipped step is rejected before anything is written."""
        await processor.process(
            "purchase", "create_order", TENANT,
            {"external_id": "PO-1", "supplier_external_id": "SUP-1",
             "items": [{"product_external_id": "SKU-1", "quantity": 1}]},
        )
        await processor.process(
            "purchase", "register_invoice", TENANT,
            {"external_id": "NF-1", "order_external_id": "PO-1"},
        )
        events_before = await processor.count_events(TENANT)

        with pytest.raises(TransitionError):
            await processor.process("purchase", "start_check", TENANT, {"external_id": "NF-1"})

        inbound = await processor.transactions.get_by_external_id(
            TENANT, TransactionType.DOCUMENT_SUPPLIER_IN, "NF-1"
        )
        assert inbound.status == "pre_settlement"
        assert len(inbound.state_history) == 1
        assert await processor.count_events(TENANT) == events_before

    # --- Transfer ---

    @pytest.mark.asyncio
    async def test_transfer_flow(self, processor):
        """Transfer out of the DC and into a store, with stock on both ends."""
        items = [{"product_external_id": "SKU-1", "quantity": 3}]
        await processor.process(
            "transfer", "create_transfer_request", TENANT,
            {"external_id": "TR-1", "origin_location_external_id": "DC-1",
             "destination_location_external_id": "STORE-1", "items": items},
        )
        for action in ("create_separation_map", "start_separation"):
            await processor.process("transfer", action, TENANT, {"external_id": "TR-1"})
        separated = await processor.process(
            "transfer", "complete_separation", TENANT,
            {"external_id": "TR-1",
             "items": [{"product_external_id": "SKU-1", "quantity_expected": 3, "quantity_received": 2}]},
        )
        assert separated.state_transition["to"] == "separation_discrepancy"

        await processor.process("transfer", "move_to_dock", TENANT, {"external_id": "TR-1"})

        receipt = {"external_id": "TI-1", "transfer_external_id": "TR-1", "destination_location_external_id": "STORE-1"}
        with pytest.raises(PreconditionError):
            await processor.process("transfer", "receive_transfer", TENANT, receipt)

        await processor.process(
            "transfer", "ship_transfer", TENANT,
            {"external_id": "TR-1", "origin_location_external_id": "DC-1", "items": items},
        )
        assert await self.stock(processor, "SKU-1", "DC-1") == -3

        await processor.process("transfer", "receive_transfer", TENANT, receipt)
        await processor.process("transfer", "start_store_check", TENANT, {"external_id": "TI-1"})
        await processor.process(
            "transfer", "complete_store_check", TENANT,
            {"external_id": "TI-1",
             "items": [{"product_external_id": "SKU-1", "quantity_expected": 3, "quantity_received": 3}]},
        )
        await processor.process(
            "transfer", "settle_store_receipt", TENANT,
            {"external_id": "TI-1", "destination_location_external_id": "STORE-1", "items": items},
        )

        assert await self.stock(processor, "SKU-1", "STORE-1") == 3
        transfer_in = await processor.transactions.get_by_external_id(
            TENANT, TransactionType.TRANSFER_IN, "TI-1"
        )
        assert transfer_in.status == "settled"

    # --- Inventory ---

    @pytest.mark.asyncio
    async def test_stock_adjustment(self, processor):
        """Adjustments are movements themselves and need a reason."""
        adjustment = {"product_external_id": "SKU-1", "location_external_id": "STORE-1", "quantity_delta": 5}

        with pytest.raises(PreconditionError):
            await processor.process("inventory", "adjust_stock", TENANT, adjustment)

        result = await processor.process(
            "inventory", "adjust_stock", TENANT, {**adjustment, "reason": "recount"}
        )
        movement = await processor.transactions.get(TENANT, result.transaction_id)

        assert movement.transaction_type == TransactionType.INVENTORY_MOVEMENT
        assert movement.attributes["qty_change"] == 5
        assert movement.attributes["movement_type"] == "ADJUSTMENT"
        assert result.movement_ids == []

        await processor.process(
            "inventory", "damage_product", TENANT,
            {"product_external_id": "SKU-1", "location_external_id": "STORE-1", "quantity": 2, "reason": "broken"},
        )
        assert await self.stock(processor, "SKU-1", "STORE-1") == 3

    # --- Errors ---

    @pytest.mark.asyncio
    async def test_unknown_action(self, processor):
        """Actions outside the flow's table are unsupported."""
        with pytest.raises(UnsupportedEventError) as exc_info:
            await processor.process("sales", "create_order", TENANT, {})

        assert "register_sale" in exc_info.value.details["supported_actions"]

    @pytest.mark.asyncio
    async def test_validation_error_details(self, processor, store):
        """Payload errors carry field details and write nothing."""
        with pytest.raises(ValidationError) as exc_info:
            await processor.process("sales", "register_sale", TENANT, {"external_id": "S-1"})

        fields = {e["field"] for e in exc_info.value.errors}
        assert {"location_external_id", "items"} <= fields
        assert store.table_size("transactions") == 0
        assert store.table_size("entities") == 0

    @pytest.mark.asyncio
    async def test_cross_field_error_names_attributes(self, processor, store):
        """Errors spanning the whole payload are reported against attributes."""
        with pytest.raises(ValidationError) as exc_info:
            await processor.process(
                "inventory",
                "adjust_stock",
                TENANT,
                {
                    "product_external_id": "SKU-1",
                    "location_external_id": "STORE-1",
                    "quantity_delta": 0,
                    "reason": "recount",
                },
            )

        error = exc_info.value
        assert error.field_name == "attributes"
        assert error.details["field"] == "attributes"
        assert error.errors[0]["field"] == "attributes"
        assert "quantity_delta must not be zero" in error.message
        assert ": :" not in error.message
        assert store.table_size("transactions") == 0

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, processor, store):
        """Store failures surface as ExternalStoreError."""
        store.fail_operations.add("entities")

        with pytest.raises(ExternalStoreError):
            await processor.process("sales", "register_sale", TENANT, sale_payload())

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, processor):
        """The same external ids in two tenants are independent."""
        first = await processor.process("sales", "register_sale", "a", sale_payload())
        second = await processor.process("sales", "register_sale", "b", sale_payload())

        assert first.transaction_id != second.transaction_id
        assert await processor.transactions.count_transactions("a", TransactionType.DOCUMENT_SALE) == 1
