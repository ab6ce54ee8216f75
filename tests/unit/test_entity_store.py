"""
Unit tests for the entity and relationship stores.

Tests cover:
- Idempotent get-or-create resolution
- Attribute refresh and soft delete
- Append-only relationships
"""

import asyncio

import pytest

from retailhub.eca_server.apply import EntityStore, RelationshipStore
from retailhub.eca_server.errors import NotFoundError, ValidationError
from retailhub.eca_server.schema.types import EntityType, RelationshipType
from retailhub.eca_server.store import InMemoryStore


@pytest.fixture
async def store():
    """Connected in-memory store."""
    store = InMemoryStore()
    await store.connect()
    return store


class TestEntityStore:
    """Tests for EntityStore."""

    @pytest.fixture
    def entities(self, store):
        return EntityStore(store)

    @pytest.mark.asyncio
    async def test_resolve_creates_with_seed(self, entities):
        """First resolution creates the entity with seed attributes."""
        product = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1", {"name": "Shoe"})

        assert product.external_id == "SKU-1"
        assert product.entity_type == EntityType.PRODUCT
        assert product.attributes == {"name": "Shoe"}
        assert not product.is_deleted

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, entities, store):
        """Repeated resolution returns the same entity unchanged."""
        first = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1", {"name": "Shoe"})
        second = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1", {"name": "Boot"})

        assert second.id == first.id
        assert second.attributes == {"name": "Shoe"}
        assert store.table_size("entities") == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolution_creates_one(self, entities, store):
        """Concurrent resolutions of one key converge on one entity."""
        results = await asyncio.gather(
            *(entities.resolve("t1", EntityType.LOCATION, "STORE-1") for _ in range(10))
        )

        assert len({entity.id for entity in results}) == 1
        assert store.table_size("entities") == 1

    @pytest.mark.asyncio
    async def test_type_and_tenant_scope_the_key(self, entities):
        """Same external id under another type or tenant is another entity."""
        product = await entities.resolve("t1", EntityType.PRODUCT, "X-1")
        location = await entities.resolve("t1", EntityType.LOCATION, "X-1")
        other_tenant = await entities.resolve("t2", EntityType.PRODUCT, "X-1")

        assert len({product.id, location.id, other_tenant.id}) == 3

    @pytest.mark.asyncio
    async def test_empty_external_id_rejected(self, entities):
        """Resolution needs an external id."""
        with pytest.raises(ValidationError):
            await entities.resolve("t1", EntityType.CUSTOMER, "")

    @pytest.mark.asyncio
    async def test_get_by_external_id_does_not_create(self, entities, store):
        """Lookup without creation returns None for unknown ids."""
        assert await entities.get_by_external_id("t1", EntityType.CUSTOMER, "C-1") is None
        assert store.table_size("entities") == 0

    @pytest.mark.asyncio
    async def test_refresh_merges_attributes(self, entities):
        """Refresh merges new attributes into the existing ones."""
        product = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1", {"name": "Shoe"})

        refreshed = await entities.refresh_attributes("t1", product.id, {"cost_price": 10.0})

        assert refreshed.id == product.id
        assert refreshed.attributes == {"name": "Shoe", "cost_price": 10.0}

    @pytest.mark.asyncio
    async def test_refresh_unknown_entity(self, entities):
        """Refreshing a missing entity raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await entities.refresh_attributes("t1", "missing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_soft_delete_frees_the_key(self, entities):
        """After soft delete, resolution creates a new entity."""
        product = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1")

        assert await entities.soft_delete("t1", product.id) is True
        assert await entities.soft_delete("t1", product.id) is False

        replacement = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1")
        assert replacement.id != product.id
        assert await entities.count_entities("t1", EntityType.PRODUCT) == 1
        assert await entities.count_entities("t1", EntityType.PRODUCT, include_deleted=True) == 2

    @pytest.mark.asyncio
    async def test_list_and_get_many(self, entities):
        """Listing filters by type; get_many keys entities by id."""
        a = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1")
        b = await entities.resolve("t1", EntityType.PRODUCT, "SKU-2")
        await entities.resolve("t1", EntityType.LOCATION, "STORE-1")

        products = await entities.list_entities("t1", EntityType.PRODUCT)
        assert {p.external_id for p in products} == {"SKU-1", "SKU-2"}

        by_id = await entities.get_many("t1", [a.id, b.id, a.id])
        assert set(by_id) == {a.id, b.id}


class TestRelationshipStore:
    """Tests for RelationshipStore."""

    @pytest.fixture
    def relationships(self, store):
        return RelationshipStore(store)

    @pytest.mark.asyncio
    async def test_create_and_list(self, relationships):
        """Edges are listed from their source and to their target."""
        edge = await relationships.create(
            "t1", RelationshipType.CONTAINS_ITEM, "tx-1", "prod-1", {"quantity": 2}
        )
        await relationships.create("t1", RelationshipType.AT_LOCATION, "tx-1", "loc-1")

        outgoing = await relationships.list_from("t1", "tx-1")
        assert len(outgoing) == 2

        items = await relationships.list_from("t1", "tx-1", RelationshipType.CONTAINS_ITEM)
        assert [r.id for r in items] == [edge.id]
        assert items[0].attributes == {"quantity": 2}

        incoming = await relationships.list_to("t1", "loc-1")
        assert [r.relationship_type for r in incoming] == [RelationshipType.AT_LOCATION]

    @pytest.mark.asyncio
    async def test_edges_are_tenant_scoped(self, relationships):
        """Another tenant never sees the edges."""
        await relationships.create("t1", RelationshipType.AT_LOCATION, "tx-1", "loc-1")
        assert await relationships.list_from("t2", "tx-1") == []

    @pytest.mark.asyncio
    async def test_list_from_many(self, relationships):
        """Edges of several sources are fetched together."""
        await relationships.create("t1", RelationshipType.CONTAINS_ITEM, "tx-1", "p-1")
        await relationships.create("t1", RelationshipType.CONTAINS_ITEM, "tx-2", "p-2")
        await relationships.create("t1", RelationshipType.AT_LOCATION, "tx-2", "l-1")

        edges = await relationships.list_from_many(
            "t1", ["tx-1", "tx-2"], RelationshipType.CONTAINS_ITEM
        )
        assert {e.target_id for e in edges} == {"p-1", "p-2"}

    def test_no_mutation_api(self, relationships):
        """Relationships expose no update or delete operation."""
        assert not hasattr(relationships, "update")
        assert not hasattr(relationships, "delete")
