"""
Entity store: idempotent resolution of business entities.

Entities (products, locations, suppliers, customers) are created the first
time any action references them and are looked up by their external id
afterwards.

Invariants:
    - (tenant_id, entity_type, external_id) identifies at most one
      non-deleted entity
    - resolve() is idempotent: repeated calls with the same key return the
      same entity id and never create a duplicate row
    - resolve() returns an existing entity unchanged (seed attributes only
      apply on creation)
    - Entities are never hard-deleted

How to change safely:
    - Keep resolve() on the store's insert-if-absent primitive
    - Attribute refresh must merge, never replace
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..errors import NotFoundError, ValidationError
from ..schema.types import BusinessEntity, EntityType, now_ms
from ..store.base import StoreBackend, in_

logger = logging.getLogger(__name__)

TABLE = "entities"


class EntityStore:
    """Get-or-create and read access for business entities.

    Example:
        >>> entities = EntityStore(store)
        >>> product = await entities.resolve("t1", EntityType.PRODUCT, "SKU-1", {"name": "Shoe"})
    """

    def __init__(self, store: StoreBackend) -> None:
        self.store = store

    async def resolve(
        self,
        tenant_id: str,
        entity_type: EntityType,
        external_id: str,
        seed_attributes: Optional[Dict[str, Any]] = None,
    ) -> BusinessEntity:
        """Return the entity for an external id, creating it if absent.

        Args:
            tenant_id: Tenant identifier
            entity_type: Entity kind
            external_id: Identifier in the tenant's source system
            seed_attributes: Attributes used only when the entity is created

        Returns:
            The existing or newly created entity

        Raises:
            ValidationError: If external_id is empty
            ExternalStoreError: If the store call fails
        """
        if not external_id:
            raise ValidationError(
                f"External id is required to resolve a {entity_type.value} entity",
                field_name="external_id",
            )

        now = now_ms()
        row, created = await self.store.insert_row(
            TABLE,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "entity_type": entity_type.value,
                "external_id": str(external_id),
                "attributes": dict(seed_attributes or {}),
                "created_at": now,
                "updated_at": now,
                "deleted_at": None,
            },
        )

        entity = BusinessEntity.from_row(row)
        if created:
            logger.debug(
                "Created entity",
                extra={
                    "tenant_id": tenant_id,
                    "entity_type": entity_type.value,
                    "external_id": external_id,
                    "entity_id": entity.id,
                },
            )
        return entity

    async def get(self, tenant_id: str, entity_id: str) -> Optional[BusinessEntity]:
        row = await self.store.get_by_key(TABLE, {"tenant_id": tenant_id, "id": entity_id})
        return BusinessEntity.from_row(row) if row else None

    async def get_by_external_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        external_id: str,
    ) -> Optional[BusinessEntity]:
        """Look up an active entity by external id without creating it."""
        row = await self.store.get_by_key(
            TABLE,
            {
                "tenant_id": tenant_id,
                "entity_type": entity_type.value,
                "external_id": str(external_id),
                "deleted_at": None,
            },
        )
        return BusinessEntity.from_row(row) if row else None

    async def get_many(self, tenant_id: str, entity_ids: List[str]) -> Dict[str, BusinessEntity]:
        """Fetch several entities by id, keyed by id."""
        unique_ids = sorted(set(entity_ids))
        entities: Dict[str, BusinessEntity] = {}
        for start in range(0, len(unique_ids), 500):
            rows = await self.store.query_rows(
                TABLE, {"tenant_id": tenant_id, "id": in_(unique_ids[start:start + 500])}
            )
            entities.update((row["id"], BusinessEntity.from_row(row)) for row in rows)
        return entities

    async def list_entities(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        external_id: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[BusinessEntity]:
        rows = await self.store.query_rows(
            TABLE,
            self._filters(tenant_id, entity_type, external_id, include_deleted),
            order=["-created_at"],
            limit=limit,
            offset=offset,
        )
        return [BusinessEntity.from_row(row) for row in rows]

    async def count_entities(
        self,
        tenant_id: str,
        entity_type: Optional[EntityType] = None,
        external_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> int:
        return await self.store.count_rows(
            TABLE, self._filters(tenant_id, entity_type, external_id, include_deleted)
        )

    @staticmethod
    def _filters(tenant_id, entity_type, external_id, include_deleted) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if entity_type is not None:
            filters["entity_type"] = entity_type.value
        if external_id is not None:
            filters["external_id"] = external_id
        if not include_deleted:
            filters["deleted_at"] = None
        return filters

    async def refresh_attributes(
        self,
        tenant_id: str,
        entity_id: str,
        attributes: Dict[str, Any],
    ) -> BusinessEntity:
        """Merge new metadata into an entity's attributes in place.

        Raises:
            NotFoundError: If the entity does not exist or is deleted
        """
        existing = await self.get(tenant_id, entity_id)
        if existing is None or existing.is_deleted:
            raise NotFoundError(
                f"Entity not found: {entity_id}",
                resource_type="entity",
                resource_id=entity_id,
            )

        merged = {**existing.attributes, **attributes}
        rows = await self.store.update_rows_matching(
            TABLE,
            {"tenant_id": tenant_id, "id": entity_id, "deleted_at": None},
            {"attributes": merged, "updated_at": now_ms()},
        )
        if not rows:
            raise NotFoundError(
                f"Entity not found: {entity_id}",
                resource_type="entity",
                resource_id=entity_id,
            )
        return BusinessEntity.from_row(rows[0])

    async def soft_delete(self, tenant_id: str, entity_id: str) -> bool:
        """Mark an entity deleted. Returns False if it was not active."""
        now = now_ms()
        rows = await self.store.update_rows_matching(
            TABLE,
            {"tenant_id": tenant_id, "id": entity_id, "deleted_at": None},
            {"deleted_at": now, "updated_at": now},
        )
        if rows:
            logger.info(
                "Soft-deleted entity",
                extra={"tenant_id": tenant_id, "entity_id": entity_id},
            )
        return bool(rows)
