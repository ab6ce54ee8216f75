"""
Relationship store: append-only typed edges of the audit graph.

Invariants:
    - Relationships are immutable once created (no update, no delete)
    - Edges are directed: source -> target
    - Every relationship belongs to exactly one tenant
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..schema.types import Relationship, RelationshipType, now_ms
from ..store.base import StoreBackend, in_

logger = logging.getLogger(__name__)

TABLE = "relationships"

# Keeps IN (...) lists under SQLite's bound-parameter limit
_SCAN_CHUNK = 500


class RelationshipStore:
    """Create and read typed edges."""

    def __init__(self, store: StoreBackend) -> None:
        self.store = store

    async def create(
        self,
        tenant_id: str,
        relationship_type: RelationshipType,
        source_id: str,
        target_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        """Create a relationship from source_id to target_id.

        Args:
            tenant_id: Tenant identifier
            relationship_type: Edge kind
            source_id: Source node ID
            target_id: Target node ID
            attributes: Edge attributes (quantity, unit_price, ...)

        Returns:
            The created relationship
        """
        row, _ = await self.store.insert_row(
            TABLE,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "relationship_type": relationship_type.value,
                "source_id": source_id,
                "target_id": target_id,
                "attributes": dict(attributes or {}),
                "created_at": now_ms(),
            },
        )
        logger.debug(
            "Created relationship",
            extra={
                "tenant_id": tenant_id,
                "relationship_type": relationship_type.value,
                "source_id": source_id,
                "target_id": target_id,
            },
        )
        return Relationship.from_row(row)

    async def list_from(
        self,
        tenant_id: str,
        source_id: str,
        relationship_type: Optional[RelationshipType] = None,
    ) -> List[Relationship]:
        """Outgoing edges of a node, oldest first."""
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "source_id": source_id}
        if relationship_type is not None:
            filters["relationship_type"] = relationship_type.value
        rows = await self.store.query_rows(TABLE, filters, order=["created_at"])
        return [Relationship.from_row(row) for row in rows]

    async def list_to(
        self,
        tenant_id: str,
        target_id: str,
        relationship_type: Optional[RelationshipType] = None,
    ) -> List[Relationship]:
        """Incoming edges of a node, oldest first."""
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "target_id": target_id}
        if relationship_type is not None:
            filters["relationship_type"] = relationship_type.value
        rows = await self.store.query_rows(TABLE, filters, order=["created_at"])
        return [Relationship.from_row(row) for row in rows]

    async def list_from_many(
        self,
        tenant_id: str,
        source_ids: List[str],
        relationship_type: Optional[RelationshipType] = None,
    ) -> List[Relationship]:
        """Outgoing edges of several nodes (used by analytics scans)."""
        relationships: List[Relationship] = []
        for start in range(0, len(source_ids), _SCAN_CHUNK):
            chunk = source_ids[start:start + _SCAN_CHUNK]
            filters: Dict[str, Any] = {"tenant_id": tenant_id, "source_id": in_(chunk)}
            if relationship_type is not None:
                filters["relationship_type"] = relationship_type.value
            rows = await self.store.query_rows(TABLE, filters, order=["created_at"])
            relationships.extend(Relationship.from_row(row) for row in rows)
        return relationships
