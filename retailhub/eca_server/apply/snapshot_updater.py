"""
Snapshot updater: incremental maintenance of keyed aggregates.

The only snapshot kind today is stock per (product, location), keyed
"stock_<product_id>_<location_id>". Each stock movement applies a signed
quantity delta to it.

Invariants:
    - current_stock starts at 0 for a key never seen before
    - Each apply_delta() adds exactly one delta, even under concurrent
      writers: the update is a compare-and-set on the row version, and a
      lost race re-reads and re-applies
    - last_movement / last_movement_ref always describe the most recently
      applied delta
    - Deltas are not deduplicated; callers apply each movement once

How to change safely:
    - Keep value keys stable; read endpoints and analytics consume them
    - Never replace the CAS with a blind write
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors import ExternalStoreError
from ..schema.types import Snapshot, SnapshotType, now_ms
from ..store.base import StoreBackend

logger = logging.getLogger(__name__)

TABLE = "snapshots"


def stock_key(product_id: str, location_id: str) -> str:
    """Snapshot key of the stock level of a product at a location."""
    return f"stock_{product_id}_{location_id}"


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class SnapshotUpdater:
    """Applies quantity deltas to keyed snapshots.

    Attributes:
        max_attempts: Compare-and-set attempts before giving up
    """

    def __init__(self, store: StoreBackend, max_attempts: int = 5) -> None:
        self.store = store
        self.max_attempts = max_attempts

    async def apply_delta(
        self,
        tenant_id: str,
        key: str,
        quantity_delta: float,
        movement_type: str,
        reference_id: Optional[str],
        snapshot_type: SnapshotType = SnapshotType.INVENTORY,
        context: Optional[Dict[str, Any]] = None,
    ) -> Snapshot:
        """Add quantity_delta to the snapshot's current_stock.

        Args:
            tenant_id: Tenant identifier
            key: Snapshot key (see stock_key())
            quantity_delta: Signed quantity change
            movement_type: Movement kind recorded as last_movement
            reference_id: Transaction that caused the movement
            snapshot_type: Snapshot kind
            context: Extra descriptive values stored alongside (ids, names)

        Returns:
            The snapshot after the delta was applied

        Raises:
            ExternalStoreError: If the store fails or every attempt lost a race
        """
        for attempt in range(1, self.max_attempts + 1):
            now = now_ms()
            row = await self.store.get_by_key(TABLE, {"tenant_id": tenant_id, "snapshot_key": key})

            if row is None:
                value = self._next_value({}, quantity_delta, movement_type, reference_id, now, context)
                row, inserted = await self.store.insert_row(
                    TABLE,
                    {
                        "id": str(uuid.uuid4()),
                        "tenant_id": tenant_id,
                        "snapshot_type": snapshot_type.value,
                        "snapshot_key": key,
                        "value": value,
                        "snapshot_date": _today(),
                        "version": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                if inserted:
                    return self._applied(row, quantity_delta, movement_type)
                # Another writer created it first; fall through to the CAS
            value = self._next_value(
                row["value"], quantity_delta, movement_type, reference_id, now, context
            )
            rows = await self.store.update_rows_matching(
                TABLE,
                {"id": row["id"], "version": row["version"]},
                {
                    "value": value,
                    "version": row["version"] + 1,
                    "snapshot_date": _today(),
                    "updated_at": now,
                },
            )
            if rows:
                return self._applied(rows[0], quantity_delta, movement_type)

            logger.debug(
                "Snapshot version conflict",
                extra={"tenant_id": tenant_id, "snapshot_key": key, "attempt": attempt},
            )

        logger.error(
            f"Snapshot {key} still contended after {self.max_attempts} attempts",
            extra={"tenant_id": tenant_id, "snapshot_key": key},
        )
        raise ExternalStoreError("apply_delta", TABLE)

    @staticmethod
    def _next_value(
        current: Dict[str, Any],
        quantity_delta: float,
        movement_type: str,
        reference_id: Optional[str],
        now: int,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        value = dict(current)
        value.update(context or {})
        value["current_stock"] = (current.get("current_stock") or 0) + quantity_delta
        value["last_movement"] = movement_type
        value["last_movement_ref"] = reference_id
        value["last_updated"] = now
        return value

    @staticmethod
    def _applied(row: Dict[str, Any], quantity_delta: float, movement_type: str) -> Snapshot:
        snapshot = Snapshot.from_row(row)
        logger.debug(
            "Applied snapshot delta",
            extra={
                "snapshot_key": snapshot.snapshot_key,
                "delta": quantity_delta,
                "movement_type": movement_type,
                "current_stock": snapshot.value.get("current_stock"),
            },
        )
        return snapshot

    async def get(self, tenant_id: str, key: str) -> Optional[Snapshot]:
        row = await self.store.get_by_key(TABLE, {"tenant_id": tenant_id, "snapshot_key": key})
        return Snapshot.from_row(row) if row else None

    async def current_stock(self, tenant_id: str, product_id: str, location_id: str) -> float:
        """Stock level of a product at a location (0 when never moved)."""
        snapshot = await self.get(tenant_id, stock_key(product_id, location_id))
        if snapshot is None:
            return 0
        return snapshot.value.get("current_stock", 0)

    async def list_snapshots(
        self,
        tenant_id: str,
        snapshot_type: Optional[SnapshotType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Snapshot]:
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if snapshot_type is not None:
            filters["snapshot_type"] = snapshot_type.value
        rows = await self.store.query_rows(
            TABLE, filters, order=["snapshot_key"], limit=limit, offset=offset
        )
        return [Snapshot.from_row(row) for row in rows]

    async def count_snapshots(
        self, tenant_id: str, snapshot_type: Optional[SnapshotType] = None
    ) -> int:
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if snapshot_type is not None:
            filters["snapshot_type"] = snapshot_type.value
        return await self.store.count_rows(TABLE, filters)
