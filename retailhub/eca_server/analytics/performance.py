"""
Product and location performance reports.

Quantities and prices come from the CONTAINS_ITEM relationships of the
sales in the window; cost prices come from the product entities.

Invariants:
    - Cancelled sales never count toward revenue or quantity
    - Margin is only reported for products with revenue > 0 and a known
      cost price
    - Rankings are deterministic (ties broken by external id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..apply.entity_store import EntityStore
from ..apply.relationship_store import RelationshipStore
from ..apply.transaction_store import TransactionStore
from ..schema.types import RelationshipType
from .sales import load_sales

logger = logging.getLogger(__name__)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@dataclass
class ProductPerformance:
    product_id: str
    external_id: Optional[str] = None
    name: Optional[str] = None
    quantity_sold: float = 0.0
    revenue: float = 0.0
    cost_price: Optional[float] = None

    @property
    def cost(self) -> Optional[float]:
        if self.cost_price is None:
            return None
        return self.quantity_sold * self.cost_price

    @property
    def margin(self) -> Optional[float]:
        if self.cost is None:
            return None
        return self.revenue - self.cost

    @property
    def margin_pct(self) -> Optional[float]:
        if self.margin is None or self.revenue <= 0:
            return None
        return round(self.margin / self.revenue * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "external_id": self.external_id,
            "name": self.name,
            "quantity_sold": self.quantity_sold,
            "revenue": round(self.revenue, 2),
            "cost": round(self.cost, 2) if self.cost is not None else None,
            "margin": round(self.margin, 2) if self.margin is not None else None,
            "margin_pct": self.margin_pct,
        }


@dataclass
class LocationPerformance:
    location_external_id: str
    sales_count: int = 0
    revenue: float = 0.0
    items_sold: float = 0.0

    @property
    def average_ticket(self) -> float:
        return round(self.revenue / self.sales_count, 2) if self.sales_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location_external_id": self.location_external_id,
            "sales_count": self.sales_count,
            "revenue": round(self.revenue, 2),
            "items_sold": self.items_sold,
            "average_ticket": self.average_ticket,
        }


class PerformanceAnalyzer:
    """Sales performance by product and by location."""

    def __init__(
        self,
        transactions: TransactionStore,
        relationships: RelationshipStore,
        entities: EntityStore,
    ) -> None:
        self.transactions = transactions
        self.relationships = relationships
        self.entities = entities

    async def product_performance(
        self,
        tenant_id: str,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
        location_external_id: Optional[str] = None,
        top_n: int = 10,
    ) -> Dict[str, Any]:
        """Best sellers (by quantity) and highest margin (by margin %).

        Args:
            tenant_id: Tenant identifier
            date_from: Window start (Unix ms, inclusive)
            date_to: Window end (Unix ms, inclusive)
            location_external_id: Only sales at this location
            top_n: Size of each ranking

        Returns:
            {"best_sellers": [...], "highest_margin": [...], "products_analyzed": n}
        """
        sales = await load_sales(self.transactions, tenant_id, date_from, date_to)
        if location_external_id is not None:
            sales = [s for s in sales if s.location_external_id == location_external_id]

        edges = await self.relationships.list_from_many(
            tenant_id, [s.transaction_id for s in sales], RelationshipType.CONTAINS_ITEM
        )

        products: Dict[str, ProductPerformance] = {}
        for edge in edges:
            quantity = _number(edge.attributes.get("quantity")) or 0.0
            unit_price = _number(edge.attributes.get("unit_price")) or 0.0
            perf = products.setdefault(edge.target_id, ProductPerformance(edge.target_id))
            perf.quantity_sold += quantity
            perf.revenue += quantity * unit_price

        entities = await self.entities.get_many(tenant_id, list(products))
        for product_id, perf in products.items():
            entity = entities.get(product_id)
            if entity is None:
                continue
            perf.external_id = entity.external_id
            perf.name = entity.attributes.get("name")
            perf.cost_price = _number(entity.attributes.get("cost_price"))

        ranked = sorted(products.values(), key=lambda p: p.external_id or p.product_id)
        best_sellers = sorted(ranked, key=lambda p: -p.quantity_sold)[:top_n]
        with_margin = [p for p in ranked if p.revenue > 0 and p.margin_pct is not None]
        highest_margin = sorted(with_margin, key=lambda p: -p.margin_pct)[:top_n]

        logger.debug(
            "Computed product performance",
            extra={"tenant_id": tenant_id, "sales": len(sales), "products": len(products)},
        )
        return {
            "best_sellers": [p.to_dict() for p in best_sellers],
            "highest_margin": [p.to_dict() for p in highest_margin],
            "products_analyzed": len(products),
        }

    async def location_performance(
        self,
        tenant_id: str,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
        top_n: int = 10,
    ) -> List[Dict[str, Any]]:
        """Locations ranked by revenue."""
        sales = await load_sales(self.transactions, tenant_id, date_from, date_to)
        locations: Dict[str, LocationPerformance] = {}
        for sale in sales:
            if not sale.location_external_id:
                continue
            perf = locations.setdefault(
                sale.location_external_id, LocationPerformance(sale.location_external_id)
            )
            perf.sales_count += 1
            perf.revenue += sale.amount
            perf.items_sold += sale.items_sold

        ranked = sorted(
            locations.values(), key=lambda l: (-l.revenue, l.location_external_id)
        )
        return [l.to_dict() for l in ranked[:top_n]]

    async def sales_summary(
        self,
        tenant_id: str,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Totals over the window."""
        sales = await load_sales(
            self.transactions, tenant_id, date_from, date_to, include_cancelled=True
        )
        completed = [s for s in sales if not s.cancelled]
        revenue = sum(s.amount for s in completed)
        return {
            "total_sales": len(completed),
            "cancelled_sales": len(sales) - len(completed),
            "revenue": round(revenue, 2),
            "average_ticket": round(revenue / len(completed), 2) if completed else 0.0,
            "items_sold": sum(s.items_sold for s in completed),
            "distinct_customers": len(
                {s.customer_external_id for s in completed if s.customer_external_id}
            ),
            "distinct_locations": len(
                {s.location_external_id for s in completed if s.location_external_id}
            ),
        }
