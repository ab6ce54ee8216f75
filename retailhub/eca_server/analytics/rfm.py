"""
RFM (Recency, Frequency, Monetary) customer segmentation.

For a tenant and date window, sales are grouped by customer and three
metrics are computed per customer:
- recency: whole days since the most recent purchase
- frequency: number of purchases
- monetary: total amount spent

Each metric is scored 1-5 against quartile boundaries computed from the
cohort itself, [min, q1, median, q3, max]. A value scores one more than
the index of the first boundary it does not exceed. Recency is inverted
so that recent customers score high. Segments come from a fixed cascade
evaluated top to bottom.

Invariants:
    - Boundaries depend only on the cohort in the window
    - An empty cohort, or a metric with a single distinct value, scores 3
    - A customer with no sales in the window gets recency 999,
      frequency 0, monetary "0.00" and segment "New", without scoring
    - monetary is rendered with exactly two decimals

How to change safely:
    - Changing the cascade order changes segment membership; version it
    - Keep NO_SALES_RECENCY_DAYS stable, dashboards filter on it
"""

from __future__ import annotations

import logging
import statistics
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..apply.entity_store import EntityStore
from ..apply.transaction_store import TransactionStore
from ..schema.types import EntityType, now_ms
from .sales import SaleRecord, load_sales

logger = logging.getLogger(__name__)

NO_SALES_RECENCY_DAYS = 999
DEFAULT_SCORE = 3
MS_PER_DAY = 86_400_000

CHAMPIONS = "Champions"
LOYAL = "Loyal Customers"
NEW = "New"
POTENTIAL_LOYALISTS = "Potential Loyalists"
AT_RISK = "At Risk"
CANNOT_LOSE = "Cannot Lose Them"
HIBERNATING = "Hibernating"
OTHERS = "Others"

SEGMENTS = (
    CHAMPIONS, LOYAL, NEW, POTENTIAL_LOYALISTS, AT_RISK, CANNOT_LOSE, HIBERNATING, OTHERS,
)


def quartile_boundaries(values: Sequence[float]) -> Optional[List[float]]:
    """[min, q1, median, q3, max] of values, or None for an empty cohort."""
    if not values:
        return None
    ordered = sorted(values)
    if len(ordered) == 1:
        return [ordered[0]] * 5
    q1, q2, q3 = statistics.quantiles(ordered, n=4, method="inclusive")
    return [ordered[0], q1, q2, q3, ordered[-1]]


def score_value(value: float, boundaries: Optional[List[float]], invert: bool = False) -> int:
    """Score a value 1-5 against quartile boundaries."""
    if not boundaries or boundaries[0] == boundaries[-1]:
        return DEFAULT_SCORE
    score = len(boundaries)
    for index, bound in enumerate(boundaries):
        if value <= bound:
            score = index + 1
            break
    return 6 - score if invert else score


def assign_segment(recency: int, frequency: int, monetary: int) -> str:
    """Fixed segment cascade over the three scores."""
    if recency >= 4 and frequency >= 4 and monetary >= 4:
        return CHAMPIONS
    if recency >= 3 and frequency >= 3 and monetary >= 3:
        return LOYAL
    if recency >= 4 and frequency <= 2:
        return NEW
    if recency >= 3 and frequency >= 3 and monetary <= 2:
        return POTENTIAL_LOYALISTS
    if recency <= 2 and frequency >= 3 and monetary >= 3:
        return AT_RISK
    if recency <= 1 and frequency >= 4:
        return CANNOT_LOSE
    if recency <= 2 and frequency <= 2:
        return HIBERNATING
    return OTHERS


@dataclass
class CustomerRfm:
    """RFM metrics, scores and segment of one customer."""

    customer_external_id: str
    recency_days: int
    frequency: int
    monetary_value: float
    recency_score: int
    frequency_score: int
    monetary_score: int
    segment: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    last_purchase_at: Optional[int] = None

    @property
    def monetary(self) -> str:
        return f"{self.monetary_value:.2f}"

    @property
    def overall_score(self) -> float:
        return round((self.recency_score + self.frequency_score + self.monetary_score) / 3, 2)

    @property
    def avg_order_value(self) -> float:
        if not self.frequency:
            return 0.0
        return round(self.monetary_value / self.frequency, 2)

    @property
    def predicted_ltv(self) -> float:
        if not self.frequency:
            return 0.0
        return round(
            self.avg_order_value
            * (365 / max(self.recency_days, 1))
            * min(self.overall_score, 5),
            2,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_external_id": self.customer_external_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "recency": self.recency_days,
            "frequency": self.frequency,
            "monetary": self.monetary,
            "recency_score": self.recency_score,
            "frequency_score": self.frequency_score,
            "monetary_score": self.monetary_score,
            "overall_score": self.overall_score,
            "segment": self.segment,
            "avg_order_value": self.avg_order_value,
            "predicted_ltv": self.predicted_ltv,
            "last_purchase_at": self.last_purchase_at,
        }


def no_sales_rfm(customer_external_id: str, customer_id: Optional[str] = None,
                 customer_name: Optional[str] = None) -> CustomerRfm:
    return CustomerRfm(
        customer_external_id=customer_external_id,
        recency_days=NO_SALES_RECENCY_DAYS,
        frequency=0,
        monetary_value=0.0,
        recency_score=DEFAULT_SCORE,
        frequency_score=DEFAULT_SCORE,
        monetary_score=DEFAULT_SCORE,
        segment=NEW,
        customer_id=customer_id,
        customer_name=customer_name,
    )


def score_cohort(
    sales: Sequence[SaleRecord], now: int
) -> Dict[str, CustomerRfm]:
    """Compute RFM for every customer appearing in sales."""
    by_customer: Dict[str, List[SaleRecord]] = defaultdict(list)
    for sale in sales:
        if sale.customer_external_id:
            by_customer[sale.customer_external_id].append(sale)

    metrics = {}
    for customer, purchases in by_customer.items():
        last = max(sale.occurred_at for sale in purchases)
        metrics[customer] = (
            max(0, (now - last) // MS_PER_DAY),
            len(purchases),
            sum(sale.amount for sale in purchases),
            last,
        )

    recency_bounds = quartile_boundaries([m[0] for m in metrics.values()])
    frequency_bounds = quartile_boundaries([m[1] for m in metrics.values()])
    monetary_bounds = quartile_boundaries([m[2] for m in metrics.values()])

    results = {}
    for customer, (recency, frequency, monetary, last) in metrics.items():
        r = score_value(recency, recency_bounds, invert=True)
        f = score_value(frequency, frequency_bounds)
        m = score_value(monetary, monetary_bounds)
        results[customer] = CustomerRfm(
            customer_external_id=customer,
            recency_days=int(recency),
            frequency=frequency,
            monetary_value=monetary,
            recency_score=r,
            frequency_score=f,
            monetary_score=m,
            segment=assign_segment(r, f, m),
            last_purchase_at=last,
        )
    return results


class RfmAnalyzer:
    """RFM segmentation over a tenant's sales."""

    def __init__(self, transactions: TransactionStore, entities: EntityStore) -> None:
        self.transactions = transactions
        self.entities = entities

    async def segment_customers(
        self,
        tenant_id: str,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
        now: Optional[int] = None,
        include_inactive: bool = True,
    ) -> List[CustomerRfm]:
        """Score every customer in the window.

        Args:
            tenant_id: Tenant identifier
            date_from: Window start (Unix ms, inclusive)
            date_to: Window end (Unix ms, inclusive)
            now: Reference time for recency (defaults to now)
            include_inactive: Also list known customers without sales in
                the window, with the no-sales defaults

        Returns:
            Customers ordered by overall score, best first
        """
        now = now if now is not None else now_ms()
        sales = await load_sales(self.transactions, tenant_id, date_from, date_to)
        results = score_cohort(sales, now)

        customers = await self.entities.list_entities(tenant_id, EntityType.CUSTOMER, limit=None)
        for entity in customers:
            rfm = results.get(entity.external_id)
            if rfm is not None:
                rfm.customer_id = entity.id
                rfm.customer_name = entity.attributes.get("name")
            elif include_inactive and entity.external_id:
                results[entity.external_id] = no_sales_rfm(
                    entity.external_id, entity.id, entity.attributes.get("name")
                )

        logger.debug(
            "Computed RFM segmentation",
            extra={"tenant_id": tenant_id, "sales": len(sales), "customers": len(results)},
        )
        return sorted(
            results.values(),
            key=lambda c: (-c.overall_score, -c.monetary_value, c.customer_external_id),
        )

    async def customer_rfm(
        self,
        tenant_id: str,
        customer_external_id: str,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
        now: Optional[int] = None,
    ) -> CustomerRfm:
        """RFM of one customer, scored against the whole cohort."""
        now = now if now is not None else now_ms()
        sales = await load_sales(self.transactions, tenant_id, date_from, date_to)
        rfm = score_cohort(sales, now).get(customer_external_id)
        entity = await self.entities.get_by_external_id(
            tenant_id, EntityType.CUSTOMER, customer_external_id
        )
        if rfm is None:
            return no_sales_rfm(
                customer_external_id,
                entity.id if entity else None,
                entity.attributes.get("name") if entity else None,
            )
        if entity is not None:
            rfm.customer_id = entity.id
            rfm.customer_name = entity.attributes.get("name")
        return rfm


def segment_summary(customers: Sequence[CustomerRfm]) -> Dict[str, Any]:
    """Customer count, share and revenue per segment."""
    counts = Counter(c.segment for c in customers)
    revenue: Dict[str, float] = defaultdict(float)
    for c in customers:
        revenue[c.segment] += c.monetary_value
    total = len(customers)
    return {
        "total_customers": total,
        "segments": {
            segment: {
                "count": counts.get(segment, 0),
                "percentage": round(counts.get(segment, 0) / total * 100, 2) if total else 0.0,
                "revenue": f"{revenue.get(segment, 0.0):.2f}",
            }
            for segment in SEGMENTS
        },
    }
