"""
Sales scan shared by the analytics reports.

Invariants:
    - Windows apply to the sale's business time (occurred_at), inclusive
    - A sale's amount is its total_amount when present, else the sum of
      quantity x unit_price over its items
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..apply.transaction_store import TransactionStore
from ..schema.types import BusinessTransaction, SaleStatus, TransactionType


@dataclass
class SaleRecord:
    """A sale reduced to the values the reports use."""

    transaction_id: str
    external_id: Optional[str]
    customer_external_id: Optional[str]
    location_external_id: Optional[str]
    amount: float
    items: List[Dict[str, Any]] = field(default_factory=list)
    occurred_at: int = 0
    cancelled: bool = False

    @property
    def items_sold(self) -> float:
        return sum(_number(item.get("quantity")) for item in self.items)


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def sale_amount(attributes: Dict[str, Any]) -> float:
    total = attributes.get("total_amount")
    if isinstance(total, (int, float)) and not isinstance(total, bool):
        return float(total)
    return sum(
        _number(item.get("quantity")) * _number(item.get("unit_price"))
        for item in attributes.get("items") or []
        if isinstance(item, dict)
    )


def to_sale_record(transaction: BusinessTransaction) -> SaleRecord:
    attrs = transaction.attributes
    items = [item for item in attrs.get("items") or [] if isinstance(item, dict)]
    return SaleRecord(
        transaction_id=transaction.id,
        external_id=transaction.external_id,
        customer_external_id=attrs.get("customer_external_id"),
        location_external_id=attrs.get("location_external_id"),
        amount=sale_amount(attrs),
        items=items,
        occurred_at=transaction.occurred_at,
        cancelled=transaction.status == SaleStatus.CANCELLED.value,
    )


async def load_sales(
    transactions: TransactionStore,
    tenant_id: str,
    date_from: Optional[int] = None,
    date_to: Optional[int] = None,
    include_cancelled: bool = False,
) -> List[SaleRecord]:
    """Sales of a tenant whose occurred_at falls in [date_from, date_to]."""
    rows = await transactions.list_transactions(
        tenant_id, TransactionType.DOCUMENT_SALE, limit=None
    )
    sales = []
    for transaction in rows:
        sale = to_sale_record(transaction)
        if sale.cancelled and not include_cancelled:
            continue
        if date_from is not None and sale.occurred_at < date_from:
            continue
        if date_to is not None and sale.occurred_at > date_to:
            continue
        sales.append(sale)
    return sales
