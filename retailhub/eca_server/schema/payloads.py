"""
Per-action payload models.

Each action declares the pydantic model its `attributes` object must
satisfy. Models allow extra fields so free-form metadata (notes, source
system references) is kept on the transaction without being modeled.

Invariants:
    - External id fields are non-empty strings
    - Line-item quantities are positive; signed deltas live only in
      StockAdjustmentPayload.quantity_delta
    - occurred_at, when given, is the business time of the document

How to change safely:
    - Adding optional fields is backward compatible
    - Making a field required breaks existing integrations; add a new
      action instead
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ActionPayload(BaseModel):
    """Fields shared by every action payload."""

    model_config = ConfigDict(extra="allow")

    external_id: Optional[str] = Field(None, min_length=1, description="Document id in the source system")
    occurred_at: Optional[datetime] = Field(None, description="Business time of the document")
    notes: Optional[str] = Field(None, description="Free-form notes")


class DocumentPayload(ActionPayload):
    """Payload of actions addressing an existing document by external id."""

    external_id: str = Field(..., min_length=1, description="Document id in the source system")


# --- Line items ---


class LineItem(BaseModel):
    """A product line of a document."""

    model_config = ConfigDict(extra="allow")

    product_external_id: str = Field(..., min_length=1, description="Product id in the source system")
    quantity: float = Field(..., gt=0, description="Quantity of the line")
    unit_price: Optional[float] = Field(None, ge=0, description="Sale price per unit")
    unit_cost: Optional[float] = Field(None, ge=0, description="Purchase cost per unit")
    product_name: Optional[str] = Field(None, description="Product name (seeds new products)")
    cost_price: Optional[float] = Field(None, ge=0, description="Product cost price (seeds new products)")


class CheckedItem(BaseModel):
    """A product line counted during a conference/check."""

    model_config = ConfigDict(extra="allow")

    product_external_id: str = Field(..., min_length=1)
    quantity_expected: float = Field(..., ge=0)
    quantity_received: float = Field(..., ge=0)
    product_name: Optional[str] = None

    @property
    def has_discrepancy(self) -> bool:
        return self.quantity_expected != self.quantity_received

    @property
    def quantity(self) -> float:
        return self.quantity_received


class _RestockMixin(BaseModel):
    """Optional items put back into stock, by default where the document was recorded."""

    model_config = ConfigDict(extra="allow")

    items: List[LineItem] = Field(default_factory=list)
    location_external_id: Optional[str] = Field(None, min_length=1)


# --- Sales flow ---


class SalePayload(ActionPayload):
    external_id: str = Field(..., min_length=1)
    location_external_id: str = Field(..., min_length=1, description="Store where the sale happened")
    customer_external_id: Optional[str] = Field(None, min_length=1)
    customer_name: Optional[str] = None
    items: List[LineItem] = Field(..., min_length=1)
    total_amount: Optional[float] = Field(None, ge=0)
    payment_method: Optional[str] = None
    salesperson_id: Optional[str] = None


class PaymentPayload(ActionPayload):
    sale_external_id: str = Field(..., min_length=1)
    amount: float
    method: Optional[str] = None


class FiscalDataPayload(ActionPayload):
    sale_external_id: str = Field(..., min_length=1)
    fiscal_key: Optional[str] = None
    series: Optional[str] = None


class CancelSalePayload(_RestockMixin, DocumentPayload):
    reason: Optional[str] = None


# --- Purchase flow ---


class PurchaseOrderPayload(ActionPayload):
    external_id: str = Field(..., min_length=1)
    supplier_external_id: str = Field(..., min_length=1)
    supplier_name: Optional[str] = None
    location_external_id: Optional[str] = Field(None, min_length=1, description="Receiving location")
    items: List[LineItem] = Field(..., min_length=1)
    total_amount: Optional[float] = Field(None, ge=0)


class InvoicePayload(ActionPayload):
    external_id: str = Field(..., min_length=1, description="Invoice id")
    order_external_id: str = Field(..., min_length=1)
    supplier_external_id: Optional[str] = Field(None, min_length=1)
    location_external_id: Optional[str] = Field(None, min_length=1)
    items: List[LineItem] = Field(default_factory=list)
    total_amount: Optional[float] = Field(None, ge=0)


class CheckPayload(DocumentPayload):
    items: List[CheckedItem] = Field(..., min_length=1)


class ReceiptSettlementPayload(DocumentPayload):
    location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(..., min_length=1)


# --- Transfer flow ---


class TransferRequestPayload(ActionPayload):
    external_id: str = Field(..., min_length=1)
    origin_location_external_id: str = Field(..., min_length=1)
    destination_location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(..., min_length=1)


class ShipTransferPayload(DocumentPayload):
    origin_location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(..., min_length=1)


class ReceiveTransferPayload(ActionPayload):
    external_id: str = Field(..., min_length=1, description="Receipt document id")
    transfer_external_id: str = Field(..., min_length=1)
    destination_location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(default_factory=list)


class StoreReceiptSettlementPayload(DocumentPayload):
    destination_location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(..., min_length=1)


# --- Returns flow ---


class ReturnRequestPayload(ActionPayload):
    external_id: str = Field(..., min_length=1)
    sale_external_id: str = Field(..., min_length=1)
    location_external_id: Optional[str] = Field(None, min_length=1)
    customer_external_id: Optional[str] = Field(None, min_length=1)
    items: List[LineItem] = Field(..., min_length=1)
    reason: Optional[str] = None


class CompleteReturnPayload(_RestockMixin, DocumentPayload):
    refund_amount: Optional[float] = Field(None, ge=0)


class StoreTransferPayload(ActionPayload):
    external_id: str = Field(..., min_length=1)
    origin_location_external_id: str = Field(..., min_length=1)
    destination_location_external_id: str = Field(..., min_length=1)
    items: List[LineItem] = Field(..., min_length=1)


# --- Inventory flow ---


class StockAdjustmentPayload(ActionPayload):
    product_external_id: str = Field(..., min_length=1)
    location_external_id: str = Field(..., min_length=1)
    quantity_delta: float
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_non_zero(self):
        if self.quantity_delta == 0:
            raise ValueError("quantity_delta must not be zero")
        return self


class StockQuantityPayload(ActionPayload):
    product_external_id: str = Field(..., min_length=1)
    location_external_id: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0)
    reason: Optional[str] = None
