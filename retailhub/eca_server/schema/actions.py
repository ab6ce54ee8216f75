"""
Per-flow action tables.

Every inbound webhook names an action of a flow. An ActionDef describes,
as data, everything the Action Processor needs to apply it:
- which transaction type it creates or transitions, and to which status
- which payload model validates its attributes
- which payload fields reference entities, and how they are linked
- which line items become CONTAINS_ITEM relationships
- which stock movements it causes (per item, or the transaction itself)
- which other transaction it references, and in which status that one
  must be

Invariants:
    - (flow, action name) is unique
    - target_status (or every value status_resolver can return) is a
      status of transaction_type
    - The table is frozen before serving

How to change safely:
    - Adding an action is configuration only; the processor needs no change
    - Renaming an action breaks integrations; add the new name instead
    - Keep movement signs explicit: -1 takes stock out, +1 puts it in
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from . import payloads as p
from .types import (
    EntityType,
    FiscalDocumentStatus,
    InboundDocumentStatus,
    InternalTransferStatus,
    MovementStatus,
    PaymentStatus,
    PurchaseOrderStatus,
    RelationshipType,
    ReturnStatus,
    SaleStatus,
    TransactionType,
    TransferInStatus,
    TransferOutStatus,
    status_value,
)

logger = logging.getLogger(__name__)


class Flow(Enum):
    """Webhook flows; each owns a set of actions."""

    SALES = "sales"
    PURCHASE = "purchase"
    INVENTORY = "inventory"
    TRANSFER = "transfer"
    RETURNS = "returns"


class ActionMode(Enum):
    """How an action treats the transaction named by external_id."""

    # Create the transaction, or transition it if it already exists
    UPSERT = "upsert"
    # The transaction must already exist
    TRANSITION = "transition"


class ActionTableFrozenError(Exception):
    """Raised when modifying a frozen action table."""
    pass


@dataclass(frozen=True)
class EntityRef:
    """A payload field holding an entity's external id.

    Attributes:
        field: Payload field with the external id (skipped when empty)
        entity_type: Entity kind to resolve
        relationship_type: Edge from the transaction to the entity
        seed_fields: (payload field, attribute name) pairs used as seed
            attributes when the entity is created
    """

    field: str
    entity_type: EntityType
    relationship_type: RelationshipType
    seed_fields: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class MovementLeg:
    """One stock movement per line item at the location in `location_field`.

    With location_from_existing, a payload without the location uses the one
    stored on the transaction being transitioned.
    """

    location_field: str
    sign: int
    movement_type: str
    location_from_existing: bool = False


@dataclass(frozen=True)
class DirectMovement:
    """The transaction itself is a stock movement of one product."""

    product_field: str
    location_field: str
    quantity_field: str
    sign: int
    movement_type: str


@dataclass(frozen=True)
class ReferenceRule:
    """A payload field naming another transaction by external id.

    Attributes:
        field: Payload field with the referenced external id
        transaction_type: Type of the referenced transaction
        relationship_type: Edge from the new/updated transaction to it
        required_statuses: Statuses the reference must be in (empty = any)
        transition_to: Status to move the reference to, if any
    """

    field: str
    transaction_type: TransactionType
    relationship_type: RelationshipType
    required_statuses: Tuple[str, ...] = ()
    transition_to: Optional[str] = None


@dataclass(frozen=True)
class ActionDef:
    """Declarative description of one action."""

    name: str
    flow: Flow
    transaction_type: TransactionType
    payload_model: Type[BaseModel]
    event_code: str
    target_status: Optional[str] = None
    status_resolver: Optional[Callable[[BaseModel], str]] = None
    mode: ActionMode = ActionMode.UPSERT
    required_status: Tuple[str, ...] = ()
    entity_refs: Tuple[EntityRef, ...] = ()
    link_items: bool = False
    item_attributes: Tuple[str, ...] = ("quantity", "unit_price")
    movement_legs: Tuple[MovementLeg, ...] = ()
    direct_movement: Optional[DirectMovement] = None
    reference: Optional[ReferenceRule] = None

    def resolve_status(self, payload: BaseModel) -> str:
        """Target status for a validated payload."""
        if self.status_resolver is not None:
            return self.status_resolver(payload)
        return self.target_status

    @property
    def moves_stock(self) -> bool:
        return bool(self.movement_legs) or self.direct_movement is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "flow": self.flow.value,
            "transaction_type": self.transaction_type.value,
            "target_status": self.target_status,
            "mode": self.mode.value,
            "event_code": self.event_code,
        }


class ActionTable:
    """Registry of ActionDefs keyed by (flow, action name)."""

    def __init__(self) -> None:
        self._actions: Dict[Tuple[Flow, str], ActionDef] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, action: ActionDef) -> None:
        with self._lock:
            if self._frozen:
                raise ActionTableFrozenError(
                    f"Cannot register '{action.name}': action table is frozen"
                )
            key = (action.flow, action.name)
            if key in self._actions:
                raise ValueError(f"Action '{action.name}' already registered for {action.flow.value}")
            if action.target_status is None and action.status_resolver is None:
                raise ValueError(f"Action '{action.name}' has no target status")
            self._actions[key] = action

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True
        logger.info(f"Action table frozen with {len(self._actions)} actions")

    def get(self, flow: Flow, name: str) -> Optional[ActionDef]:
        return self._actions.get((flow, name))

    def actions_for(self, flow: Flow) -> List[str]:
        return sorted(name for (f, name) in self._actions if f == flow)

    def flows(self) -> List[Flow]:
        return [flow for flow in Flow if any(f == flow for f, _ in self._actions)]

    def __iter__(self):
        return iter(list(self._actions.values()))

    def __len__(self) -> int:
        return len(self._actions)


def _check_outcome(ok: Enum, discrepancy: Enum) -> Callable[[BaseModel], str]:
    """Status resolver: discrepancy if any counted item differs from expected."""

    def resolve(payload: BaseModel) -> str:
        if any(item.has_discrepancy for item in payload.items):
            return discrepancy.value
        return ok.value

    return resolve


_LOCATION = EntityRef("location_external_id", EntityType.LOCATION, RelationshipType.AT_LOCATION)
_CUSTOMER = EntityRef(
    "customer_external_id",
    EntityType.CUSTOMER,
    RelationshipType.TO_CUSTOMER,
    seed_fields=(("customer_name", "name"),),
)
_SUPPLIER = EntityRef(
    "supplier_external_id",
    EntityType.SUPPLIER,
    RelationshipType.FROM_SUPPLIER,
    seed_fields=(("supplier_name", "name"),),
)
_ORIGIN = EntityRef(
    "origin_location_external_id", EntityType.LOCATION, RelationshipType.ORIGINATES_FROM
)
_DESTINATION = EntityRef(
    "destination_location_external_id", EntityType.LOCATION, RelationshipType.DESTINED_TO
)
_PRODUCT = EntityRef("product_external_id", EntityType.PRODUCT, RelationshipType.AFFECTS_PRODUCT)


def _sales_actions() -> List[ActionDef]:
    sale = TransactionType.DOCUMENT_SALE
    completed = (SaleStatus.COMPLETED.value,)
    return [
        ActionDef(
            name="register_sale",
            flow=Flow.SALES,
            transaction_type=sale,
            payload_model=p.SalePayload,
            event_code="sale_registered",
            target_status=SaleStatus.COMPLETED.value,
            entity_refs=(_LOCATION, _CUSTOMER),
            link_items=True,
            movement_legs=(MovementLeg("location_external_id", -1, "SALE"),),
        ),
        ActionDef(
            name="register_payment",
            flow=Flow.SALES,
            transaction_type=TransactionType.PAYMENT,
            payload_model=p.PaymentPayload,
            event_code="payment_registered",
            target_status=PaymentStatus.CONFIRMED.value,
            reference=ReferenceRule(
                "sale_external_id", sale, RelationshipType.RELATES_TO_DOCUMENT, completed
            ),
        ),
        ActionDef(
            name="register_fiscal_data",
            flow=Flow.SALES,
            transaction_type=TransactionType.FISCAL_DOCUMENT,
            payload_model=p.FiscalDataPayload,
            event_code="fiscal_data_registered",
            target_status=FiscalDocumentStatus.ISSUED.value,
            reference=ReferenceRule("sale_external_id", sale, RelationshipType.RELATES_TO_DOCUMENT),
        ),
        ActionDef(
            name="cancel_sale",
            flow=Flow.SALES,
            transaction_type=sale,
            payload_model=p.CancelSalePayload,
            event_code="sale_cancelled",
            target_status=SaleStatus.CANCELLED.value,
            mode=ActionMode.TRANSITION,
            required_status=completed,
            movement_legs=(
                MovementLeg("location_external_id", 1, "SALE_CANCELLATION", location_from_existing=True),
            ),
        ),
    ]


def _purchase_actions() -> List[ActionDef]:
    order = TransactionType.ORDER_PURCHASE
    inbound = TransactionType.DOCUMENT_SUPPLIER_IN
    return [
        ActionDef(
            name="create_order",
            flow=Flow.PURCHASE,
            transaction_type=order,
            payload_model=p.PurchaseOrderPayload,
            event_code="order_created",
            target_status=PurchaseOrderStatus.PENDING.value,
            entity_refs=(_SUPPLIER, _LOCATION),
            link_items=True,
            item_attributes=("quantity", "unit_cost"),
        ),
        ActionDef(
            name="approve_order",
            flow=Flow.PURCHASE,
            transaction_type=order,
            payload_model=p.DocumentPayload,
            event_code="order_approved",
            target_status=PurchaseOrderStatus.APPROVED.value,
            mode=ActionMode.TRANSITION,
        ),
        ActionDef(
            name="register_invoice",
            flow=Flow.PURCHASE,
            transaction_type=inbound,
            payload_model=p.InvoicePayload,
            event_code="invoice_registered",
            target_status=InboundDocumentStatus.PRE_SETTLEMENT.value,
            entity_refs=(_SUPPLIER, _LOCATION),
            link_items=True,
            item_attributes=("quantity", "unit_cost"),
            reference=ReferenceRule(
                "order_external_id",
                order,
                RelationshipType.BASED_ON_ORDER,
                required_statuses=(
                    PurchaseOrderStatus.PENDING.value,
                    PurchaseOrderStatus.APPROVED.value,
                ),
                transition_to=PurchaseOrderStatus.PRE_SETTLEMENT.value,
            ),
        ),
        ActionDef(
            name="arrive_at_dc",
            flow=Flow.PURCHASE,
            transaction_type=inbound,
            payload_model=p.DocumentPayload,
            event_code="arrived_at_dc",
            target_status=InboundDocumentStatus.AWAITING_CHECK.value,
            mode=ActionMode.TRANSITION,
        ),
        ActionDef(
            name="start_check",
            flow=Flow.PURCHASE,
            transaction_type=inbound,
            payload_model=p.DocumentPayload,
            event_code="check_started",
            target_status=InboundDocumentStatus.IN_CHECK.value,
            mode=ActionMode.TRANSITION,
        ),
        ActionDef(
            name="scan_items",
            flow=Flow.PURCHASE,
            transaction_type=inbound,
            payload_model=p.CheckPayload,
            event_code="items_scanned",
            status_resolver=_check_outcome(
                InboundDocumentStatus.CHECK_OK, InboundDocumentStatus.CHECK_DISCREPANCY
            ),
            mode=ActionMode.TRANSITION,
        ),
        ActionDef(
            name="settle_receipt",
            flow=Flow.PURCHASE,
            transaction_type=inbound,
            payload_model=p.ReceiptSettlementPayload,
            event_code="receipt_settled",
            target_status=InboundDocumentStatus.SETTLED.value,
            mode=ActionMode.TRANSITION,
            movement_legs=(MovementLeg("location_external_id", 1, "DC_RECEIPT"),),
        ),
    ]


def _transfer_actions() -> List[ActionDef]:
    out = TransactionType.TRANSFER_OUT
    tin = TransactionType.TRANSFER_IN

    def step(name: str, event_code: str, transaction_type: TransactionType, status: Enum) -> ActionDef:
        return ActionDef(
            name=name,
            flow=Flow.TRANSFER,
            transaction_type=transaction_type,
            payload_model=p.DocumentPayload,
            event_code=event_code,
            target_status=status.value,
            mode=ActionMode.TRANSITION,
        )

    return [
        ActionDef(
            name="create_transfer_request",
            flow=Flow.TRANSFER,
            transaction_type=out,
            payload_model=p.TransferRequestPayload,
            event_code="transfer_requested",
            target_status=TransferOutStatus.REQUESTED.value,
            entity_refs=(_ORIGIN, _DESTINATION),
            link_items=True,
        ),
        step("create_separation_map", "separation_map_created", out,
             TransferOutStatus.SEPARATION_MAP_CREATED),
        step("queue_separation", "separation_queued", out, TransferOutStatus.AWAITING_SEPARATION),
        step("start_separation", "separation_started", out, TransferOutStatus.IN_SEPARATION),
        ActionDef(
            name="complete_separation",
            flow=Flow.TRANSFER,
            transaction_type=out,
            payload_model=p.CheckPayload,
            event_code="separation_completed",
            status_resolver=_check_outcome(
                TransferOutStatus.SEPARATION_OK, TransferOutStatus.SEPARATION_DISCREPANCY
            ),
            mode=ActionMode.TRANSITION,
        ),
        step("move_to_dock", "moved_to_dock", out, TransferOutStatus.AT_DOCK),
        ActionDef(
            name="ship_transfer",
            flow=Flow.TRANSFER,
            transaction_type=out,
            payload_model=p.ShipTransferPayload,
            event_code="transfer_shipped",
            target_status=TransferOutStatus.SHIPPED.value,
            mode=ActionMode.TRANSITION,
            movement_legs=(MovementLeg("origin_location_external_id", -1, "TRANSFER_OUT"),),
        ),
        step("invoice_transfer", "transfer_invoiced", out, TransferOutStatus.INVOICED),
        ActionDef(
            name="receive_transfer",
            flow=Flow.TRANSFER,
            transaction_type=tin,
            payload_model=p.ReceiveTransferPayload,
            event_code="transfer_received",
            target_status=TransferInStatus.AWAITING_CHECK.value,
            entity_refs=(_DESTINATION,),
            link_items=True,
            reference=ReferenceRule(
                "transfer_external_id",
                out,
                RelationshipType.RELATES_TO_DOCUMENT,
                required_statuses=(
                    TransferOutStatus.SHIPPED.value,
                    TransferOutStatus.INVOICED.value,
                ),
            ),
        ),
        step("start_store_check", "store_check_started", tin, TransferInStatus.IN_CHECK),
        ActionDef(
            name="complete_store_check",
            flow=Flow.TRANSFER,
            transaction_type=tin,
            payload_model=p.CheckPayload,
            event_code="store_check_completed",
            status_resolver=_check_outcome(
                TransferInStatus.CHECK_OK, TransferInStatus.CHECK_DISCREPANCY
            ),
            mode=ActionMode.TRANSITION,
        ),
        ActionDef(
            name="settle_store_receipt",
            flow=Flow.TRANSFER,
            transaction_type=tin,
            payload_model=p.StoreReceiptSettlementPayload,
            event_code="store_receipt_settled",
            target_status=TransferInStatus.SETTLED.value,
            mode=ActionMode.TRANSITION,
            movement_legs=(MovementLeg("destination_location_external_id", 1, "TRANSFER_IN"),),
        ),
    ]


def _returns_actions() -> List[ActionDef]:
    return [
        ActionDef(
            name="request_return",
            flow=Flow.RETURNS,
            transaction_type=TransactionType.DOCUMENT_RETURN,
            payload_model=p.ReturnRequestPayload,
            event_code="return_requested",
            target_status=ReturnStatus.AWAITING.value,
            entity_refs=(_LOCATION, _CUSTOMER),
            link_items=True,
            reference=ReferenceRule(
                "sale_external_id",
                TransactionType.DOCUMENT_SALE,
                RelationshipType.RELATES_TO_DOCUMENT,
                required_statuses=(SaleStatus.COMPLETED.value,),
            ),
        ),
        ActionDef(
            name="complete_return",
            flow=Flow.RETURNS,
            transaction_type=TransactionType.DOCUMENT_RETURN,
            payload_model=p.CompleteReturnPayload,
            event_code="return_completed",
            target_status=ReturnStatus.COMPLETED.value,
            mode=ActionMode.TRANSITION,
            required_status=(ReturnStatus.AWAITING.value,),
            movement_legs=(
                MovementLeg("location_external_id", 1, "RETURN", location_from_existing=True),
            ),
        ),
        ActionDef(
            name="transfer_between_stores",
            flow=Flow.RETURNS,
            transaction_type=TransactionType.DOCUMENT_TRANSFER_INTERNAL,
            payload_model=p.StoreTransferPayload,
            event_code="store_transfer_registered",
            target_status=InternalTransferStatus.CREATED.value,
            entity_refs=(_ORIGIN, _DESTINATION),
            link_items=True,
            movement_legs=(
                MovementLeg("origin_location_external_id", -1, "STORE_TRANSFER_OUT"),
                MovementLeg("destination_location_external_id", 1, "STORE_TRANSFER_IN"),
            ),
        ),
    ]


def _inventory_actions() -> List[ActionDef]:
    def movement(name: str, event_code: str, model, quantity_field: str, sign: int, movement_type: str):
        return ActionDef(
            name=name,
            flow=Flow.INVENTORY,
            transaction_type=TransactionType.INVENTORY_MOVEMENT,
            payload_model=model,
            event_code=event_code,
            target_status=MovementStatus.EXECUTED.value,
            entity_refs=(_PRODUCT, _LOCATION),
            direct_movement=DirectMovement(
                "product_external_id", "location_external_id", quantity_field, sign, movement_type
            ),
        )

    return [
        movement("adjust_stock", "stock_adjusted", p.StockAdjustmentPayload,
                 "quantity_delta", 1, "ADJUSTMENT"),
        movement("damage_product", "product_damaged", p.StockQuantityPayload,
                 "quantity", -1, "DAMAGE"),
        movement("expire_product", "product_expired", p.StockQuantityPayload,
                 "quantity", -1, "EXPIRY"),
        movement("quarantine_product", "product_quarantined", p.StockQuantityPayload,
                 "quantity", -1, "QUARANTINE"),
        movement("release_quarantine", "quarantine_released", p.StockQuantityPayload,
                 "quantity", 1, "QUARANTINE_RELEASE"),
    ]


def build_default_action_table() -> ActionTable:
    """Build and freeze the retail action table."""
    table = ActionTable()
    for action in (
        *_sales_actions(),
        *_purchase_actions(),
        *_transfer_actions(),
        *_returns_actions(),
        *_inventory_actions(),
    ):
        table.register(action)
    table.freeze()
    return table


def validate_against(table: ActionTable, state_machine) -> List[str]:
    """Check that every fixed target status exists for its transaction type."""
    errors = []
    for action in table:
        statuses = [action.target_status] if action.target_status else []
        if action.reference and action.reference.transition_to:
            ref = action.reference
            if not state_machine.is_valid_status(ref.transaction_type, ref.transition_to):
                errors.append(f"{action.name}: unknown reference status '{ref.transition_to}'")
        for status in [*statuses, *action.required_status]:
            if not state_machine.is_valid_status(action.transaction_type, status_value(status)):
                errors.append(f"{action.name}: unknown status '{status}'")
    return errors
