"""
Core type definitions for the entity-relationship-transaction graph.

This module defines the vocabulary and record types of the graph:
- EntityType / TransactionType / RelationshipType: node and edge kinds
- One status enum per transaction type (statuses are scoped to their type)
- BusinessEntity, Relationship, BusinessTransaction, Snapshot, AuditEvent:
  records as read back from the backing store

Invariants:
    - Enum values are the stored tokens; never rename a value in place
    - Statuses are opaque per transaction type; two types may share a token
      with unrelated meaning (e.g. "completed")
    - Timestamps are Unix milliseconds
    - state_history entries are never modified once written

How to change safely:
    - Add new enum members at the end
    - Register new statuses in the state machine before freeze
    - Keep from_row() tolerant of rows written by older versions
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type


class EntityType(Enum):
    """Kinds of real-world referents."""

    PRODUCT = "PRODUCT"
    SUPPLIER = "SUPPLIER"
    LOCATION = "LOCATION"
    CUSTOMER = "CUSTOMER"


class TransactionType(Enum):
    """Kinds of documents/events with an enforced lifecycle."""

    ORDER_PURCHASE = "ORDER_PURCHASE"
    DOCUMENT_SUPPLIER_IN = "DOCUMENT_SUPPLIER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    DOCUMENT_SALE = "DOCUMENT_SALE"
    DOCUMENT_RETURN = "DOCUMENT_RETURN"
    INVENTORY_MOVEMENT = "INVENTORY_MOVEMENT"
    DOCUMENT_TRANSFER_INTERNAL = "DOCUMENT_TRANSFER_INTERNAL"
    PAYMENT = "PAYMENT"
    FISCAL_DOCUMENT = "FISCAL_DOCUMENT"


class RelationshipType(Enum):
    """Directed edge kinds between transactions and entities."""

    CONTAINS_ITEM = "CONTAINS_ITEM"
    BASED_ON_ORDER = "BASED_ON_ORDER"
    AFFECTS_PRODUCT = "AFFECTS_PRODUCT"
    AT_LOCATION = "AT_LOCATION"
    CAUSED_BY_DOCUMENT = "CAUSED_BY_DOCUMENT"
    FROM_SUPPLIER = "FROM_SUPPLIER"
    TO_CUSTOMER = "TO_CUSTOMER"
    RELATES_TO_DOCUMENT = "RELATES_TO_DOCUMENT"
    ORIGINATES_FROM = "ORIGINATES_FROM"
    DESTINED_TO = "DESTINED_TO"


class SnapshotType(Enum):
    """Kinds of materialized aggregates."""

    INVENTORY = "INVENTORY"


# --- Per-type status vocabularies ---


class PurchaseOrderStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PRE_SETTLEMENT = "pre_settlement"


class InboundDocumentStatus(Enum):
    PRE_SETTLEMENT = "pre_settlement"
    AWAITING_CHECK = "awaiting_check"
    IN_CHECK = "in_check"
    CHECK_OK = "check_ok"
    CHECK_DISCREPANCY = "check_discrepancy"
    SETTLED = "settled"


class TransferOutStatus(Enum):
    REQUESTED = "requested"
    SEPARATION_MAP_CREATED = "separation_map_created"
    AWAITING_SEPARATION = "awaiting_separation"
    IN_SEPARATION = "in_separation"
    SEPARATION_OK = "separation_ok"
    SEPARATION_DISCREPANCY = "separation_discrepancy"
    AT_DOCK = "at_dock"
    SHIPPED = "shipped"
    INVOICED = "invoiced"


class TransferInStatus(Enum):
    AWAITING_CHECK = "awaiting_check"
    IN_CHECK = "in_check"
    CHECK_OK = "check_ok"
    CHECK_DISCREPANCY = "check_discrepancy"
    SETTLED = "settled"


class SaleStatus(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReturnStatus(Enum):
    AWAITING = "awaiting"
    COMPLETED = "completed"
    STORE_TRANSFER = "store_transfer"


class MovementStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class InternalTransferStatus(Enum):
    CREATED = "created"


class PaymentStatus(Enum):
    CONFIRMED = "confirmed"


class FiscalDocumentStatus(Enum):
    ISSUED = "issued"


STATUS_ENUMS: Dict[TransactionType, Type[Enum]] = {
    TransactionType.ORDER_PURCHASE: PurchaseOrderStatus,
    TransactionType.DOCUMENT_SUPPLIER_IN: InboundDocumentStatus,
    TransactionType.TRANSFER_OUT: TransferOutStatus,
    TransactionType.TRANSFER_IN: TransferInStatus,
    TransactionType.DOCUMENT_SALE: SaleStatus,
    TransactionType.DOCUMENT_RETURN: ReturnStatus,
    TransactionType.INVENTORY_MOVEMENT: MovementStatus,
    TransactionType.DOCUMENT_TRANSFER_INTERNAL: InternalTransferStatus,
    TransactionType.PAYMENT: PaymentStatus,
    TransactionType.FISCAL_DOCUMENT: FiscalDocumentStatus,
}


def status_value(status: Any) -> str:
    """Normalize a status enum member or raw token to its stored token."""
    if isinstance(status, Enum):
        return status.value
    return str(status)


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


# --- Records ---


@dataclass
class BusinessEntity:
    """A typed node representing a real-world referent.

    Attributes:
        id: Entity identifier (UUID)
        tenant_id: Tenant identifier
        entity_type: Entity kind
        external_id: Identifier in the tenant's source system
        attributes: Free-form attributes (name, cost_price, ...)
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
        deleted_at: Soft-delete timestamp, None while active
    """

    id: str
    tenant_id: str
    entity_type: EntityType
    external_id: Optional[str]
    attributes: Dict[str, Any]
    created_at: int
    updated_at: int
    deleted_at: Optional[int] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> BusinessEntity:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            entity_type=EntityType(row["entity_type"]),
            external_id=row.get("external_id"),
            attributes=dict(row.get("attributes") or {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type.value,
            "external_id": self.external_id,
            "attributes": self.attributes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
        }


@dataclass
class Relationship:
    """A directed, typed, immutable edge.

    Attributes:
        id: Relationship identifier (UUID)
        tenant_id: Tenant identifier
        relationship_type: Edge kind
        source_id: Source node ID (usually a transaction)
        target_id: Target node ID (entity or transaction)
        attributes: Edge attributes (quantity, unit_price, ...)
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    tenant_id: str
    relationship_type: RelationshipType
    source_id: str
    target_id: str
    attributes: Dict[str, Any]
    created_at: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Relationship:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            relationship_type=RelationshipType(row["relationship_type"]),
            source_id=row["source_id"],
            target_id=row["target_id"],
            attributes=dict(row.get("attributes") or {}),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "relationship_type": self.relationship_type.value,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "attributes": self.attributes,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of a transaction's state_history."""

    from_status: Optional[str]
    to_status: str
    transitioned_at: int
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status,
            "to": self.to_status,
            "transitioned_at": self.transitioned_at,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TransitionRecord:
        return cls(
            from_status=data.get("from"),
            to_status=data["to"],
            transitioned_at=data["transitioned_at"],
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class BusinessTransaction:
    """A typed document/event node with a lifecycle status.

    Attributes:
        id: Transaction identifier (UUID)
        tenant_id: Tenant identifier
        transaction_type: Document kind
        external_id: Identifier in the tenant's source system
        status: Current status token, scoped to transaction_type
        attributes: Attributes including the ordered state_history list
        version: Row version, incremented by every update
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    id: str
    tenant_id: str
    transaction_type: TransactionType
    external_id: Optional[str]
    status: str
    attributes: Dict[str, Any]
    version: int
    created_at: int
    updated_at: int

    @property
    def state_history(self) -> List[Dict[str, Any]]:
        return list(self.attributes.get("state_history") or [])

    @property
    def occurred_at(self) -> int:
        """Business timestamp of the document (falls back to created_at)."""
        value = self.attributes.get("occurred_at")
        if isinstance(value, (int, float)):
            return int(value)
        return self.created_at

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> BusinessTransaction:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            transaction_type=TransactionType(row["transaction_type"]),
            external_id=row.get("external_id"),
            status=row["status"],
            attributes=dict(row.get("attributes") or {}),
            version=row.get("version", 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "transaction_type": self.transaction_type.value,
            "external_id": self.external_id,
            "status": self.status,
            "attributes": self.attributes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Snapshot:
    """A keyed, incrementally maintained aggregate."""

    tenant_id: str
    snapshot_type: SnapshotType
    snapshot_key: str
    value: Dict[str, Any]
    snapshot_date: str
    version: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Snapshot:
        return cls(
            tenant_id=row["tenant_id"],
            snapshot_type=SnapshotType(row["snapshot_type"]),
            snapshot_key=row["snapshot_key"],
            value=dict(row.get("value") or {}),
            snapshot_date=row["snapshot_date"],
            version=row.get("version", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "snapshot_type": self.snapshot_type.value,
            "snapshot_key": self.snapshot_key,
            "value": self.value,
            "date": self.snapshot_date,
        }


@dataclass
class AuditEvent:
    """A business event emitted once per processed action."""

    id: str
    tenant_id: str
    entity_type: str
    entity_id: str
    event_code: str
    event_data: Dict[str, Any]
    created_at: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> AuditEvent:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            event_code=row["event_code"],
            event_data=dict(row.get("event_data") or {}),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_code": self.event_code,
            "event_data": self.event_data,
            "created_at": self.created_at,
        }
