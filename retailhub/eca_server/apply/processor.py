"""
Action processor for the ECA server.

The ActionProcessor applies one webhook action to the business graph.
Every flow goes through the same sequence, parameterized by the action's
ActionDef:

    1. validate the payload against the action's model, evaluate ECA rules
    2. check the referenced transaction (exists, in a required status)
    3. resolve referenced entities and line-item products (get-or-create)
    4. create the transaction, or transition it when it already exists
    5. link the transaction to entities, items and the reference
    6. record one inventory movement per item and leg
    7. emit the audit event
    8. apply stock deltas to the snapshots

Invariants:
    - Nothing is written before validation, rules and precondition
      checks pass
    - A transaction with a given external id is created at most once;
      a lost create race falls through to the transition path
    - Every movement appends exactly one snapshot delta
    - Failures propagate; partially applied actions are not undone, and
      callers retry idempotently by external id

How to change safely:
    - Add behavior to ActionDef and the action table, not per-action
      branches here
    - Keep the step order; read endpoints rely on the audit event being
      written once the transaction and its edges exist
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import (
    NotFoundError,
    PreconditionError,
    UnsupportedEventError,
    ValidationError,
)
from ..schema.actions import ActionDef, ActionMode, ActionTable, Flow, build_default_action_table
from ..schema.state_machine import StateMachine, get_state_machine
from ..schema.types import (
    AuditEvent,
    BusinessEntity,
    BusinessTransaction,
    EntityType,
    MovementStatus,
    RelationshipType,
    TransactionType,
    now_ms,
)
from ..store.base import StoreBackend
from .entity_store import EntityStore
from .relationship_store import RelationshipStore
from .rules import RuleSet, default_rules
from .snapshot_updater import SnapshotUpdater, stock_key
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

EVENTS_TABLE = "business_events"

# Keys never copied from the payload into a transition's attributes
_IMMUTABLE_KEYS = ("external_id", "occurred_at")


@dataclass
class ActionResult:
    """Result of applying an action.

    Attributes:
        action: Action name
        transaction_id: Created or transitioned transaction
        transaction_type: Type of that transaction
        entity_ids: Entities touched, in resolution order
        relationship_ids: Relationships created
        movement_ids: Inventory movement transactions created
        state_transition: {from, to} when an existing transaction moved
        message: Human readable summary
    """

    action: str
    transaction_id: str
    transaction_type: str
    entity_ids: List[str] = field(default_factory=list)
    relationship_ids: List[str] = field(default_factory=list)
    movement_ids: List[str] = field(default_factory=list)
    state_transition: Optional[Dict[str, str]] = None
    message: str = ""

    @property
    def records_processed(self) -> int:
        return 1 + len(self.entity_ids) + len(self.relationship_ids)

    @property
    def records_successful(self) -> int:
        return self.records_processed

    @property
    def records_failed(self) -> int:
        return 0

    def summary(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "records_processed": self.records_processed,
            "records_successful": self.records_successful,
            "records_failed": self.records_failed,
        }


@dataclass
class _Movement:
    product: BusinessEntity
    location: BusinessEntity
    quantity_delta: float
    movement_type: str
    reference_id: str


def _to_ms(value: Optional[datetime]) -> int:
    if value is None:
        return now_ms()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _validation_errors(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "attributes",
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]


class ActionProcessor:
    """Applies webhook actions through the stores.

    Example:
        >>> processor = ActionProcessor(store)
        >>> result = await processor.process("sales", "register_sale", "t1", {...})
        >>> result.transaction_id
        '5f0c...'
    """

    def __init__(
        self,
        store: StoreBackend,
        action_table: Optional[ActionTable] = None,
        state_machine: Optional[StateMachine] = None,
        rules: Optional[RuleSet] = None,
        snapshot_max_attempts: int = 5,
    ) -> None:
        self.store = store
        self.action_table = action_table or build_default_action_table()
        self.state_machine = state_machine or get_state_machine()
        self.rules = rules if rules is not None else RuleSet(default_rules())
        self.entities = EntityStore(store)
        self.relationships = RelationshipStore(store)
        self.transactions = TransactionStore(store, self.state_machine)
        self.snapshots = SnapshotUpdater(store, max_attempts=snapshot_max_attempts)

    def get_action(self, flow: Union[Flow, str], action: str) -> ActionDef:
        """Look up an action of a flow.

        Raises:
            UnsupportedEventError: If the flow or action is unknown
        """
        try:
            flow = flow if isinstance(flow, Flow) else Flow(flow)
        except ValueError:
            raise UnsupportedEventError(str(flow), action, [])
        action_def = self.action_table.get(flow, action)
        if action_def is None:
            raise UnsupportedEventError(flow.value, action, self.action_table.actions_for(flow))
        return action_def

    async def process(
        self,
        flow: Union[Flow, str],
        action: str,
        tenant_id: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        """Apply one action.

        Args:
            flow: Flow the action belongs to
            action: Action name
            tenant_id: Tenant identifier
            payload: The action's attributes object
            metadata: Caller metadata, recorded on the audit event

        Returns:
            ActionResult describing what was written

        Raises:
            UnsupportedEventError: Unknown flow or action
            ValidationError: Payload does not satisfy the action's model
            PreconditionError: ECA rule violated, or a transaction is in
                the wrong status for the action
            NotFoundError: Referenced transaction does not exist
            TransitionError: State machine rejected the status change
            ExternalStoreError: Backing store failure
        """
        action_def = self.get_action(flow, action)
        model = self._validate(action_def, payload)
        attributes = model.model_dump(mode="json", exclude_none=True)
        self._check_rules(action_def, attributes)
        attributes["occurred_at"] = _to_ms(getattr(model, "occurred_at", None))

        reference = await self._check_reference(tenant_id, action_def, model)
        target_status = action_def.resolve_status(model)
        external_id = getattr(model, "external_id", None)
        existing = await self._check_existing(tenant_id, action_def, external_id, target_status)
        items = list(getattr(model, "items", None) or [])
        leg_location_ids = self._leg_location_ids(action_def, model, existing, items)

        # Entities
        entity_ids: List[str] = []
        linked: List[Tuple[RelationshipType, BusinessEntity]] = []
        by_field: Dict[str, BusinessEntity] = {}
        for ref in action_def.entity_refs:
            ext = getattr(model, ref.field, None)
            if not ext:
                continue
            seed = {
                attr: getattr(model, name)
                for name, attr in ref.seed_fields
                if getattr(model, name, None) is not None
            }
            entity = await self.entities.resolve(tenant_id, ref.entity_type, ext, seed)
            entity_ids.append(entity.id)
            linked.append((ref.relationship_type, entity))
            by_field[ref.field] = entity

        products: List[BusinessEntity] = []
        if items and (action_def.link_items or action_def.movement_legs):
            for item in items:
                product = await self.entities.resolve(
                    tenant_id,
                    EntityType.PRODUCT,
                    item.product_external_id,
                    self._product_seed(item),
                )
                entity_ids.append(product.id)
                products.append(product)

        leg_locations: Dict[str, BusinessEntity] = {}
        if products:
            for location_field, ext in leg_location_ids.items():
                location = by_field.get(location_field)
                if location is None:
                    location = await self.entities.resolve(tenant_id, EntityType.LOCATION, ext)
                    entity_ids.append(location.id)
                    by_field[location_field] = location
                leg_locations[location_field] = location

        # Transaction
        movements: List[_Movement] = []
        direct = action_def.direct_movement
        if direct is not None:
            delta = direct.sign * getattr(model, direct.quantity_field)
            attributes["qty_change"] = delta
            attributes["movement_type"] = direct.movement_type

        state_transition = None
        if existing is None:
            transaction, created = await self.transactions.create(
                tenant_id, action_def.transaction_type, target_status, external_id, attributes
            )
            if not created:
                logger.info(
                    "Lost create race, transitioning existing transaction",
                    extra={"tenant_id": tenant_id, "action": action, "external_id": external_id},
                )
                transaction, state_transition = await self._transition(
                    tenant_id, transaction, target_status, attributes
                )
        else:
            transaction, state_transition = await self._transition(
                tenant_id, existing, target_status, attributes
            )

        if direct is not None:
            movements.append(
                _Movement(
                    product=by_field[direct.product_field],
                    location=by_field[direct.location_field],
                    quantity_delta=attributes["qty_change"],
                    movement_type=direct.movement_type,
                    reference_id=transaction.id,
                )
            )

        # Relationships
        relationship_ids: List[str] = []
        for relationship_type, entity in linked:
            relationship = await self.relationships.create(
                tenant_id, relationship_type, transaction.id, entity.id
            )
            relationship_ids.append(relationship.id)

        if action_def.link_items:
            for item, product in zip(items, products):
                relationship = await self.relationships.create(
                    tenant_id,
                    RelationshipType.CONTAINS_ITEM,
                    transaction.id,
                    product.id,
                    self._item_attributes(action_def, item),
                )
                relationship_ids.append(relationship.id)

        if reference is not None:
            rule = action_def.reference
            relationship = await self.relationships.create(
                tenant_id,
                rule.relationship_type,
                transaction.id,
                reference.id,
                {"external_id": reference.external_id},
            )
            relationship_ids.append(relationship.id)
            if rule.transition_to and reference.status != rule.transition_to:
                await self.transactions.transition(
                    tenant_id, reference, rule.transition_to, {"caused_by": transaction.id}
                )

        # Per-item movements
        movement_ids: List[str] = []
        for leg in action_def.movement_legs:
            location = leg_locations.get(leg.location_field)
            if location is None:
                continue
            for item, product in zip(items, products):
                movement, edge_ids = await self._record_movement(
                    tenant_id,
                    transaction,
                    product,
                    location,
                    leg.sign * item.quantity,
                    leg.movement_type,
                    attributes["occurred_at"],
                )
                movement_ids.append(movement.id)
                relationship_ids.extend(edge_ids)
                movements.append(
                    _Movement(product, location, leg.sign * item.quantity, leg.movement_type, movement.id)
                )

        result = ActionResult(
            action=action_def.name,
            transaction_id=transaction.id,
            transaction_type=transaction.transaction_type.value,
            entity_ids=entity_ids,
            relationship_ids=relationship_ids,
            movement_ids=movement_ids,
            state_transition=state_transition,
        )
        result.message = self._message(action_def, transaction, result)

        await self._emit_event(tenant_id, action_def, transaction, result, metadata)

        for movement in movements:
            await self.snapshots.apply_delta(
                tenant_id,
                stock_key(movement.product.id, movement.location.id),
                movement.quantity_delta,
                movement.movement_type,
                movement.reference_id,
                context={
                    "product_id": movement.product.id,
                    "product_external_id": movement.product.external_id,
                    "location_id": movement.location.id,
                    "location_external_id": movement.location.external_id,
                },
            )

        logger.info(
            "Action processed",
            extra={
                "tenant_id": tenant_id,
                "flow": action_def.flow.value,
                "action": action_def.name,
                "transaction_id": transaction.id,
                "status": transaction.status,
                "entities": len(entity_ids),
                "relationships": len(relationship_ids),
                "movements": len(movements),
            },
        )
        return result

    # --- Steps ---

    def _validate(self, action_def: ActionDef, payload: Any) -> BaseModel:
        if not isinstance(payload, dict):
            raise ValidationError("attributes must be an object", field_name="attributes")
        try:
            return action_def.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            errors = _validation_errors(e)
            first = errors[0]
            raise ValidationError(
                f"Invalid attributes for '{action_def.name}': {first['field']}: {first['message']}",
                field_name=first["field"],
                errors=errors,
            ) from None

    @staticmethod
    def _leg_location_ids(
        action_def: ActionDef,
        model: BaseModel,
        existing: Optional[BusinessTransaction],
        items: List[Any],
    ) -> Dict[str, str]:
        """External ids of the locations the movement legs move stock at.

        A leg marked location_from_existing falls back to the location
        recorded on the transaction being transitioned.

        Raises:
            ValidationError: Items are given but a leg has no location
        """
        locations: Dict[str, str] = {}
        if not items:
            return locations
        for leg in action_def.movement_legs:
            ext = getattr(model, leg.location_field, None)
            if not ext and leg.location_from_existing and existing is not None:
                ext = existing.attributes.get(leg.location_field)
            if not ext:
                raise ValidationError(
                    f"{leg.location_field} is required when items are given",
                    field_name=leg.location_field,
                )
            locations[leg.location_field] = ext
        return locations

    def _check_rules(self, action_def: ActionDef, attributes: Dict[str, Any]) -> None:
        violation = self.rules.evaluate(action_def.name, attributes)
        if violation is None:
            return
        condition = violation.condition
        expected = "" if condition.value is None else f" {condition.value!r}"
        raise PreconditionError(
            f"Rule '{violation.rule.name}' not satisfied: "
            f"{condition.field} {condition.operator}{expected}",
            details={
                "rule_id": violation.rule.id,
                "field": condition.field,
                "operator": condition.operator,
            },
        )

    async def _check_reference(
        self, tenant_id: str, action_def: ActionDef, model: BaseModel
    ) -> Optional[BusinessTransaction]:
        rule = action_def.reference
        if rule is None:
            return None
        external_id = getattr(model, rule.field)
        reference = await self.transactions.get_by_external_id(
            tenant_id, rule.transaction_type, external_id
        )
        if reference is None:
            raise NotFoundError(
                f"{rule.transaction_type.value} '{external_id}' not found",
                resource_type=rule.transaction_type.value,
                resource_id=external_id,
            )
        if rule.required_statuses and reference.status not in rule.required_statuses:
            raise PreconditionError(
                f"{rule.transaction_type.value} '{external_id}' is '{reference.status}'; "
                f"'{action_def.name}' requires {' or '.join(rule.required_statuses)}",
                details={
                    "transaction_id": reference.id,
                    "current_status": reference.status,
                    "required_status": list(rule.required_statuses),
                },
            )
        return reference

    async def _check_existing(
        self,
        tenant_id: str,
        action_def: ActionDef,
        external_id: Optional[str],
        target_status: str,
    ) -> Optional[BusinessTransaction]:
        existing = None
        if external_id:
            existing = await self.transactions.get_by_external_id(
                tenant_id, action_def.transaction_type, external_id
            )

        if action_def.mode is ActionMode.TRANSITION:
            if existing is None:
                raise NotFoundError(
                    f"{action_def.transaction_type.value} '{external_id}' not found",
                    resource_type=action_def.transaction_type.value,
                    resource_id=external_id,
                )
            if action_def.required_status and existing.status not in action_def.required_status:
                raise PreconditionError(
                    f"{action_def.transaction_type.value} '{external_id}' is '{existing.status}'; "
                    f"'{action_def.name}' requires {' or '.join(action_def.required_status)}",
                    details={
                        "transaction_id": existing.id,
                        "current_status": existing.status,
                        "required_status": list(action_def.required_status),
                    },
                )

        if existing is not None:
            self.state_machine.ensure_transition(
                existing.transaction_type, existing.status, target_status
            )
        return existing

    async def _transition(
        self,
        tenant_id: str,
        transaction: BusinessTransaction,
        target_status: str,
        attributes: Dict[str, Any],
    ) -> Tuple[BusinessTransaction, Dict[str, str]]:
        changes = {k: v for k, v in attributes.items() if k not in _IMMUTABLE_KEYS}
        updated, record = await self.transactions.transition(
            tenant_id, transaction, target_status, changes
        )
        return updated, {"from": record.from_status, "to": record.to_status}

    async def _record_movement(
        self,
        tenant_id: str,
        cause: BusinessTransaction,
        product: BusinessEntity,
        location: BusinessEntity,
        quantity_delta: float,
        movement_type: str,
        occurred_at: int,
    ) -> Tuple[BusinessTransaction, List[str]]:
        """Create an executed INVENTORY_MOVEMENT linked to product, location and cause."""
        movement, _ = await self.transactions.create(
            tenant_id,
            TransactionType.INVENTORY_MOVEMENT,
            MovementStatus.EXECUTED,
            attributes={
                "qty_change": quantity_delta,
                "movement_type": movement_type,
                "product_external_id": product.external_id,
                "location_external_id": location.external_id,
                "reference_transaction_id": cause.id,
                "reference_external_id": cause.external_id,
                "occurred_at": occurred_at,
            },
        )
        edge_ids = []
        for relationship_type, target_id in (
            (RelationshipType.AFFECTS_PRODUCT, product.id),
            (RelationshipType.AT_LOCATION, location.id),
            (RelationshipType.CAUSED_BY_DOCUMENT, cause.id),
        ):
            relationship = await self.relationships.create(
                tenant_id, relationship_type, movement.id, target_id
            )
            edge_ids.append(relationship.id)
        return movement, edge_ids

    async def _emit_event(
        self,
        tenant_id: str,
        action_def: ActionDef,
        transaction: BusinessTransaction,
        result: ActionResult,
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        await self.store.insert_row(
            EVENTS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "entity_type": "TRANSACTION",
                "entity_id": transaction.id,
                "event_code": action_def.event_code,
                "event_data": {
                    "flow": action_def.flow.value,
                    "action": action_def.name,
                    "transaction_type": transaction.transaction_type.value,
                    "external_id": transaction.external_id,
                    "status": transaction.status,
                    "state_transition": result.state_transition,
                    "entity_ids": result.entity_ids,
                    "relationship_ids": result.relationship_ids,
                    "movement_ids": result.movement_ids,
                    "metadata": metadata or {},
                },
                "created_at": now_ms(),
            },
        )

    @staticmethod
    def _product_seed(item: Any) -> Dict[str, Any]:
        seed = {}
        if getattr(item, "product_name", None):
            seed["name"] = item.product_name
        if getattr(item, "cost_price", None) is not None:
            seed["cost_price"] = item.cost_price
        return seed

    @staticmethod
    def _item_attributes(action_def: ActionDef, item: Any) -> Dict[str, Any]:
        attrs: Dict[str, Any] = {"product_external_id": item.product_external_id}
        for name in action_def.item_attributes:
            value = getattr(item, name, None)
            if value is not None:
                attrs[name] = value
        return attrs

    @staticmethod
    def _message(
        action_def: ActionDef, transaction: BusinessTransaction, result: ActionResult
    ) -> str:
        label = transaction.external_id or transaction.id
        if result.state_transition:
            return (
                f"{action_def.name}: {transaction.transaction_type.value} {label} "
                f"{result.state_transition['from']} -> {result.state_transition['to']}"
            )
        return (
            f"{action_def.name}: {transaction.transaction_type.value} {label} "
            f"created as {transaction.status}"
        )

    # --- Reads ---

    async def list_events(
        self,
        tenant_id: str,
        entity_id: Optional[str] = None,
        event_code: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Audit events, newest first."""
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if entity_id is not None:
            filters["entity_id"] = entity_id
        if event_code is not None:
            filters["event_code"] = event_code
        rows = await self.store.query_rows(
            EVENTS_TABLE, filters, order=["-created_at"], limit=limit, offset=offset
        )
        return [AuditEvent.from_row(row) for row in rows]

    async def count_events(
        self,
        tenant_id: str,
        entity_id: Optional[str] = None,
        event_code: Optional[str] = None,
    ) -> int:
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if entity_id is not None:
            filters["entity_id"] = entity_id
        if event_code is not None:
            filters["event_code"] = event_code
        return await self.store.count_rows(EVENTS_TABLE, filters)
