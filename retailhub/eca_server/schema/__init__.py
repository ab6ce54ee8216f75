"""
Schema module for the ECA server.

This module provides the vocabulary of the business graph, including:
- Node, edge and status types (EntityType, TransactionType, ...)
- The per-type state machine governing transaction status
- Per-flow action tables and their payload models

Invariants:
    - Stored enum tokens never change once released
    - The state machine and action table are frozen before serving
    - Every action's target status exists for its transaction type

How to change safely:
    - Add statuses and transitions in build_default_state_machine()
    - Add actions in build_default_action_table()
    - Never rename an action or status in place
"""

from .actions import (
    ActionDef,
    ActionMode,
    ActionTable,
    DirectMovement,
    EntityRef,
    Flow,
    MovementLeg,
    ReferenceRule,
    build_default_action_table,
)
from .state_machine import (
    StateMachine,
    build_default_state_machine,
    get_state_machine,
    reset_state_machine,
)
from .types import (
    AuditEvent,
    BusinessEntity,
    BusinessTransaction,
    EntityType,
    Relationship,
    RelationshipType,
    Snapshot,
    SnapshotType,
    TransactionType,
    TransitionRecord,
)

__all__ = [
    # Types
    "EntityType",
    "TransactionType",
    "RelationshipType",
    "SnapshotType",
    "BusinessEntity",
    "BusinessTransaction",
    "Relationship",
    "Snapshot",
    "AuditEvent",
    "TransitionRecord",
    # State machine
    "StateMachine",
    "build_default_state_machine",
    "get_state_machine",
    "reset_state_machine",
    # Actions
    "Flow",
    "ActionMode",
    "ActionDef",
    "ActionTable",
    "EntityRef",
    "MovementLeg",
    "DirectMovement",
    "ReferenceRule",
    "build_default_action_table",
]
