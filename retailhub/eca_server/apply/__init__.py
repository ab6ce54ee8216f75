"""
Apply module for the ECA server: the write path of the business graph.

This module handles:
- Entity resolution (get-or-create by external id)
- Append-only relationships
- State-machine governed transactions
- Incremental stock snapshots
- ECA rules evaluated before each action
- The generic action processor that ties them together

Invariants:
    - Create-if-absent goes through the store's insert-if-absent primitive
    - Status changes go through TransactionStore.transition() only
    - Snapshot deltas are applied with a version-guarded compare-and-set

How to change safely:
    - New actions are declared in schema/actions.py, not coded here
    - Test concurrent paths against both store implementations
"""

from .entity_store import EntityStore
from .processor import ActionProcessor, ActionResult
from .relationship_store import RelationshipStore
from .rules import EcaRule, RuleCondition, RuleDefinitionError, RuleSet, default_rules
from .snapshot_updater import SnapshotUpdater, stock_key
from .transaction_store import TransactionStore

__all__ = [
    "EntityStore",
    "RelationshipStore",
    "TransactionStore",
    "SnapshotUpdater",
    "stock_key",
    "EcaRule",
    "RuleCondition",
    "RuleDefinitionError",
    "RuleSet",
    "default_rules",
    "ActionProcessor",
    "ActionResult",
]
