"""
Per-type state machine for business transactions.

The StateMachine is the single authority on transaction lifecycles.
It provides:
- Registration of a transition table per transaction type
- Initial statuses a transaction may be created at
- Lookup of allowed transitions (can_transition / next_states)
- Freeze mechanism with an exhaustiveness check and fingerprint

Invariants:
    - Tables are mutable during startup, frozen before serving
    - Every TransactionType has exactly one registered table
    - Every status in a table belongs to the type's status enum
    - A status with no outgoing transitions is terminal for its type

How to change safely:
    - Add transitions in build_default_state_machine() only
    - Never remove a transition that stored transactions may rely on
      without migrating those transactions
    - The fingerprint changes with every table change; log and compare it

Example:
    >>> machine = build_default_state_machine()
    >>> machine.freeze()
    >>> machine.can_transition(TransactionType.DOCUMENT_RETURN, "awaiting", "completed")
    True
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Type

from ..errors import TransitionError
from .types import (
    STATUS_ENUMS,
    FiscalDocumentStatus,
    InboundDocumentStatus,
    InternalTransferStatus,
    MovementStatus,
    PaymentStatus,
    PurchaseOrderStatus,
    ReturnStatus,
    SaleStatus,
    TransactionType,
    TransferInStatus,
    TransferOutStatus,
    status_value,
)

logger = logging.getLogger(__name__)

_global_machine: Optional[StateMachine] = None
_machine_lock = threading.Lock()


class StateMachineFrozenError(Exception):
    """Raised when attempting to modify a frozen state machine."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when a transaction type is registered twice."""
    pass


class IncompleteStateMachineError(Exception):
    """Raised on freeze when the tables are not exhaustive or consistent."""
    pass


class StateMachine:
    """Transition tables keyed by transaction type.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the tables are frozen (immutable)
        fingerprint: SHA-256 hash of the tables (computed on freeze)
    """

    def __init__(self) -> None:
        self._tables: Dict[TransactionType, Dict[str, FrozenSet[str]]] = {}
        self._initial: Dict[TransactionType, FrozenSet[str]] = {}
        self._status_enums: Dict[TransactionType, Type[Enum]] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    def register(
        self,
        transaction_type: TransactionType,
        transitions: Mapping[Enum, Iterable[Enum]],
        initial: Iterable[Enum],
    ) -> None:
        """Register the transition table of one transaction type.

        Args:
            transaction_type: Type the table applies to
            transitions: Mapping of from-status to allowed to-statuses
            initial: Statuses a new transaction of this type may start at

        Raises:
            StateMachineFrozenError: If the machine is frozen
            DuplicateRegistrationError: If the type is already registered
        """
        with self._lock:
            if self._frozen:
                raise StateMachineFrozenError(
                    f"Cannot register '{transaction_type.value}': state machine is frozen"
                )
            if transaction_type in self._tables:
                raise DuplicateRegistrationError(
                    f"Transaction type '{transaction_type.value}' already registered"
                )

            self._tables[transaction_type] = {
                status_value(src): frozenset(status_value(dst) for dst in dsts)
                for src, dsts in transitions.items()
            }
            self._initial[transaction_type] = frozenset(status_value(s) for s in initial)
            self._status_enums[transaction_type] = STATUS_ENUMS[transaction_type]
            logger.debug(
                f"Registered transitions for {transaction_type.value} "
                f"({len(self._tables[transaction_type])} source statuses)"
            )

    def freeze(self) -> str:
        """Validate exhaustiveness, freeze the tables and compute fingerprint.

        Returns:
            Fingerprint string in format 'sha256:<hash>'

        Raises:
            StateMachineFrozenError: If already frozen
            IncompleteStateMachineError: If a type is missing or a table
                references a status outside its type's vocabulary
        """
        with self._lock:
            if self._frozen:
                raise StateMachineFrozenError("State machine is already frozen")

            errors = self.validate_all()
            if errors:
                raise IncompleteStateMachineError("; ".join(errors))

            canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
            self._fingerprint = f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"
            self._frozen = True
            logger.info(
                f"State machine frozen with {len(self._tables)} transaction types, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def validate_all(self) -> List[str]:
        """Check the tables for exhaustiveness and vocabulary consistency.

        Returns:
            List of problems (empty if valid)
        """
        errors = []
        for transaction_type in TransactionType:
            if transaction_type not in self._tables:
                errors.append(f"No transition table for {transaction_type.value}")
                continue

            vocabulary = {member.value for member in self._status_enums[transaction_type]}
            table = self._tables[transaction_type]
            for src, dsts in table.items():
                for status in (src, *dsts):
                    if status not in vocabulary:
                        errors.append(
                            f"{transaction_type.value}: unknown status '{status}'"
                        )
            if not self._initial[transaction_type]:
                errors.append(f"{transaction_type.value}: no initial status")
            for status in self._initial[transaction_type]:
                if status not in vocabulary:
                    errors.append(
                        f"{transaction_type.value}: unknown initial status '{status}'"
                    )
        return errors

    def can_transition(self, transaction_type: TransactionType, from_status, to_status) -> bool:
        """Whether from_status -> to_status is allowed for the type."""
        table = self._tables.get(transaction_type, {})
        return status_value(to_status) in table.get(status_value(from_status), frozenset())

    def next_states(self, transaction_type: TransactionType, from_status) -> List[str]:
        """Allowed target statuses from a status, sorted."""
        table = self._tables.get(transaction_type, {})
        return sorted(table.get(status_value(from_status), frozenset()))

    def is_terminal(self, transaction_type: TransactionType, status) -> bool:
        return not self.next_states(transaction_type, status)

    def is_valid_status(self, transaction_type: TransactionType, status) -> bool:
        enum_cls = self._status_enums.get(transaction_type)
        if enum_cls is None:
            return False
        return status_value(status) in {member.value for member in enum_cls}

    def is_valid_initial(self, transaction_type: TransactionType, status) -> bool:
        return status_value(status) in self._initial.get(transaction_type, frozenset())

    def ensure_transition(self, transaction_type: TransactionType, from_status, to_status) -> None:
        """Raise TransitionError unless from_status -> to_status is allowed."""
        if not self.can_transition(transaction_type, from_status, to_status):
            src = status_value(from_status)
            dst = status_value(to_status)
            allowed = self.next_states(transaction_type, src)
            raise TransitionError(
                f"Invalid transition for {transaction_type.value}: {src} -> {dst} "
                f"(allowed: {', '.join(allowed) or 'none'})",
                transaction_type=transaction_type.value,
                from_status=src,
                to_status=dst,
            )

    def to_dict(self) -> dict:
        """Canonical representation, sorted for determinism."""
        return {
            transaction_type.value: {
                "initial": sorted(self._initial[transaction_type]),
                "transitions": {
                    src: sorted(dsts)
                    for src, dsts in sorted(self._tables[transaction_type].items())
                },
            }
            for transaction_type in sorted(self._tables, key=lambda t: t.value)
        }


def build_default_state_machine() -> StateMachine:
    """Build (but do not freeze) the retail transition tables."""
    machine = StateMachine()

    po = PurchaseOrderStatus
    machine.register(
        TransactionType.ORDER_PURCHASE,
        {
            po.PENDING: [po.APPROVED, po.PRE_SETTLEMENT],
            po.APPROVED: [po.PRE_SETTLEMENT],
        },
        initial=[po.PENDING, po.APPROVED],
    )

    inbound = InboundDocumentStatus
    machine.register(
        TransactionType.DOCUMENT_SUPPLIER_IN,
        {
            inbound.PRE_SETTLEMENT: [inbound.AWAITING_CHECK],
            inbound.AWAITING_CHECK: [inbound.IN_CHECK],
            inbound.IN_CHECK: [inbound.CHECK_OK, inbound.CHECK_DISCREPANCY],
            inbound.CHECK_OK: [inbound.SETTLED, inbound.CHECK_DISCREPANCY],
            inbound.CHECK_DISCREPANCY: [inbound.SETTLED, inbound.CHECK_OK],
        },
        initial=[inbound.PRE_SETTLEMENT, inbound.AWAITING_CHECK],
    )

    out = TransferOutStatus
    machine.register(
        TransactionType.TRANSFER_OUT,
        {
            out.REQUESTED: [out.SEPARATION_MAP_CREATED],
            out.SEPARATION_MAP_CREATED: [out.AWAITING_SEPARATION, out.IN_SEPARATION],
            out.AWAITING_SEPARATION: [out.IN_SEPARATION],
            out.IN_SEPARATION: [out.SEPARATION_OK, out.SEPARATION_DISCREPANCY],
            out.SEPARATION_OK: [out.AT_DOCK],
            out.SEPARATION_DISCREPANCY: [out.AT_DOCK],
            out.AT_DOCK: [out.SHIPPED],
            out.SHIPPED: [out.INVOICED],
        },
        initial=[out.REQUESTED],
    )

    tin = TransferInStatus
    machine.register(
        TransactionType.TRANSFER_IN,
        {
            tin.AWAITING_CHECK: [tin.IN_CHECK],
            tin.IN_CHECK: [tin.CHECK_OK, tin.CHECK_DISCREPANCY],
            tin.CHECK_OK: [tin.SETTLED],
            tin.CHECK_DISCREPANCY: [tin.SETTLED],
        },
        initial=[tin.AWAITING_CHECK],
    )

    machine.register(
        TransactionType.DOCUMENT_SALE,
        {SaleStatus.COMPLETED: [SaleStatus.CANCELLED]},
        initial=[SaleStatus.COMPLETED],
    )

    machine.register(
        TransactionType.DOCUMENT_RETURN,
        {
            ReturnStatus.AWAITING: [ReturnStatus.COMPLETED],
            ReturnStatus.COMPLETED: [ReturnStatus.STORE_TRANSFER],
        },
        initial=[ReturnStatus.AWAITING],
    )

    machine.register(
        TransactionType.INVENTORY_MOVEMENT,
        {MovementStatus.PENDING: [MovementStatus.EXECUTED, MovementStatus.CANCELLED]},
        initial=[MovementStatus.PENDING, MovementStatus.EXECUTED],
    )

    machine.register(
        TransactionType.DOCUMENT_TRANSFER_INTERNAL,
        {},
        initial=[InternalTransferStatus.CREATED],
    )
    machine.register(TransactionType.PAYMENT, {}, initial=[PaymentStatus.CONFIRMED])
    machine.register(
        TransactionType.FISCAL_DOCUMENT, {}, initial=[FiscalDocumentStatus.ISSUED]
    )

    return machine


def get_state_machine() -> StateMachine:
    """Get the global state machine, building and freezing it on first use."""
    global _global_machine
    with _machine_lock:
        if _global_machine is None:
            machine = build_default_state_machine()
            machine.freeze()
            _global_machine = machine
        return _global_machine


def reset_state_machine() -> None:
    """Reset the global state machine (testing only)."""
    global _global_machine
    with _machine_lock:
        _global_machine = None
