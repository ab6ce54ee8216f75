"""
Transaction store: typed documents with state-machine governed status.

Invariants:
    - A transaction is created at a status the state machine allows as
      initial for its type
    - Status changes only through transition(), which checks the state
      machine and persists with a conditional update guarded by the
      current status and row version
    - state_history is append-only: every transition appends exactly one
      entry and never rewrites earlier ones
    - (tenant_id, transaction_type, external_id) identifies at most one
      transaction when external_id is present

How to change safely:
    - Never write the status column outside transition()
    - Never let caller attributes overwrite state_history
    - TransitionError means "do not retry blindly"; keep stale updates
      raising it rather than retrying here
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..errors import TransitionError
from ..schema.state_machine import StateMachine, get_state_machine
from ..schema.types import (
    BusinessTransaction,
    TransactionType,
    TransitionRecord,
    now_ms,
    status_value,
)
from ..store.base import StoreBackend, between

logger = logging.getLogger(__name__)

TABLE = "transactions"

HISTORY_KEY = "state_history"


class TransactionStore:
    """Create, transition and read business transactions."""

    def __init__(
        self,
        store: StoreBackend,
        state_machine: Optional[StateMachine] = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine or get_state_machine()

    async def create(
        self,
        tenant_id: str,
        transaction_type: TransactionType,
        status,
        external_id: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[BusinessTransaction, bool]:
        """Create a transaction unless one with the same external id exists.

        Args:
            tenant_id: Tenant identifier
            transaction_type: Document kind
            status: Initial status (must be an allowed initial status)
            external_id: Identifier in the tenant's source system
            attributes: Initial attributes

        Returns:
            (transaction, created). When created is False the existing
            transaction is returned untouched.

        Raises:
            TransitionError: If status is not an initial status of the type
        """
        status = status_value(status)
        if not self.state_machine.is_valid_initial(transaction_type, status):
            raise TransitionError(
                f"'{status}' is not an initial status of {transaction_type.value}",
                transaction_type=transaction_type.value,
                from_status=None,
                to_status=status,
            )

        now = now_ms()
        attrs = dict(attributes or {})
        attrs[HISTORY_KEY] = [
            TransitionRecord(from_status=None, to_status=status, transitioned_at=now).to_dict()
        ]

        row, created = await self.store.insert_row(
            TABLE,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "transaction_type": transaction_type.value,
                "external_id": str(external_id) if external_id is not None else None,
                "status": status,
                "attributes": attrs,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
        )
        transaction = BusinessTransaction.from_row(row)
        if created:
            logger.debug(
                "Created transaction",
                extra={
                    "tenant_id": tenant_id,
                    "transaction_type": transaction_type.value,
                    "transaction_id": transaction.id,
                    "status": status,
                },
            )
        return transaction, created

    async def transition(
        self,
        tenant_id: str,
        transaction: BusinessTransaction,
        to_status,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[BusinessTransaction, TransitionRecord]:
        """Move a transaction to a new status.

        Merges attributes into the transaction's attribute map and appends
        {from, to, transitioned_at, attributes} to state_history.

        Args:
            tenant_id: Tenant identifier
            transaction: Transaction as last read
            to_status: Target status
            attributes: Attributes to merge (also recorded in the history entry)

        Returns:
            (updated transaction, appended history record)

        Raises:
            TransitionError: If the state machine rejects from -> to, or the
                transaction changed since it was read (stale status/version)
        """
        to_status = status_value(to_status)
        from_status = transaction.status
        self.state_machine.ensure_transition(transaction.transaction_type, from_status, to_status)

        changes = {k: v for k, v in (attributes or {}).items() if k != HISTORY_KEY}
        now = now_ms()
        record = TransitionRecord(
            from_status=from_status,
            to_status=to_status,
            transitioned_at=now,
            attributes=changes,
        )

        merged = {**transaction.attributes, **changes}
        merged[HISTORY_KEY] = [*transaction.state_history, record.to_dict()]

        rows = await self.store.update_rows_matching(
            TABLE,
            {
                "tenant_id": tenant_id,
                "id": transaction.id,
                "status": from_status,
                "version": transaction.version,
            },
            {
                "status": to_status,
                "attributes": merged,
                "version": transaction.version + 1,
                "updated_at": now,
            },
        )
        if not rows:
            raise TransitionError(
                f"Transaction {transaction.id} is no longer in status '{from_status}'",
                transaction_type=transaction.transaction_type.value,
                from_status=from_status,
                to_status=to_status,
            )

        logger.debug(
            "Transitioned transaction",
            extra={
                "tenant_id": tenant_id,
                "transaction_id": transaction.id,
                "from": from_status,
                "to": to_status,
            },
        )
        return BusinessTransaction.from_row(rows[0]), record

    async def get(self, tenant_id: str, transaction_id: str) -> Optional[BusinessTransaction]:
        row = await self.store.get_by_key(TABLE, {"tenant_id": tenant_id, "id": transaction_id})
        return BusinessTransaction.from_row(row) if row else None

    async def get_by_external_id(
        self,
        tenant_id: str,
        transaction_type: TransactionType,
        external_id: str,
    ) -> Optional[BusinessTransaction]:
        row = await self.store.get_by_key(
            TABLE,
            {
                "tenant_id": tenant_id,
                "transaction_type": transaction_type.value,
                "external_id": str(external_id),
            },
        )
        return BusinessTransaction.from_row(row) if row else None

    async def list_transactions(
        self,
        tenant_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[str] = None,
        external_id: Optional[str] = None,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[BusinessTransaction]:
        """List transactions, newest first.

        Args:
            date_from: Inclusive lower bound on created_at (Unix ms)
            date_to: Inclusive upper bound on created_at (Unix ms)
        """
        rows = await self.store.query_rows(
            TABLE,
            self._filters(tenant_id, transaction_type, status, external_id, date_from, date_to),
            order=["-created_at"],
            limit=limit,
            offset=offset,
        )
        return [BusinessTransaction.from_row(row) for row in rows]

    async def count_transactions(
        self,
        tenant_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[str] = None,
        external_id: Optional[str] = None,
        date_from: Optional[int] = None,
        date_to: Optional[int] = None,
    ) -> int:
        return await self.store.count_rows(
            TABLE,
            self._filters(tenant_id, transaction_type, status, external_id, date_from, date_to),
        )

    @staticmethod
    def _filters(
        tenant_id, transaction_type, status, external_id, date_from, date_to
    ) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if transaction_type is not None:
            filters["transaction_type"] = transaction_type.value
        if status is not None:
            filters["status"] = status_value(status)
        if external_id is not None:
            filters["external_id"] = external_id
        if date_from is not None or date_to is not None:
            filters["created_at"] = between(date_from, date_to)
        return filters
