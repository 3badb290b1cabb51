"""
In-Memory Storage Implementation

DESIGN DECISION: The app's real persistence backends live outside the
engine. This implementation exists so the engine can be embedded and
tested without any of them, and it doubles as the reference for what
a backend must do:
- filter due definitions per tenant
- apply partial updates with full model validation
- roll back every write of a failed unit of work

TRADEOFFS:
- Everything lives in process memory; nothing survives a restart
- atomic() snapshots whole dicts, fine for personal-finance volumes
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Optional
from uuid import UUID

from recurring_engine.models.audit import AuditEvent
from recurring_engine.models.recurring import (
    LedgerTransaction,
    RecurringDefinition,
)
from recurring_engine.services.storage.interface import (
    AuditStorageInterface,
    NotFoundError,
    RecurringStorageInterface,
    StorageError,
)


class InMemoryRecurringStorage(RecurringStorageInterface):
    """
    Dict-backed implementation of the engine's storage contract.

    Definitions are stored as validated models and replaced on update,
    never mutated in place.
    """

    def __init__(
        self,
        definitions: Optional[Iterable[RecurringDefinition]] = None,
        balances: Optional[dict[str, Decimal]] = None,
    ):
        self._definitions: dict[UUID, RecurringDefinition] = {}
        self._balances: dict[str, Decimal] = {}
        self._transactions: list[LedgerTransaction] = []
        self._atomic_depth = 0

        for definition in definitions or []:
            self.add_definition(definition)
        for account_id, balance in (balances or {}).items():
            self.set_balance(account_id, balance)

    # -------------------------------------------------------------------------
    # Seeding and inspection helpers
    # -------------------------------------------------------------------------

    def add_definition(self, definition: RecurringDefinition) -> None:
        self._definitions[definition.id] = definition

    def set_balance(self, account_id: str, balance: Decimal) -> None:
        self._balances[account_id] = Decimal(balance)

    def definition(self, recurring_id: UUID) -> RecurringDefinition:
        try:
            return self._definitions[recurring_id]
        except KeyError:
            raise NotFoundError(f"Recurring definition not found: {recurring_id}")

    def balance(self, account_id: str) -> Decimal:
        try:
            return self._balances[account_id]
        except KeyError:
            raise NotFoundError(f"Account not found: {account_id}")

    @property
    def transactions(self) -> list[LedgerTransaction]:
        """All ledger transactions written so far, in insertion order."""
        return list(self._transactions)

    # -------------------------------------------------------------------------
    # RecurringStorageInterface
    # -------------------------------------------------------------------------

    async def find_due_recurrings(
        self,
        tenant_id: str,
        as_of: date,
    ) -> list[RecurringDefinition]:
        """Find due definitions for a tenant."""
        return [
            definition
            for definition in self._definitions.values()
            if definition.tenant_id == tenant_id and definition.is_due(as_of)
        ]

    async def get_recurring_definition(
        self,
        recurring_id: UUID,
        tenant_id: str,
    ) -> Optional[RecurringDefinition]:
        """Retrieve a definition by its ID within a tenant."""
        definition = self._definitions.get(recurring_id)
        if definition is None or definition.tenant_id != tenant_id:
            return None
        return definition

    async def get_account_balance(self, account_id: str) -> Decimal:
        """Get an account balance."""
        return self.balance(account_id)

    async def apply_balance_delta(self, account_id: str, delta: Decimal) -> None:
        """Add delta to an account balance."""
        self._balances[account_id] = self.balance(account_id) + delta

    async def insert_ledger_transactions(
        self,
        transactions: list[LedgerTransaction],
    ) -> None:
        """Append ledger transactions."""
        existing = {t.id for t in self._transactions}
        for transaction in transactions:
            if transaction.id in existing:
                raise StorageError(f"Duplicate ledger transaction: {transaction.id}")
        self._transactions.extend(transactions)

    async def update_recurring_definition(
        self,
        recurring_id: UUID,
        patch: dict[str, Any],
    ) -> None:
        """Apply a validated partial update."""
        current = self.definition(recurring_id)
        data = current.model_dump()
        data.update(patch)
        if "updated_at" not in patch:
            data["updated_at"] = datetime.utcnow()

        try:
            self._definitions[recurring_id] = RecurringDefinition.model_validate(data)
        except ValueError as e:
            raise StorageError(f"Invalid update for {recurring_id}: {e}")

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Snapshot on entry, restore if the block raises."""
        if self._atomic_depth:
            # Nested units join the outer one
            yield
            return

        snapshot = (
            dict(self._definitions),
            dict(self._balances),
            list(self._transactions),
        )
        self._atomic_depth += 1
        try:
            yield
        except BaseException:
            self._definitions, self._balances, self._transactions = snapshot
            raise
        finally:
            self._atomic_depth -= 1


class InMemoryAuditStorage(AuditStorageInterface):
    """
    In-memory implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
