"""
Abstract Storage Interface

DESIGN DECISION: The engine never talks to a database directly.
It consumes this narrow contract, which allows us to:
1. Keep the engine independent of the app's persistence backends
2. Use in-memory storage for testing
3. Let each backend translate field names in its own adapter

The interface is intentionally small - just the operations the
auto-apply engine needs.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from recurring_engine.models.audit import AuditEvent
from recurring_engine.models.recurring import (
    LedgerTransaction,
    RecurringDefinition,
)


class RecurringStorageInterface(ABC):
    """
    Abstract interface for the storage the engine reads and writes.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    async def find_due_recurrings(
        self,
        tenant_id: str,
        as_of: date,
    ) -> list[RecurringDefinition]:
        """
        Find definitions due for auto-apply.

        Args:
            tenant_id: Tenant partition to search
            as_of: Definitions with next_occurrence_date on or before
                   this date are due

        Returns:
            Non-deleted, active, auto-apply-enabled definitions that are due

        Raises:
            StorageError: If the query fails
        """
        pass

    @abstractmethod
    async def get_recurring_definition(
        self,
        recurring_id: UUID,
        tenant_id: str,
    ) -> Optional[RecurringDefinition]:
        """
        Retrieve a definition by its ID.

        Returns:
            The definition if found in this tenant, None otherwise
        """
        pass

    @abstractmethod
    async def get_account_balance(self, account_id: str) -> Decimal:
        """
        Get the current balance of an account.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def apply_balance_delta(self, account_id: str, delta: Decimal) -> None:
        """
        Add delta to an account balance.

        Raises:
            NotFoundError: If the account doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def insert_ledger_transactions(
        self,
        transactions: list[LedgerTransaction],
    ) -> None:
        """
        Insert ledger transactions.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_recurring_definition(
        self,
        recurring_id: UUID,
        patch: dict[str, Any],
    ) -> None:
        """
        Apply a partial update to a definition.

        Raises:
            NotFoundError: If the definition doesn't exist
            StorageError: If the write fails
        """
        pass

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """
        Unit of work for one recurring item.

        Backends with transactions should commit on normal exit and
        roll back when the block raises. The default does neither.
        """
        yield


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one auto-apply run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
