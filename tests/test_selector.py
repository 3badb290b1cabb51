"""Tests for due-definition selection."""

import pytest
from datetime import date, datetime
from decimal import Decimal

from recurring_engine.queries import DueTransactionSelector
from recurring_engine.services.storage import InMemoryRecurringStorage, StorageError


NOW = datetime(2025, 2, 1, 8, 0)


class _LooseStorage(InMemoryRecurringStorage):
    """Backend whose query ignores every filter."""

    async def find_due_recurrings(self, tenant_id, as_of):
        return list(self._definitions.values())


class _BrokenStorage(InMemoryRecurringStorage):
    async def find_due_recurrings(self, tenant_id, as_of):
        raise StorageError("database unavailable")


class TestDueTransactionSelector:
    """Tests for DueTransactionSelector."""

    @pytest.mark.asyncio
    async def test_selects_due_only(self, make_definition):
        """Test only due, active, auto-apply definitions are selected."""
        due = make_definition(name="Due")
        storage = InMemoryRecurringStorage([
            due,
            make_definition(name="Future", next_occurrence_date=date(2025, 2, 2)),
            make_definition(name="Deleted", is_deleted=True),
            make_definition(name="Inactive", is_active=False),
            make_definition(name="Manual", auto_apply_enabled=False),
            make_definition(
                name="Flexible date",
                is_date_flexible=True,
                next_occurrence_date=None,
            ),
        ])

        selected = await DueTransactionSelector(storage).select_due(NOW, "tenant-1")
        assert [d.id for d in selected] == [due.id]

    @pytest.mark.asyncio
    async def test_deterministic_order(self, make_definition):
        """Test ordering by next occurrence date."""
        later = make_definition(name="Later", next_occurrence_date=date(2025, 1, 20))
        earlier = make_definition(name="Earlier", next_occurrence_date=date(2025, 1, 5))
        storage = InMemoryRecurringStorage([later, earlier])

        selected = await DueTransactionSelector(storage).select_due(NOW, "tenant-1")
        assert [d.name for d in selected] == ["Earlier", "Later"]

    @pytest.mark.asyncio
    async def test_refilters_loose_backend(self, make_definition):
        """Test the predicate is re-applied on top of storage."""
        due = make_definition()
        storage = _LooseStorage([
            due,
            make_definition(tenant_id="other-tenant"),
            make_definition(is_deleted=True),
        ])

        selected = await DueTransactionSelector(storage).select_due(NOW, "tenant-1")
        assert [d.id for d in selected] == [due.id]

    @pytest.mark.asyncio
    async def test_read_only(self, make_definition):
        """Test selection writes nothing."""
        definition = make_definition()
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("10")})

        await DueTransactionSelector(storage).select_due(NOW, "tenant-1")
        assert storage.definition(definition.id) == definition
        assert storage.balance("checking") == Decimal("10")
        assert storage.transactions == []

    @pytest.mark.asyncio
    async def test_storage_errors_propagate(self):
        """Test a failed query is raised to the caller."""
        with pytest.raises(StorageError):
            await DueTransactionSelector(_BrokenStorage()).select_due(NOW, "tenant-1")
