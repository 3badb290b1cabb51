"""
Flow tests for the auto-apply orchestrator

All flows run against in-memory storage with a fixed clock.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from recurring_engine.audit import AuditLogger
from recurring_engine.config import EngineSettings
from recurring_engine.materializer import InvalidTransferError
from recurring_engine.models import (
    AuditEventType,
    ExecutionOverrides,
    FundsAction,
    RecurringType,
    SkipReason,
    TransactionType,
)
from recurring_engine.orchestrator import (
    AutoApplyOrchestrator,
    ExecutionSkippedError,
    create_engine_components,
)
from recurring_engine.services.storage import (
    InMemoryAuditStorage,
    InMemoryRecurringStorage,
    NotFoundError,
    StorageError,
)
from recurring_engine.validation import ExecutionValidationError


NOW = datetime(2025, 2, 1, 8, 0)
TENANT = "tenant-1"


def _orchestrator(storage, audit_storage=None, enabled=True):
    return AutoApplyOrchestrator(
        storage=storage,
        audit_logger=AuditLogger(audit_storage),
        settings=EngineSettings(enabled=enabled),
        clock=lambda: NOW,
    )


class _FailingDeltaStorage(InMemoryRecurringStorage):
    """Balance writes to one account always fail."""

    def __init__(self, *args, failing_account: str, **kwargs):
        super().__init__(*args, **kwargs)
        self._failing_account = failing_account

    async def apply_balance_delta(self, account_id, delta):
        if account_id == self._failing_account:
            raise StorageError(f"write failed for {account_id}")
        await super().apply_balance_delta(account_id, delta)


class _BrokenQueryStorage(InMemoryRecurringStorage):
    async def find_due_recurrings(self, tenant_id, as_of):
        raise StorageError("database unavailable")


class TestScenarios:
    """End-to-end behaviour of a single run."""

    @pytest.mark.asyncio
    async def test_standard_applied(self, make_definition):
        """Test a due expense is applied and rescheduled."""
        definition = make_definition()
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.applied_count == 1
        assert [t.amount for t in storage.transactions] == [Decimal("-1200")]
        assert storage.balance("checking") == Decimal("3800")

        stored = storage.definition(definition.id)
        assert stored.next_occurrence_date == date(2025, 3, 1)
        assert stored.failed_attempts == 0
        assert stored.last_auto_applied_at == NOW
        assert result.applied_transactions[0].next_occurrence_date == date(2025, 3, 1)

    @pytest.mark.asyncio
    async def test_credit_card_payment_applied(self, make_definition):
        """Test a card balance of -350 is paid in full."""
        definition = make_definition(
            name="Card payment",
            amount=None,
            is_amount_flexible=True,
            recurring_type=RecurringType.CREDIT_CARD_PAYMENT,
            transfer_account_id="card",
            category_id="credit-card",
        )
        storage = InMemoryRecurringStorage(
            [definition],
            {"checking": Decimal("1000"), "card": Decimal("-350")},
        )

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.applied_count == 1
        assert sorted(t.amount for t in storage.transactions) == [
            Decimal("-350"),
            Decimal("350"),
        ]
        assert storage.balance("checking") == Decimal("650")
        assert storage.balance("card") == Decimal("0")

    @pytest.mark.asyncio
    async def test_credit_card_in_credit_is_pending(self, make_definition):
        """Test a card in credit is skipped and counted."""
        definition = make_definition(
            amount=None,
            is_amount_flexible=True,
            recurring_type=RecurringType.CREDIT_CARD_PAYMENT,
            transfer_account_id="card",
            category_id="credit-card",
        )
        storage = InMemoryRecurringStorage(
            [definition],
            {"checking": Decimal("1000"), "card": Decimal("50")},
        )

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.pending_count == 1
        assert result.pending_transactions[0].reason == SkipReason.NO_BALANCE_DUE
        assert storage.transactions == []
        assert storage.definition(definition.id).failed_attempts == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_deactivates_on_third_skip(self, make_definition):
        """Test repeated insufficient funds deactivates at the threshold."""
        definition = make_definition(amount=Decimal("500"), max_failed_attempts=3)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("100")})
        orchestrator = _orchestrator(storage)

        first = await orchestrator.run(NOW, TENANT)
        second = await orchestrator.run(NOW, TENANT)

        assert first.pending_transactions[0].reason == SkipReason.INSUFFICIENT_FUNDS
        assert second.pending_count == 1
        assert storage.definition(definition.id).failed_attempts == 2
        assert storage.definition(definition.id).is_active is True

        third = await orchestrator.run(NOW, TENANT)

        assert third.pending_count == 0
        assert third.failed_count == 1
        assert third.failed_transactions[0].deactivated is True
        stored = storage.definition(definition.id)
        assert stored.failed_attempts == 3
        assert stored.is_active is False
        assert storage.transactions == []
        assert storage.balance("checking") == Decimal("100")

        # No longer selected
        fourth = await orchestrator.run(NOW, TENANT)
        assert fourth.total_count == 0

    @pytest.mark.asyncio
    async def test_transfer_typed_standard_fails(self, make_definition):
        """Test a standard definition typed Transfer never writes a single leg."""
        definition = make_definition(transaction_type=TransactionType.TRANSFER)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.failed_count == 1
        assert storage.transactions == []
        assert storage.balance("checking") == Decimal("5000")
        assert storage.definition(definition.id).failed_attempts == 1

    @pytest.mark.asyncio
    async def test_transfer_to_same_account_fails(self, make_definition):
        """Test an invalid transfer fails before any write."""
        definition = make_definition(
            recurring_type=RecurringType.TRANSFER,
            transfer_account_id="checking",
        )
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.failed_count == 1
        assert result.failed_transactions[0].error_type == InvalidTransferError.__name__
        assert storage.transactions == []
        assert storage.balance("checking") == Decimal("5000")
        assert storage.definition(definition.id).failed_attempts == 1

    @pytest.mark.asyncio
    async def test_flexible_amount_is_pending_and_counted(self, make_definition):
        """Test a flexible amount cannot be applied unattended."""
        definition = make_definition(amount=None, is_amount_flexible=True)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.pending_transactions[0].reason == SkipReason.AMOUNT_REQUIRED
        assert storage.definition(definition.id).failed_attempts == 1


class TestBatchResilience:
    """A failing item never stops the batch."""

    @pytest.mark.asyncio
    async def test_mixed_batch_covers_every_item(self, make_definition):
        """Test every selected definition lands in exactly one bucket."""
        good = make_definition(name="Good", amount=Decimal("10"))
        bad_transfer = make_definition(
            name="Bad transfer",
            recurring_type=RecurringType.TRANSFER,
            transfer_account_id="checking",
        )
        too_big = make_definition(name="Too big", amount=Decimal("99999"))
        unknown_account = make_definition(name="Ghost", source_account_id="ghost")
        storage = InMemoryRecurringStorage(
            [good, bad_transfer, too_big, unknown_account],
            {"checking": Decimal("5000")},
        )

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.applied_count + result.failed_count + result.pending_count == 4
        assert result.applied_count == 1
        assert result.pending_count == 1
        assert result.failed_count == 2
        assert {f.error_type for f in result.failed_transactions} == {
            "InvalidTransferError",
            "NotFoundError",
        }

    @pytest.mark.asyncio
    async def test_partial_write_rolled_back(self, make_definition):
        """Test a failed balance write leaves no ledger record behind."""
        transfer = make_definition(
            name="Savings",
            amount=Decimal("500"),
            recurring_type=RecurringType.TRANSFER,
            transfer_account_id="savings",
        )
        storage = _FailingDeltaStorage(
            [transfer],
            {"checking": Decimal("1000"), "savings": Decimal("0")},
            failing_account="savings",
        )

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.failed_count == 1
        assert result.failed_transactions[0].error_type == "StorageError"
        assert storage.transactions == []
        assert storage.balance("checking") == Decimal("1000")
        stored = storage.definition(transfer.id)
        assert stored.next_occurrence_date == date(2025, 2, 1)
        assert stored.failed_attempts == 1

    @pytest.mark.asyncio
    async def test_query_failure_propagates(self):
        """Test a failure to load the due list is raised."""
        with pytest.raises(StorageError):
            await _orchestrator(_BrokenQueryStorage()).run(NOW, TENANT)

    @pytest.mark.asyncio
    async def test_shared_account_balances_accumulate(self, make_definition):
        """Test two definitions on one account both hit its balance."""
        storage = InMemoryRecurringStorage(
            [
                make_definition(name="Rent", amount=Decimal("1200")),
                make_definition(name="Gym", amount=Decimal("50")),
            ],
            {"checking": Decimal("5000")},
        )

        result = await _orchestrator(storage).run(NOW, TENANT)

        assert result.applied_count == 2
        assert storage.balance("checking") == Decimal("3750")

    @pytest.mark.asyncio
    async def test_second_run_does_not_reapply(self, make_definition):
        """Test a rescheduled definition is not selected again."""
        storage = InMemoryRecurringStorage(
            [make_definition()], {"checking": Decimal("5000")}
        )
        orchestrator = _orchestrator(storage)

        await orchestrator.run(NOW, TENANT)
        again = await orchestrator.run(NOW, TENANT)

        assert again.total_count == 0
        assert len(storage.transactions) == 1

    @pytest.mark.asyncio
    async def test_disabled_engine(self, make_definition):
        """Test the global switch short-circuits the run."""
        storage = _BrokenQueryStorage()
        result = await _orchestrator(storage, enabled=False).run(NOW, TENANT)
        assert result.total_count == 0


class TestAuditTrail:
    """Every run leaves an audit trail."""

    @pytest.mark.asyncio
    async def test_run_events_share_correlation_id(self, make_definition):
        """Test all events of a run are grouped by its run id."""
        audit_storage = InMemoryAuditStorage()
        storage = InMemoryRecurringStorage(
            [
                make_definition(name="Rent"),
                make_definition(name="Big", amount=Decimal("99999")),
            ],
            {"checking": Decimal("5000")},
        )

        result = await _orchestrator(storage, audit_storage).run(NOW, TENANT)

        events = await audit_storage.get_events_by_correlation_id(result.run_id)
        types = [e.event_type for e in events]
        assert AuditEventType.AUTO_APPLY_STARTED in types
        assert AuditEventType.RECURRING_APPLIED in types
        assert AuditEventType.RECURRING_SKIPPED in types
        assert AuditEventType.AUTO_APPLY_COMPLETED in types

    @pytest.mark.asyncio
    async def test_selection_failure_audited(self):
        """Test a failed due lookup is recorded before it is raised."""
        audit_storage = InMemoryAuditStorage()

        with pytest.raises(StorageError):
            await _orchestrator(_BrokenQueryStorage(), audit_storage).run(NOW, TENANT)

        errors = [
            e for e in audit_storage.events
            if e.event_type == AuditEventType.SYSTEM_ERROR
        ]
        assert len(errors) == 1
        assert errors[0].error_code == "StorageError"
        assert errors[0].details["tenant_id"] == TENANT

    @pytest.mark.asyncio
    async def test_deactivation_audited(self, make_definition):
        """Test deactivation is recorded."""
        audit_storage = InMemoryAuditStorage()
        definition = make_definition(
            amount=Decimal("500"),
            failed_attempts=2,
            max_failed_attempts=3,
        )
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("0")})

        await _orchestrator(storage, audit_storage).run(NOW, TENANT)

        types = [e.event_type for e in audit_storage.events]
        assert AuditEventType.RECURRING_DEACTIVATED in types


class TestManualExecution:
    """Tests for user-initiated execution."""

    @pytest.mark.asyncio
    async def test_flexible_amount_with_override(self, make_definition):
        """Test a flexible amount is applied with the user's amount."""
        definition = make_definition(amount=None, is_amount_flexible=True)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("100")})
        orchestrator = _orchestrator(storage)

        applied = await orchestrator.execute_recurring(
            definition.id,
            TENANT,
            overrides=ExecutionOverrides(amount=Decimal("87.50")),
        )

        assert [t.amount for t in applied.transactions] == [Decimal("-87.50")]
        assert storage.balance("checking") == Decimal("12.50")
        stored = storage.definition(definition.id)
        assert stored.next_occurrence_date == date(2025, 3, 1)
        assert stored.last_auto_applied_at is None
        assert stored.last_executed_at == NOW

    @pytest.mark.asyncio
    async def test_manual_not_blocked_by_funds(self, make_definition):
        """Test manual execution may overdraw the source account."""
        definition = make_definition(amount=Decimal("500"))
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("100")})

        await _orchestrator(storage).execute_recurring(definition.id, TENANT)

        assert storage.balance("checking") == Decimal("-400")

    @pytest.mark.asyncio
    async def test_inactive_rejected(self, make_definition):
        """Test inactive definitions cannot be executed."""
        definition = make_definition(is_active=False)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        with pytest.raises(ExecutionValidationError, match="not active"):
            await _orchestrator(storage).execute_recurring(definition.id, TENANT)
        assert storage.transactions == []

    @pytest.mark.asyncio
    async def test_skip_raised(self, make_definition):
        """Test nothing-to-pay is raised to the user."""
        definition = make_definition(
            amount=None,
            is_amount_flexible=True,
            recurring_type=RecurringType.CREDIT_CARD_PAYMENT,
            transfer_account_id="card",
            category_id="credit-card",
        )
        storage = InMemoryRecurringStorage(
            [definition],
            {"checking": Decimal("1000"), "card": Decimal("20")},
        )

        with pytest.raises(ExecutionSkippedError) as exc_info:
            await _orchestrator(storage).execute_recurring(definition.id, TENANT)
        assert exc_info.value.reason == SkipReason.NO_BALANCE_DUE

    @pytest.mark.asyncio
    async def test_manual_failure_not_counted(self, make_definition):
        """Test a manual failure does not count towards deactivation."""
        definition = make_definition(
            recurring_type=RecurringType.TRANSFER,
            transfer_account_id="checking",
        )
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        with pytest.raises(InvalidTransferError):
            await _orchestrator(storage).execute_recurring(definition.id, TENANT)
        assert storage.definition(definition.id).failed_attempts == 0

    @pytest.mark.asyncio
    async def test_other_tenant_not_found(self, make_definition):
        """Test definitions are tenant-scoped."""
        definition = make_definition()
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})

        with pytest.raises(NotFoundError):
            await _orchestrator(storage).execute_recurring(definition.id, "other-tenant")


class TestPreviewAndReactivate:
    """Tests for preview and reactivation."""

    @pytest.mark.asyncio
    async def test_preview_insufficient_funds(self, make_definition):
        """Test the preview warns without writing."""
        definition = make_definition(amount=Decimal("500"))
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("100")})

        preview = await _orchestrator(storage).preview_execution(definition.id, TENANT)

        assert preview.estimated_amount == Decimal("500")
        assert preview.estimated_date == date(2025, 2, 1)
        assert preview.source_balance == Decimal("100")
        assert preview.funds_action == FundsAction.PARTIAL_PAYMENT_AVAILABLE
        assert "Insufficient funds in source account" in preview.warnings
        assert storage.transactions == []

    @pytest.mark.asyncio
    async def test_preview_credit_card(self, make_definition):
        """Test the card preview uses the statement balance."""
        definition = make_definition(
            amount=None,
            is_amount_flexible=True,
            recurring_type=RecurringType.CREDIT_CARD_PAYMENT,
            transfer_account_id="card",
            category_id="credit-card",
        )
        storage = InMemoryRecurringStorage(
            [definition],
            {"checking": Decimal("1000"), "card": Decimal("-350")},
        )

        preview = await _orchestrator(storage).preview_execution(definition.id, TENANT)

        assert preview.estimated_amount == Decimal("350")
        assert preview.destination_balance == Decimal("-350")
        assert preview.funds_action is None

    @pytest.mark.asyncio
    async def test_reactivate(self, make_definition):
        """Test reactivation restores a full set of attempts."""
        definition = make_definition(is_active=False, failed_attempts=3)
        storage = InMemoryRecurringStorage([definition], {"checking": Decimal("5000")})
        orchestrator = _orchestrator(storage)

        updated = await orchestrator.reactivate(definition.id, TENANT)

        assert updated.is_active is True
        assert storage.definition(definition.id).failed_attempts == 0
        result = await orchestrator.run(NOW, TENANT)
        assert result.applied_count == 1


class TestFactory:
    """Tests for create_engine_components."""

    @pytest.mark.asyncio
    async def test_default_components(self):
        """Test the factory wires an empty in-memory engine."""
        orchestrator = create_engine_components()
        result = await orchestrator.run(NOW, TENANT)
        assert result.total_count == 0
