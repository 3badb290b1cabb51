"""
Auto-Apply Orchestrator for the Recurring Engine

This module ties together all the components and defines the
end-to-end flows for:
1. Auto-apply (select due → materialize → persist → track failures)
2. Manual execution (validate → materialize → persist)

DESIGN DECISION: The orchestrator enforces the boundaries:
- A single item's failure never aborts the batch
- Ledger, balance and definition writes of one item commit together
- Balance deltas go through one serialized write path
- Every outcome is audited

Only a failure to obtain the due list propagates out of a run.
Everything after that is converted into ApplyResult entries.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog

from recurring_engine.audit import AuditLogger, create_correlation_id
from recurring_engine.config import EngineSettings, get_settings
from recurring_engine.errors import RecurringEngineError
from recurring_engine.failures import ExecutionOutcome, FailureTracker, OutcomeRecord
from recurring_engine.materializer import (
    AmountRequiredError,
    Materialization,
    MaterializationSkip,
    TransactionMaterializer,
)
from recurring_engine.models.recurring import (
    AppliedItem,
    ApplyResult,
    ExecutionMode,
    ExecutionOverrides,
    ExecutionPreview,
    FailedItem,
    FundsAction,
    PendingItem,
    RecurringDefinition,
    RecurringType,
    SkipReason,
    TransactionType,
)
from recurring_engine.queries import DueTransactionSelector
from recurring_engine.services.storage import (
    AuditStorageInterface,
    InMemoryRecurringStorage,
    NotFoundError,
    RecurringStorageInterface,
)
from recurring_engine.validation import ExecutionValidationError, RecurringValidator


logger = structlog.get_logger("recurring_engine.orchestrator")


class ExecutionSkippedError(RecurringEngineError):
    """A manual execution produced nothing to apply."""

    def __init__(
        self,
        reason: SkipReason,
        message: str,
        funds_action: Optional[FundsAction] = None,
    ):
        self.reason = reason
        self.funds_action = funds_action
        super().__init__(message)


class AutoApplyOrchestrator:
    """
    Orchestrates recurring transaction execution.

    Auto-apply flow, per due definition (strictly sequential):
    1. Selected → fetch balances, materialize
    2. Success → insert ledger records, apply balance deltas,
       advance schedule → applied
    3. Skip → count the attempt → pending (or failed if deactivated)
    4. Error → count the attempt → failed

    At most one run per tenant is expected at a time; the startup
    scheduler provides that guarantee.
    """

    def __init__(
        self,
        storage: RecurringStorageInterface,
        selector: Optional[DueTransactionSelector] = None,
        materializer: Optional[TransactionMaterializer] = None,
        failure_tracker: Optional[FailureTracker] = None,
        validator: Optional[RecurringValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._selector = selector or DueTransactionSelector(storage)
        self._materializer = materializer or TransactionMaterializer()
        self._failure_tracker = failure_tracker or FailureTracker()
        self._validator = validator or RecurringValidator()
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().engine
        self._clock = clock or datetime.utcnow
        self._balance_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Auto-apply
    # -------------------------------------------------------------------------

    async def run_auto_apply(self, tenant_id: str) -> ApplyResult:
        """Run auto-apply for a tenant as of now."""
        return await self.run(self._clock(), tenant_id)

    async def run(self, now: datetime, tenant_id: str) -> ApplyResult:
        """
        Apply every due definition of a tenant.

        Args:
            now: Run timestamp; definitions due on or before its date run
            tenant_id: Tenant to process

        Returns:
            ApplyResult covering every selected definition

        Raises:
            StorageError: Only if the due list cannot be loaded
        """
        result = ApplyResult(tenant_id=tenant_id, started_at=now)

        if not self._settings.enabled:
            logger.info("auto_apply_disabled", tenant_id=tenant_id)
            result.finished_at = now
            return result

        try:
            due = await self._selector.select_due(now, tenant_id)
        except Exception as e:
            logger.error(
                "due_selection_failed",
                tenant_id=tenant_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"tenant_id": tenant_id, "stage": "select_due"},
                correlation_id=result.run_id,
            )
            raise

        await self._audit_logger.log_run_started(
            run_id=result.run_id,
            tenant_id=tenant_id,
            due_count=len(due),
        )

        for definition in due:
            await self._process(definition, now, result)

        result.finished_at = self._clock()

        await self._audit_logger.log_run_completed(
            run_id=result.run_id,
            tenant_id=tenant_id,
            applied=result.applied_count,
            failed=result.failed_count,
            pending=result.pending_count,
        )

        return result

    async def _process(
        self,
        definition: RecurringDefinition,
        now: datetime,
        result: ApplyResult,
    ) -> None:
        """Run one definition through the per-item state machine."""
        try:
            balances = await self._fetch_balances(definition)
            outcome = self._materializer.materialize(
                definition,
                balances,
                mode=ExecutionMode.AUTO,
                now=now,
            )
        except AmountRequiredError as e:
            outcome = MaterializationSkip(reason=e.skip_reason, message=str(e))
        except Exception as e:
            await self._record_failure(definition, e, now, result)
            return

        if isinstance(outcome, MaterializationSkip):
            await self._record_skip(definition, outcome, now, result)
            return

        try:
            record = self._failure_tracker.record_outcome(
                definition, ExecutionOutcome.success(), now
            )
            await self._persist(definition, outcome, record)
        except Exception as e:
            await self._record_failure(definition, e, now, result)
            return

        applied = AppliedItem(
            definition_id=definition.id,
            name=definition.name,
            transactions=outcome.transactions,
            next_occurrence_date=record.updated_definition.next_occurrence_date,
        )
        result.applied_transactions.append(applied)

        await self._audit_logger.log_applied(
            recurring_id=definition.id,
            tenant_id=definition.tenant_id,
            name=definition.name,
            amount=str(outcome.amount),
            transaction_ids=[t.id for t in outcome.transactions],
            next_occurrence=_iso(applied.next_occurrence_date),
            correlation_id=result.run_id,
        )

    async def _record_skip(
        self,
        definition: RecurringDefinition,
        skip: MaterializationSkip,
        now: datetime,
        result: ApplyResult,
    ) -> None:
        record = await self._apply_outcome(
            definition, ExecutionOutcome.skip(skip.reason), now
        )
        updated = record.updated_definition if record else definition

        await self._audit_logger.log_skipped(
            recurring_id=definition.id,
            tenant_id=definition.tenant_id,
            reason=skip.reason.value,
            message=skip.message,
            failed_attempts=updated.failed_attempts,
            correlation_id=result.run_id,
        )

        if record and record.should_deactivate:
            # No longer recoverable without the user
            result.failed_transactions.append(FailedItem(
                definition=updated,
                reason=skip.message,
                error_type=skip.reason.value,
                deactivated=True,
            ))
            await self._log_deactivated(updated, result.run_id)
        else:
            result.pending_transactions.append(PendingItem(
                definition=updated,
                reason=skip.reason,
                message=skip.message,
            ))

    async def _record_failure(
        self,
        definition: RecurringDefinition,
        error: Exception,
        now: datetime,
        result: ApplyResult,
    ) -> None:
        error_type = type(error).__name__
        reason = str(error) or error_type

        logger.error(
            "recurring_apply_failed",
            recurring_id=str(definition.id),
            tenant_id=definition.tenant_id,
            error_type=error_type,
            error=reason,
        )

        record = await self._apply_outcome(
            definition, ExecutionOutcome.failure(reason), now
        )
        updated = record.updated_definition if record else definition
        deactivated = bool(record and record.should_deactivate)

        result.failed_transactions.append(FailedItem(
            definition=updated,
            reason=reason,
            error_type=error_type,
            deactivated=deactivated,
        ))

        await self._audit_logger.log_failed(
            recurring_id=definition.id,
            tenant_id=definition.tenant_id,
            error_type=error_type,
            error_message=reason,
            failed_attempts=updated.failed_attempts,
            correlation_id=result.run_id,
        )
        if deactivated:
            await self._log_deactivated(updated, result.run_id)

    async def _apply_outcome(
        self,
        definition: RecurringDefinition,
        outcome: ExecutionOutcome,
        now: datetime,
    ) -> Optional[OutcomeRecord]:
        """
        Record and persist a non-success outcome.

        Returns None if the bookkeeping itself failed; the item is still
        reported, and the unchanged counter means it will be retried.
        """
        try:
            record = self._failure_tracker.record_outcome(definition, outcome, now)
            if record.patch:
                await self._storage.update_recurring_definition(
                    definition.id, record.patch
                )
            return record
        except Exception as e:
            logger.error(
                "failure_state_update_failed",
                recurring_id=str(definition.id),
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    async def _log_deactivated(
        self,
        definition: RecurringDefinition,
        correlation_id: UUID,
    ) -> None:
        logger.warning(
            "recurring_deactivated",
            recurring_id=str(definition.id),
            failed_attempts=definition.failed_attempts,
        )
        await self._audit_logger.log_deactivated(
            recurring_id=definition.id,
            tenant_id=definition.tenant_id,
            failed_attempts=definition.failed_attempts,
            max_failed_attempts=definition.max_failed_attempts,
            correlation_id=correlation_id,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def _fetch_balances(
        self,
        definition: RecurringDefinition,
    ) -> dict[str, Decimal]:
        accounts = self._materializer.required_accounts(definition)
        return {
            account_id: await self._storage.get_account_balance(account_id)
            for account_id in accounts
        }

    async def _persist(
        self,
        definition: RecurringDefinition,
        materialization: Materialization,
        record: OutcomeRecord,
    ) -> None:
        """Write ledger records, balance deltas and the definition as one unit."""
        async with self._storage.atomic():
            await self._storage.insert_ledger_transactions(materialization.transactions)
            async with self._balance_lock:
                for delta in materialization.balance_deltas:
                    await self._storage.apply_balance_delta(delta.account_id, delta.delta)
            await self._storage.update_recurring_definition(definition.id, record.patch)

    async def _load(
        self,
        definition_id: UUID,
        tenant_id: str,
    ) -> RecurringDefinition:
        definition = await self._storage.get_recurring_definition(definition_id, tenant_id)
        if definition is None:
            raise NotFoundError(f"Recurring definition not found: {definition_id}")
        return definition

    # -------------------------------------------------------------------------
    # Manual execution
    # -------------------------------------------------------------------------

    async def execute_recurring(
        self,
        definition_id: UUID,
        tenant_id: str,
        overrides: Optional[ExecutionOverrides] = None,
        now: Optional[datetime] = None,
    ) -> AppliedItem:
        """
        Execute a definition on the user's request.

        The funds check does not block manual execution. Failures are
        raised to the caller and do not count towards max_failed_attempts.

        Raises:
            NotFoundError: If the definition does not exist in this tenant
            ExecutionValidationError: If the definition cannot run now
            ExecutionSkippedError: If there is nothing to apply
            MaterializationError: If the definition is malformed
            StorageError: If persisting fails (nothing is committed)
        """
        now = now or self._clock()
        correlation_id = create_correlation_id()
        definition = await self._load(definition_id, tenant_id)

        try:
            self._validator.validate_execution_context(
                definition, overrides, today=now.date()
            )
            balances = await self._fetch_balances(definition)
            outcome = self._materializer.materialize(
                definition,
                balances,
                overrides=overrides,
                mode=ExecutionMode.MANUAL,
                now=now,
            )
            if isinstance(outcome, MaterializationSkip):
                raise ExecutionSkippedError(
                    outcome.reason, outcome.message, outcome.funds_action
                )

            record = self._failure_tracker.record_outcome(
                definition, ExecutionOutcome.success(ExecutionMode.MANUAL), now
            )
            await self._persist(definition, outcome, record)
        except Exception as e:
            await self._audit_logger.log_failed(
                recurring_id=definition.id,
                tenant_id=tenant_id,
                error_type=type(e).__name__,
                error_message=str(e),
                failed_attempts=definition.failed_attempts,
                correlation_id=correlation_id,
                is_user_action=True,
            )
            raise

        next_date = record.updated_definition.next_occurrence_date
        await self._audit_logger.log_applied(
            recurring_id=definition.id,
            tenant_id=tenant_id,
            name=definition.name,
            amount=str(outcome.amount),
            transaction_ids=[t.id for t in outcome.transactions],
            next_occurrence=_iso(next_date),
            correlation_id=correlation_id,
            is_user_action=True,
        )

        return AppliedItem(
            definition_id=definition.id,
            name=definition.name,
            transactions=outcome.transactions,
            next_occurrence_date=next_date,
        )

    async def preview_execution(
        self,
        definition_id: UUID,
        tenant_id: str,
        overrides: Optional[ExecutionOverrides] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionPreview:
        """
        Describe what a manual execution would do. Nothing is written.

        Raises:
            NotFoundError: If the definition or one of its accounts
                does not exist
        """
        now = now or self._clock()
        definition = await self._load(definition_id, tenant_id)
        warnings: list[str] = []

        try:
            self._validator.validate_execution_context(
                definition, overrides, today=now.date()
            )
        except ExecutionValidationError as e:
            warnings.extend(e.errors)

        balances = await self._fetch_balances(definition)
        source_balance = balances.get(definition.source_account_id)
        destination_balance = None
        if definition.is_transfer_like and definition.transfer_account_id:
            destination_balance = balances.get(definition.transfer_account_id)

        override_amount = overrides.amount if overrides else None
        if override_amount is not None:
            estimated_amount = override_amount
        elif definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT:
            estimated_amount = abs(min(destination_balance or Decimal("0"), Decimal("0")))
            warnings.append("Payment amount will be determined by current statement balance")
        elif definition.amount is not None:
            estimated_amount = definition.amount
        else:
            estimated_amount = Decimal("0")
            warnings.append("Amount must be supplied at execution time")

        estimated_date = (
            (overrides.execution_date if overrides else None)
            or definition.next_occurrence_date
            or now.date()
        )

        is_outflow = not (
            definition.recurring_type == RecurringType.STANDARD
            and definition.transaction_type == TransactionType.INCOME
        )
        funds_action = None
        if (
            is_outflow
            and source_balance is not None
            and estimated_amount > source_balance
        ):
            funds_action = self._materializer.assess_insufficient_funds(
                source_balance, estimated_amount, ExecutionMode.MANUAL
            )
            warnings.append("Insufficient funds in source account")

        return ExecutionPreview(
            definition=definition,
            estimated_amount=estimated_amount,
            estimated_date=estimated_date,
            source_balance=source_balance,
            destination_balance=destination_balance,
            funds_action=funds_action,
            warnings=warnings,
        )

    async def reactivate(
        self,
        definition_id: UUID,
        tenant_id: str,
    ) -> RecurringDefinition:
        """
        Re-enable a definition deactivated by repeated failures.

        Resets failed_attempts so it gets a full set of attempts again.
        """
        definition = await self._load(definition_id, tenant_id)
        patch = {"is_active": True, "failed_attempts": 0}
        await self._storage.update_recurring_definition(definition.id, patch)

        await self._audit_logger.log_reactivated(
            recurring_id=definition.id,
            tenant_id=tenant_id,
        )
        return definition.model_copy(update=patch)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def create_engine_components(
    storage: Optional[RecurringStorageInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> AutoApplyOrchestrator:
    """
    Factory function to create a wired orchestrator.

    Args:
        storage: Engine storage. Defaults to an empty in-memory store.
        audit_storage: Audit persistence. If None, audit events are
                       only logged locally.
    """
    storage = storage or InMemoryRecurringStorage()
    audit_logger = AuditLogger(audit_storage)

    return AutoApplyOrchestrator(
        storage=storage,
        audit_logger=audit_logger,
    )
