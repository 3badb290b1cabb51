"""
Failure Tracking

Decides how a definition's schedule and failure state change after
one execution attempt.

RULES:
- Success resets failed_attempts and advances next_occurrence_date
- Any unattended skip or failure counts one attempt, including a
  flexible amount with nothing to apply
- Reaching max_failed_attempts deactivates the definition, which
  stops auto-selection until a user re-enables it
- Manual failures are not counted (the user already saw the error)

Ledger transactions are never touched here.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from recurring_engine.models.recurring import (
    ExecutionMode,
    OutcomeKind,
    RecurringDefinition,
    SkipReason,
)
from recurring_engine.scheduling import compute_next_occurrence


class ExecutionOutcome(BaseModel):
    """What happened when a definition was executed."""
    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    mode: ExecutionMode = ExecutionMode.AUTO
    skip_reason: Optional[SkipReason] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, mode: ExecutionMode = ExecutionMode.AUTO) -> "ExecutionOutcome":
        return cls(kind=OutcomeKind.SUCCESS, mode=mode)

    @classmethod
    def skip(
        cls,
        reason: SkipReason,
        mode: ExecutionMode = ExecutionMode.AUTO,
    ) -> "ExecutionOutcome":
        return cls(kind=OutcomeKind.SKIP, mode=mode, skip_reason=reason)

    @classmethod
    def failure(
        cls,
        error: str,
        mode: ExecutionMode = ExecutionMode.AUTO,
    ) -> "ExecutionOutcome":
        return cls(kind=OutcomeKind.FAILURE, mode=mode, error=error)


class OutcomeRecord(BaseModel):
    """
    Result of recording an outcome.

    patch holds only the changed fields, ready for
    update_recurring_definition().
    """
    updated_definition: RecurringDefinition
    should_deactivate: bool = False
    patch: dict[str, Any]


class FailureTracker:
    """
    Updates failure counters and schedule state.

    Pure: returns the updated definition and the patch to persist.
    """

    def record_outcome(
        self,
        definition: RecurringDefinition,
        outcome: ExecutionOutcome,
        now: Optional[datetime] = None,
    ) -> OutcomeRecord:
        """
        Compute the definition state after an execution attempt.

        Raises:
            InvalidScheduleError: If advancing the schedule fails
        """
        now = now or datetime.utcnow()

        if outcome.kind == OutcomeKind.SUCCESS:
            patch = self._success_patch(definition, outcome, now)
            should_deactivate = False
        elif outcome.mode == ExecutionMode.MANUAL:
            patch = {}
            should_deactivate = False
        else:
            patch, should_deactivate = self._failure_patch(definition)

        updated = definition.model_copy(update=patch)
        return OutcomeRecord(
            updated_definition=updated,
            should_deactivate=should_deactivate,
            patch=patch,
        )

    def is_retry_eligible(self, definition: RecurringDefinition) -> bool:
        """Whether unattended runs may still pick this definition up."""
        return (
            definition.is_active
            and not definition.is_deleted
            and definition.failed_attempts < definition.max_failed_attempts
        )

    def remaining_attempts(self, definition: RecurringDefinition) -> int:
        return max(definition.max_failed_attempts - definition.failed_attempts, 0)

    def _success_patch(
        self,
        definition: RecurringDefinition,
        outcome: ExecutionOutcome,
        now: datetime,
    ) -> dict[str, Any]:
        patch: dict[str, Any] = {
            "failed_attempts": 0,
            "last_executed_at": now,
        }
        if outcome.mode == ExecutionMode.AUTO:
            patch["last_auto_applied_at"] = now

        if definition.is_date_flexible or definition.next_occurrence_date is None:
            return patch

        next_date = compute_next_occurrence(
            definition.next_occurrence_date,
            definition.recurrence_rule,
            definition.interval_months,
        )
        patch["next_occurrence_date"] = next_date

        # Schedule finished
        if definition.end_date is not None and next_date > definition.end_date:
            patch["is_active"] = False

        return patch

    def _failure_patch(
        self,
        definition: RecurringDefinition,
    ) -> tuple[dict[str, Any], bool]:
        attempts = definition.failed_attempts + 1
        patch: dict[str, Any] = {"failed_attempts": attempts}

        should_deactivate = False
        if attempts >= definition.max_failed_attempts and definition.is_active:
            patch["is_active"] = False
            should_deactivate = True

        return patch, should_deactivate
