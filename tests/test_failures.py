"""Tests for failure tracking."""

import pytest
from datetime import date, datetime

from recurring_engine.failures import ExecutionOutcome, FailureTracker
from recurring_engine.models import ExecutionMode, SkipReason
from recurring_engine.scheduling import InvalidScheduleError


NOW = datetime(2025, 2, 1, 8, 0)


class TestSuccess:
    """Tests for recording successful executions."""

    def test_resets_and_advances(self, make_definition):
        """Test success resets the counter and advances the schedule."""
        definition = make_definition(failed_attempts=2)
        record = FailureTracker().record_outcome(
            definition, ExecutionOutcome.success(), NOW
        )

        updated = record.updated_definition
        assert updated.failed_attempts == 0
        assert updated.next_occurrence_date == date(2025, 3, 1)
        assert updated.last_auto_applied_at == NOW
        assert updated.last_executed_at == NOW
        assert record.should_deactivate is False
        assert record.patch["next_occurrence_date"] == date(2025, 3, 1)

    def test_manual_success_keeps_auto_timestamp(self, make_definition):
        """Test manual runs do not count as auto-applied."""
        record = FailureTracker().record_outcome(
            make_definition(),
            ExecutionOutcome.success(ExecutionMode.MANUAL),
            NOW,
        )
        assert record.updated_definition.last_auto_applied_at is None
        assert record.updated_definition.last_executed_at == NOW

    def test_flexible_date_not_advanced(self, make_definition):
        """Test flexible-date definitions keep a null date."""
        definition = make_definition(is_date_flexible=True, next_occurrence_date=None)
        record = FailureTracker().record_outcome(
            definition, ExecutionOutcome.success(ExecutionMode.MANUAL), NOW
        )
        assert record.updated_definition.next_occurrence_date is None
        assert "next_occurrence_date" not in record.patch

    def test_uses_pinned_day(self, make_definition):
        """Test the rule's pinned day is honoured."""
        definition = make_definition(
            next_occurrence_date=date(2025, 2, 28),
            recurrence_rule="FREQ=MONTHLY;INTERVAL=1;BYMONTHDAY=31",
        )
        record = FailureTracker().record_outcome(
            definition, ExecutionOutcome.success(), NOW
        )
        assert record.updated_definition.next_occurrence_date == date(2025, 3, 31)

    def test_end_date_finishes_schedule(self, make_definition):
        """Test passing the end date deactivates the definition."""
        definition = make_definition(end_date=date(2025, 2, 15))
        record = FailureTracker().record_outcome(
            definition, ExecutionOutcome.success(), NOW
        )
        assert record.updated_definition.is_active is False
        assert record.should_deactivate is False

    def test_invalid_interval_raises(self, make_definition):
        """Test schedule errors surface to the caller."""
        definition = make_definition().model_copy(update={"interval_months": 30})
        with pytest.raises(InvalidScheduleError):
            FailureTracker().record_outcome(definition, ExecutionOutcome.success(), NOW)


class TestFailureCounting:
    """Tests for skip and failure counting."""

    def test_skip_increments(self, make_definition):
        """Test a skip counts one attempt and keeps the schedule."""
        definition = make_definition()
        record = FailureTracker().record_outcome(
            definition,
            ExecutionOutcome.skip(SkipReason.INSUFFICIENT_FUNDS),
            NOW,
        )
        assert record.updated_definition.failed_attempts == 1
        assert record.updated_definition.next_occurrence_date == date(2025, 2, 1)
        assert record.patch == {"failed_attempts": 1}

    def test_amount_required_counts(self, make_definition):
        """Test a flexible amount skip counts like a failure."""
        definition = make_definition(amount=None, is_amount_flexible=True)
        record = FailureTracker().record_outcome(
            definition,
            ExecutionOutcome.skip(SkipReason.AMOUNT_REQUIRED),
            NOW,
        )
        assert record.updated_definition.failed_attempts == 1

    def test_deactivates_at_threshold(self, make_definition):
        """Test reaching max_failed_attempts deactivates exactly once."""
        tracker = FailureTracker()
        definition = make_definition(max_failed_attempts=3)

        flags = []
        for _ in range(3):
            record = tracker.record_outcome(
                definition, ExecutionOutcome.failure("boom"), NOW
            )
            definition = record.updated_definition
            flags.append(record.should_deactivate)

        assert flags == [False, False, True]
        assert definition.is_active is False
        assert definition.failed_attempts == 3

        record = tracker.record_outcome(definition, ExecutionOutcome.failure("boom"), NOW)
        assert record.should_deactivate is False

    def test_counter_monotonic_until_success(self, make_definition):
        """Test the counter only goes down on success."""
        tracker = FailureTracker()
        definition = make_definition(max_failed_attempts=10)
        counts = []
        outcomes = [
            ExecutionOutcome.failure("a"),
            ExecutionOutcome.skip(SkipReason.INSUFFICIENT_FUNDS),
            ExecutionOutcome.failure("b"),
            ExecutionOutcome.success(),
        ]
        for outcome in outcomes:
            definition = tracker.record_outcome(definition, outcome, NOW).updated_definition
            counts.append(definition.failed_attempts)

        assert counts == [1, 2, 3, 0]

    def test_manual_failure_not_counted(self, make_definition):
        """Test manual failures leave the counter alone."""
        record = FailureTracker().record_outcome(
            make_definition(),
            ExecutionOutcome.failure("boom", ExecutionMode.MANUAL),
            NOW,
        )
        assert record.patch == {}
        assert record.updated_definition.failed_attempts == 0

    def test_retry_eligibility(self, make_definition):
        """Test retry eligibility and remaining attempts."""
        tracker = FailureTracker()
        assert tracker.is_retry_eligible(make_definition(failed_attempts=2)) is True
        assert tracker.is_retry_eligible(make_definition(failed_attempts=3)) is False
        assert tracker.remaining_attempts(make_definition(failed_attempts=1)) == 2
