"""
Recurrence Calculation

Pure date arithmetic for "every N months, optionally on day D" schedules.
Nothing in this module touches storage or mutates its inputs.

Month-end handling:
- Without a pinned day, the current day of month is kept and capped at
  the target month's last day (Jan 31 + 1 month = Feb 28/29).
- With a pinned day, the result always moves back to that day when the
  target month allows it (Feb 28 + 1 month on day 31 = Mar 31).
"""

import calendar
from datetime import date
from typing import Optional

from recurring_engine.errors import RecurringEngineError
from recurring_engine.models.recurring import (
    MAX_INTERVAL_MONTHS,
    MIN_INTERVAL_MONTHS,
    RecurrenceFrequency,
    RecurrenceRule,
)


class InvalidScheduleError(RecurringEngineError):
    """Recurrence configuration violates its invariants."""
    pass


def _clamp_day(year: int, month: int, day: int) -> int:
    """Clamp day to the valid range of the given month."""
    return min(day, calendar.monthrange(year, month)[1])


def _add_months(d: date, months: int, day: Optional[int] = None) -> date:
    """Add months to d, landing on `day` (default d.day) capped at month end."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, _clamp_day(year, month, day or d.day))


def validate_interval(interval_months: int) -> None:
    """Raise InvalidScheduleError unless the interval is in range."""
    if isinstance(interval_months, bool) or not isinstance(interval_months, int):
        raise InvalidScheduleError(
            f"Interval months must be a whole number, got {interval_months!r}"
        )
    if not MIN_INTERVAL_MONTHS <= interval_months <= MAX_INTERVAL_MONTHS:
        raise InvalidScheduleError(
            f"Interval months must be between {MIN_INTERVAL_MONTHS} and "
            f"{MAX_INTERVAL_MONTHS}, got {interval_months}"
        )


def compute_next_occurrence(
    current_date: date,
    rule: Optional[RecurrenceRule],
    interval_months: int,
) -> date:
    """
    Compute the occurrence after current_date.

    Args:
        current_date: The occurrence being applied
        rule: Recurrence rule; its pinned day (if any) is honoured
        interval_months: Months to advance, 1-24

    Returns:
        The next occurrence date

    Raises:
        InvalidScheduleError: If interval_months is out of range or the
            rule uses an unsupported frequency
    """
    validate_interval(interval_months)

    if rule is not None and rule.frequency != RecurrenceFrequency.MONTHLY:
        raise InvalidScheduleError(f"Unsupported frequency: {rule.frequency}")

    pinned_day = rule.by_month_day if rule is not None else None
    return _add_months(current_date, interval_months, pinned_day)


def calculate_future_occurrences(
    start_date: date,
    rule: Optional[RecurrenceRule],
    interval_months: int,
    count: int = 5,
) -> list[date]:
    """
    Preview the next `count` occurrences after start_date.

    The start date's day of month is kept across the whole chain,
    so a schedule starting on the 31st returns to the 31st whenever
    the month has one.
    """
    validate_interval(interval_months)
    if count < 0:
        raise ValueError("count must be non-negative")

    anchor_day = start_date.day
    if rule is not None and rule.by_month_day is not None:
        anchor_day = rule.by_month_day

    return [
        _add_months(start_date, interval_months * step, anchor_day)
        for step in range(1, count + 1)
    ]


def is_recurring_due(next_occurrence_date: Optional[date], as_of: date) -> bool:
    """Whether an occurrence on next_occurrence_date is due as of a date."""
    return next_occurrence_date is not None and next_occurrence_date <= as_of


_INTERVAL_LABELS = {
    1: "Monthly",
    3: "Quarterly",
    6: "Semi-annually",
    12: "Annually",
}


def describe_interval(interval_months: int) -> str:
    """Human-readable label for an interval."""
    return _INTERVAL_LABELS.get(interval_months, f"Every {interval_months} months")
