"""Recurrence scheduling package."""

from recurring_engine.scheduling.recurrence import (
    InvalidScheduleError,
    calculate_future_occurrences,
    compute_next_occurrence,
    describe_interval,
    is_recurring_due,
    validate_interval,
)

__all__ = [
    "InvalidScheduleError",
    "calculate_future_occurrences",
    "compute_next_occurrence",
    "describe_interval",
    "is_recurring_due",
    "validate_interval",
]
