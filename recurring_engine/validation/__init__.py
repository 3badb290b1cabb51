"""Validation package."""

from recurring_engine.validation.validator import (
    ExecutionValidationError,
    RecurringValidator,
)

__all__ = ["ExecutionValidationError", "RecurringValidator"]
