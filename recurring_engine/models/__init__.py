"""
Data Models Package

This package contains all Pydantic models used by the recurring engine.
All data flowing through the engine must conform to these schemas.
"""

from recurring_engine.models.recurring import (
    MAX_INTERVAL_MONTHS,
    MIN_INTERVAL_MONTHS,
    AppliedItem,
    ApplyResult,
    BalanceDelta,
    ExecutionMode,
    ExecutionOverrides,
    ExecutionPreview,
    FailedItem,
    FundsAction,
    LedgerTransaction,
    OutcomeKind,
    PendingItem,
    RecurrenceFrequency,
    RecurrenceRule,
    RecurringDefinition,
    RecurringType,
    SkipReason,
    TransactionType,
    ValidationIssue,
    ValidationResult,
)
from recurring_engine.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants
    "MAX_INTERVAL_MONTHS",
    "MIN_INTERVAL_MONTHS",
    # Recurring models
    "AppliedItem",
    "ApplyResult",
    "BalanceDelta",
    "ExecutionMode",
    "ExecutionOverrides",
    "ExecutionPreview",
    "FailedItem",
    "FundsAction",
    "LedgerTransaction",
    "OutcomeKind",
    "PendingItem",
    "RecurrenceFrequency",
    "RecurrenceRule",
    "RecurringDefinition",
    "RecurringType",
    "SkipReason",
    "TransactionType",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
