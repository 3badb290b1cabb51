"""
Recurring Engine - Source Package

Auto-apply engine for recurring personal-finance transactions:
decides what is due, materializes ledger transactions and balance
changes, and backs off definitions that keep failing.

DESIGN PRINCIPLES:
1. One failing definition never stops the batch
2. Money moves atomically per definition
3. No silent skips: every outcome is counted and audited
4. Storage layer is swappable
"""

from recurring_engine.errors import RecurringEngineError
from recurring_engine.failures import ExecutionOutcome, FailureTracker, OutcomeRecord
from recurring_engine.materializer import (
    AmountRequiredError,
    InvalidTransferError,
    Materialization,
    MaterializationError,
    MaterializationSkip,
    TransactionMaterializer,
)
from recurring_engine.orchestrator import (
    AutoApplyOrchestrator,
    ExecutionSkippedError,
    create_engine_components,
)
from recurring_engine.queries import DueTransactionSelector
from recurring_engine.scheduling import InvalidScheduleError, compute_next_occurrence
from recurring_engine.startup import StartupResult, StartupScheduler
from recurring_engine.validation import ExecutionValidationError, RecurringValidator

__version__ = "1.0.0"

__all__ = [
    "AmountRequiredError",
    "AutoApplyOrchestrator",
    "DueTransactionSelector",
    "ExecutionOutcome",
    "ExecutionSkippedError",
    "ExecutionValidationError",
    "FailureTracker",
    "InvalidScheduleError",
    "InvalidTransferError",
    "Materialization",
    "MaterializationError",
    "MaterializationSkip",
    "OutcomeRecord",
    "RecurringEngineError",
    "RecurringValidator",
    "StartupResult",
    "StartupScheduler",
    "TransactionMaterializer",
    "compute_next_occurrence",
    "create_engine_components",
]
