"""
Core Data Models for the Recurring Transaction Engine

These models define the strict schemas for everything the engine reads
from and writes to storage:
1. RecurringDefinition - the template for a repeating transaction
2. LedgerTransaction - an immutable financial event produced by execution
3. ApplyResult - the in-memory summary of one auto-apply run

DESIGN DECISION: Invariants that must hold for EVERY stored definition
(flexible amount/date, counter ranges, interval range) are enforced here.
Invariants that only matter at execution time (transfer accounts) are
checked by the validator and the materializer, so a broken definition
can still be loaded and reported instead of crashing the batch.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from recurring_engine.config import get_settings


MIN_INTERVAL_MONTHS = 1
MAX_INTERVAL_MONTHS = 24


def _default_max_failed_attempts() -> int:
    return get_settings().engine.default_max_failed_attempts


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class RecurringType(str, Enum):
    """
    Variant tag of a recurring definition.

    Each variant has its own materialization handler.
    """
    STANDARD = "Standard"
    TRANSFER = "Transfer"
    CREDIT_CARD_PAYMENT = "CreditCardPayment"


class TransactionType(str, Enum):
    """Ledger transaction type."""
    EXPENSE = "Expense"
    INCOME = "Income"
    TRANSFER = "Transfer"


class RecurrenceFrequency(str, Enum):
    """Supported recurrence frequencies."""
    MONTHLY = "MONTHLY"


class ExecutionMode(str, Enum):
    """
    Who triggered an execution.

    AUTO runs are unattended and apply the funds check strictly.
    MANUAL runs are user-initiated and never blocked by the funds check.
    """
    AUTO = "auto"
    MANUAL = "manual"


class SkipReason(str, Enum):
    """Non-erroneous reasons for not executing a due item this cycle."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    AMOUNT_REQUIRED = "amount_required"
    NO_BALANCE_DUE = "no_balance_due"
    NO_FUNDS_AVAILABLE = "no_funds_available"


class OutcomeKind(str, Enum):
    """Outcome of one attempt to execute a definition."""
    SUCCESS = "success"
    SKIP = "skip"
    FAILURE = "failure"


class FundsAction(str, Enum):
    """Advisory action when a source account cannot cover a payment."""
    SKIP_AND_RESCHEDULE = "SKIP_AND_RESCHEDULE"
    PARTIAL_PAYMENT_AVAILABLE = "PARTIAL_PAYMENT_AVAILABLE"
    NO_FUNDS_AVAILABLE = "NO_FUNDS_AVAILABLE"


# =============================================================================
# RECURRENCE RULE
# =============================================================================

class RecurrenceRule(BaseModel):
    """
    "Every N months, optionally on day D."

    Serialized as an RRULE-style string, e.g.
    ``FREQ=MONTHLY;INTERVAL=1;BYMONTHDAY=31``.
    """
    model_config = ConfigDict(frozen=True)

    frequency: RecurrenceFrequency = RecurrenceFrequency.MONTHLY
    interval: int = Field(
        default=1,
        ge=1,
        description="Number of months between occurrences"
    )
    by_month_day: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Pinned day of month (capped at month end)"
    )

    @classmethod
    def parse(cls, value: str) -> "RecurrenceRule":
        """Parse an RRULE-style string."""
        parts = {}
        for chunk in value.strip().removeprefix("RRULE:").split(";"):
            if not chunk:
                continue
            key, sep, raw = chunk.partition("=")
            if not sep:
                raise ValueError(f"Malformed recurrence rule part: {chunk!r}")
            parts[key.strip().upper()] = raw.strip()

        unknown = set(parts) - {"FREQ", "INTERVAL", "BYMONTHDAY"}
        if unknown:
            raise ValueError(f"Unsupported recurrence rule parts: {sorted(unknown)}")

        return cls(
            frequency=RecurrenceFrequency(parts.get("FREQ", "MONTHLY").upper()),
            interval=int(parts.get("INTERVAL", "1")),
            by_month_day=int(parts["BYMONTHDAY"]) if "BYMONTHDAY" in parts else None,
        )

    def to_rrule(self) -> str:
        """Render as an RRULE-style string."""
        rendered = f"FREQ={self.frequency.value};INTERVAL={self.interval}"
        if self.by_month_day is not None:
            rendered += f";BYMONTHDAY={self.by_month_day}"
        return rendered


# =============================================================================
# RECURRING DEFINITION
# =============================================================================

class RecurringDefinition(BaseModel):
    """
    A template for a repeating financial transaction.

    This is NOT a ledger entry. The engine materializes it into
    LedgerTransactions each time it becomes due.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    payee_name: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)

    # Schedule
    recurrence_rule: Optional[RecurrenceRule] = None
    interval_months: int = Field(
        default=1,
        ge=MIN_INTERVAL_MONTHS,
        le=MAX_INTERVAL_MONTHS,
        description="Cached interval of the recurrence rule"
    )
    next_occurrence_date: Optional[date] = None
    end_date: Optional[date] = None

    # Financial shape
    amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        description="Magnitude; the sign is decided at materialization"
    )
    currency: str = Field(default="USD", pattern="^[A-Z]{3}$")
    source_account_id: str = Field(..., min_length=1)
    category_id: Optional[str] = None
    transfer_account_id: Optional[str] = None
    transaction_type: TransactionType = TransactionType.EXPENSE

    # Behavior flags
    is_amount_flexible: bool = False
    is_date_flexible: bool = False
    auto_apply_enabled: bool = False
    recurring_type: RecurringType = RecurringType.STANDARD

    # Failure state
    failed_attempts: int = Field(default=0, ge=0)
    max_failed_attempts: int = Field(default_factory=_default_max_failed_attempts, gt=0)
    last_auto_applied_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None

    # Lifecycle
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def parse_rule_string(cls, v):
        """Accept RRULE strings as well as rule objects."""
        if isinstance(v, str):
            return RecurrenceRule.parse(v)
        return v

    @model_validator(mode="after")
    def validate_invariants(self) -> "RecurringDefinition":
        """Enforce the invariants every stored definition must satisfy."""
        if self.is_amount_flexible and self.amount is not None:
            raise ValueError("Flexible-amount definitions must not store an amount")

        if self.is_date_flexible and self.next_occurrence_date is not None:
            raise ValueError("Flexible-date definitions must not store a next occurrence date")

        if (
            self.recurrence_rule is not None
            and self.recurrence_rule.interval != self.interval_months
        ):
            raise ValueError(
                f"interval_months ({self.interval_months}) does not match "
                f"recurrence rule interval ({self.recurrence_rule.interval})"
            )

        return self

    @property
    def schedule_rule(self) -> RecurrenceRule:
        """The recurrence rule, defaulting to plain monthly on interval_months."""
        return self.recurrence_rule or RecurrenceRule(interval=self.interval_months)

    @property
    def is_transfer_like(self) -> bool:
        """Transfer and credit-card payments both move money between two accounts."""
        return self.recurring_type in (
            RecurringType.TRANSFER,
            RecurringType.CREDIT_CARD_PAYMENT,
        )

    def is_due(self, as_of: date) -> bool:
        """Whether the unattended auto-apply pass should pick this up."""
        return (
            not self.is_deleted
            and self.is_active
            and self.auto_apply_enabled
            and not self.is_date_flexible
            and self.next_occurrence_date is not None
            and self.next_occurrence_date <= as_of
        )


class ExecutionOverrides(BaseModel):
    """
    Values supplied at execution time, usually for manual execution
    of flexible-amount or flexible-date definitions.
    """
    amount: Optional[Decimal] = Field(default=None, gt=0)
    execution_date: Optional[date] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    partial_payment: bool = Field(
        default=False,
        description="Cap a credit-card payment at the available source balance"
    )


# =============================================================================
# LEDGER
# =============================================================================

class LedgerTransaction(BaseModel):
    """
    An immutable financial event produced by materialization.

    Negative amounts are outflows, positive amounts are inflows.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    amount: Decimal
    account_id: str
    counter_account_id: Optional[str] = None
    category_id: Optional[str] = None
    currency: str = "USD"
    transaction_date: date
    name: str
    description: Optional[str] = None
    payee: Optional[str] = None
    notes: Optional[str] = None
    transaction_type: TransactionType

    # Traceability
    recurring_id: Optional[UUID] = None
    transfer_pairing_id: Optional[UUID] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)


class BalanceDelta(BaseModel):
    """A change to apply to one account balance."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    delta: Decimal


# =============================================================================
# RUN RESULTS
# =============================================================================

class AppliedItem(BaseModel):
    """A definition that was applied, with the ledger records it produced."""
    definition_id: UUID
    name: str
    transactions: list[LedgerTransaction] = Field(default_factory=list)
    next_occurrence_date: Optional[date] = None


class FailedItem(BaseModel):
    """A definition whose execution failed."""
    definition: RecurringDefinition
    reason: str
    error_type: str
    deactivated: bool = False


class PendingItem(BaseModel):
    """A due definition that was skipped this cycle."""
    definition: RecurringDefinition
    reason: SkipReason
    message: str


class ApplyResult(BaseModel):
    """
    Summary of one auto-apply run.

    Every selected definition ends up in exactly one of the three lists.
    """
    run_id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    applied_transactions: list[AppliedItem] = Field(default_factory=list)
    failed_transactions: list[FailedItem] = Field(default_factory=list)
    pending_transactions: list[PendingItem] = Field(default_factory=list)

    @computed_field
    @property
    def applied_count(self) -> int:
        return len(self.applied_transactions)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed_transactions)

    @computed_field
    @property
    def pending_count(self) -> int:
        return len(self.pending_transactions)

    @property
    def total_count(self) -> int:
        """Number of definitions this run covered."""
        return self.applied_count + self.failed_count + self.pending_count


class ExecutionPreview(BaseModel):
    """What a manual execution would do, without doing it."""
    definition: RecurringDefinition
    estimated_amount: Decimal
    estimated_date: Optional[date] = None
    source_balance: Optional[Decimal] = None
    destination_balance: Optional[Decimal] = None
    funds_action: Optional[FundsAction] = None
    warnings: list[str] = Field(default_factory=list)


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'same_account')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of validating a recurring definition.

    Errors block saving the definition; warnings only inform the user.
    """

    definition_id: UUID
    validated_at: datetime = Field(default_factory=datetime.utcnow)
    issues: list[ValidationIssue] = Field(default_factory=list)

    @computed_field
    @property
    def is_valid(self) -> bool:
        return not any(issue.severity == "error" for issue in self.issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.severity == "warning"]
