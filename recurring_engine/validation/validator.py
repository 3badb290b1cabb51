"""
Recurring Definition Validation

DESIGN DECISION: Validation happens at two distinct moments:

DEFINITION VALIDATION (when a definition is created or edited):
- Variant shape (transfer accounts, card category)
- Amount and date presence for non-flexible definitions
- Failure threshold sanity
- Auto-apply settings that can never succeed unattended

EXECUTION CONTEXT VALIDATION (right before a manual execution):
- Lifecycle state (inactive, deleted, end date passed)
- Amount availability after overrides
- Failure threshold already reached

IMPORTANT: Definition validation NEVER silently fixes issues.
It reports them for the user to resolve.
"""

from datetime import date
from typing import Optional

from recurring_engine.config import get_settings
from recurring_engine.errors import RecurringEngineError
from recurring_engine.models.recurring import (
    ExecutionOverrides,
    RecurringDefinition,
    RecurringType,
    TransactionType,
    ValidationIssue,
    ValidationResult,
)


# Upper bound users may configure for max_failed_attempts
MAX_FAILED_ATTEMPTS_LIMIT = 10


class ExecutionValidationError(RecurringEngineError):
    """A definition cannot be executed in its current state."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class RecurringValidator:
    """
    Validates recurring definitions.

    Pure: reads settings, never storage.
    """

    def __init__(self):
        self._settings = get_settings().engine

    def _validate_accounts(
        self,
        definition: RecurringDefinition,
    ) -> list[ValidationIssue]:
        """Transfer-like variants need a distinct second account."""
        issues = []

        if not definition.is_transfer_like:
            if definition.transaction_type == TransactionType.TRANSFER:
                issues.append(ValidationIssue(
                    field="transaction_type",
                    issue_type="inconsistent",
                    message="Transfers must use the Transfer recurring type",
                    severity="error",
                    suggested_fix="Change the recurring type to Transfer",
                ))
            return issues

        if not definition.transfer_account_id:
            label = (
                "Credit card account"
                if definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT
                else "Transfer destination account"
            )
            issues.append(ValidationIssue(
                field="transfer_account_id",
                issue_type="missing",
                message=f"{label} is required",
                severity="error",
                suggested_fix="Select the account receiving the money",
            ))
        elif definition.transfer_account_id == definition.source_account_id:
            issues.append(ValidationIssue(
                field="transfer_account_id",
                issue_type="same_account",
                message="Source and destination accounts must be different",
                severity="error",
                suggested_fix="Select two different accounts",
            ))

        if (
            definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT
            and not definition.category_id
        ):
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="missing",
                message="Category is required for credit card payments",
                severity="error",
            ))

        return issues

    def _validate_schedule(
        self,
        definition: RecurringDefinition,
    ) -> list[ValidationIssue]:
        """Amount, date and end-date checks."""
        issues = []

        # Card payments take their amount from the statement balance
        amount_derived = definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT
        if (
            definition.amount is None
            and not definition.is_amount_flexible
            and not amount_derived
        ):
            issues.append(ValidationIssue(
                field="amount",
                issue_type="missing",
                message="Amount is required when amount is not flexible",
                severity="error",
                suggested_fix="Enter an amount or mark the amount as flexible",
            ))

        if definition.next_occurrence_date is None and not definition.is_date_flexible:
            issues.append(ValidationIssue(
                field="next_occurrence_date",
                issue_type="missing",
                message="Next occurrence date is required when date is not flexible",
                severity="error",
                suggested_fix="Pick a date or mark the date as flexible",
            ))

        if (
            definition.end_date
            and definition.next_occurrence_date
            and definition.end_date < definition.next_occurrence_date
        ):
            issues.append(ValidationIssue(
                field="end_date",
                issue_type="inconsistent",
                message="End date is before the next occurrence date",
                severity="error",
            ))

        return issues

    def _validate_auto_apply(
        self,
        definition: RecurringDefinition,
    ) -> list[ValidationIssue]:
        """Failure threshold and auto-apply sanity."""
        issues = []

        if definition.max_failed_attempts > MAX_FAILED_ATTEMPTS_LIMIT:
            issues.append(ValidationIssue(
                field="max_failed_attempts",
                issue_type="invalid_value",
                message=(
                    f"Max failed attempts cannot exceed {MAX_FAILED_ATTEMPTS_LIMIT}"
                ),
                severity="error",
            ))

        if not definition.auto_apply_enabled:
            return issues

        if definition.is_date_flexible:
            issues.append(ValidationIssue(
                field="auto_apply_enabled",
                issue_type="never_due",
                message="Flexible-date definitions are never applied automatically",
                severity="warning",
                suggested_fix="Execute it manually when the date is known",
            ))

        if definition.is_amount_flexible and not (
            definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT
        ):
            issues.append(ValidationIssue(
                field="auto_apply_enabled",
                issue_type="amount_required",
                message=(
                    "Flexible-amount definitions are skipped by auto-apply "
                    "and count towards max failed attempts"
                ),
                severity="warning",
            ))

        recommended = self._settings.credit_card_max_failed_attempts
        if (
            definition.recurring_type == RecurringType.CREDIT_CARD_PAYMENT
            and definition.max_failed_attempts < recommended
        ):
            issues.append(ValidationIssue(
                field="max_failed_attempts",
                issue_type="low_threshold",
                message=(
                    f"Credit card payments usually need at least {recommended} "
                    "attempts since statement balances fluctuate"
                ),
                severity="info",
            ))

        return issues

    def validate(self, definition: RecurringDefinition) -> ValidationResult:
        """
        Validate a definition before it is saved.

        Returns:
            ValidationResult with all issues found
        """
        issues = []
        issues.extend(self._validate_accounts(definition))
        issues.extend(self._validate_schedule(definition))
        issues.extend(self._validate_auto_apply(definition))

        return ValidationResult(definition_id=definition.id, issues=issues)

    def validate_execution_context(
        self,
        definition: RecurringDefinition,
        overrides: Optional[ExecutionOverrides] = None,
        today: Optional[date] = None,
    ) -> None:
        """
        Check that a definition can be executed right now.

        Raises:
            ExecutionValidationError: Listing every reason it cannot
        """
        today = today or date.today()
        override_amount = overrides.amount if overrides else None
        errors = []

        if not definition.is_active:
            errors.append("Recurring transaction is not active")

        if definition.is_deleted:
            errors.append("Recurring transaction has been deleted")

        if (
            not definition.is_amount_flexible
            and definition.recurring_type != RecurringType.CREDIT_CARD_PAYMENT
            and override_amount is None
            and definition.amount is None
        ):
            errors.append("Amount is required for execution")

        if definition.failed_attempts >= definition.max_failed_attempts:
            errors.append(
                "Recurring transaction has exceeded maximum failed attempts "
                f"({definition.failed_attempts}/{definition.max_failed_attempts})"
            )

        if definition.end_date and today > definition.end_date:
            errors.append("Recurring transaction end date has passed")

        if errors:
            raise ExecutionValidationError(errors)

    def get_user_friendly_summary(self, result: ValidationResult) -> str:
        """One message per line, errors first."""
        if result.is_valid and not result.warnings:
            return "All checks passed."

        lines = [f"- {issue.message}" for issue in result.errors]
        lines.extend(f"- {message}" for message in result.warnings)
        return "\n".join(lines)
