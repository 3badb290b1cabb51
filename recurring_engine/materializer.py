"""
Transaction Materialization

Turns a due definition into the concrete ledger transactions and
balance deltas it implies. This is where money direction is decided.

DESIGN DECISION: Materialization is PURE.
The caller fetches the balances it needs (see required_accounts) and
persists the result. Nothing here reads or writes storage, which keeps
every variant testable with a plain dict of balances.

Variants are dispatched once, through a handler table keyed by
recurring type:
- Standard: one leg on the source account
- Transfer: two legs of equal magnitude and opposite sign
- CreditCardPayment: a transfer sized from the card's outstanding balance

Amounts on the definition are magnitudes. Signs are decided here:
outflows are negative, inflows positive.
"""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from recurring_engine.errors import RecurringEngineError
from recurring_engine.models.recurring import (
    BalanceDelta,
    ExecutionMode,
    ExecutionOverrides,
    FundsAction,
    LedgerTransaction,
    RecurringDefinition,
    RecurringType,
    SkipReason,
    TransactionType,
)
from recurring_engine.scheduling import InvalidScheduleError


ZERO = Decimal("0")


class MaterializationError(RecurringEngineError):
    """A definition cannot be turned into ledger transactions."""
    pass


class InvalidTransferError(MaterializationError):
    """Transfer-like definition without a valid second account."""
    pass


class AmountRequiredError(MaterializationError):
    """No amount on the definition and none supplied at execution time."""

    skip_reason = SkipReason.AMOUNT_REQUIRED


class Materialization(BaseModel):
    """Ledger records and balance changes for one execution."""
    model_config = ConfigDict(frozen=True)

    transactions: list[LedgerTransaction]
    balance_deltas: list[BalanceDelta]
    amount: Decimal = Field(..., description="Magnitude moved")
    transaction_date: date


class MaterializationSkip(BaseModel):
    """A due definition that should not be executed this cycle."""
    model_config = ConfigDict(frozen=True)

    reason: SkipReason
    message: str
    funds_action: Optional[FundsAction] = None


MaterializationOutcome = Union[Materialization, MaterializationSkip]


class TransactionMaterializer:
    """
    Builds ledger transactions for recurring definitions.

    GUARANTEES:
    - Never touches storage
    - Never mutates the definition
    - A skip produces no records at all
    """

    def __init__(self):
        self._handlers: dict[RecurringType, Callable[..., MaterializationOutcome]] = {
            RecurringType.STANDARD: self._materialize_standard,
            RecurringType.TRANSFER: self._materialize_transfer,
            RecurringType.CREDIT_CARD_PAYMENT: self._materialize_credit_card_payment,
        }

    def required_accounts(self, definition: RecurringDefinition) -> list[str]:
        """Accounts whose balances materialize() needs."""
        accounts = [definition.source_account_id]
        if (
            definition.is_transfer_like
            and definition.transfer_account_id
            and definition.transfer_account_id != definition.source_account_id
        ):
            accounts.append(definition.transfer_account_id)
        return accounts

    def materialize(
        self,
        definition: RecurringDefinition,
        balances: Mapping[str, Decimal],
        overrides: Optional[ExecutionOverrides] = None,
        mode: ExecutionMode = ExecutionMode.AUTO,
        now: Optional[datetime] = None,
    ) -> MaterializationOutcome:
        """
        Materialize one execution of a definition.

        Args:
            definition: The definition to execute
            balances: Current balances of required_accounts(definition)
            overrides: Execution-time values (manual execution)
            mode: AUTO applies the funds check strictly, MANUAL never blocks
            now: Execution timestamp, used for flexible-date manual runs

        Returns:
            Materialization, or MaterializationSkip when the item should wait

        Raises:
            AmountRequiredError: If no amount is available
            InvalidTransferError: If a transfer-like definition has no
                valid destination account
            InvalidScheduleError: If an automatic run has no date to use
        """
        now = now or datetime.utcnow()
        transaction_date = self._effective_date(definition, overrides, mode, now)

        handler = self._handlers[definition.recurring_type]
        return handler(definition, balances, overrides, mode, transaction_date)

    def assess_insufficient_funds(
        self,
        available: Decimal,
        required: Decimal,
        mode: ExecutionMode,
    ) -> Optional[FundsAction]:
        """
        Advisory action when the source balance cannot cover a payment.

        Returns None when available covers required.

        Unattended runs always wait for the next cycle. A user executing
        manually can choose a partial payment when any money is available.
        """
        if required <= available:
            return None
        if mode == ExecutionMode.AUTO:
            return FundsAction.SKIP_AND_RESCHEDULE
        if available > ZERO:
            return FundsAction.PARTIAL_PAYMENT_AVAILABLE
        return FundsAction.NO_FUNDS_AVAILABLE

    # -------------------------------------------------------------------------
    # Variant handlers
    # -------------------------------------------------------------------------

    def _materialize_standard(
        self,
        definition: RecurringDefinition,
        balances: Mapping[str, Decimal],
        overrides: Optional[ExecutionOverrides],
        mode: ExecutionMode,
        transaction_date: date,
    ) -> MaterializationOutcome:
        if definition.transaction_type == TransactionType.TRANSFER:
            raise InvalidTransferError(
                f"Standard recurring {definition.id} cannot be typed Transfer; "
                "use the Transfer recurring type"
            )
        amount = self._effective_amount(definition, overrides)

        if definition.transaction_type == TransactionType.INCOME:
            signed = amount
        else:
            signed = -amount
            skip = self._check_funds(definition, balances, amount, mode)
            if skip is not None:
                return skip

        leg = self._leg(
            definition,
            overrides,
            amount=signed,
            account_id=definition.source_account_id,
            transaction_date=transaction_date,
            transaction_type=definition.transaction_type,
        )
        return self._result([leg], amount, transaction_date)

    def _materialize_transfer(
        self,
        definition: RecurringDefinition,
        balances: Mapping[str, Decimal],
        overrides: Optional[ExecutionOverrides],
        mode: ExecutionMode,
        transaction_date: date,
    ) -> MaterializationOutcome:
        destination = self._destination_account(definition)
        amount = self._effective_amount(definition, overrides)

        skip = self._check_funds(definition, balances, amount, mode)
        if skip is not None:
            return skip

        legs = self._transfer_legs(
            definition, overrides, amount, destination, transaction_date
        )
        return self._result(legs, amount, transaction_date)

    def _materialize_credit_card_payment(
        self,
        definition: RecurringDefinition,
        balances: Mapping[str, Decimal],
        overrides: Optional[ExecutionOverrides],
        mode: ExecutionMode,
        transaction_date: date,
    ) -> MaterializationOutcome:
        liability_account = self._destination_account(definition)

        if overrides and overrides.amount is not None:
            payment = overrides.amount
        else:
            # Card balances are negative while money is owed
            liability = self._balance(balances, liability_account)
            payment = abs(min(liability, ZERO))
            if payment == ZERO:
                return MaterializationSkip(
                    reason=SkipReason.NO_BALANCE_DUE,
                    message=f"No balance due on credit card account {liability_account}",
                )

        available = self._balance(balances, definition.source_account_id)
        if payment > available:
            action = self.assess_insufficient_funds(available, payment, mode)

            if mode == ExecutionMode.AUTO:
                return MaterializationSkip(
                    reason=SkipReason.INSUFFICIENT_FUNDS,
                    message=(
                        f"Insufficient funds for credit card payment "
                        f"({available} < {payment}). Payment skipped."
                    ),
                    funds_action=action,
                )

            if overrides and overrides.partial_payment:
                if action == FundsAction.NO_FUNDS_AVAILABLE:
                    return MaterializationSkip(
                        reason=SkipReason.NO_FUNDS_AVAILABLE,
                        message="No funds available for credit card payment.",
                        funds_action=action,
                    )
                payment = available

        legs = self._transfer_legs(
            definition, overrides, payment, liability_account, transaction_date
        )
        return self._result(legs, payment, transaction_date)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _effective_amount(
        self,
        definition: RecurringDefinition,
        overrides: Optional[ExecutionOverrides],
    ) -> Decimal:
        if overrides and overrides.amount is not None:
            return overrides.amount
        if definition.amount is not None:
            return definition.amount
        raise AmountRequiredError(
            f"Recurring '{definition.name}' has a flexible amount; "
            "an amount must be supplied at execution time"
        )

    def _effective_date(
        self,
        definition: RecurringDefinition,
        overrides: Optional[ExecutionOverrides],
        mode: ExecutionMode,
        now: datetime,
    ) -> date:
        if overrides and overrides.execution_date is not None:
            return overrides.execution_date
        if definition.next_occurrence_date is not None:
            return definition.next_occurrence_date
        if mode == ExecutionMode.MANUAL:
            return now.date()
        raise InvalidScheduleError(
            f"Recurring '{definition.name}' has no next occurrence date"
        )

    def _destination_account(self, definition: RecurringDefinition) -> str:
        destination = definition.transfer_account_id
        if not destination:
            raise InvalidTransferError(
                f"Recurring '{definition.name}' has no destination account"
            )
        if destination == definition.source_account_id:
            raise InvalidTransferError(
                f"Recurring '{definition.name}' transfers to its own source account"
            )
        return destination

    def _balance(self, balances: Mapping[str, Decimal], account_id: str) -> Decimal:
        try:
            return balances[account_id]
        except KeyError:
            raise MaterializationError(f"Balance not available for account {account_id}")

    def _check_funds(
        self,
        definition: RecurringDefinition,
        balances: Mapping[str, Decimal],
        amount: Decimal,
        mode: ExecutionMode,
    ) -> Optional[MaterializationSkip]:
        """Skip an unattended outflow the source account cannot cover."""
        if mode != ExecutionMode.AUTO:
            return None

        available = self._balance(balances, definition.source_account_id)
        if amount <= available:
            return None

        return MaterializationSkip(
            reason=SkipReason.INSUFFICIENT_FUNDS,
            message=(
                f"Insufficient funds in account {definition.source_account_id} "
                f"({available} < {amount})"
            ),
            funds_action=self.assess_insufficient_funds(available, amount, mode),
        )

    def _transfer_legs(
        self,
        definition: RecurringDefinition,
        overrides: Optional[ExecutionOverrides],
        amount: Decimal,
        destination: str,
        transaction_date: date,
    ) -> list[LedgerTransaction]:
        pairing_id = uuid4()
        outgoing = self._leg(
            definition,
            overrides,
            amount=-amount,
            account_id=definition.source_account_id,
            counter_account_id=destination,
            transaction_date=transaction_date,
            transaction_type=TransactionType.TRANSFER,
            pairing_id=pairing_id,
        )
        incoming = self._leg(
            definition,
            overrides,
            amount=amount,
            account_id=destination,
            counter_account_id=definition.source_account_id,
            transaction_date=transaction_date,
            transaction_type=TransactionType.TRANSFER,
            pairing_id=pairing_id,
        )
        return [outgoing, incoming]

    def _leg(
        self,
        definition: RecurringDefinition,
        overrides: Optional[ExecutionOverrides],
        amount: Decimal,
        account_id: str,
        transaction_date: date,
        transaction_type: TransactionType,
        counter_account_id: Optional[str] = None,
        pairing_id: Optional[UUID] = None,
    ) -> LedgerTransaction:
        description = definition.description
        notes = definition.notes
        if overrides:
            description = overrides.description or description
            notes = overrides.notes or notes

        return LedgerTransaction(
            tenant_id=definition.tenant_id,
            amount=amount,
            account_id=account_id,
            counter_account_id=counter_account_id,
            category_id=definition.category_id,
            currency=definition.currency,
            transaction_date=transaction_date,
            name=definition.name,
            description=description,
            payee=definition.payee_name,
            notes=notes,
            transaction_type=transaction_type,
            recurring_id=definition.id,
            transfer_pairing_id=pairing_id,
        )

    def _result(
        self,
        transactions: list[LedgerTransaction],
        amount: Decimal,
        transaction_date: date,
    ) -> Materialization:
        return Materialization(
            transactions=transactions,
            balance_deltas=[
                BalanceDelta(account_id=t.account_id, delta=t.amount)
                for t in transactions
            ],
            amount=amount,
            transaction_date=transaction_date,
        )
