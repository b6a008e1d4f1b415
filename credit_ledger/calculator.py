"""
Transaction calculator.

Pure functions that derive paid/remaining amounts, status and debt impact
from a transaction's kind, payment method and amount. Nothing here touches
storage; every input and output is integer kobo.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError
from .models import (
    DEBT_KINDS,
    IMMEDIATE_METHODS,
    PaymentMethod,
    TransactionKind,
    TransactionStatus,
)

_PERCENT = Decimal("0.01")


@dataclass(frozen=True)
class InitialAmounts:
    paid_amount: int
    remaining_amount: int
    payment_method: PaymentMethod


@dataclass(frozen=True)
class PaymentProgress:
    status: TransactionStatus
    paid_amount: int
    remaining_amount: int
    percentage_paid: Decimal


@dataclass(frozen=True)
class DebtImpact:
    change: int
    is_increase: bool
    is_decrease: bool


@dataclass(frozen=True)
class OverpaymentSplit:
    debt_cleared: int
    credit_created: int


@dataclass(frozen=True)
class MixedPaymentValidation:
    is_valid: bool
    error: Optional[str] = None


def calculate_initial_amounts(
    kind: TransactionKind,
    payment_method: Optional[PaymentMethod],
    amount: int,
    provided_paid_amount: Optional[int] = None,
) -> InitialAmounts:
    if kind == TransactionKind.CREDIT:
        return InitialAmounts(0, amount, PaymentMethod.CREDIT)

    if kind in (TransactionKind.PAYMENT, TransactionKind.REFUND):
        method = payment_method or PaymentMethod.CASH
        if method in (PaymentMethod.CREDIT, PaymentMethod.MIXED):
            raise ValidationError(f"A {kind.value} cannot be settled with method '{method.value}'")
        return InitialAmounts(amount, 0, method)

    if payment_method == PaymentMethod.CREDIT:
        return InitialAmounts(0, amount, PaymentMethod.CREDIT)

    if payment_method == PaymentMethod.MIXED:
        if provided_paid_amount is None:
            raise ValidationError("A mixed sale needs the amount paid upfront")
        if provided_paid_amount < 0 or provided_paid_amount > amount:
            raise ValidationError(
                f"Upfront payment {provided_paid_amount} must be between 0 and {amount}"
            )
        return InitialAmounts(provided_paid_amount, amount - provided_paid_amount, PaymentMethod.MIXED)

    return InitialAmounts(amount, 0, payment_method or PaymentMethod.CASH)


def calculate_status(
    kind: TransactionKind, total: int, paid: int, remaining: int
) -> TransactionStatus:
    if kind in (TransactionKind.PAYMENT, TransactionKind.REFUND):
        return TransactionStatus.COMPLETED
    if remaining <= 0:
        return TransactionStatus.COMPLETED
    if 0 < paid < total:
        return TransactionStatus.PARTIAL
    return TransactionStatus.PENDING


def calculate_payment_progress(
    kind: TransactionKind, total: int, paid: int, remaining: int
) -> PaymentProgress:
    # Zero-amount transactions are complete with nothing paid, not an error.
    if total > 0:
        percentage = (Decimal(paid) * 100 / Decimal(total)).quantize(_PERCENT, rounding=ROUND_HALF_UP)
    else:
        percentage = Decimal("0.00")
    return PaymentProgress(
        status=calculate_status(kind, total, paid, remaining),
        paid_amount=paid,
        remaining_amount=remaining,
        percentage_paid=percentage,
    )


def calculate_debt_impact(
    kind: TransactionKind,
    payment_method: PaymentMethod,
    amount: int,
    applied_to_debt: bool = False,
) -> DebtImpact:
    """Signed effect of one transaction on outstanding debt.

    For sales and credits ``amount`` is the portion left unpaid when the
    transaction was recorded; a sale settled on the spot by cash, bank
    transfer or card never moves debt. A payment that is not applied to debt
    has no debt impact because it is routed to the credit balance instead.
    """
    change = 0
    if kind in DEBT_KINDS:
        if not (kind == TransactionKind.SALE and payment_method in IMMEDIATE_METHODS):
            change = amount
    elif kind == TransactionKind.PAYMENT:
        if applied_to_debt:
            change = -amount
    elif kind == TransactionKind.REFUND:
        change = -amount

    return DebtImpact(change=abs(change), is_increase=change > 0, is_decrease=change < 0)


def allocate_overpayment(payment_amount: int, current_debt: int) -> OverpaymentSplit:
    debt_cleared = min(payment_amount, max(current_debt, 0))
    return OverpaymentSplit(debt_cleared=debt_cleared, credit_created=payment_amount - debt_cleared)


def validate_mixed_payment(total: int, cash: int, credit: int = 0) -> MixedPaymentValidation:
    if cash < 0 or credit < 0:
        return MixedPaymentValidation(False, "Payment amounts cannot be negative")
    if cash + credit != total:
        return MixedPaymentValidation(False, "Payment amounts must equal total amount")
    return MixedPaymentValidation(True)
