"""
Integer minor-unit (kobo) money helpers.

Ledger arithmetic never leaves int. Decimal only appears at the display
boundary, and rounding happens once, half-up, when a display value is
turned back into kobo.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Union

from .errors import CorruptStateError, InvalidAmountError, ValidationError

KOBO_PER_NAIRA = 100
_KOBO = Decimal("1")
_CENTS = Decimal("0.01")

DisplayAmount = Union[Decimal, int, str, float]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def to_kobo(value: DisplayAmount) -> int:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"Amount {value!r} is not a number")
    if not amount.is_finite():
        raise ValidationError(f"Amount {value!r} is not a finite number")
    return int((amount * KOBO_PER_NAIRA).quantize(_KOBO, rounding=ROUND_HALF_UP))


def to_display(kobo: int) -> Decimal:
    if not _is_int(kobo):
        raise ValidationError(f"Kobo amount must be an integer, got {kobo!r}")
    return (Decimal(kobo) / KOBO_PER_NAIRA).quantize(_CENTS)


def format_amount(kobo: int, symbol: str = "₦") -> str:
    value = to_display(kobo)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def require_amount(value: Any, field: str = "amount") -> int:
    if not _is_int(value):
        raise ValidationError(f"{field} must be an integer number of kobo, got {value!r}")
    if value <= 0:
        raise InvalidAmountError(f"{field} must be greater than zero, got {value}")
    return value


def require_non_negative(value: Any, field: str = "amount") -> int:
    if not _is_int(value):
        raise ValidationError(f"{field} must be an integer number of kobo, got {value!r}")
    if value < 0:
        raise ValidationError(f"{field} cannot be negative, got {value}")
    return value


def require_balance(value: Any, field: str, customer_id: Any = None) -> int:
    # Stored balances are never defaulted to zero: None, NaN, floats and
    # negatives all mean the row has drifted outside the ledger's control.
    if not _is_int(value) or value < 0:
        raise CorruptStateError(
            f"Customer {customer_id} has corrupt {field}: {value!r}"
        )
    return value
