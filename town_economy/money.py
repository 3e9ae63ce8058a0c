"""
Money helpers

All balances are Decimal quantized to cents with ROUND_HALF_UP. Never float.
"""

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_HALF_UP
from typing import Union

from .errors import ValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, str, float]


def to_decimal(value: Amount) -> Decimal:
    """Parse a number into an unquantized Decimal"""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def quantize(value: Amount) -> Decimal:
    """Round to cents, half up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_up(value: Amount) -> Decimal:
    """Round to cents, towards positive infinity"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_CEILING)


def positive_amount(value: Amount, field_name: str = "amount") -> Decimal:
    """Quantize and require a strictly positive result"""
    amount = quantize(value)
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be greater than 0")
    return amount
