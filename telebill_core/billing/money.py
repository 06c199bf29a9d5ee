"""
Money Helpers

All monetary amounts are integer paise. Conversions from rupee values go
through Decimal and round half-up to the paise.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


PAISE_PER_RUPEE = 100
CURRENCY_SYMBOL = "₹"

Number = Union[int, str, Decimal]


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest whole unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_paise(rupees: Union[Number, float]) -> int:
    """
    Convert a rupee amount to integer paise.

    Floats are converted through their string form so ``349.99`` becomes
    34999 rather than 34998.
    """
    if isinstance(rupees, bool):
        raise ValueError("Boolean is not a monetary amount")
    if isinstance(rupees, float):
        rupees = repr(rupees)
    try:
        amount = Decimal(rupees)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary amount: {rupees!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {rupees!r}")
    return round_half_up(amount * PAISE_PER_RUPEE)


def from_paise(paise: int) -> Decimal:
    """Convert paise to a two-decimal rupee Decimal."""
    return (Decimal(paise) / PAISE_PER_RUPEE).quantize(Decimal("0.01"))


def apply_rate(paise: int, rate: Decimal) -> int:
    """Apply a fractional rate (e.g. a tax rate) to an amount in paise."""
    return round_half_up(Decimal(paise) * rate)


def format_inr(paise: int) -> str:
    """Format paise for display, e.g. ``₹411.82``."""
    sign = "-" if paise < 0 else ""
    return f"{sign}{CURRENCY_SYMBOL}{from_paise(abs(paise)):,}"
