"""Decimal helpers for amounts, odds and multipliers.

Balances and stakes are held to the cent; multipliers to 0.01x.  Payouts
round *down* so the platform never pays a fraction of a cent it does not
owe.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Final, Union

from wagerline.core.errors import ValidationError

CENT: Final[Decimal] = Decimal("0.01")
ZERO: Final[Decimal] = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number, field: str = "amount") -> Decimal:
    """Parse ``value`` into a finite Decimal.  Floats go through ``str``."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} is not a number: {value!r}") from exc
    if not dec.is_finite():
        raise ValidationError(f"{field} must be finite")
    return dec


def to_money(value: Number, field: str = "amount") -> Decimal:
    """Amount rounded half-up to the cent (user-entered values)."""
    return to_decimal(value, field).quantize(CENT, rounding=ROUND_HALF_UP)


def positive_money(value: Number, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= ZERO:
        raise ValidationError(f"{field} must be greater than zero", **{field: amount})
    return amount


def payout(stake: Decimal, multiplier: Decimal) -> Decimal:
    """stake × multiplier, rounded down to the cent."""
    return (stake * multiplier).quantize(CENT, rounding=ROUND_DOWN)


def floor_multiplier(value: Number) -> Decimal:
    return to_decimal(value, "multiplier").quantize(CENT, rounding=ROUND_DOWN)
