"""Fixed-point money arithmetic.

Amounts are held as integer minor units (cents). Every rounding decision in
the advance formulas goes through one of the named modes below:

- ``Rounding.FEE``: round up, away from zero (fees favor the platform)
- ``Rounding.NET``: round down, toward zero (net payouts favor the farmer)
- ``Rounding.AMOUNT``: half-up (general totals)
- ``round_percentage``: 4 decimal places, half-up
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Union

CENT = Decimal("0.01")
PERCENT_QUANTUM = Decimal("0.0001")
HUNDRED = Decimal("100")


class Rounding(Enum):
    FEE = ROUND_UP
    NET = ROUND_DOWN
    AMOUNT = ROUND_HALF_UP


Numeric = Union["Money", Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # str() keeps the shortest repr, so 0.1 stays 0.1 instead of its binary expansion.
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid monetary value: {value!r}") from exc
    raise TypeError(f"Unsupported monetary value type: {type(value).__name__}")


@dataclass(frozen=True, order=True)
class Money:
    cents: int

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError("Money.cents must be an int")

    @classmethod
    def of(cls, value: Numeric, rounding: Rounding = Rounding.AMOUNT) -> Money:
        if isinstance(value, Money):
            return value
        quantized = to_decimal(value).quantize(CENT, rounding=rounding.value)
        return cls(int(quantized.scaleb(2)))

    @classmethod
    def zero(cls) -> Money:
        return cls(0)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.cents).scaleb(-2).quantize(CENT)

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents + other.cents)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents - other.cents)

    def __neg__(self) -> Money:
        return Money(-self.cents)

    def __str__(self) -> str:
        return format(self.amount, "f")

    def is_zero(self) -> bool:
        return self.cents == 0

    def times(self, factor: Numeric, rounding: Rounding = Rounding.AMOUNT) -> Money:
        return Money.of(self.amount * to_decimal(factor), rounding)

    def percent(self, pct: Numeric, rounding: Rounding = Rounding.AMOUNT) -> Money:
        """``self × pct / 100`` rounded once, at the end."""

        return Money.of(self.amount * to_decimal(pct) / HUNDRED, rounding)

    def ratio_of(self, other: Money) -> Decimal:
        if other.cents == 0:
            raise ZeroDivisionError("ratio against a zero amount")
        return Decimal(self.cents) / Decimal(other.cents)


def round_fee(value: Numeric) -> Money:
    return Money.of(value, Rounding.FEE)


def round_net(value: Numeric) -> Money:
    return Money.of(value, Rounding.NET)


def round_amount(value: Numeric) -> Money:
    return Money.of(value, Rounding.AMOUNT)


def round_percentage(value: Numeric) -> Decimal:
    return to_decimal(value).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
