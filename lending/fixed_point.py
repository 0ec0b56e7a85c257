"""
fixed_point.py - Deterministic unsigned fixed-point arithmetic

FixedPointValue wraps an integer scaled by WAD (10^18). Every operation is
checked: overflow past MAX_RAW raises MathOverflow, a negative result raises
NegativeResult, division by zero raises DivideByZero. Multiplication and
division floor. Values never wrap and never clamp silently.

Python integers are unbounded, so the range limit is enforced explicitly to
keep results identical to a 192-bit implementation.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Union

from .core import WAD, MathOverflow, NegativeResult, DivideByZero


MAX_RAW = 2 ** 192 - 1

_HALF_WAD = WAD // 2

Operand = Union['FixedPointValue', int]


def _check_raw(raw: int) -> int:
    if raw < 0:
        raise NegativeResult(f"Fixed-point result is negative: raw={raw}")
    if raw > MAX_RAW:
        raise MathOverflow(f"Fixed-point result overflows: raw={raw}")
    return raw


@dataclass(frozen=True, slots=True, order=True)
class FixedPointValue:
    """
    Unsigned fixed-point number with 18 decimal places.

    Integer operands in arithmetic are treated as plain unscaled numbers, so
    `value * 3` triples the value and `value + 1` adds one whole unit.
    """
    raw: int

    def __post_init__(self):
        if isinstance(self.raw, bool) or not isinstance(self.raw, int):
            raise TypeError(f"FixedPointValue raw must be int, got {type(self.raw)}")
        _check_raw(self.raw)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def zero(cls) -> FixedPointValue:
        return cls(0)

    @classmethod
    def one(cls) -> FixedPointValue:
        return cls(WAD)

    @classmethod
    def from_int(cls, value: int) -> FixedPointValue:
        return cls(_check_raw(value * WAD))

    @classmethod
    def from_percent(cls, percent: int) -> FixedPointValue:
        return cls(_check_raw(percent * WAD // 100))

    @classmethod
    def from_bps(cls, bps: int) -> FixedPointValue:
        return cls(_check_raw(bps * WAD // 10_000))

    @classmethod
    def from_scaled(cls, value: int, exponent: int) -> FixedPointValue:
        """
        Build value * 10^exponent, e.g. an oracle price with its exponent.

        Digits beyond 18 decimal places are floored.
        """
        shift = 18 + exponent
        if shift >= 0:
            return cls(_check_raw(value * 10 ** shift))
        if value < 0:
            raise NegativeResult(f"Scaled value is negative: {value}")
        return cls(value // 10 ** (-shift))

    @classmethod
    def from_decimal(cls, value: Decimal) -> FixedPointValue:
        """Convert a Decimal, flooring digits beyond 18 decimal places."""
        scaled = (Decimal(value) * WAD).to_integral_value(rounding=ROUND_DOWN)
        return cls(_check_raw(int(scaled)))

    # ------------------------------------------------------------------
    # Checked arithmetic
    # ------------------------------------------------------------------

    @staticmethod
    def _raw_of(other: Operand) -> int:
        if isinstance(other, FixedPointValue):
            return other.raw
        if isinstance(other, bool) or not isinstance(other, int):
            raise TypeError(f"Unsupported operand type: {type(other)}")
        return other * WAD

    def try_add(self, other: Operand) -> FixedPointValue:
        return FixedPointValue(_check_raw(self.raw + self._raw_of(other)))

    def try_sub(self, other: Operand) -> FixedPointValue:
        return FixedPointValue(_check_raw(self.raw - self._raw_of(other)))

    def try_mul(self, other: Operand) -> FixedPointValue:
        if isinstance(other, FixedPointValue):
            return FixedPointValue(_check_raw(self.raw * other.raw // WAD))
        if isinstance(other, bool) or not isinstance(other, int):
            raise TypeError(f"Unsupported operand type: {type(other)}")
        return FixedPointValue(_check_raw(self.raw * other))

    def try_div(self, other: Operand) -> FixedPointValue:
        if isinstance(other, FixedPointValue):
            if other.raw == 0:
                raise DivideByZero(f"Division of {self} by zero")
            return FixedPointValue(_check_raw(self.raw * WAD // other.raw))
        if isinstance(other, bool) or not isinstance(other, int):
            raise TypeError(f"Unsupported operand type: {type(other)}")
        if other == 0:
            raise DivideByZero(f"Division of {self} by zero")
        return FixedPointValue(_check_raw(self.raw // other))

    def try_pow(self, exponent: int) -> FixedPointValue:
        """Raise to a non-negative integer power by repeated squaring, flooring each step."""
        if exponent < 0:
            raise NegativeResult(f"Negative exponent: {exponent}")
        result = FixedPointValue.one()
        base = self
        n = exponent
        while n > 0:
            if n & 1:
                result = result.try_mul(base)
            n >>= 1
            if n:
                base = base.try_mul(base)
        return result

    def saturating_sub(self, other: Operand) -> FixedPointValue:
        return FixedPointValue(max(self.raw - self._raw_of(other), 0))

    def __add__(self, other: Operand) -> FixedPointValue:
        return self.try_add(other)

    def __radd__(self, other: int) -> FixedPointValue:
        return self.try_add(other)

    def __sub__(self, other: Operand) -> FixedPointValue:
        return self.try_sub(other)

    def __mul__(self, other: Operand) -> FixedPointValue:
        return self.try_mul(other)

    def __rmul__(self, other: int) -> FixedPointValue:
        return self.try_mul(other)

    def __truediv__(self, other: Operand) -> FixedPointValue:
        return self.try_div(other)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def is_zero(self) -> bool:
        return self.raw == 0

    def to_floor(self) -> int:
        return self.raw // WAD

    def to_ceil(self) -> int:
        return -(-self.raw // WAD)

    def to_round(self) -> int:
        return (self.raw + _HALF_WAD) // WAD

    def to_decimal(self) -> Decimal:
        return Decimal(self.raw) / Decimal(WAD)

    def __str__(self) -> str:
        whole, frac = divmod(self.raw, WAD)
        if frac == 0:
            return str(whole)
        return f"{whole}.{frac:018d}".rstrip("0")

    def __repr__(self) -> str:
        return f"FixedPointValue({self})"


ZERO = FixedPointValue.zero()
ONE = FixedPointValue.one()
