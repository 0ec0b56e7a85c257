"""
interest_rate.py - Borrow rate curve and per-slot compounding

The borrow rate is a piecewise-linear function of reserve utilization:

    rate
     ^
 max |                       /
     |                     /
 opt |-------------------*
     |             ____/
 min |______----
     +-------------------+---> utilization
     0                optimal    1

Rates are annual and configured in basis points. Interest compounds per slot:
the annual rate is divided by SLOTS_PER_YEAR and (1 + per_slot_rate) is raised
to the number of elapsed slots.
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import FULL_BPS, SLOTS_PER_YEAR, InvalidBorrowRateCurvePoint
from .fixed_point import FixedPointValue, ONE


@dataclass(frozen=True, slots=True)
class InterestRateModel:
    """
    Annual borrow rate as a function of utilization.

    Attributes:
        optimal_utilization_bps: Kink of the curve (0 gives a flat curve at max)
        optimal_borrow_rate_bps: Annual rate at the kink
        max_borrow_rate_bps: Annual rate at 100% utilization
        min_borrow_rate_bps: Annual rate at 0% utilization
    """
    optimal_utilization_bps: int = 8_000
    optimal_borrow_rate_bps: int = 800
    max_borrow_rate_bps: int = 5_000
    min_borrow_rate_bps: int = 0

    def validate(self) -> None:
        if not 0 <= self.optimal_utilization_bps <= FULL_BPS:
            raise InvalidBorrowRateCurvePoint(
                f"Optimal utilization must be within 0..{FULL_BPS} bps, "
                f"got {self.optimal_utilization_bps}"
            )
        if self.min_borrow_rate_bps < 0:
            raise InvalidBorrowRateCurvePoint(
                f"Minimum borrow rate must be non-negative, got {self.min_borrow_rate_bps}"
            )
        if not (self.min_borrow_rate_bps
                <= self.optimal_borrow_rate_bps
                <= self.max_borrow_rate_bps):
            raise InvalidBorrowRateCurvePoint(
                "Borrow rates must satisfy min <= optimal <= max, got "
                f"{self.min_borrow_rate_bps}/{self.optimal_borrow_rate_bps}/{self.max_borrow_rate_bps}"
            )

    def borrow_rate(self, utilization: FixedPointValue) -> FixedPointValue:
        """Annual borrow rate at the given utilization (clamped to 100%)."""
        max_rate = FixedPointValue.from_bps(self.max_borrow_rate_bps)
        if self.optimal_utilization_bps == 0:
            return max_rate

        utilization = min(utilization, ONE)
        optimal_utilization = FixedPointValue.from_bps(self.optimal_utilization_bps)
        min_rate = FixedPointValue.from_bps(self.min_borrow_rate_bps)
        optimal_rate = FixedPointValue.from_bps(self.optimal_borrow_rate_bps)

        if utilization <= optimal_utilization:
            slope = (optimal_rate - min_rate) * utilization / optimal_utilization
            return min_rate + slope

        excess = utilization - optimal_utilization
        remaining = ONE - optimal_utilization
        slope = (max_rate - optimal_rate) * excess / remaining
        return optimal_rate + slope


def slot_rate(annual_rate: FixedPointValue) -> FixedPointValue:
    return annual_rate / SLOTS_PER_YEAR


def compounded_interest(annual_rate: FixedPointValue, slots_elapsed: int) -> FixedPointValue:
    """
    Growth factor (1 + annual_rate / SLOTS_PER_YEAR) ** slots_elapsed.

    Returns exactly 1 for zero slots or a zero rate.
    """
    if slots_elapsed == 0 or annual_rate.is_zero():
        return ONE
    return (ONE + slot_rate(annual_rate)).try_pow(slots_elapsed)
