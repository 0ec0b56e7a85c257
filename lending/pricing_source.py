"""
pricing_source.py - Oracle prices for reserve refresh

Provides the oracle feed format, the validation rules applied before a price
is stored on a reserve, and feed sources keyed by liquidity mint.

Classes:
- OraclePrice: Raw feed reading (integer price, confidence and exponent, plus EMA)
- TokenInfo: Per-reserve oracle configuration (max ages, TWAP divergence)
- ValidatedPrice: Price converted to fixed point, with the checks that passed
- PricingSource: Protocol defining the feed interface
- StaticPricingSource: Time-independent feeds
- TimeSeriesPricingSource: Feeds with history, looked up by publish time

Hard failures (zero price, confidence too wide) raise. Soft failures (stale
price, stale or divergent TWAP) are logged and leave the corresponding
PriceStatusFlags unset, so operations requiring them see a stale reserve.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Protocol, Set, runtime_checkable

from .core import (
    FULL_BPS, MAX_CONFIDENCE_PERCENTAGE, PriceStatusFlags,
    PriceIsZero, PriceConfidenceTooWide, InvalidTwapConfig, InvalidConfig,
)
from .fixed_point import FixedPointValue


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OraclePrice:
    """
    A single feed reading. Real value = price * 10^exponent.

    ema_price and ema_confidence share the exponent of the spot price.
    """
    price: int
    confidence: int
    exponent: int
    ema_price: int
    ema_confidence: int
    publish_time: int
    ema_publish_time: Optional[int] = None

    @property
    def twap_publish_time(self) -> int:
        return self.publish_time if self.ema_publish_time is None else self.ema_publish_time


@dataclass(frozen=True, slots=True)
class TokenInfo:
    """
    Oracle configuration of a reserve.

    Attributes:
        symbol: Display name of the liquidity token
        max_age_price_seconds: Max spot price age for PRICE_AGE_CHECKED
        max_age_twap_seconds: Max TWAP age for TWAP_AGE_CHECKED
        max_twap_divergence_bps: Allowed spot/TWAP divergence; 0 disables TWAP checks
        max_confidence_pct: Confidence interval must be within this share of the price
    """
    symbol: str = ""
    max_age_price_seconds: int = 120
    max_age_twap_seconds: int = 240
    max_twap_divergence_bps: int = 0
    max_confidence_pct: int = MAX_CONFIDENCE_PERCENTAGE

    @property
    def is_twap_enabled(self) -> bool:
        return self.max_twap_divergence_bps > 0

    def validate(self) -> None:
        if self.max_twap_divergence_bps < 0 or self.max_twap_divergence_bps > FULL_BPS:
            raise InvalidTwapConfig(
                f"TWAP divergence must be within 0..{FULL_BPS} bps, "
                f"got {self.max_twap_divergence_bps}"
            )
        if self.is_twap_enabled and self.max_age_twap_seconds <= 0:
            raise InvalidTwapConfig(
                f"{self.symbol or 'token'}: TWAP divergence enabled without a TWAP max age"
            )
        if self.max_age_price_seconds < 0 or self.max_age_twap_seconds < 0:
            raise InvalidConfig("Oracle max ages must be non-negative")
        if not 0 < self.max_confidence_pct <= 100:
            raise InvalidConfig(
                f"Max confidence percentage must be within 1..100, got {self.max_confidence_pct}"
            )


@dataclass(frozen=True, slots=True)
class ValidatedPrice:
    """Fixed-point spot price, confidence and TWAP ready to be stored on a reserve."""
    price: FixedPointValue
    confidence: FixedPointValue
    twap: FixedPointValue
    timestamp: int
    status: PriceStatusFlags


def _check_confidence(price: int, confidence: int, max_confidence_pct: int) -> None:
    if confidence * 100 > price * max_confidence_pct:
        raise PriceConfidenceTooWide(
            f"Confidence {confidence} exceeds {max_confidence_pct}% of price {price}"
        )


def _is_within_divergence(price: int, twap: int, max_divergence_bps: int) -> bool:
    return abs(price - twap) * FULL_BPS <= price * max_divergence_bps


def get_validated_price(
    feed: OraclePrice,
    token_info: TokenInfo,
    unix_timestamp: int,
) -> ValidatedPrice:
    """
    Validate a feed reading and record which checks passed.

    Args:
        feed: Raw oracle reading
        token_info: Oracle configuration of the reserve
        unix_timestamp: Current time in seconds

    Returns:
        ValidatedPrice with PRICE_LOADED plus every soft check that passed

    Raises:
        PriceIsZero: Spot price is zero or negative
        PriceConfidenceTooWide: Spot confidence exceeds the configured share of the price
    """
    if feed.price <= 0:
        raise PriceIsZero(f"{token_info.symbol}: oracle price is {feed.price}")
    _check_confidence(feed.price, feed.confidence, token_info.max_confidence_pct)

    status = PriceStatusFlags.PRICE_LOADED

    price_age = unix_timestamp - feed.publish_time
    if price_age <= token_info.max_age_price_seconds:
        status |= PriceStatusFlags.PRICE_AGE_CHECKED
    else:
        logger.warning(
            "%s: price is too old, age %ss > max %ss",
            token_info.symbol, price_age, token_info.max_age_price_seconds,
        )

    if not token_info.is_twap_enabled:
        status |= PriceStatusFlags.TWAP_CHECKED | PriceStatusFlags.TWAP_AGE_CHECKED
    else:
        twap_age = unix_timestamp - feed.twap_publish_time
        if twap_age <= token_info.max_age_twap_seconds:
            status |= PriceStatusFlags.TWAP_AGE_CHECKED
        else:
            logger.warning(
                "%s: TWAP is too old, age %ss > max %ss",
                token_info.symbol, twap_age, token_info.max_age_twap_seconds,
            )
        if feed.ema_price > 0 and _is_within_divergence(
            feed.price, feed.ema_price, token_info.max_twap_divergence_bps
        ):
            status |= PriceStatusFlags.TWAP_CHECKED
        else:
            logger.warning(
                "%s: price %s diverges from TWAP %s by more than %s bps",
                token_info.symbol, feed.price, feed.ema_price,
                token_info.max_twap_divergence_bps,
            )

    twap_raw = feed.ema_price if feed.ema_price > 0 else feed.price
    return ValidatedPrice(
        price=FixedPointValue.from_scaled(feed.price, feed.exponent),
        confidence=FixedPointValue.from_scaled(feed.confidence, feed.exponent),
        twap=FixedPointValue.from_scaled(twap_raw, feed.exponent),
        timestamp=feed.publish_time,
        status=status,
    )


def is_saved_price_age_valid(
    last_updated_ts: int,
    token_info: TokenInfo,
    unix_timestamp: int,
) -> bool:
    return unix_timestamp - last_updated_ts <= token_info.max_age_price_seconds


# ============================================================================
# FEED SOURCES
# ============================================================================

@runtime_checkable
class PricingSource(Protocol):
    """
    Protocol for oracle feed sources keyed by liquidity mint.

    Implementations must provide get_price() and get_prices() methods.
    """

    def get_price(self, mint: str, unix_timestamp: int) -> Optional[OraclePrice]:
        """Get the latest reading for a mint published at or before unix_timestamp."""
        ...

    def get_prices(self, mints: Set[str], unix_timestamp: int) -> Dict[str, OraclePrice]:
        """Get readings for several mints."""
        ...


class StaticPricingSource:
    """
    Feed source with fixed readings (time-independent).

    Used by tests and demos to pin prices; update_price() replaces a reading.
    """

    def __init__(self, prices: Optional[Dict[str, OraclePrice]] = None):
        self.prices: Dict[str, OraclePrice] = dict(prices or {})

    def get_price(self, mint: str, unix_timestamp: int) -> Optional[OraclePrice]:
        """Get static reading (timestamp is ignored)."""
        return self.prices.get(mint)

    def get_prices(self, mints: Set[str], unix_timestamp: int) -> Dict[str, OraclePrice]:
        return {mint: self.prices[mint] for mint in mints if mint in self.prices}

    def update_price(self, mint: str, price: OraclePrice):
        self.prices[mint] = price

    def __repr__(self):
        return f"StaticPricingSource({len(self.prices)} feeds)"


class TimeSeriesPricingSource:
    """
    Feed source with historical readings.

    Returns the most recent reading whose publish_time is at or before the
    requested timestamp, so a refresh at time t never sees a future price.
    """

    def __init__(self, feeds: Optional[Dict[str, List[OraclePrice]]] = None):
        self.history: Dict[str, List[OraclePrice]] = {}
        for mint, readings in (feeds or {}).items():
            if readings:
                self.history[mint] = sorted(readings, key=lambda r: r.publish_time)

    def add_price(self, mint: str, reading: OraclePrice):
        readings = self.history.setdefault(mint, [])
        readings.append(reading)
        readings.sort(key=lambda r: r.publish_time)

    def get_price(self, mint: str, unix_timestamp: int) -> Optional[OraclePrice]:
        history = self.history.get(mint)
        if not history:
            return None
        publish_times = [r.publish_time for r in history]
        idx = bisect_right(publish_times, unix_timestamp)
        if idx == 0:
            return None
        return history[idx - 1]

    def get_prices(self, mints: Set[str], unix_timestamp: int) -> Dict[str, OraclePrice]:
        prices = {}
        for mint in mints:
            reading = self.get_price(mint, unix_timestamp)
            if reading is not None:
                prices[mint] = reading
        return prices

    def __repr__(self):
        total = sum(len(h) for h in self.history.values())
        return f"TimeSeriesPricingSource({len(self.history)} feeds, {total} readings)"
