"""
lending_market.py - Market-wide configuration and gates

A LendingMarket groups reserves under one owner and quote currency, carries
the liquidation parameters shared by all its reserves, and holds the global
switches (emergency mode, borrowing disabled).

Market settings change only through owner-gated update_lending_market()
calls, one UpdateLendingMarketMode at a time.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import IntEnum
import logging
from typing import Any

from .core import (
    LIQUIDATION_CLOSE_FACTOR, LIQUIDATION_CLOSE_VALUE, MAX_LIQUIDATABLE_VALUE_AT_ONCE,
    CLOSE_TO_INSOLVENCY_RISKY_LTV, GLOBAL_ALLOWED_BORROW_VALUE,
    GLOBAL_UNHEALTHY_BORROW_VALUE, MIN_NET_VALUE_IN_OBLIGATION,
    GlobalEmergencyMode, BorrowingDisabled, InvalidMarketOwner,
    InvalidFlag, InvalidConfig, InvalidUpdateMode,
)
from .fixed_point import FixedPointValue


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LendingMarket:
    """
    Global configuration of a lending market.

    Attributes:
        key: Account key of the market
        owner: Wallet allowed to change market and reserve configuration
        quote_currency: Currency all market values are expressed in
        emergency_mode: Rejects every user operation except refresh
        borrow_disabled: Rejects borrows and flash borrows
        autodeleverage_enabled: Permits owner-driven deleveraging (flag only)
        price_refresh_trigger_to_max_age_pct: Share of max price age after which a refresh is advised
        liquidation_max_debt_close_factor_pct: Max share of one borrow repaid per liquidation
        insolvency_risk_unhealthy_ltv_pct: LTV above which the bad debt bonus applies
        min_full_liquidation_value_threshold: Borrows worth less may be liquidated in full
        max_liquidatable_debt_market_value_at_once: Cap on debt value repaid per liquidation
        global_unhealthy_borrow_value: Cap on any obligation's unhealthy borrow value
        global_allowed_borrow_value: Cap on any obligation's allowed borrow value
        min_net_value_in_obligation: Smallest non-zero net value an obligation may keep
    """
    key: str
    owner: str
    quote_currency: str = "USD"
    emergency_mode: bool = False
    borrow_disabled: bool = False
    autodeleverage_enabled: bool = False
    price_refresh_trigger_to_max_age_pct: int = 0
    liquidation_max_debt_close_factor_pct: int = LIQUIDATION_CLOSE_FACTOR
    insolvency_risk_unhealthy_ltv_pct: int = CLOSE_TO_INSOLVENCY_RISKY_LTV
    min_full_liquidation_value_threshold: int = LIQUIDATION_CLOSE_VALUE
    max_liquidatable_debt_market_value_at_once: int = MAX_LIQUIDATABLE_VALUE_AT_ONCE
    global_unhealthy_borrow_value: int = GLOBAL_UNHEALTHY_BORROW_VALUE
    global_allowed_borrow_value: int = GLOBAL_ALLOWED_BORROW_VALUE
    min_net_value_in_obligation: FixedPointValue = FixedPointValue.from_decimal(
        MIN_NET_VALUE_IN_OBLIGATION
    )


def init_lending_market(key: str, owner: str, quote_currency: str = "USD") -> LendingMarket:
    logger.info("Initialized lending market %s (owner=%s, quote=%s)", key, owner, quote_currency)
    return LendingMarket(key=key, owner=owner, quote_currency=quote_currency)


# ============================================================================
# GATES
# ============================================================================

def check_market_owner(market: LendingMarket, caller: str) -> None:
    if caller != market.owner:
        raise InvalidMarketOwner(f"{caller} is not the owner of market {market.key}")


def check_not_emergency(market: LendingMarket) -> None:
    if market.emergency_mode:
        raise GlobalEmergencyMode(f"Market {market.key} is in emergency mode")


def check_borrowing_enabled(market: LendingMarket) -> None:
    if market.borrow_disabled:
        raise BorrowingDisabled(f"Borrowing is disabled in market {market.key}")


# ============================================================================
# UPDATES
# ============================================================================

class UpdateLendingMarketMode(IntEnum):
    EMERGENCY_MODE = 1
    LIQUIDATION_CLOSE_FACTOR = 2
    LIQUIDATION_MAX_VALUE = 3
    GLOBAL_UNHEALTHY_BORROW = 4
    GLOBAL_ALLOWED_BORROW = 5
    MIN_FULL_LIQUIDATION_THRESHOLD = 7
    INSOLVENCY_RISK_LTV = 8
    PRICE_REFRESH_TRIGGER_TO_MAX_AGE_PCT = 12
    AUTODELEVERAGE_ENABLED = 13
    BORROWING_DISABLED = 14
    MIN_NET_VALUE_OBLIGATION_POST_ACTION = 15


def _as_int(value: Any, mode: UpdateLendingMarketMode) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfig(f"{mode.name} expects int, got {type(value).__name__}")
    return value


def _as_flag(value: Any, mode: UpdateLendingMarketMode) -> bool:
    value = _as_int(value, mode)
    if value not in (0, 1):
        raise InvalidFlag(f"{mode.name} expects 0 or 1, got {value}")
    return value == 1


def _as_pct(value: Any, mode: UpdateLendingMarketMode, low: int = 5) -> int:
    value = _as_int(value, mode)
    if not low <= value <= 100:
        raise InvalidFlag(f"{mode.name} expects {low}..100, got {value}")
    return value


def _as_nonzero(value: Any, mode: UpdateLendingMarketMode) -> int:
    value = _as_int(value, mode)
    if value <= 0:
        raise InvalidFlag(f"{mode.name} must be positive, got {value}")
    return value


def _as_fixed_point(value: Any, mode: UpdateLendingMarketMode) -> FixedPointValue:
    if isinstance(value, FixedPointValue):
        return value
    if isinstance(value, bool):
        raise InvalidConfig(f"{mode.name} expects a decimal, got bool")
    try:
        return FixedPointValue.from_decimal(Decimal(str(value)))
    except InvalidOperation:
        raise InvalidConfig(f"{mode.name} expects a decimal, got {value!r}") from None


def update_lending_market(
    market: LendingMarket,
    caller: str,
    mode: int,
    value: Any,
) -> LendingMarket:
    """
    Change one market setting.

    Args:
        market: Current market record
        caller: Signer; must be the market owner
        mode: UpdateLendingMarketMode value
        value: New setting (int for numeric modes and flags, Decimal or
               FixedPointValue for MIN_NET_VALUE_OBLIGATION_POST_ACTION)

    Returns:
        Updated LendingMarket

    Raises:
        InvalidMarketOwner: caller is not the owner
        InvalidUpdateMode: Unknown mode
        InvalidFlag: Flag or percentage out of range
        InvalidConfig: Wrong value type or refresh trigger above 100
    """
    check_market_owner(market, caller)
    try:
        mode = UpdateLendingMarketMode(mode)
    except ValueError:
        raise InvalidUpdateMode(f"Unknown lending market update mode: {mode}") from None

    if mode == UpdateLendingMarketMode.EMERGENCY_MODE:
        updated = replace(market, emergency_mode=_as_flag(value, mode))
    elif mode == UpdateLendingMarketMode.LIQUIDATION_CLOSE_FACTOR:
        updated = replace(market, liquidation_max_debt_close_factor_pct=_as_pct(value, mode))
    elif mode == UpdateLendingMarketMode.LIQUIDATION_MAX_VALUE:
        updated = replace(market, max_liquidatable_debt_market_value_at_once=_as_nonzero(value, mode))
    elif mode == UpdateLendingMarketMode.GLOBAL_UNHEALTHY_BORROW:
        updated = replace(market, global_unhealthy_borrow_value=_as_int(value, mode))
    elif mode == UpdateLendingMarketMode.GLOBAL_ALLOWED_BORROW:
        updated = replace(market, global_allowed_borrow_value=_as_int(value, mode))
    elif mode == UpdateLendingMarketMode.MIN_FULL_LIQUIDATION_THRESHOLD:
        updated = replace(market, min_full_liquidation_value_threshold=_as_nonzero(value, mode))
    elif mode == UpdateLendingMarketMode.INSOLVENCY_RISK_LTV:
        updated = replace(market, insolvency_risk_unhealthy_ltv_pct=_as_pct(value, mode))
    elif mode == UpdateLendingMarketMode.PRICE_REFRESH_TRIGGER_TO_MAX_AGE_PCT:
        pct = _as_int(value, mode)
        if not 0 <= pct <= 100:
            raise InvalidConfig(f"{mode.name} expects 0..100, got {pct}")
        updated = replace(market, price_refresh_trigger_to_max_age_pct=pct)
    elif mode == UpdateLendingMarketMode.AUTODELEVERAGE_ENABLED:
        updated = replace(market, autodeleverage_enabled=_as_flag(value, mode))
    elif mode == UpdateLendingMarketMode.BORROWING_DISABLED:
        updated = replace(market, borrow_disabled=_as_flag(value, mode))
    elif mode == UpdateLendingMarketMode.MIN_NET_VALUE_OBLIGATION_POST_ACTION:
        updated = replace(market, min_net_value_in_obligation=_as_fixed_point(value, mode))
    else:
        raise InvalidUpdateMode(f"Unhandled lending market update mode: {mode.name}")

    if updated.global_allowed_borrow_value < 0 or updated.global_unhealthy_borrow_value < 0:
        raise InvalidConfig("Global borrow value caps must be non-negative")

    logger.info("Market %s: %s set to %r", market.key, mode.name, value)
    return updated


def update_market_owner(market: LendingMarket, caller: str, new_owner: str) -> LendingMarket:
    check_market_owner(market, caller)
    if not new_owner:
        raise InvalidConfig("New market owner cannot be empty")
    logger.info("Market %s: owner %s -> %s", market.key, market.owner, new_owner)
    return replace(market, owner=new_owner)
