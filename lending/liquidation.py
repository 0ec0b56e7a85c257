"""
liquidation.py - Repaying unhealthy debt in exchange for discounted collateral

An obligation whose borrowed_value_upper_bound reaches its unhealthy borrow
value can be liquidated: a liquidator repays part of one borrow and seizes
collateral worth the repaid value plus a bonus.

Sizing, in order:
1. Close factor: at most liquidation_max_debt_close_factor_pct of the borrow,
   and at most max_liquidatable_debt_market_value_at_once in value. Borrows
   worth less than min_full_liquidation_value_threshold may be closed in full.
2. Bonus: the distance between the obligation's LTV and its unhealthy LTV,
   clamped to the reserve's [min, max] bonus. At or above the market's
   insolvency LTV the (smaller) bad debt bonus applies instead.
3. Collateral bound: if repaid value plus bonus exceeds the collateral entry,
   the whole entry is seized and the repayment is scaled down to match.

A share of the bonus (protocol_liquidation_fee_pct) goes to the withdraw
reserve's fee receiver when the seized collateral is redeemed.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import logging

from .core import (
    U64_MAX, Clock, PriceStatusFlags,
    InvalidAmount, ObligationHealthy, ObligationDepositsEmpty, ObligationDepositsZero,
    ObligationBorrowsZero, ObligationCollateralEmpty, ObligationLiquidityEmpty, ZeroRepay,
    CollateralNonLiquidatable, LiquidationTooSmall, LiquidationSlippageError,
)
from .fixed_point import FixedPointValue, ONE
from .lending_market import LendingMarket, check_not_emergency
from .obligation import Obligation, ObligationCollateral, ObligationLiquidity
from .operations import (
    check_reserve_in_market, check_obligation_in_market,
    check_reserve_fresh, check_obligation_fresh,
)
from .reserve import Reserve, ReserveAction, ReserveConfig, check_reserve_action


logger = logging.getLogger(__name__)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CalculateLiquidationResult:
    settle_amount: FixedPointValue      # Debt removed
    repay_amount: int                   # Liquidity paid by the liquidator
    withdraw_amount: int                # Collateral tokens seized
    repay_value: FixedPointValue        # Market value of settle_amount
    liquidation_bonus_rate: FixedPointValue


@dataclass(frozen=True, slots=True)
class LiquidateObligationResult:
    repay_reserve: Reserve
    withdraw_reserve: Reserve
    obligation: Obligation
    settle_amount: FixedPointValue
    repay_amount: int
    withdraw_amount: int
    liquidation_bonus_rate: FixedPointValue


@dataclass(frozen=True, slots=True)
class LiquidateAndRedeemResult:
    """
    Outcome of a liquidation followed by redemption of the seized collateral.

    When the withdraw reserve has enough available liquidity the seized
    collateral is burned and its liquidity split between the liquidator and
    the fee receiver. Otherwise the liquidator keeps the collateral tokens and
    the protocol fee is taken in collateral tokens.

    Attributes:
        repay_reserve: Repay reserve after the liquidation (same record as
                       withdraw_reserve when both keys match)
        withdraw_reserve: Withdraw reserve after liquidation and redemption
        obligation: Liquidated obligation
        settle_amount: Debt removed
        repay_amount: Liquidity paid by the liquidator
        withdraw_collateral_amount: Collateral tokens seized
        redeem_collateral_amount: Seized collateral tokens burned
        withdraw_liquidity_amount: Liquidity released by the burn
        protocol_fee: Fee sent to the fee receiver (liquidity if redeemed,
                      collateral tokens otherwise)
        liquidation_bonus_rate: Bonus applied to the repaid value
    """
    repay_reserve: Reserve
    withdraw_reserve: Reserve
    obligation: Obligation
    settle_amount: FixedPointValue
    repay_amount: int
    withdraw_collateral_amount: int
    redeem_collateral_amount: int
    withdraw_liquidity_amount: int
    protocol_fee: int
    liquidation_bonus_rate: FixedPointValue

    @property
    def fee_in_collateral(self) -> bool:
        return self.redeem_collateral_amount == 0

    @property
    def liquidator_liquidity_amount(self) -> int:
        if self.fee_in_collateral:
            return 0
        return self.withdraw_liquidity_amount - self.protocol_fee

    @property
    def liquidator_collateral_amount(self) -> int:
        kept = self.withdraw_collateral_amount - self.redeem_collateral_amount
        if self.fee_in_collateral:
            return kept - self.protocol_fee
        return kept


# ============================================================================
# SIZING
# ============================================================================

def calculate_liquidation_bonus(
    withdraw_config: ReserveConfig,
    market: LendingMarket,
    obligation: Obligation,
) -> FixedPointValue:
    """Bonus rate paid on top of the repaid value, as a fraction."""
    if obligation.deposited_value.is_zero():
        return FixedPointValue.from_bps(withdraw_config.max_liquidation_bonus_bps)
    user_ltv = obligation.borrowed_value_upper_bound / obligation.deposited_value
    if user_ltv >= FixedPointValue.from_percent(market.insolvency_risk_unhealthy_ltv_pct):
        return FixedPointValue.from_bps(withdraw_config.bad_debt_liquidation_bonus_bps)

    diff = user_ltv.saturating_sub(obligation.unhealthy_loan_to_value())
    low = FixedPointValue.from_bps(withdraw_config.min_liquidation_bonus_bps)
    high = FixedPointValue.from_bps(withdraw_config.max_liquidation_bonus_bps)
    return min(max(diff, low), high)


def max_liquidatable_borrowed_amount(
    liquidity: ObligationLiquidity,
    market: LendingMarket,
) -> FixedPointValue:
    """Largest share of one borrow a single liquidation may settle."""
    borrowed = liquidity.borrowed_amount_wads
    if liquidity.market_value < FixedPointValue.from_int(market.min_full_liquidation_value_threshold):
        return borrowed

    close_factor = FixedPointValue.from_percent(market.liquidation_max_debt_close_factor_pct)
    max_amount = borrowed * close_factor
    max_value = FixedPointValue.from_int(market.max_liquidatable_debt_market_value_at_once)
    if liquidity.market_value * close_factor > max_value:
        max_amount = borrowed * max_value / liquidity.market_value
    return max_amount


def calculate_liquidation(
    repay_reserve: Reserve,
    liquidity: ObligationLiquidity,
    collateral: ObligationCollateral,
    amount_to_liquidate: int,
    liquidation_bonus_rate: FixedPointValue,
    max_liquidatable_amount: FixedPointValue,
) -> CalculateLiquidationResult:
    """
    Size the repayment and the seized collateral.

    Args:
        repay_reserve: Reserve the debt is owed to (priced at spot)
        liquidity: The borrow entry being repaid
        collateral: The collateral entry being seized
        amount_to_liquidate: Liquidity offered by the liquidator, or U64_MAX
        liquidation_bonus_rate: From calculate_liquidation_bonus()
        max_liquidatable_amount: From max_liquidatable_borrowed_amount()
    """
    borrowed = liquidity.borrowed_amount_wads
    if amount_to_liquidate == U64_MAX:
        requested = borrowed
    else:
        requested = FixedPointValue.from_int(amount_to_liquidate)
    settle_amount = min(requested, max_liquidatable_amount, borrowed)

    repay_value = repay_reserve.market_value(settle_amount)
    withdraw_value = repay_value * (ONE + liquidation_bonus_rate)

    if withdraw_value > collateral.market_value:
        settle_amount = settle_amount * collateral.market_value / withdraw_value
        repay_value = repay_value * collateral.market_value / withdraw_value
        withdraw_amount = collateral.deposited_amount
    else:
        withdraw_amount = (FixedPointValue.from_int(collateral.deposited_amount)
                           * withdraw_value / collateral.market_value).to_floor()

    return CalculateLiquidationResult(
        settle_amount=settle_amount,
        repay_amount=settle_amount.to_ceil(),
        withdraw_amount=withdraw_amount,
        repay_value=repay_value,
        liquidation_bonus_rate=liquidation_bonus_rate,
    )


def calculate_protocol_liquidation_fee(
    amount_liquidated: int,
    liquidation_bonus_rate: FixedPointValue,
    protocol_liquidation_fee_pct: int,
) -> int:
    """
    Protocol share of the bonus contained in amount_liquidated, rounded up, at least 1.

    amount_liquidated = base * (1 + bonus), so the bonus part is
    amount - amount / (1 + bonus).
    """
    if protocol_liquidation_fee_pct == 0 or amount_liquidated == 0:
        return 0
    amount = FixedPointValue.from_int(amount_liquidated)
    bonus = amount - amount / (ONE + liquidation_bonus_rate)
    fee = bonus * FixedPointValue.from_percent(protocol_liquidation_fee_pct)
    return min(max(fee.to_ceil(), 1), amount_liquidated)


# ============================================================================
# LIQUIDATION
# ============================================================================

def redeemable_collateral(withdraw_reserve: Reserve, collateral_amount: int) -> int:
    """Part of collateral_amount the reserve's available liquidity can redeem, 0 if it rounds to nothing."""
    exchange_rate = withdraw_reserve.collateral_exchange_rate()
    max_redeemable = exchange_rate.liquidity_to_collateral(withdraw_reserve.liquidity.available_amount)
    redeem_amount = min(collateral_amount, max_redeemable)
    if redeem_amount > 0 and exchange_rate.collateral_to_liquidity(redeem_amount) == 0:
        return 0
    return redeem_amount


def _check_slippage(redeemable: int, min_acceptable: int) -> None:
    if redeemable < min_acceptable:
        raise LiquidationSlippageError(
            f"Redeemable collateral {redeemable} is below the minimum {min_acceptable}"
        )


def liquidate_obligation(
    market: LendingMarket,
    obligation: Obligation,
    repay_reserve: Reserve,
    withdraw_reserve: Reserve,
    clock: Clock,
    liquidity_amount: int,
    min_acceptable_received_collateral_amount: int = 0,
) -> LiquidateObligationResult:
    """
    Repay part of an unhealthy obligation's borrow and seize collateral.

    Reserves and the obligation must have been refreshed in this slot with at
    least PRICE_LOADED and PRICE_AGE_CHECKED; TWAP checks are not required so
    that liquidations proceed when the TWAP feed lags.

    Args:
        market: Market of the obligation
        obligation: Obligation being liquidated
        repay_reserve: Reserve of the borrow being repaid
        withdraw_reserve: Reserve of the collateral being seized
        clock: Current slot
        liquidity_amount: Liquidity offered, or U64_MAX for the most allowed
        min_acceptable_received_collateral_amount: Slippage floor on the seized
            collateral the withdraw reserve can redeem

    Returns:
        LiquidateObligationResult with every record marked stale

    Raises:
        ObligationHealthy: Obligation is not liquidatable
        CollateralNonLiquidatable: Withdraw reserve has zero LTV or threshold
        LiquidationTooSmall: Repayment or seized collateral rounds to zero
        LiquidationSlippageError: Redeemable seized collateral below the floor
    """
    if liquidity_amount <= 0:
        raise InvalidAmount(f"Liquidation amount must be positive, got {liquidity_amount}")
    check_not_emergency(market)
    check_reserve_in_market(repay_reserve, market)
    check_reserve_in_market(withdraw_reserve, market)
    check_obligation_in_market(obligation, market)
    check_reserve_action(repay_reserve, ReserveAction.LIQUIDATE)
    check_reserve_action(withdraw_reserve, ReserveAction.LIQUIDATE)
    check_reserve_fresh(repay_reserve, clock, PriceStatusFlags.LIQUIDATION_CHECKS)
    check_reserve_fresh(withdraw_reserve, clock, PriceStatusFlags.LIQUIDATION_CHECKS)
    check_obligation_fresh(obligation, clock, PriceStatusFlags.LIQUIDATION_CHECKS)

    config = withdraw_reserve.config
    if config.loan_to_value_pct == 0 or config.liquidation_threshold_pct == 0:
        raise CollateralNonLiquidatable(
            f"Reserve {withdraw_reserve.key} collateral cannot be liquidated"
        )
    if not obligation.deposits:
        raise ObligationDepositsEmpty(f"Obligation {obligation.key} has no deposits")
    if obligation.deposited_value.is_zero():
        raise ObligationDepositsZero(f"Obligation {obligation.key} deposits are worth nothing")
    if obligation.borrowed_value.is_zero():
        raise ObligationBorrowsZero(f"Obligation {obligation.key} has no debt")
    if not obligation.is_liquidatable():
        raise ObligationHealthy(
            f"Obligation {obligation.key} is healthy: borrowed {obligation.borrowed_value_upper_bound} "
            f"< unhealthy {obligation.unhealthy_borrow_value}"
        )

    liquidity, liquidity_index = obligation.find_liquidity(repay_reserve.key)
    if liquidity.borrowed_amount_wads.is_zero():
        raise ZeroRepay(f"Obligation {obligation.key} owes nothing to {repay_reserve.key}")
    if liquidity.market_value.is_zero():
        raise ObligationLiquidityEmpty(f"Borrow from {repay_reserve.key} is worth nothing")
    collateral, collateral_index = obligation.find_collateral(withdraw_reserve.key)
    if collateral.market_value.is_zero():
        raise ObligationCollateralEmpty(f"Collateral in {withdraw_reserve.key} is worth nothing")

    bonus_rate = calculate_liquidation_bonus(config, market, obligation)
    max_amount = max_liquidatable_borrowed_amount(liquidity, market)
    calc = calculate_liquidation(
        repay_reserve, liquidity, collateral, liquidity_amount, bonus_rate, max_amount
    )
    if calc.repay_amount == 0 or calc.withdraw_amount == 0:
        raise LiquidationTooSmall(
            f"Liquidation of {obligation.key} repays {calc.repay_amount} "
            f"and seizes {calc.withdraw_amount}"
        )
    repay_reserve = replace(
        repay_reserve,
        liquidity=repay_reserve.liquidity.repay(calc.repay_amount, calc.settle_amount),
    )
    if withdraw_reserve.key == repay_reserve.key:
        withdraw_reserve = repay_reserve

    # Debt leaving the obligation is no longer attributed to the seized collateral
    attribution_reduction = min(calc.repay_value, collateral.attributed_borrow_value)
    remaining_attributed = collateral.attributed_borrow_value - attribution_reduction
    seized = replace(collateral, attributed_borrow_value=remaining_attributed).withdraw(
        calc.withdraw_amount
    )
    reserve_reduction = attribution_reduction
    if seized.deposited_amount == 0:
        reserve_reduction = reserve_reduction + remaining_attributed
    withdraw_reserve = replace(
        withdraw_reserve,
        attributed_borrow_value=withdraw_reserve.attributed_borrow_value.saturating_sub(reserve_reduction),
    )
    if withdraw_reserve.key == repay_reserve.key:
        repay_reserve = withdraw_reserve

    _check_slippage(
        redeemable_collateral(withdraw_reserve, calc.withdraw_amount),
        min_acceptable_received_collateral_amount,
    )

    updated = obligation.with_collateral(collateral_index, seized)
    updated = updated.repay(calc.settle_amount, liquidity_index)

    logger.info(
        "Liquidated obligation %s: repaid %s to %s, seized %s from %s (bonus %s)",
        obligation.key, calc.repay_amount, repay_reserve.key,
        calc.withdraw_amount, withdraw_reserve.key, bonus_rate,
    )
    return LiquidateObligationResult(
        repay_reserve=repay_reserve.mark_stale(),
        withdraw_reserve=withdraw_reserve.mark_stale(),
        obligation=updated.mark_stale(),
        settle_amount=calc.settle_amount,
        repay_amount=calc.repay_amount,
        withdraw_amount=calc.withdraw_amount,
        liquidation_bonus_rate=bonus_rate,
    )


def liquidate_and_redeem(
    market: LendingMarket,
    obligation: Obligation,
    repay_reserve: Reserve,
    withdraw_reserve: Reserve,
    clock: Clock,
    liquidity_amount: int,
    min_acceptable_received_collateral_amount: int = 0,
) -> LiquidateAndRedeemResult:
    """
    Liquidate, then redeem as much seized collateral as the withdraw reserve's
    available liquidity allows, charging the protocol liquidation fee.

    Arguments and errors as liquidate_obligation().
    """
    result = liquidate_obligation(
        market, obligation, repay_reserve, withdraw_reserve, clock,
        liquidity_amount, min_acceptable_received_collateral_amount,
    )
    withdraw_reserve = result.withdraw_reserve
    fee_pct = withdraw_reserve.config.protocol_liquidation_fee_pct

    redeem_amount = redeemable_collateral(withdraw_reserve, result.withdraw_amount)

    if redeem_amount > 0:
        withdraw_reserve, liquidity_released = withdraw_reserve.redeem_collateral(redeem_amount)
        withdraw_reserve = withdraw_reserve.mark_stale()
        protocol_fee = calculate_protocol_liquidation_fee(
            liquidity_released, result.liquidation_bonus_rate, fee_pct
        )
    else:
        liquidity_released = 0
        protocol_fee = calculate_protocol_liquidation_fee(
            result.withdraw_amount, result.liquidation_bonus_rate, fee_pct
        )
        logger.warning(
            "Reserve %s lacks liquidity to redeem seized collateral; fee taken in collateral",
            withdraw_reserve.key,
        )

    repay_reserve = result.repay_reserve
    if repay_reserve.key == withdraw_reserve.key:
        repay_reserve = withdraw_reserve

    return LiquidateAndRedeemResult(
        repay_reserve=repay_reserve,
        withdraw_reserve=withdraw_reserve,
        obligation=result.obligation,
        settle_amount=result.settle_amount,
        repay_amount=result.repay_amount,
        withdraw_collateral_amount=result.withdraw_amount,
        redeem_collateral_amount=redeem_amount,
        withdraw_liquidity_amount=liquidity_released,
        protocol_fee=protocol_fee,
        liquidation_bonus_rate=result.liquidation_bonus_rate,
    )
