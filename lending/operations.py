"""
operations.py - Reserve and obligation state transitions

Every function here is a pure state transition: it receives the current
records and a Clock, checks gates in a fixed order, and returns new records
plus the exact token amounts to move. Nothing is mutated, so a failure at any
point leaves the caller's records untouched.

Gate order for user operations:
1. Amount is non-zero
2. Market not in emergency mode (and borrowing enabled, for borrows)
3. Records belong to the market
4. Reserve status permits the action (RESERVE_STATUS_PERMISSIONS)
5. Reserve and obligation refreshed at the current slot with the required
   PriceStatusFlags
6. Operation-specific health checks and post-action invariants

Every mutated reserve and obligation is returned marked stale.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import logging
from typing import Dict, Mapping, Optional, Tuple

from .core import (
    U64_MAX, Clock, LastUpdate, PriceStatusFlags,
    InvalidAmount, ReserveStale, ObligationStale, InvalidAccountInput,
    BorrowTooLarge, BorrowTooSmall, BorrowLimitExceeded, BorrowAttributionLimitExceeded,
    DepositLimitExceeded, WithdrawTooLarge, WithdrawTooSmall, RepayTooSmall,
    ObligationCollateralEmpty, ObligationLiquidityEmpty, ObligationDepositsEmpty,
    ObligationDepositsZero, ObligationInDeprecatedReserve, InsufficientProtocolFeesToRedeem,
)
from .fixed_point import FixedPointValue, ZERO
from .lending_market import (
    LendingMarket, check_market_owner, check_not_emergency, check_borrowing_enabled,
)
from .obligation import (
    Obligation, check_post_deposit_invariants, check_post_withdraw_invariants,
    check_post_borrow_invariants, check_post_repay_invariants,
    validate_obligation_asset_tiers,
)
from .pricing_source import ValidatedPrice, is_saved_price_age_valid
from .reserve import (
    Reserve, ReserveAction, ReserveCollateral, ReserveConfig, ReserveLiquidity,
    ReserveStatus, apply_config_update, check_reserve_action, validate_reserve_config,
)


logger = logging.getLogger(__name__)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class WithdrawResult:
    reserve: Reserve
    obligation: Obligation
    withdraw_amount: int            # Collateral tokens released to the owner


@dataclass(frozen=True, slots=True)
class BorrowResult:
    """
    Attributes:
        reserve: Borrow reserve after the borrow
        obligation: Obligation with the new debt
        reserves: Deposit reserves with updated attributed_borrow_value
                  (includes the borrow reserve if it is also a deposit reserve)
        borrow_amount: Debt added, fee included
        receive_amount: Liquidity sent to the borrower
        borrow_fee: Liquidity sent to the fee receiver
    """
    reserve: Reserve
    obligation: Obligation
    reserves: Mapping[str, Reserve]
    borrow_amount: FixedPointValue
    receive_amount: int
    borrow_fee: int


@dataclass(frozen=True, slots=True)
class RepayResult:
    reserve: Reserve
    obligation: Obligation
    settle_amount: FixedPointValue  # Debt removed
    repay_amount: int               # Liquidity paid in


# ============================================================================
# SHARED CHECKS
# ============================================================================

def check_reserve_in_market(reserve: Reserve, market: LendingMarket) -> None:
    if reserve.lending_market != market.key:
        raise InvalidAccountInput(f"Reserve {reserve.key} does not belong to market {market.key}")


def check_obligation_in_market(obligation: Obligation, market: LendingMarket) -> None:
    if obligation.lending_market != market.key:
        raise InvalidAccountInput(
            f"Obligation {obligation.key} does not belong to market {market.key}"
        )


def check_reserve_fresh(
    reserve: Reserve,
    clock: Clock,
    required: PriceStatusFlags = PriceStatusFlags.NONE,
) -> None:
    if reserve.is_stale(clock.slot, required):
        raise ReserveStale(
            f"Reserve {reserve.key} is stale at slot {clock.slot} "
            f"(last update {reserve.last_update.slot}, requires {required})"
        )


def check_obligation_fresh(
    obligation: Obligation,
    clock: Clock,
    required: PriceStatusFlags = PriceStatusFlags.NONE,
) -> None:
    if obligation.is_stale(clock.slot, required):
        raise ObligationStale(
            f"Obligation {obligation.key} is stale at slot {clock.slot} "
            f"(last update {obligation.last_update.slot}, requires {required})"
        )


def _check_amount(amount: int, what: str) -> None:
    if amount <= 0:
        raise InvalidAmount(f"{what} amount must be positive, got {amount}")


# ============================================================================
# INITIALIZATION AND REFRESH
# ============================================================================

def init_reserve(
    market: LendingMarket,
    caller: str,
    key: str,
    liquidity: ReserveLiquidity,
    collateral: ReserveCollateral,
    config: ReserveConfig,
    clock: Clock,
) -> Reserve:
    """
    Create a reserve in the market (owner only).

    The reserve starts stale; it must be refreshed with a price before use.

    Raises:
        InvalidMarketOwner: caller is not the market owner
        InvalidConfig: config fails validate_reserve_config()
    """
    check_market_owner(market, caller)
    validate_reserve_config(config)
    logger.info("Initialized reserve %s (%s) in market %s", key, liquidity.mint, market.key)
    return Reserve(
        key=key,
        lending_market=market.key,
        liquidity=liquidity,
        collateral=collateral,
        config=config,
        last_update=LastUpdate(slot=clock.slot, stale=True),
    )


def refresh_reserve(
    reserve: Reserve,
    clock: Clock,
    price: Optional[ValidatedPrice] = None,
) -> Reserve:
    """
    Accrue interest up to the current slot and store a new oracle price.

    Without a new price the saved one is kept; if it has outlived the
    reserve's max price age the price status is cleared. Refreshing twice in
    the same slot accrues no extra interest.

    Args:
        reserve: Reserve to refresh
        clock: Current slot and unix timestamp
        price: Validated oracle price, if one was read in this transaction

    Returns:
        Fresh Reserve at clock.slot
    """
    reserve = reserve.accrue_interest(clock.slot)

    if price is not None:
        liquidity = replace(
            reserve.liquidity,
            market_price=price.price,
            market_price_confidence=price.confidence,
            smoothed_market_price=price.twap,
            market_price_last_updated_ts=price.timestamp,
        )
        reserve = replace(reserve, liquidity=liquidity)
        price_status = price.status
    elif is_saved_price_age_valid(
        reserve.liquidity.market_price_last_updated_ts,
        reserve.config.token_info,
        clock.unix_timestamp,
    ):
        price_status = None
    else:
        price_status = PriceStatusFlags.NONE

    return replace(reserve, last_update=reserve.last_update.update_slot(clock.slot, price_status))


def is_price_refresh_needed(reserve: Reserve, market: LendingMarket, unix_timestamp: int) -> bool:
    """
    True if the reserve's price should be re-read from the oracle.

    A refresh is advised once the price age reaches the market's trigger
    percentage of the reserve's max price age, or when any check failed.
    """
    if (reserve.last_update.price_status & PriceStatusFlags.ALL_CHECKS) != PriceStatusFlags.ALL_CHECKS:
        return True
    max_age = reserve.config.token_info.max_age_price_seconds
    trigger_age = max_age * market.price_refresh_trigger_to_max_age_pct // 100
    price_age = unix_timestamp - reserve.liquidity.market_price_last_updated_ts
    return price_age >= trigger_age


# ============================================================================
# RESERVE LIQUIDITY
# ============================================================================

def deposit_reserve_liquidity(
    market: LendingMarket,
    reserve: Reserve,
    clock: Clock,
    liquidity_amount: int,
) -> Tuple[Reserve, int]:
    """
    Deposit liquidity and mint collateral tokens.

    Returns:
        (reserve, collateral_amount minted to the depositor)

    Raises:
        InvalidAmount: Zero amount or too small to mint collateral
        GlobalEmergencyMode: Market in emergency mode
        ReserveFrozen / ReserveDeprecated: Reserve not active
        ReserveStale: Reserve not refreshed this slot
        DepositLimitExceeded: Total supply would exceed the deposit limit
    """
    _check_amount(liquidity_amount, "Deposit")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_reserve_action(reserve, ReserveAction.DEPOSIT_LIQUIDITY)
    check_reserve_fresh(reserve, clock)

    reserve, collateral_amount = reserve.deposit_liquidity(liquidity_amount)
    if reserve.deposit_limit_crossed():
        raise DepositLimitExceeded(
            f"Reserve {reserve.key} supply {reserve.liquidity.total_supply()} "
            f"exceeds deposit limit {reserve.config.deposit_limit}"
        )
    logger.debug("Reserve %s: deposited %s, minted %s", reserve.key, liquidity_amount, collateral_amount)
    return reserve.mark_stale(), collateral_amount


def redeem_reserve_collateral(
    market: LendingMarket,
    reserve: Reserve,
    clock: Clock,
    collateral_amount: int,
) -> Tuple[Reserve, int]:
    """
    Burn collateral tokens and release liquidity.

    Returns:
        (reserve, liquidity_amount released to the redeemer)

    Raises:
        InsufficientLiquidity: Not enough available liquidity in the reserve
    """
    _check_amount(collateral_amount, "Redeem")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_reserve_action(reserve, ReserveAction.REDEEM_COLLATERAL)
    check_reserve_fresh(reserve, clock)

    reserve, liquidity_amount = reserve.redeem_collateral(collateral_amount)
    logger.debug("Reserve %s: redeemed %s collateral for %s", reserve.key, collateral_amount, liquidity_amount)
    return reserve.mark_stale(), liquidity_amount


def redeem_fees(market: LendingMarket, reserve: Reserve, clock: Clock) -> Tuple[Reserve, int]:
    """
    Move accumulated protocol fees out of available liquidity.

    Returns:
        (reserve, amount sent to the fee receiver)
    """
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_reserve_action(reserve, ReserveAction.REDEEM_FEES)
    check_reserve_fresh(reserve, clock)

    withdraw_amount = reserve.calculate_redeem_fees()
    if withdraw_amount == 0:
        raise InsufficientProtocolFeesToRedeem(f"Reserve {reserve.key} has no fees to redeem")
    liquidity = reserve.liquidity.redeem_fees(withdraw_amount)
    logger.info("Reserve %s: redeemed %s protocol fees", reserve.key, withdraw_amount)
    return replace(reserve, liquidity=liquidity).mark_stale(), withdraw_amount


def flash_borrow_reserve_liquidity(
    market: LendingMarket,
    reserve: Reserve,
    clock: Clock,
    liquidity_amount: int,
) -> Reserve:
    """
    Lend liquidity for the duration of one transaction.

    Raises:
        FlashLoansDisabled: The reserve has no flash loan fee configured
        BorrowingDisabled: Borrowing is disabled market-wide
        InsufficientLiquidity: Not enough available liquidity
    """
    _check_amount(liquidity_amount, "Flash borrow")
    check_not_emergency(market)
    check_borrowing_enabled(market)
    check_reserve_in_market(reserve, market)
    check_reserve_action(reserve, ReserveAction.FLASH_BORROW)
    reserve.config.fees.calculate_flash_loan_fees(FixedPointValue.from_int(liquidity_amount))

    liquidity = reserve.liquidity.borrow(FixedPointValue.from_int(liquidity_amount))
    return replace(reserve, liquidity=liquidity)


def flash_repay_reserve_liquidity(
    market: LendingMarket,
    reserve: Reserve,
    clock: Clock,
    liquidity_amount: int,
) -> Tuple[Reserve, int]:
    """
    Return a flash loan.

    Returns:
        (reserve, flash loan fee owed to the fee receiver on top of the amount)
    """
    _check_amount(liquidity_amount, "Flash repay")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_reserve_action(reserve, ReserveAction.FLASH_REPAY)

    amount = FixedPointValue.from_int(liquidity_amount)
    flash_loan_fee = reserve.config.fees.calculate_flash_loan_fees(amount)
    liquidity = reserve.liquidity.repay(liquidity_amount, amount)
    return replace(reserve, liquidity=liquidity), flash_loan_fee


def update_reserve_config(
    market: LendingMarket,
    caller: str,
    reserve: Reserve,
    mode: int,
    value,
) -> Reserve:
    """
    Change one reserve config field group (owner only); the reserve becomes stale.

    Raises:
        InvalidMarketOwner: caller is not the market owner
        InvalidUpdateMode: Unknown mode
        InvalidConfig: Resulting config is inconsistent
    """
    check_market_owner(market, caller)
    check_reserve_in_market(reserve, market)
    config = apply_config_update(reserve.config, mode, value)
    logger.info("Reserve %s: config mode %s updated", reserve.key, mode)
    return replace(reserve, config=config).mark_stale()


# ============================================================================
# OBLIGATION COLLATERAL
# ============================================================================

def deposit_obligation_collateral(
    market: LendingMarket,
    reserve: Reserve,
    obligation: Obligation,
    clock: Clock,
    collateral_amount: int,
) -> Tuple[Reserve, Obligation]:
    """
    Add collateral tokens to an obligation.

    Returns:
        (reserve, obligation), both stale

    Raises:
        ObligationReserveLimit: No free deposit slot
        IsolatedAssetTierViolation: Isolated assets mixed
        WorseLTVBlocked / NetValueRemainingTooSmall: Post-deposit invariants
    """
    _check_amount(collateral_amount, "Collateral deposit")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_obligation_in_market(obligation, market)
    check_reserve_action(reserve, ReserveAction.DEPOSIT_COLLATERAL)
    check_reserve_fresh(reserve, clock)
    check_obligation_fresh(obligation, clock)

    updated, index = obligation.find_or_add_collateral(reserve)
    position_value = updated.deposits[index].market_value
    updated = updated.deposit(collateral_amount, index)
    validate_obligation_asset_tiers(updated)

    liquidity_amount = reserve.collateral_exchange_rate().fraction_collateral_to_liquidity(
        collateral_amount
    )
    deposit_value = reserve.market_value(liquidity_amount)
    check_post_deposit_invariants(obligation, market, deposit_value, position_value)

    logger.debug("Obligation %s: deposited %s collateral into %s", obligation.key, collateral_amount, reserve.key)
    return reserve.mark_stale(), updated.mark_stale()


def withdraw_obligation_collateral(
    market: LendingMarket,
    reserve: Reserve,
    obligation: Obligation,
    clock: Clock,
    collateral_amount: int,
) -> WithdrawResult:
    """
    Release collateral tokens from an obligation.

    Without debt any amount up to the deposit may leave. With debt the
    withdrawal is limited to the deposit value that keeps the obligation
    within its allowed borrow value. U64_MAX withdraws the most allowed.

    Raises:
        ObligationInDeprecatedReserve: Withdrawing from an active reserve while
            holding collateral in a deprecated one
        WithdrawTooLarge: Withdrawal exceeds the deposit or the allowed value
        WithdrawTooSmall: Withdrawal rounds to zero collateral
        LiabilitiesBiggerThanAssets / WorseLTVBlocked: Post-withdraw invariants
    """
    _check_amount(collateral_amount, "Withdraw")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_obligation_in_market(obligation, market)
    check_reserve_action(reserve, ReserveAction.WITHDRAW_COLLATERAL)
    has_debt = bool(obligation.borrows)
    required = PriceStatusFlags.ALL_CHECKS if has_debt else PriceStatusFlags.NONE
    check_reserve_fresh(reserve, clock, required)
    check_obligation_fresh(obligation, clock, required)

    collateral, index = obligation.find_collateral(reserve.key)
    if collateral.deposited_amount == 0:
        raise ObligationCollateralEmpty(f"Obligation {obligation.key} has no collateral in {reserve.key}")
    if obligation.num_of_obsolete_reserves > 0 and reserve.config.status == ReserveStatus.ACTIVE:
        raise ObligationInDeprecatedReserve(
            f"Obligation {obligation.key} must withdraw from deprecated reserves first"
        )

    deposited = FixedPointValue.from_int(collateral.deposited_amount)
    if not has_debt:
        if collateral_amount == U64_MAX:
            withdraw_amount = collateral.deposited_amount
        elif collateral_amount > collateral.deposited_amount:
            raise WithdrawTooLarge(
                f"Withdraw of {collateral_amount} exceeds deposit {collateral.deposited_amount}"
            )
        else:
            withdraw_amount = collateral_amount
    else:
        if obligation.deposited_value.is_zero():
            raise ObligationDepositsZero(f"Obligation {obligation.key} deposits are worth nothing")
        if collateral.market_value.is_zero():
            raise ObligationCollateralEmpty(f"Collateral in {reserve.key} is worth nothing")
        max_withdraw_value = obligation.max_withdraw_value(reserve.config.loan_to_value_pct)
        if max_withdraw_value.is_zero():
            raise WithdrawTooLarge(f"Obligation {obligation.key} has no withdrawable value")

        if collateral_amount == U64_MAX:
            withdraw_value = min(collateral.market_value, max_withdraw_value)
            withdraw_amount = (deposited * withdraw_value / collateral.market_value).to_floor()
        else:
            if collateral_amount > collateral.deposited_amount:
                raise WithdrawTooLarge(
                    f"Withdraw of {collateral_amount} exceeds deposit {collateral.deposited_amount}"
                )
            withdraw_amount = collateral_amount
            withdraw_value = (collateral.market_value
                              * FixedPointValue.from_int(withdraw_amount) / deposited)
            if withdraw_value > max_withdraw_value:
                raise WithdrawTooLarge(
                    f"Withdraw value {withdraw_value} exceeds max {max_withdraw_value}"
                )

    if withdraw_amount == 0:
        raise WithdrawTooSmall(f"Withdraw from {reserve.key} rounds to zero collateral")

    withdraw_value = collateral.market_value * FixedPointValue.from_int(withdraw_amount) / deposited
    check_post_withdraw_invariants(obligation, market, withdraw_value, collateral.market_value)

    updated = obligation.withdraw(withdraw_amount, index)
    if withdraw_amount == collateral.deposited_amount:
        reserve = replace(
            reserve,
            attributed_borrow_value=reserve.attributed_borrow_value.saturating_sub(
                collateral.attributed_borrow_value
            ),
        )

    logger.debug("Obligation %s: withdrew %s collateral from %s", obligation.key, withdraw_amount, reserve.key)
    return WithdrawResult(reserve.mark_stale(), updated.mark_stale(), withdraw_amount)


# ============================================================================
# OBLIGATION LIQUIDITY
# ============================================================================

def _attribute_borrow(
    obligation: Obligation,
    reserves: Dict[str, Reserve],
    borrow_value: FixedPointValue,
) -> Obligation:
    """Spread a new borrow's value over deposit reserves by their LTV-weighted value."""
    contributions = []
    for collateral in obligation.deposits:
        reserve = reserves.get(collateral.deposit_reserve)
        if reserve is None:
            raise InvalidAccountInput(
                f"Deposit reserve {collateral.deposit_reserve} of obligation {obligation.key} was not supplied"
            )
        contributions.append(
            collateral.market_value * FixedPointValue.from_percent(reserve.config.loan_to_value_pct)
        )
    total = ZERO
    for contribution in contributions:
        total = total + contribution
    if total.is_zero():
        return obligation

    deposits = list(obligation.deposits)
    for index, collateral in enumerate(deposits):
        share = borrow_value * contributions[index] / total
        reserve = reserves[collateral.deposit_reserve]
        new_attributed = reserve.attributed_borrow_value + share
        limit = FixedPointValue.from_int(reserve.config.attributed_borrow_limit)
        if not share.is_zero() and new_attributed > limit:
            raise BorrowAttributionLimitExceeded(
                f"Reserve {reserve.key} attributed borrow value {new_attributed} "
                f"would exceed limit {reserve.config.attributed_borrow_limit}"
            )
        reserves[reserve.key] = replace(reserve, attributed_borrow_value=new_attributed)
        deposits[index] = replace(
            collateral, attributed_borrow_value=collateral.attributed_borrow_value + share
        )
    return replace(obligation, deposits=tuple(deposits))


def borrow_obligation_liquidity(
    market: LendingMarket,
    reserve: Reserve,
    obligation: Obligation,
    clock: Clock,
    liquidity_amount: int,
    deposit_reserves: Mapping[str, Reserve],
) -> BorrowResult:
    """
    Borrow liquidity against an obligation's collateral.

    The new debt (fee included, priced at the reserve's upper-bound price and
    weighted by its borrow factor) must fit in the obligation's remaining
    borrow value. U64_MAX borrows the most allowed.

    Args:
        market: Market of the reserve and obligation
        reserve: Reserve to borrow from
        obligation: Borrowing obligation (refreshed this slot)
        clock: Current slot
        liquidity_amount: Tokens to receive, or U64_MAX
        deposit_reserves: Reserves of every obligation deposit, for attribution

    Returns:
        BorrowResult

    Raises:
        BorrowingDisabled: Borrowing disabled market-wide
        ReserveStale / ObligationStale: Refresh required (all price checks)
        ObligationDepositsEmpty / ObligationDepositsZero: Nothing to borrow against
        BorrowTooLarge: Not enough remaining borrow value
        BorrowTooSmall: Fee consumes the whole amount or nothing can be received
        BorrowLimitExceeded: Reserve borrow limit reached
        BorrowAttributionLimitExceeded: A deposit reserve's attribution cap reached
        InsufficientLiquidity: Not enough available liquidity
    """
    _check_amount(liquidity_amount, "Borrow")
    check_not_emergency(market)
    check_borrowing_enabled(market)
    check_reserve_in_market(reserve, market)
    check_obligation_in_market(obligation, market)
    check_reserve_action(reserve, ReserveAction.BORROW)
    check_reserve_fresh(reserve, clock, PriceStatusFlags.ALL_CHECKS)
    check_obligation_fresh(obligation, clock, PriceStatusFlags.ALL_CHECKS)

    if not obligation.deposits:
        raise ObligationDepositsEmpty(f"Obligation {obligation.key} has no deposits")
    if obligation.deposited_value.is_zero():
        raise ObligationDepositsZero(f"Obligation {obligation.key} deposits are worth nothing")

    remaining_borrow_value = obligation.remaining_borrow_value()
    if remaining_borrow_value.is_zero():
        raise BorrowTooLarge(f"Obligation {obligation.key} has no remaining borrow value")

    remaining_reserve_capacity = FixedPointValue.from_int(reserve.config.borrow_limit).saturating_sub(
        reserve.liquidity.borrowed_amount
    )
    if remaining_reserve_capacity.is_zero():
        raise BorrowLimitExceeded(f"Reserve {reserve.key} borrow limit reached")

    calc = reserve.calculate_borrow(
        liquidity_amount, remaining_borrow_value, remaining_reserve_capacity
    )
    if calc.receive_amount == 0:
        raise BorrowTooSmall(f"Borrow from {reserve.key} would receive nothing")

    liquidity = reserve.liquidity.borrow(calc.borrow_amount)
    borrow_reserve = replace(reserve, liquidity=liquidity)
    if borrow_reserve.borrow_limit_crossed():
        raise BorrowLimitExceeded(
            f"Reserve {reserve.key} borrows would exceed limit {reserve.config.borrow_limit}"
        )

    updated, index = obligation.find_or_add_liquidity(borrow_reserve)
    position_value = updated.borrows[index].borrow_factor_adjusted_market_value
    updated = updated.borrow(calc.borrow_amount, index)
    validate_obligation_asset_tiers(updated)

    borrow_value = reserve.market_value(calc.borrow_amount) * reserve.borrow_factor()
    check_post_borrow_invariants(obligation, market, borrow_value, position_value)

    reserves = dict(deposit_reserves)
    if borrow_reserve.key in reserves:
        reserves[borrow_reserve.key] = borrow_reserve
    borrow_value_upper_bound = reserve.market_value_upper_bound(calc.borrow_amount) * reserve.borrow_factor()
    updated = _attribute_borrow(updated, reserves, borrow_value_upper_bound)
    borrow_reserve = reserves.get(borrow_reserve.key, borrow_reserve).mark_stale()
    reserves = {key: r.mark_stale() for key, r in reserves.items()}
    reserves[borrow_reserve.key] = borrow_reserve

    logger.debug(
        "Obligation %s: borrowed %s from %s (receive %s, fee %s)",
        obligation.key, calc.borrow_amount, reserve.key, calc.receive_amount, calc.borrow_fee,
    )
    return BorrowResult(
        reserve=borrow_reserve,
        obligation=updated.mark_stale(),
        reserves=reserves,
        borrow_amount=calc.borrow_amount,
        receive_amount=calc.receive_amount,
        borrow_fee=calc.borrow_fee,
    )


def repay_obligation_liquidity(
    market: LendingMarket,
    reserve: Reserve,
    obligation: Obligation,
    clock: Clock,
    liquidity_amount: int,
) -> RepayResult:
    """
    Repay debt owed to a reserve. U64_MAX settles the whole borrow.

    Raises:
        InvalidObligationLiquidity: No borrow from this reserve
        ObligationLiquidityEmpty: The borrow is already zero
        RepayTooSmall: Repayment rounds to nothing
    """
    _check_amount(liquidity_amount, "Repay")
    check_not_emergency(market)
    check_reserve_in_market(reserve, market)
    check_obligation_in_market(obligation, market)
    check_reserve_action(reserve, ReserveAction.REPAY)
    check_reserve_fresh(reserve, clock)
    check_obligation_fresh(obligation, clock)

    liquidity, index = obligation.find_liquidity(reserve.key)
    if liquidity.borrowed_amount_wads.is_zero():
        raise ObligationLiquidityEmpty(f"Obligation {obligation.key} owes nothing to {reserve.key}")
    liquidity = liquidity.accrue_interest(reserve.liquidity.cumulative_borrow_rate)

    calc = reserve.calculate_repay(liquidity_amount, liquidity.borrowed_amount_wads)
    if calc.repay_amount == 0:
        raise RepayTooSmall(f"Repay of {liquidity_amount} to {reserve.key} rounds to nothing")

    repay_value = reserve.market_value(calc.settle_amount) * reserve.borrow_factor()
    check_post_repay_invariants(
        obligation, market, repay_value, liquidity.borrow_factor_adjusted_market_value
    )

    reserve = replace(reserve, liquidity=reserve.liquidity.repay(calc.repay_amount, calc.settle_amount))
    updated = obligation.with_liquidity(index, liquidity.repay(calc.settle_amount))

    logger.debug(
        "Obligation %s: repaid %s to %s (settled %s)",
        obligation.key, calc.repay_amount, reserve.key, calc.settle_amount,
    )
    return RepayResult(reserve.mark_stale(), updated.mark_stale(), calc.settle_amount, calc.repay_amount)
