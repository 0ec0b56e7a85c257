"""
obligation.py - A user's deposits and borrows across reserves

An Obligation holds up to MAX_OBLIGATION_DEPOSITS collateral entries and
MAX_OBLIGATION_BORROWS borrow entries, one per reserve, plus cached aggregate
values that are only trustworthy right after refresh_obligation().

Aggregates (quote currency):
    deposited_value             sum of deposit market values
    allowed_borrow_value        sum of value * LTV, capped by the market
    unhealthy_borrow_value      sum of value * liquidation threshold, capped by the market
    unweighted_borrowed_value   sum of borrow market values
    borrowed_value              sum of borrow values * borrow factor
    borrowed_value_upper_bound  as borrowed_value, priced at max(spot, TWAP)

An obligation is liquidatable iff it has debt and
borrowed_value_upper_bound >= unhealthy_borrow_value.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
import logging
from typing import Dict, Mapping, Tuple

from .core import (
    MAX_OBLIGATION_DEPOSITS, MAX_OBLIGATION_BORROWS, LastUpdate, PriceStatusFlags,
    NegativeInterestRate, ReserveStale, InvalidAccountInput, ObligationReserveLimit,
    InvalidObligationCollateral, InvalidObligationLiquidity, WithdrawTooLarge,
    WorseLTVBlocked, LiabilitiesBiggerThanAssets, NetValueRemainingTooSmall,
    IsolatedAssetTierViolation,
)
from .fixed_point import FixedPointValue, ZERO, ONE
from .lending_market import LendingMarket
from .reserve import AssetTier, Reserve, ReserveStatus


logger = logging.getLogger(__name__)


# ============================================================================
# ENTRIES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ObligationCollateral:
    """Collateral tokens of one reserve deposited into an obligation."""
    deposit_reserve: str
    deposited_amount: int = 0
    market_value: FixedPointValue = ZERO
    attributed_borrow_value: FixedPointValue = ZERO
    asset_tier: AssetTier = AssetTier.REGULAR

    def deposit(self, collateral_amount: int) -> ObligationCollateral:
        return replace(self, deposited_amount=self.deposited_amount + collateral_amount)

    def withdraw(self, collateral_amount: int) -> ObligationCollateral:
        if collateral_amount > self.deposited_amount:
            raise WithdrawTooLarge(
                f"Withdraw of {collateral_amount} exceeds deposit {self.deposited_amount}"
            )
        return replace(self, deposited_amount=self.deposited_amount - collateral_amount)


@dataclass(frozen=True, slots=True)
class ObligationLiquidity:
    """Debt owed to one reserve, indexed by the reserve's cumulative borrow rate."""
    borrow_reserve: str
    cumulative_borrow_rate_wads: FixedPointValue = ONE
    borrowed_amount_wads: FixedPointValue = ZERO
    market_value: FixedPointValue = ZERO
    borrow_factor_adjusted_market_value: FixedPointValue = ZERO
    asset_tier: AssetTier = AssetTier.REGULAR

    def accrue_interest(self, cumulative_borrow_rate: FixedPointValue) -> ObligationLiquidity:
        """Scale the debt by the growth of the reserve's interest index."""
        if cumulative_borrow_rate < self.cumulative_borrow_rate_wads:
            raise NegativeInterestRate(
                f"Borrow rate index decreased: {self.cumulative_borrow_rate_wads} -> "
                f"{cumulative_borrow_rate}"
            )
        if cumulative_borrow_rate == self.cumulative_borrow_rate_wads:
            return self
        borrowed = (self.borrowed_amount_wads * cumulative_borrow_rate
                    / self.cumulative_borrow_rate_wads)
        return replace(
            self,
            borrowed_amount_wads=borrowed,
            cumulative_borrow_rate_wads=cumulative_borrow_rate,
        )

    def borrow(self, borrow_amount: FixedPointValue) -> ObligationLiquidity:
        return replace(self, borrowed_amount_wads=self.borrowed_amount_wads + borrow_amount)

    def repay(self, settle_amount: FixedPointValue) -> ObligationLiquidity:
        return replace(self, borrowed_amount_wads=self.borrowed_amount_wads - settle_amount)


# ============================================================================
# OBLIGATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Obligation:
    key: str
    lending_market: str
    owner: str
    deposits: Tuple[ObligationCollateral, ...] = ()
    borrows: Tuple[ObligationLiquidity, ...] = ()
    deposited_value: FixedPointValue = ZERO
    borrowed_value: FixedPointValue = ZERO
    unweighted_borrowed_value: FixedPointValue = ZERO
    borrowed_value_upper_bound: FixedPointValue = ZERO
    allowed_borrow_value: FixedPointValue = ZERO
    unhealthy_borrow_value: FixedPointValue = ZERO
    last_update: LastUpdate = field(default_factory=LastUpdate)
    num_of_obsolete_reserves: int = 0

    def is_stale(self, current_slot: int, required: PriceStatusFlags = PriceStatusFlags.NONE) -> bool:
        return self.last_update.is_stale(current_slot, required)

    def mark_stale(self) -> Obligation:
        return replace(self, last_update=self.last_update.mark_stale())

    def loan_to_value(self) -> FixedPointValue:
        if self.deposited_value.is_zero():
            return ZERO
        return self.borrowed_value / self.deposited_value

    def unhealthy_loan_to_value(self) -> FixedPointValue:
        if self.deposited_value.is_zero():
            return ZERO
        return self.unhealthy_borrow_value / self.deposited_value

    def remaining_borrow_value(self) -> FixedPointValue:
        return self.allowed_borrow_value.saturating_sub(self.borrowed_value_upper_bound)

    def is_liquidatable(self) -> bool:
        return (not self.borrowed_value_upper_bound.is_zero()
                and self.borrowed_value_upper_bound >= self.unhealthy_borrow_value)

    def max_withdraw_value(self, withdraw_reserve_ltv_pct: int) -> FixedPointValue:
        """
        Largest deposit value that can leave while staying within allowed borrow value.

        A zero-LTV reserve does not back any debt, so all of it may leave.
        """
        if self.allowed_borrow_value <= self.borrowed_value:
            return ZERO
        if withdraw_reserve_ltv_pct == 0:
            return self.deposited_value
        return ((self.allowed_borrow_value - self.borrowed_value)
                / FixedPointValue.from_percent(withdraw_reserve_ltv_pct))

    # ------------------------------------------------------------------
    # Entry lookup and updates
    # ------------------------------------------------------------------

    def find_collateral(self, deposit_reserve: str) -> Tuple[ObligationCollateral, int]:
        for index, collateral in enumerate(self.deposits):
            if collateral.deposit_reserve == deposit_reserve:
                return collateral, index
        raise InvalidObligationCollateral(
            f"Obligation {self.key} has no deposit in reserve {deposit_reserve}"
        )

    def find_liquidity(self, borrow_reserve: str) -> Tuple[ObligationLiquidity, int]:
        for index, liquidity in enumerate(self.borrows):
            if liquidity.borrow_reserve == borrow_reserve:
                return liquidity, index
        raise InvalidObligationLiquidity(
            f"Obligation {self.key} has no borrow from reserve {borrow_reserve}"
        )

    def find_or_add_collateral(self, reserve: Reserve) -> Tuple[Obligation, int]:
        for index, collateral in enumerate(self.deposits):
            if collateral.deposit_reserve == reserve.key:
                return self, index
        if len(self.deposits) >= MAX_OBLIGATION_DEPOSITS:
            raise ObligationReserveLimit(
                f"Obligation {self.key} already has {MAX_OBLIGATION_DEPOSITS} deposits"
            )
        entry = ObligationCollateral(reserve.key, asset_tier=reserve.config.asset_tier)
        return replace(self, deposits=self.deposits + (entry,)), len(self.deposits)

    def find_or_add_liquidity(self, reserve: Reserve) -> Tuple[Obligation, int]:
        for index, liquidity in enumerate(self.borrows):
            if liquidity.borrow_reserve == reserve.key:
                return self, index
        if len(self.borrows) >= MAX_OBLIGATION_BORROWS:
            raise ObligationReserveLimit(
                f"Obligation {self.key} already has {MAX_OBLIGATION_BORROWS} borrows"
            )
        entry = ObligationLiquidity(
            reserve.key,
            cumulative_borrow_rate_wads=reserve.liquidity.cumulative_borrow_rate,
            asset_tier=reserve.config.asset_tier,
        )
        return replace(self, borrows=self.borrows + (entry,)), len(self.borrows)

    def with_collateral(self, index: int, collateral: ObligationCollateral) -> Obligation:
        """Replace the deposit entry at index, dropping it when it holds nothing."""
        deposits = list(self.deposits)
        if collateral.deposited_amount == 0:
            del deposits[index]
        else:
            deposits[index] = collateral
        return replace(self, deposits=tuple(deposits))

    def with_liquidity(self, index: int, liquidity: ObligationLiquidity) -> Obligation:
        """Replace the borrow entry at index, dropping it when nothing is owed."""
        borrows = list(self.borrows)
        if liquidity.borrowed_amount_wads.is_zero():
            del borrows[index]
        else:
            borrows[index] = liquidity
        return replace(self, borrows=tuple(borrows))

    def deposit(self, collateral_amount: int, index: int) -> Obligation:
        return self.with_collateral(index, self.deposits[index].deposit(collateral_amount))

    def withdraw(self, collateral_amount: int, index: int) -> Obligation:
        return self.with_collateral(index, self.deposits[index].withdraw(collateral_amount))

    def borrow(self, borrow_amount: FixedPointValue, index: int) -> Obligation:
        return self.with_liquidity(index, self.borrows[index].borrow(borrow_amount))

    def repay(self, settle_amount: FixedPointValue, index: int) -> Obligation:
        return self.with_liquidity(index, self.borrows[index].repay(settle_amount))


def init_obligation(key: str, lending_market: str, owner: str, slot: int) -> Obligation:
    return Obligation(
        key=key,
        lending_market=lending_market,
        owner=owner,
        last_update=LastUpdate(slot=slot, stale=True),
    )


# ============================================================================
# REFRESH
# ============================================================================

@dataclass(frozen=True, slots=True)
class RefreshObligationResult:
    obligation: Obligation
    reserves: Mapping[str, Reserve]     # Reserves with updated attributed_borrow_value


def _fresh_reserve(
    reserves: Mapping[str, Reserve],
    reserve_key: str,
    obligation: Obligation,
    slot: int,
) -> Reserve:
    reserve = reserves.get(reserve_key)
    if reserve is None or reserve.lending_market != obligation.lending_market:
        raise InvalidAccountInput(
            f"Reserve {reserve_key} of obligation {obligation.key} was not supplied"
        )
    if reserve.is_stale(slot):
        raise ReserveStale(f"Reserve {reserve_key} must be refreshed before obligation {obligation.key}")
    return reserve


def refresh_obligation(
    obligation: Obligation,
    market: LendingMarket,
    slot: int,
    reserves: Mapping[str, Reserve],
) -> RefreshObligationResult:
    """
    Recompute an obligation's values from reserves refreshed in this slot.

    Accrues interest on every borrow, reprices every entry, recomputes the
    aggregates, and re-attributes the borrowed value across deposit reserves.

    Args:
        obligation: Obligation to refresh
        market: Market supplying the global caps
        slot: Current slot
        reserves: Every reserve the obligation references, keyed by reserve key

    Returns:
        RefreshObligationResult with the fresh obligation and the reserves
        whose attributed_borrow_value changed (others returned as given)

    Raises:
        InvalidAccountInput: A referenced reserve is missing or in another market
        ReserveStale: A referenced reserve was not refreshed at slot
        NegativeInterestRate: A reserve's interest index went backwards
    """
    prices_state = PriceStatusFlags.ALL_CHECKS
    deposited_value = ZERO
    allowed_borrow_value = ZERO
    unhealthy_borrow_value = ZERO
    num_of_obsolete_reserves = 0

    deposits = []
    allowed_contributions = []
    for collateral in obligation.deposits:
        reserve = _fresh_reserve(reserves, collateral.deposit_reserve, obligation, slot)
        liquidity_amount = reserve.collateral_exchange_rate().fraction_collateral_to_liquidity(
            collateral.deposited_amount
        )
        market_value = reserve.market_value(liquidity_amount)
        allowed = market_value * FixedPointValue.from_percent(reserve.config.loan_to_value_pct)
        unhealthy = market_value * FixedPointValue.from_percent(
            reserve.config.liquidation_threshold_pct
        )

        deposited_value = deposited_value + market_value
        allowed_borrow_value = allowed_borrow_value + allowed
        unhealthy_borrow_value = unhealthy_borrow_value + unhealthy
        if reserve.config.status == ReserveStatus.DEPRECATED:
            num_of_obsolete_reserves += 1
        prices_state &= reserve.last_update.price_status

        deposits.append(replace(collateral, market_value=market_value))
        allowed_contributions.append(allowed)

    borrows = []
    unweighted_borrowed_value = ZERO
    borrowed_value = ZERO
    borrowed_value_upper_bound = ZERO
    for liquidity in obligation.borrows:
        reserve = _fresh_reserve(reserves, liquidity.borrow_reserve, obligation, slot)
        liquidity = liquidity.accrue_interest(reserve.liquidity.cumulative_borrow_rate)
        borrow_factor = reserve.borrow_factor()
        market_value = reserve.market_value(liquidity.borrowed_amount_wads)
        adjusted_value = market_value * borrow_factor
        upper_bound = reserve.market_value_upper_bound(liquidity.borrowed_amount_wads) * borrow_factor

        unweighted_borrowed_value = unweighted_borrowed_value + market_value
        borrowed_value = borrowed_value + adjusted_value
        borrowed_value_upper_bound = borrowed_value_upper_bound + upper_bound
        prices_state &= reserve.last_update.price_status

        borrows.append(replace(
            liquidity,
            market_value=market_value,
            borrow_factor_adjusted_market_value=adjusted_value,
        ))

    updated_reserves: Dict[str, Reserve] = dict(reserves)
    for index, collateral in enumerate(deposits):
        if allowed_borrow_value.is_zero():
            attributed = ZERO
        else:
            attributed = borrowed_value_upper_bound * allowed_contributions[index] / allowed_borrow_value
        reserve = updated_reserves[collateral.deposit_reserve]
        reserve_attributed = (reserve.attributed_borrow_value + attributed
                              - collateral.attributed_borrow_value)
        updated_reserves[collateral.deposit_reserve] = replace(
            reserve, attributed_borrow_value=reserve_attributed
        )
        deposits[index] = replace(collateral, attributed_borrow_value=attributed)

    refreshed = replace(
        obligation,
        deposits=tuple(deposits),
        borrows=tuple(borrows),
        deposited_value=deposited_value,
        borrowed_value=borrowed_value,
        unweighted_borrowed_value=unweighted_borrowed_value,
        borrowed_value_upper_bound=borrowed_value_upper_bound,
        allowed_borrow_value=min(
            allowed_borrow_value, FixedPointValue.from_int(market.global_allowed_borrow_value)
        ),
        unhealthy_borrow_value=min(
            unhealthy_borrow_value, FixedPointValue.from_int(market.global_unhealthy_borrow_value)
        ),
        last_update=LastUpdate(slot=slot, stale=False, price_status=prices_state),
        num_of_obsolete_reserves=num_of_obsolete_reserves,
    )
    logger.debug(
        "Refreshed obligation %s: deposited=%s borrowed=%s allowed=%s unhealthy=%s",
        obligation.key, deposited_value, borrowed_value,
        refreshed.allowed_borrow_value, refreshed.unhealthy_borrow_value,
    )
    return RefreshObligationResult(obligation=refreshed, reserves=updated_reserves)


# ============================================================================
# POST-ACTION INVARIANTS
# ============================================================================

def _check_net_value(position_value: FixedPointValue, market: LendingMarket) -> None:
    if not position_value.is_zero() and position_value < market.min_net_value_in_obligation:
        raise NetValueRemainingTooSmall(
            f"Position value {position_value} is below the minimum "
            f"{market.min_net_value_in_obligation}"
        )


def _ltv(borrowed: FixedPointValue, deposited: FixedPointValue) -> FixedPointValue:
    if deposited.is_zero():
        return ZERO
    return borrowed / deposited


def check_post_deposit_invariants(
    obligation: Obligation,
    market: LendingMarket,
    deposit_value: FixedPointValue,
    position_value: FixedPointValue,
) -> None:
    """Adding collateral may never raise the LTV or leave a dust position."""
    new_ltv = _ltv(obligation.borrowed_value, obligation.deposited_value + deposit_value)
    if new_ltv > obligation.loan_to_value():
        raise WorseLTVBlocked(f"Deposit would raise LTV from {obligation.loan_to_value()} to {new_ltv}")
    _check_net_value(position_value + deposit_value, market)


def check_post_withdraw_invariants(
    obligation: Obligation,
    market: LendingMarket,
    withdraw_value: FixedPointValue,
    position_value: FixedPointValue,
) -> None:
    new_deposited = obligation.deposited_value.saturating_sub(withdraw_value)
    if new_deposited < obligation.borrowed_value:
        raise LiabilitiesBiggerThanAssets(
            f"Withdraw would leave debt {obligation.borrowed_value} above deposits {new_deposited}"
        )
    new_ltv = _ltv(obligation.borrowed_value, new_deposited)
    if new_ltv > obligation.unhealthy_loan_to_value() and not obligation.borrowed_value.is_zero():
        raise WorseLTVBlocked(f"Withdraw would raise LTV to {new_ltv}, above the unhealthy LTV")
    _check_net_value(position_value.saturating_sub(withdraw_value), market)


def check_post_borrow_invariants(
    obligation: Obligation,
    market: LendingMarket,
    borrow_value: FixedPointValue,
    position_value: FixedPointValue,
) -> None:
    new_borrowed = obligation.borrowed_value + borrow_value
    if new_borrowed > obligation.deposited_value:
        raise LiabilitiesBiggerThanAssets(
            f"Borrow would leave debt {new_borrowed} above deposits {obligation.deposited_value}"
        )
    new_ltv = _ltv(new_borrowed, obligation.deposited_value)
    if new_ltv > obligation.unhealthy_loan_to_value():
        raise WorseLTVBlocked(f"Borrow would raise LTV to {new_ltv}, above the unhealthy LTV")
    _check_net_value(position_value + borrow_value, market)


def check_post_repay_invariants(
    obligation: Obligation,
    market: LendingMarket,
    repay_value: FixedPointValue,
    position_value: FixedPointValue,
) -> None:
    new_borrowed = obligation.borrowed_value.saturating_sub(repay_value)
    new_ltv = _ltv(new_borrowed, obligation.deposited_value)
    if new_ltv > obligation.loan_to_value():
        raise WorseLTVBlocked(f"Repay would raise LTV to {new_ltv}")
    _check_net_value(position_value.saturating_sub(repay_value), market)


def validate_obligation_asset_tiers(obligation: Obligation) -> None:
    """
    Raises:
        IsolatedAssetTierViolation: Isolated collateral or debt mixed with other entries
    """
    deposit_tiers = [d.asset_tier for d in obligation.deposits]
    borrow_tiers = [b.asset_tier for b in obligation.borrows]

    if AssetTier.ISOLATED_DEBT in deposit_tiers:
        raise IsolatedAssetTierViolation("Isolated debt assets cannot be deposited as collateral")
    if AssetTier.ISOLATED_COLLATERAL in borrow_tiers:
        raise IsolatedAssetTierViolation("Isolated collateral assets cannot be borrowed")
    if AssetTier.ISOLATED_COLLATERAL in deposit_tiers and len(deposit_tiers) > 1:
        raise IsolatedAssetTierViolation("Isolated collateral must be the only deposit")
    if AssetTier.ISOLATED_DEBT in borrow_tiers and len(borrow_tiers) > 1:
        raise IsolatedAssetTierViolation("Isolated debt must be the only borrow")
    if (AssetTier.ISOLATED_COLLATERAL in deposit_tiers
            and AssetTier.ISOLATED_DEBT in borrow_tiers):
        raise IsolatedAssetTierViolation("Isolated collateral cannot back isolated debt")
