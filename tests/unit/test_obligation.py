"""
Tests for Obligation entries, refresh and post-action checks.

Test coverage:
- Entry bookkeeping: add, drop on zero, per-obligation limits
- Interest accrual through the reserve's borrow rate index
- refresh_obligation(): aggregates, caps, attribution, staleness
- Post-action LTV and net value checks
- Isolated asset tier rules
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from lending import (
    Obligation, ObligationCollateral, ObligationLiquidity, AssetTier, ReserveStatus,
    PriceStatusFlags, FixedPointValue, ZERO, ONE,
    init_obligation, refresh_obligation,
    NegativeInterestRate, ReserveStale, InvalidAccountInput, ObligationReserveLimit,
    InvalidObligationCollateral, WithdrawTooLarge, WorseLTVBlocked,
    LiabilitiesBiggerThanAssets, NetValueRemainingTooSmall, IsolatedAssetTierViolation,
)
from lending.obligation import (
    check_post_deposit_invariants, check_post_withdraw_invariants,
    check_post_borrow_invariants, validate_obligation_asset_tiers,
)

from tests.conftest import (
    USDC, SOL, MARKET, USDC_RESERVE, SOL_RESERVE, OBLIGATION,
    make_reserve, usdc_reserve_config, sol_reserve_config,
)


def usd(value) -> FixedPointValue:
    return FixedPointValue.from_decimal(Decimal(value))


def usdc_reserve(slot=1, **overrides):
    return make_reserve(available=100_000 * USDC, collateral_supply=100_000 * USDC,
                        slot=slot, **overrides)


def sol_reserve(price="4000", slot=1, config=None, **overrides):
    return make_reserve(
        key=SOL_RESERVE, mint="SOL", decimals=9, price=price, slot=slot,
        available=90 * SOL, borrowed=FixedPointValue.from_int(10 * SOL),
        collateral_supply=100 * SOL, config=config or sol_reserve_config(), **overrides,
    )


def position() -> Obligation:
    """100,000 USDC of collateral against 10 SOL of debt, not yet refreshed."""
    return Obligation(
        key=OBLIGATION,
        lending_market=MARKET,
        owner="alice",
        deposits=(ObligationCollateral(USDC_RESERVE, 100_000 * USDC),),
        borrows=(ObligationLiquidity(SOL_RESERVE, borrowed_amount_wads=FixedPointValue.from_int(10 * SOL)),),
    )


@pytest.fixture
def refreshed(market):
    result = refresh_obligation(position(), market, 1, {
        USDC_RESERVE: usdc_reserve(),
        SOL_RESERVE: sol_reserve(),
    })
    return result


# ============================================================================
# Entries
# ============================================================================

class TestEntries:

    def test_init_is_stale(self):
        obligation = init_obligation(OBLIGATION, MARKET, "alice", 7)
        assert obligation.is_stale(7)
        assert obligation.deposits == ()

    def test_withdraw_beyond_deposit(self):
        with pytest.raises(WithdrawTooLarge):
            ObligationCollateral(USDC_RESERVE, 10).withdraw(11)

    def test_empty_entries_are_dropped(self):
        obligation = position().withdraw(100_000 * USDC, 0)
        assert obligation.deposits == ()
        obligation = obligation.repay(FixedPointValue.from_int(10 * SOL), 0)
        assert obligation.borrows == ()

    def test_find_missing_collateral(self):
        with pytest.raises(InvalidObligationCollateral):
            position().find_collateral(SOL_RESERVE)

    def test_find_or_add_reuses_entry(self):
        obligation, index = position().find_or_add_collateral(usdc_reserve())
        assert index == 0
        assert len(obligation.deposits) == 1

    def test_new_borrow_entry_starts_at_reserve_index(self):
        reserve = usdc_reserve(cumulative_borrow_rate=usd("1.25"))
        obligation, index = position().find_or_add_liquidity(reserve)
        assert index == 1
        assert obligation.borrows[1].cumulative_borrow_rate_wads == usd("1.25")

    def test_deposit_limit(self):
        obligation = replace(position(), deposits=tuple(
            ObligationCollateral(f"reserve_{i}", 1) for i in range(8)
        ))
        with pytest.raises(ObligationReserveLimit):
            obligation.find_or_add_collateral(usdc_reserve())


class TestInterestAccrual:

    def test_debt_scales_with_index(self):
        liquidity = ObligationLiquidity(SOL_RESERVE, borrowed_amount_wads=FixedPointValue.from_int(100))
        accrued = liquidity.accrue_interest(usd("1.1"))
        assert accrued.borrowed_amount_wads == FixedPointValue.from_int(110)
        assert accrued.cumulative_borrow_rate_wads == usd("1.1")

    def test_index_cannot_decrease(self):
        liquidity = ObligationLiquidity(SOL_RESERVE, cumulative_borrow_rate_wads=usd("1.1"))
        with pytest.raises(NegativeInterestRate):
            liquidity.accrue_interest(ONE)


# ============================================================================
# Refresh
# ============================================================================

class TestRefresh:

    def test_aggregates(self, refreshed):
        obligation = refreshed.obligation
        assert obligation.deposited_value == FixedPointValue.from_int(100_000)
        assert obligation.allowed_borrow_value == FixedPointValue.from_int(50_000)
        assert obligation.unhealthy_borrow_value == FixedPointValue.from_int(55_000)
        assert obligation.borrowed_value == FixedPointValue.from_int(40_000)
        assert obligation.borrowed_value_upper_bound == FixedPointValue.from_int(40_000)
        assert not obligation.is_stale(1, PriceStatusFlags.ALL_CHECKS)

    def test_derived_values(self, refreshed):
        obligation = refreshed.obligation
        assert obligation.loan_to_value() == FixedPointValue.from_percent(40)
        assert obligation.remaining_borrow_value() == FixedPointValue.from_int(10_000)
        assert obligation.max_withdraw_value(50) == FixedPointValue.from_int(20_000)
        assert obligation.max_withdraw_value(0) == FixedPointValue.from_int(100_000)
        assert not obligation.is_liquidatable()

    def test_attribution(self, refreshed):
        assert refreshed.obligation.deposits[0].attributed_borrow_value == FixedPointValue.from_int(40_000)
        assert refreshed.reserves[USDC_RESERVE].attributed_borrow_value == FixedPointValue.from_int(40_000)

    def test_reattribution_is_not_double_counted(self, market, refreshed):
        reserves = dict(refreshed.reserves)
        again = refresh_obligation(refreshed.obligation, market, 1, reserves)
        assert again.reserves[USDC_RESERVE].attributed_borrow_value == FixedPointValue.from_int(40_000)

    def test_liquidatable_at_threshold(self, market):
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: sol_reserve(price="5500"),
        })
        assert result.obligation.is_liquidatable()

    def test_interest_flows_into_debt(self, market):
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: sol_reserve(cumulative_borrow_rate=usd("1.1")),
        })
        assert result.obligation.borrowed_value == FixedPointValue.from_int(44_000)

    def test_borrow_factor_weights_debt(self, market):
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: sol_reserve(config=sol_reserve_config(borrow_factor_pct=125)),
        })
        assert result.obligation.borrowed_value == FixedPointValue.from_int(50_000)
        assert result.obligation.unweighted_borrowed_value == FixedPointValue.from_int(40_000)

    def test_upper_bound_uses_twap(self, market):
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: sol_reserve(smoothed_market_price=FixedPointValue.from_int(4_400)),
        })
        assert result.obligation.borrowed_value == FixedPointValue.from_int(40_000)
        assert result.obligation.borrowed_value_upper_bound == FixedPointValue.from_int(44_000)

    def test_global_allowed_cap(self, market):
        capped = replace(market, global_allowed_borrow_value=30_000)
        result = refresh_obligation(position(), capped, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: sol_reserve(),
        })
        assert result.obligation.allowed_borrow_value == FixedPointValue.from_int(30_000)

    def test_counts_deprecated_deposits(self, market):
        deprecated = usdc_reserve(config=usdc_reserve_config(status=ReserveStatus.DEPRECATED))
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: deprecated,
            SOL_RESERVE: sol_reserve(),
        })
        assert result.obligation.num_of_obsolete_reserves == 1

    def test_price_status_is_intersection(self, market):
        partial = replace(sol_reserve(), last_update=replace(
            sol_reserve().last_update, price_status=PriceStatusFlags.LIQUIDATION_CHECKS
        ))
        result = refresh_obligation(position(), market, 1, {
            USDC_RESERVE: usdc_reserve(),
            SOL_RESERVE: partial,
        })
        assert result.obligation.last_update.price_status == PriceStatusFlags.LIQUIDATION_CHECKS

    def test_stale_reserve(self, market):
        with pytest.raises(ReserveStale):
            refresh_obligation(position(), market, 1, {
                USDC_RESERVE: usdc_reserve(),
                SOL_RESERVE: sol_reserve(slot=0),
            })

    def test_missing_reserve(self, market):
        with pytest.raises(InvalidAccountInput):
            refresh_obligation(position(), market, 1, {USDC_RESERVE: usdc_reserve()})

    def test_empty_obligation(self, market):
        result = refresh_obligation(init_obligation(OBLIGATION, MARKET, "alice", 0), market, 1, {})
        assert result.obligation.deposited_value == ZERO
        assert not result.obligation.is_stale(1)


# ============================================================================
# Post-action checks
# ============================================================================

class TestPostActionChecks:

    def test_borrow_above_deposits(self, market, refreshed):
        with pytest.raises(LiabilitiesBiggerThanAssets):
            check_post_borrow_invariants(refreshed.obligation, market,
                                         FixedPointValue.from_int(70_000), FixedPointValue.from_int(60_000))

    def test_borrow_above_unhealthy_ltv(self, market, refreshed):
        with pytest.raises(WorseLTVBlocked):
            check_post_borrow_invariants(refreshed.obligation, market,
                                         FixedPointValue.from_int(20_000), FixedPointValue.from_int(60_000))

    def test_borrow_within_limits(self, market, refreshed):
        check_post_borrow_invariants(refreshed.obligation, market,
                                     FixedPointValue.from_int(5_000), FixedPointValue.from_int(60_000))

    def test_withdraw_leaving_too_little(self, market, refreshed):
        with pytest.raises(LiabilitiesBiggerThanAssets):
            check_post_withdraw_invariants(refreshed.obligation, market,
                                           FixedPointValue.from_int(70_000), FixedPointValue.from_int(60_000))

    def test_withdraw_above_unhealthy_ltv(self, market, refreshed):
        with pytest.raises(WorseLTVBlocked):
            check_post_withdraw_invariants(refreshed.obligation, market,
                                           FixedPointValue.from_int(30_000), FixedPointValue.from_int(60_000))

    def test_withdraw_within_limits(self, market, refreshed):
        check_post_withdraw_invariants(refreshed.obligation, market,
                                       FixedPointValue.from_int(20_000), FixedPointValue.from_int(60_000))

    def test_dust_position(self, market):
        empty = init_obligation(OBLIGATION, MARKET, "alice", 0)
        with pytest.raises(NetValueRemainingTooSmall):
            check_post_deposit_invariants(empty, market, FixedPointValue(1), ZERO)


class TestAssetTiers:

    def test_regular_mix_allowed(self):
        validate_obligation_asset_tiers(position())

    def test_isolated_collateral_must_be_alone(self):
        obligation = replace(position(), deposits=(
            ObligationCollateral(USDC_RESERVE, 1, asset_tier=AssetTier.ISOLATED_COLLATERAL),
            ObligationCollateral(SOL_RESERVE, 1),
        ))
        with pytest.raises(IsolatedAssetTierViolation):
            validate_obligation_asset_tiers(obligation)

    def test_isolated_collateral_cannot_be_borrowed(self):
        obligation = replace(position(), borrows=(
            ObligationLiquidity(SOL_RESERVE, asset_tier=AssetTier.ISOLATED_COLLATERAL),
        ))
        with pytest.raises(IsolatedAssetTierViolation):
            validate_obligation_asset_tiers(obligation)

    def test_isolated_debt_must_be_alone(self):
        obligation = replace(position(), borrows=(
            ObligationLiquidity(SOL_RESERVE, asset_tier=AssetTier.ISOLATED_DEBT),
            ObligationLiquidity(USDC_RESERVE),
        ))
        with pytest.raises(IsolatedAssetTierViolation):
            validate_obligation_asset_tiers(obligation)
