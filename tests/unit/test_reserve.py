"""
Tests for Reserve arithmetic, configuration validation and status permissions.

Test coverage:
- Collateral exchange rate on deposit and redeem
- Utilization, total supply and interest accrual
- Borrow and repay sizing with fees
- Upper-bound pricing and borrow factor
- validate_reserve_config() and apply_config_update()
- RESERVE_STATUS_PERMISSIONS
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from lending import (
    ReserveFees, ReserveStatus, AssetTier, ReserveAction, UpdateConfigMode, LastUpdate,
    FixedPointValue, ZERO, ONE, U64_MAX,
    InsufficientLiquidity, InvalidAmount, BorrowTooLarge, BorrowTooSmall,
    FlashLoansDisabled, InvalidConfig, InvalidUpdateMode, ReserveFrozen,
    ReserveDeprecated, LastSlotGreaterThanCurrent,
    RESERVE_STATUS_PERMISSIONS, validate_reserve_config, apply_config_update,
)
from lending.reserve import check_reserve_action

from tests.conftest import make_reserve, usdc_reserve_config


# ============================================================================
# Exchange rate
# ============================================================================

class TestExchangeRate:

    def test_initial_rate_is_one(self):
        reserve, minted = make_reserve().deposit_liquidity(1_000)
        assert minted == 1_000
        assert reserve.collateral.mint_total_supply == 1_000
        assert reserve.liquidity.available_amount == 1_000

    def test_interest_makes_collateral_more_valuable(self):
        # 1,000 cTokens back 900 available + 200 borrowed = 1,100 liquidity
        reserve = make_reserve(available=900, borrowed=FixedPointValue.from_int(200),
                               collateral_supply=1_000)
        _, minted = reserve.deposit_liquidity(1_100)
        assert minted == 1_000

    def test_redeem_releases_pro_rata_liquidity(self):
        reserve = make_reserve(available=900, borrowed=FixedPointValue.from_int(200),
                               collateral_supply=1_000)
        reserve, released = reserve.redeem_collateral(500)
        assert released == 550
        assert reserve.liquidity.available_amount == 350
        assert reserve.collateral.mint_total_supply == 500

    def test_redeem_beyond_available_liquidity(self):
        reserve = make_reserve(available=100, borrowed=FixedPointValue.from_int(900),
                               collateral_supply=1_000)
        with pytest.raises(InsufficientLiquidity):
            reserve.redeem_collateral(500)

    def test_dust_deposit_rejected(self):
        reserve = make_reserve(available=3_000, collateral_supply=1_000)
        with pytest.raises(InvalidAmount):
            reserve.deposit_liquidity(2)

    def test_conversions_floor(self):
        rate = make_reserve(available=3_000, collateral_supply=1_000).collateral_exchange_rate()
        assert rate.collateral_to_liquidity(1) == 3
        assert rate.liquidity_to_collateral(5) == 1


# ============================================================================
# Supply, utilization and interest
# ============================================================================

class TestInterest:

    def test_total_supply_excludes_protocol_fees(self):
        reserve = make_reserve(available=900, borrowed=FixedPointValue.from_int(200),
                               accumulated_protocol_fees=FixedPointValue.from_int(10))
        assert reserve.liquidity.total_supply() == FixedPointValue.from_int(1_090)

    def test_utilization(self):
        reserve = make_reserve(available=800, borrowed=FixedPointValue.from_int(200))
        assert reserve.liquidity.utilization_rate() == FixedPointValue.from_percent(20)

    def test_empty_reserve_has_zero_utilization(self):
        assert make_reserve().liquidity.utilization_rate() == ZERO

    def test_no_accrual_in_same_slot(self):
        reserve = make_reserve(available=800, borrowed=FixedPointValue.from_int(200))
        assert reserve.accrue_interest(0) is reserve

    def test_accrual_grows_debt_and_index(self):
        reserve = make_reserve(available=800, borrowed=FixedPointValue.from_int(200))
        accrued = reserve.accrue_interest(100_000)

        old_borrowed = reserve.liquidity.borrowed_amount
        new_borrowed = accrued.liquidity.borrowed_amount
        assert new_borrowed > old_borrowed
        assert accrued.liquidity.cumulative_borrow_rate > ONE
        # Protocol keeps protocol_take_rate_pct (10%) of the new interest
        expected_fees = (new_borrowed - old_borrowed) * FixedPointValue.from_percent(10)
        assert accrued.liquidity.accumulated_protocol_fees == expected_fees

    def test_clock_behind_last_update(self):
        reserve = replace(make_reserve(), last_update=LastUpdate(slot=10, stale=False))
        with pytest.raises(LastSlotGreaterThanCurrent):
            reserve.accrue_interest(5)


# ============================================================================
# Borrow and repay sizing
# ============================================================================

class TestCalculateBorrow:

    def test_exact_amount_adds_fee_to_debt(self):
        config = usdc_reserve_config(fees=ReserveFees(borrow_fee_bps=100))
        reserve = make_reserve(available=1_000_000, config=config)
        result = reserve.calculate_borrow(1_000, FixedPointValue.from_int(1), FixedPointValue.from_int(U64_MAX))
        assert result.receive_amount == 1_000
        assert result.borrow_fee == 10
        assert result.borrow_amount == FixedPointValue.from_int(1_010)

    def test_exact_amount_above_remaining_value(self):
        config = usdc_reserve_config(fees=ReserveFees(borrow_fee_bps=100))
        reserve = make_reserve(available=1_000_000, config=config)
        with pytest.raises(BorrowTooLarge):
            reserve.calculate_borrow(1_000, FixedPointValue.from_decimal(Decimal("0.001")),
                                     FixedPointValue.from_int(U64_MAX))

    def test_max_borrow_carves_fee_out(self):
        config = usdc_reserve_config(fees=ReserveFees(borrow_fee_bps=100))
        reserve = make_reserve(available=1_000_000, config=config)
        result = reserve.calculate_borrow(U64_MAX, FixedPointValue.from_percent(50),
                                          FixedPointValue.from_int(U64_MAX))
        assert result.borrow_amount == FixedPointValue.from_int(500_000)
        assert result.receive_amount + result.borrow_fee == 500_000
        assert result.borrow_fee == 4_950

    def test_max_borrow_limited_by_available_liquidity(self):
        reserve = make_reserve(available=1_000)
        result = reserve.calculate_borrow(U64_MAX, FixedPointValue.from_int(1_000),
                                          FixedPointValue.from_int(U64_MAX))
        assert result.borrow_amount == FixedPointValue.from_int(1_000)

    def test_borrow_factor_shrinks_capacity(self):
        reserve = make_reserve(available=10_000_000, config=usdc_reserve_config(borrow_factor_pct=200))
        result = reserve.calculate_borrow(U64_MAX, FixedPointValue.from_int(1),
                                          FixedPointValue.from_int(U64_MAX))
        assert result.borrow_amount == FixedPointValue.from_int(500_000)

    def test_minimum_fee_is_one_unit(self):
        config = usdc_reserve_config(fees=ReserveFees(borrow_fee_bps=1))
        reserve = make_reserve(available=1_000, config=config)
        result = reserve.calculate_borrow(10, FixedPointValue.from_int(1), FixedPointValue.from_int(U64_MAX))
        assert result.borrow_fee == 1

    def test_fee_consuming_whole_amount(self):
        config = usdc_reserve_config(fees=ReserveFees(borrow_fee_bps=1))
        reserve = make_reserve(available=1_000, config=config)
        with pytest.raises(BorrowTooSmall):
            reserve.calculate_borrow(1, FixedPointValue.from_int(1), FixedPointValue.from_int(U64_MAX))

    def test_liquidity_borrow_beyond_available(self):
        with pytest.raises(InsufficientLiquidity):
            make_reserve(available=10).liquidity.borrow(FixedPointValue.from_int(11))


class TestCalculateRepay:

    def test_repay_all_rounds_up(self):
        borrowed = FixedPointValue.from_decimal(Decimal("100.5"))
        result = make_reserve().calculate_repay(U64_MAX, borrowed)
        assert result.settle_amount == borrowed
        assert result.repay_amount == 101

    def test_partial_repay(self):
        borrowed = FixedPointValue.from_decimal(Decimal("100.5"))
        result = make_reserve().calculate_repay(50, borrowed)
        assert result.settle_amount == FixedPointValue.from_int(50)
        assert result.repay_amount == 50

    def test_overpay_capped_at_debt(self):
        borrowed = FixedPointValue.from_decimal(Decimal("100.5"))
        result = make_reserve().calculate_repay(200, borrowed)
        assert result.settle_amount == borrowed
        assert result.repay_amount == 101


class TestFees:

    def test_flash_loans_disabled_without_fee(self):
        with pytest.raises(FlashLoansDisabled):
            ReserveFees().calculate_flash_loan_fees(FixedPointValue.from_int(100))

    def test_flash_loan_fee(self):
        fees = ReserveFees(flash_loan_fee_bps=30)
        assert fees.calculate_flash_loan_fees(FixedPointValue.from_int(1_000_000)) == 3_000

    def test_redeemable_fees_limited_by_available(self):
        reserve = make_reserve(available=5, accumulated_protocol_fees=FixedPointValue.from_int(8))
        assert reserve.calculate_redeem_fees() == 5


# ============================================================================
# Pricing
# ============================================================================

class TestPricing:

    def test_upper_bound_includes_confidence(self):
        reserve = make_reserve(price="100", market_price_confidence=FixedPointValue.from_int(2),
                               smoothed_market_price=FixedPointValue.from_int(101))
        assert reserve.liquidity.price_upper_bound() == FixedPointValue.from_int(102)

    def test_upper_bound_uses_higher_twap(self):
        reserve = make_reserve(price="100", market_price_confidence=FixedPointValue.from_int(2),
                               smoothed_market_price=FixedPointValue.from_int(105))
        assert reserve.liquidity.price_upper_bound() == FixedPointValue.from_int(105)

    def test_market_value_scales_by_decimals(self):
        reserve = make_reserve(price="5500", decimals=9)
        assert reserve.market_value(FixedPointValue.from_int(2 * 10 ** 9)) == FixedPointValue.from_int(11_000)

    def test_borrow_factor(self):
        reserve = make_reserve(config=usdc_reserve_config(borrow_factor_pct=150))
        assert reserve.borrow_factor() == FixedPointValue.from_percent(150)

    def test_limits(self):
        reserve = make_reserve(available=101, config=usdc_reserve_config(deposit_limit=100))
        assert reserve.deposit_limit_crossed()
        assert not reserve.borrow_limit_crossed()


# ============================================================================
# Configuration
# ============================================================================

class TestConfigValidation:

    def test_valid(self):
        validate_reserve_config(usdc_reserve_config())

    @pytest.mark.parametrize("overrides", [
        {"loan_to_value_pct": 60},                          # above threshold
        {"liquidation_threshold_pct": 101},
        {"min_liquidation_bonus_bps": 2_000},               # above max
        {"bad_debt_liquidation_bonus_bps": 100},
        {"protocol_liquidation_fee_pct": 101},
        {"borrow_factor_pct": 99},
        {"fee_receiver": ""},
        {"asset_tier": AssetTier.ISOLATED_DEBT},            # with non-zero LTV
        {"asset_tier": AssetTier.ISOLATED_COLLATERAL},      # with a borrow limit
    ])
    def test_invalid(self, overrides):
        with pytest.raises(InvalidConfig):
            validate_reserve_config(usdc_reserve_config(**overrides))


class TestConfigUpdate:

    def test_single_field(self):
        config = apply_config_update(usdc_reserve_config(), UpdateConfigMode.LOAN_TO_VALUE_PCT, 40)
        assert config.loan_to_value_pct == 40

    def test_wrong_type(self):
        with pytest.raises(InvalidConfig):
            apply_config_update(usdc_reserve_config(), UpdateConfigMode.LOAN_TO_VALUE_PCT, "40")

    def test_unknown_mode(self):
        with pytest.raises(InvalidUpdateMode):
            apply_config_update(usdc_reserve_config(), 99, 1)

    def test_result_validated(self):
        with pytest.raises(InvalidConfig):
            apply_config_update(usdc_reserve_config(), UpdateConfigMode.LOAN_TO_VALUE_PCT, 60)

    def test_status(self):
        config = apply_config_update(usdc_reserve_config(), UpdateConfigMode.RESERVE_STATUS, "frozen")
        assert config.status == ReserveStatus.FROZEN

    def test_token_info_field(self):
        config = apply_config_update(usdc_reserve_config(), UpdateConfigMode.TOKEN_INFO_PRICE_MAX_AGE, 30)
        assert config.token_info.max_age_price_seconds == 30

    def test_disable_flash_loans(self):
        config = apply_config_update(usdc_reserve_config(), UpdateConfigMode.FLASH_LOAN_FEE_BPS, None)
        assert config.fees.flash_loan_fee_bps is None


class TestStatusPermissions:

    def test_active_allows_everything(self):
        assert RESERVE_STATUS_PERMISSIONS[ReserveStatus.ACTIVE] == frozenset(ReserveAction)

    def test_frozen_blocks_new_positions(self):
        reserve = make_reserve(config=usdc_reserve_config(status=ReserveStatus.FROZEN))
        with pytest.raises(ReserveFrozen):
            check_reserve_action(reserve, ReserveAction.DEPOSIT_LIQUIDITY)
        check_reserve_action(reserve, ReserveAction.REPAY)
        check_reserve_action(reserve, ReserveAction.LIQUIDATE)

    def test_deprecated_blocks_borrow(self):
        reserve = make_reserve(config=usdc_reserve_config(status=ReserveStatus.DEPRECATED))
        with pytest.raises(ReserveDeprecated):
            check_reserve_action(reserve, ReserveAction.BORROW)
        check_reserve_action(reserve, ReserveAction.WITHDRAW_COLLATERAL)
