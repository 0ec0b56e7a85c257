"""
test_liquidation_scenarios.py - End-to-end liquidations through the Ledger

Alice pledges 100,000 USDC (LTV 50%, liquidation threshold 55%) and borrows
10 SOL at $4,000. When SOL reaches $5,500 her debt equals her unhealthy
borrow value and a liquidator may repay up to the close factor (20%) of it
for collateral worth the repaid value plus a 5% bonus:

    repay            2 SOL            = $11,000
    seize            11,550 cUSDC     = $11,000 * 1.05
    protocol fee     110 USDC         = 20% of the $550 bonus
    liquidator gets  11,440 USDC
"""

import pytest

from lending import (
    ExecuteResult, FixedPointValue, U64_MAX, transact,
    ObligationHealthy, StalenessError, LiquidationSlippageError,
)

from tests.conftest import (
    USDC, SOL, OBLIGATION, USDC_RESERVE, SOL_RESERVE, FEE_RECEIVER,
    oracle_price, fund, run, refresh,
)


def liquidate(ledger, amount=U64_MAX, **kwargs):
    return run(
        ledger, "liquidate_obligation_and_redeem_reserve_collateral",
        obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
        withdraw_reserve_key=USDC_RESERVE, liquidator="liquidator", amount=amount, **kwargs,
    )


@pytest.fixture
def unhealthy(borrowed_ledger, prices):
    prices.update_price("SOL", oracle_price("5500"))
    refresh(borrowed_ledger, prices)
    return borrowed_ledger


class TestCloseFactorLiquidation:

    def test_balances(self, unhealthy):
        liquidate(unhealthy)
        assert unhealthy.get_balance("liquidator", "SOL") == 8 * SOL
        assert unhealthy.get_balance("liquidator", "USDC") == 11_440 * USDC
        assert unhealthy.get_balance("liquidator", "cUSDC") == 0
        assert unhealthy.get_balance(FEE_RECEIVER, "USDC") == 110 * USDC

    def test_records(self, unhealthy):
        liquidate(unhealthy)
        obligation = unhealthy.get_obligation(OBLIGATION)
        assert obligation.borrows[0].borrowed_amount_wads == FixedPointValue.from_int(8 * SOL)
        assert obligation.deposits[0].deposited_amount == 88_450 * USDC
        usdc = unhealthy.get_reserve(USDC_RESERVE)
        assert usdc.liquidity.available_amount == 88_450 * USDC
        assert usdc.collateral.mint_total_supply == 88_450 * USDC
        assert usdc.attributed_borrow_value == FixedPointValue.from_int(44_000)
        assert unhealthy.get_reserve(SOL_RESERVE).liquidity.available_amount == 92 * SOL

    def test_books_balance(self, unhealthy):
        liquidate(unhealthy)
        assert unhealthy.verify_reserves() == []
        assert unhealthy.verify_double_entry()['valid']

    def test_healthy_after_one_round(self, unhealthy, prices):
        liquidate(unhealthy)
        refresh(unhealthy, prices)
        with pytest.raises(ObligationHealthy):
            transact(unhealthy, "liquidate_obligation_and_redeem_reserve_collateral",
                     obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
                     withdraw_reserve_key=USDC_RESERVE, liquidator="liquidator", amount=U64_MAX)

    def test_requires_refresh_between_rounds(self, unhealthy):
        liquidate(unhealthy, SOL)
        with pytest.raises(StalenessError):
            transact(unhealthy, "liquidate_obligation_and_redeem_reserve_collateral",
                     obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
                     withdraw_reserve_key=USDC_RESERVE, liquidator="liquidator", amount=SOL)

    def test_slippage_floor_rejects_before_execution(self, unhealthy):
        with pytest.raises(LiquidationSlippageError):
            transact(unhealthy, "liquidate_obligation_and_redeem_reserve_collateral",
                     obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
                     withdraw_reserve_key=USDC_RESERVE, liquidator="liquidator",
                     amount=U64_MAX, min_acceptable_received_collateral_amount=12_000 * USDC)
        assert unhealthy.get_balance("liquidator", "SOL") == 10 * SOL

    def test_liquidator_without_funds_is_rejected(self, unhealthy):
        pending = transact(unhealthy, "liquidate_obligation_and_redeem_reserve_collateral",
                           obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
                           withdraw_reserve_key=USDC_RESERVE, liquidator="bob", amount=U64_MAX)
        assert unhealthy.execute(pending) == ExecuteResult.REJECTED
        assert unhealthy.get_obligation(OBLIGATION).deposits[0].deposited_amount == 100_000 * USDC


class TestDrainedCollateralReserve:
    """Bob borrows every USDC in the reserve, so seized cUSDC cannot be redeemed."""

    @pytest.fixture
    def drained(self, borrowed_ledger, prices):
        ledger = borrowed_ledger
        fund(ledger, "bob", "SOL", 100 * SOL)
        run(ledger, "init_obligation", market_key="main_market", owner="bob", key="bob_obligation")
        refresh(ledger, prices, "bob_obligation")
        run(ledger, "deposit_reserve_liquidity_and_obligation_collateral",
            obligation_key="bob_obligation", reserve_key=SOL_RESERVE, user="bob", amount=100 * SOL)
        refresh(ledger, prices, "bob_obligation")
        run(ledger, "borrow_obligation_liquidity",
            obligation_key="bob_obligation", reserve_key=USDC_RESERVE, user="bob", amount=U64_MAX)
        prices.update_price("SOL", oracle_price("5500"))
        refresh(ledger, prices)
        return ledger

    def test_reserve_is_empty(self, drained):
        assert drained.get_reserve(USDC_RESERVE).liquidity.available_amount == 0
        assert drained.get_balance("bob", "USDC") == 100_000 * USDC

    def test_fee_paid_in_collateral(self, drained):
        liquidate(drained)
        assert drained.get_balance("liquidator", "cUSDC") == 11_440 * USDC
        assert drained.get_balance(FEE_RECEIVER, "cUSDC") == 110 * USDC
        assert drained.get_balance("liquidator", "USDC") == 0
        assert drained.verify_reserves() == []
        assert drained.verify_double_entry()['valid']

    def test_floor_applies_to_redeemable_collateral(self, drained):
        """Seized cUSDC that cannot be redeemed does not satisfy a floor."""
        with pytest.raises(LiquidationSlippageError):
            transact(drained, "liquidate_obligation_and_redeem_reserve_collateral",
                     obligation_key=OBLIGATION, repay_reserve_key=SOL_RESERVE,
                     withdraw_reserve_key=USDC_RESERVE, liquidator="liquidator",
                     amount=U64_MAX, min_acceptable_received_collateral_amount=1)
        assert drained.get_balance("liquidator", "SOL") == 10 * SOL
        assert drained.get_obligation(OBLIGATION).deposits[0].deposited_amount == 100_000 * USDC
