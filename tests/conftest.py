"""
conftest.py - Shared pytest fixtures for lending ledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Reserve configurations (USDC and SOL)
- Ledgers with a market and reserves deployed and priced
- A borrowed position ready to be liquidated
- Helpers to fund wallets, run instructions and refresh records
"""

import pytest
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from lending import (
    Ledger, Move, ExecuteResult, PendingTransaction,
    TransactionOrigin, OriginType, SYSTEM_WALLET,
    build_transaction, transact,
    LendingMarket, ReserveConfig, ReserveFees, InterestRateModel,
    OraclePrice, TokenInfo, StaticPricingSource,
    Reserve, ReserveLiquidity, ReserveCollateral, LastUpdate, PriceStatusFlags,
    FixedPointValue, ZERO,
)

from tests.fake_view import FakeView


USDC = 10 ** 6
SOL = 10 ** 9

MARKET = "main_market"
OWNER = "admin"
FEE_RECEIVER = "treasury"
USDC_RESERVE = "usdc_reserve"
SOL_RESERVE = "sol_reserve"
OBLIGATION = "alice_obligation"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def oracle_price(
    value: str,
    publish_time: int = 0,
    confidence: str = "0",
    twap: Optional[str] = None,
    exponent: int = -8,
) -> OraclePrice:
    """Build an OraclePrice from decimal strings."""
    scale = Decimal(10) ** -exponent
    price = int(Decimal(value) * scale)
    return OraclePrice(
        price=price,
        confidence=int(Decimal(confidence) * scale),
        exponent=exponent,
        ema_price=price if twap is None else int(Decimal(twap) * scale),
        ema_confidence=0,
        publish_time=publish_time,
    )


def fund(ledger: Ledger, wallet: str, mint: str, amount: int) -> None:
    """Issue tokens to a wallet from SYSTEM_WALLET."""
    pending = build_transaction(
        ledger,
        [Move(amount, mint, SYSTEM_WALLET, wallet, "initial_balance")],
        origin=TransactionOrigin(OriginType.SYSTEM, "faucet", event_type="fund"),
    )
    assert ledger.execute(pending) == ExecuteResult.APPLIED


def run(ledger: Ledger, instruction: str, **kwargs) -> PendingTransaction:
    """Build and execute an instruction, asserting it applied."""
    pending = transact(ledger, instruction, **kwargs)
    result = ledger.execute(pending)
    assert result == ExecuteResult.APPLIED, f"{instruction} was {result}"
    return pending


def refresh_reserves(ledger: Ledger, prices: StaticPricingSource) -> None:
    for reserve in ledger.list_reserves():
        run(ledger, "refresh_reserve", reserve_key=reserve.key, pricing_source=prices)


def refresh(ledger: Ledger, prices: StaticPricingSource, obligation_key: str = OBLIGATION) -> None:
    """Refresh every reserve, then the obligation."""
    refresh_reserves(ledger, prices)
    run(ledger, "refresh_obligation", obligation_key=obligation_key)


def advance(ledger: Ledger, prices: StaticPricingSource, slots: int) -> None:
    """Move the clock forward and republish every price at the new time."""
    ledger.advance_slots(slots)
    now = ledger.clock.unix_timestamp
    for mint, feed in list(prices.prices.items()):
        prices.update_price(mint, OraclePrice(
            price=feed.price, confidence=feed.confidence, exponent=feed.exponent,
            ema_price=feed.ema_price, ema_confidence=feed.ema_confidence, publish_time=now,
        ))


def usdc_reserve_config(**overrides) -> ReserveConfig:
    params = dict(
        loan_to_value_pct=50,
        liquidation_threshold_pct=55,
        min_liquidation_bonus_bps=500,
        max_liquidation_bonus_bps=1_000,
        bad_debt_liquidation_bonus_bps=99,
        protocol_liquidation_fee_pct=20,
        protocol_take_rate_pct=10,
        fees=ReserveFees(borrow_fee_bps=0, flash_loan_fee_bps=30),
        borrow_rate_curve=InterestRateModel(),
        token_info=TokenInfo(symbol="USDC"),
        fee_receiver=FEE_RECEIVER,
    )
    params.update(overrides)
    return ReserveConfig(**params)


def sol_reserve_config(**overrides) -> ReserveConfig:
    params = dict(
        loan_to_value_pct=65,
        liquidation_threshold_pct=75,
        min_liquidation_bonus_bps=200,
        max_liquidation_bonus_bps=1_000,
        bad_debt_liquidation_bonus_bps=99,
        protocol_liquidation_fee_pct=20,
        protocol_take_rate_pct=10,
        fees=ReserveFees(borrow_fee_bps=0),
        borrow_rate_curve=InterestRateModel(),
        token_info=TokenInfo(symbol="SOL"),
        fee_receiver=FEE_RECEIVER,
    )
    params.update(overrides)
    return ReserveConfig(**params)


def make_reserve(
    key: str = USDC_RESERVE,
    mint: str = "USDC",
    available: int = 0,
    borrowed: FixedPointValue = ZERO,
    collateral_supply: int = 0,
    price: str = "1",
    decimals: int = 6,
    config: Optional[ReserveConfig] = None,
    slot: int = 0,
    **liquidity_overrides,
) -> Reserve:
    """Reserve record refreshed at slot, for tests that bypass the Ledger."""
    market_price = FixedPointValue.from_decimal(Decimal(price))
    liquidity = ReserveLiquidity(
        mint=mint,
        supply_vault=f"{key}_liquidity_vault",
        mint_decimals=decimals,
        available_amount=available,
        borrowed_amount=borrowed,
        market_price=market_price,
        smoothed_market_price=market_price,
    )
    if liquidity_overrides:
        liquidity = replace(liquidity, **liquidity_overrides)
    return Reserve(
        key=key,
        lending_market=MARKET,
        liquidity=liquidity,
        collateral=ReserveCollateral(
            mint="c" + mint,
            supply_vault=f"{key}_collateral_vault",
            mint_total_supply=collateral_supply,
        ),
        config=config or usdc_reserve_config(),
        last_update=LastUpdate(slot=slot, stale=False, price_status=PriceStatusFlags.ALL_CHECKS),
    )


def deploy_market(
    usdc_config: Optional[ReserveConfig] = None,
    sol_config: Optional[ReserveConfig] = None,
) -> Ledger:
    """Ledger with a market, USDC and SOL reserves, and user wallets."""
    ledger = Ledger("test", verbose=False, test_mode=True)
    run(ledger, "init_lending_market", key=MARKET, owner=OWNER)
    run(ledger, "init_reserve", market_key=MARKET, caller=OWNER, key=USDC_RESERVE,
        liquidity_mint="USDC", mint_decimals=6, config=usdc_config or usdc_reserve_config())
    run(ledger, "init_reserve", market_key=MARKET, caller=OWNER, key=SOL_RESERVE,
        liquidity_mint="SOL", mint_decimals=9, config=sol_config or sol_reserve_config())
    for wallet in ("alice", "bob", "lender", "liquidator"):
        ledger.register_wallet(wallet)
    return ledger


def open_borrow(ledger: Ledger, prices: StaticPricingSource) -> None:
    """
    Alice pledges 100,000 USDC and borrows 10 SOL from the lender's 100 SOL.
    """
    fund(ledger, "alice", "USDC", 100_000 * USDC)
    fund(ledger, "lender", "SOL", 100 * SOL)
    fund(ledger, "liquidator", "SOL", 10 * SOL)

    refresh_reserves(ledger, prices)
    run(ledger, "deposit_reserve_liquidity", reserve_key=SOL_RESERVE, user="lender", amount=100 * SOL)
    run(ledger, "init_obligation", market_key=MARKET, owner="alice", key=OBLIGATION)
    refresh(ledger, prices)
    run(ledger, "deposit_reserve_liquidity_and_obligation_collateral",
        obligation_key=OBLIGATION, reserve_key=USDC_RESERVE, user="alice", amount=100_000 * USDC)
    refresh(ledger, prices)
    run(ledger, "borrow_obligation_liquidity",
        obligation_key=OBLIGATION, reserve_key=SOL_RESERVE, user="alice", amount=10 * SOL)
    refresh(ledger, prices)


# =============================================================================
# FIXTURES
# =============================================================================

def default_prices() -> StaticPricingSource:
    """USDC at $1 and SOL at $4,000, published at time 0."""
    return StaticPricingSource({
        "USDC": oracle_price("1"),
        "SOL": oracle_price("4000"),
    })


@pytest.fixture
def prices():
    return default_prices()


@pytest.fixture
def market():
    return LendingMarket(key=MARKET, owner=OWNER)


@pytest.fixture
def ledger():
    """Market with USDC and SOL reserves, not yet priced."""
    return deploy_market()


@pytest.fixture
def priced_ledger(ledger, prices):
    """Market with both reserves refreshed at slot 0."""
    refresh_reserves(ledger, prices)
    return ledger


@pytest.fixture
def borrowed_ledger(ledger, prices):
    """Alice owes 10 SOL against 100,000 USDC; everything fresh."""
    open_borrow(ledger, prices)
    return ledger


@pytest.fixture
def empty_view():
    return FakeView()
