#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Lending Market Step by Step

This is a pedagogical walk through one market: a lender supplies SOL, a
borrower pledges USDC and borrows SOL, the SOL price rises and a liquidator
repays part of the debt for discounted collateral. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Setup           - Deploying from YAML, funding wallets, refreshing prices
  4-6:   Positions       - Supplying liquidity, pledging collateral, borrowing
  7-8:   Guarantees      - Idempotent retries, staleness checks
  9-10:  Liquidation     - Price shock, close factor, bonus and protocol fee
  11:    Conservation    - Every token accounted for

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing

The market owner is read from LENDING_OWNER (environment or .env); the demo
falls back to "admin" when it is unset.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
import logging
import os
import sys

from lending import (
    Ledger, Move, ExecuteResult, SYSTEM_WALLET, U64_MAX,
    TransactionOrigin, OriginType, build_transaction, transact,
    OraclePrice, StaticPricingSource, LendingError, StalenessError,
    load_config, deploy,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    market_file: Path = Path(__file__).parent / "market.example.yaml"
    obligation: str = "alice_obligation"

    # Prices in USD
    usdc_price: str = "1"
    sol_price: str = "4000"
    sol_shock_price: str = "5500"

    # Positions in whole tokens
    lender_sol: int = 100
    alice_usdc: int = 100_000
    alice_borrow_sol: int = 10
    liquidator_sol: int = 10

    # Slots to wait before the staleness check (2 slots per second)
    idle_slots: int = 7_200


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

DECIMALS = {"USDC": 6, "SOL": 9, "cUSDC": 6, "cSOL": 9}


# ============================================================================
# HELPERS
# ============================================================================

def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def units(amount: int, mint: str) -> int:
    return amount * 10 ** DECIMALS[mint]


def show(amount: int, mint: str) -> str:
    value = Decimal(amount) / Decimal(10) ** DECIMALS[mint]
    return f"{value:,.{min(DECIMALS[mint], 4)}f} {mint}"


def oracle_price(value: str, publish_time: int) -> OraclePrice:
    price = int(Decimal(value) * 10 ** 8)
    return OraclePrice(price=price, confidence=0, exponent=-8,
                       ema_price=price, ema_confidence=0, publish_time=publish_time)


def publish(prices: StaticPricingSource, ledger: Ledger, sol_price: str):
    now = ledger.clock.unix_timestamp
    prices.update_price("USDC", oracle_price(CONFIG.usdc_price, now))
    prices.update_price("SOL", oracle_price(sol_price, now))


def run(ledger: Ledger, instruction: str, **params) -> ExecuteResult:
    result = ledger.execute(transact(ledger, instruction, **params))
    print(f"  {instruction:<52} {result.value}")
    return result


def refresh_all(ledger: Ledger, prices: StaticPricingSource):
    for reserve in ledger.list_reserves():
        run(ledger, "refresh_reserve", reserve_key=reserve.key, pricing_source=prices)
    if CONFIG.obligation in ledger.accounts:
        run(ledger, "refresh_obligation", obligation_key=CONFIG.obligation)


def print_wallets(ledger: Ledger, wallets, mints=("USDC", "SOL", "cUSDC", "cSOL")):
    for wallet in wallets:
        held = [show(ledger.get_balance(wallet, m), m) for m in mints if ledger.get_balance(wallet, m)]
        print(f"  {wallet:<12} {', '.join(held) or '(empty)'}")


def print_obligation(ledger: Ledger):
    obligation = ledger.get_obligation(CONFIG.obligation)
    print(f"  deposited value        ${obligation.deposited_value.to_decimal():,.2f}")
    print(f"  borrowed value         ${obligation.borrowed_value.to_decimal():,.2f}")
    print(f"  allowed borrow value   ${obligation.allowed_borrow_value.to_decimal():,.2f}")
    print(f"  unhealthy borrow value ${obligation.unhealthy_borrow_value.to_decimal():,.2f}")
    print(f"  liquidatable           {obligation.is_liquidatable()}")


# ============================================================================
# PHASE 1: SETUP (Steps 1-3)
# ============================================================================

def step_01_deploy():
    """Load the market description and create its records."""
    step_header(1, "Deploy the Market",
        "Create a lending market and its reserves from a YAML description.")

    os.environ.setdefault("LENDING_OWNER", "admin")
    deployment = load_config(CONFIG.market_file)

    ledger = Ledger("demo", verbose=False)
    deploy(ledger, deployment)

    print(f"  Market {deployment.market.key!r} owned by {deployment.market.owner!r}")
    for reserve in ledger.list_reserves():
        config = reserve.config
        print(f"  {reserve.key:<14} {reserve.liquidity.mint:<5} "
              f"LTV {config.loan_to_value_pct}%  "
              f"liquidation threshold {config.liquidation_threshold_pct}%  "
              f"cToken {reserve.collateral.mint}")

    section_header("Deploying again is a no-op")
    deploy(ledger, deployment)
    print(f"  Transactions in log: {len(ledger.transaction_log)}")
    return ledger


def step_02_fund_wallets(ledger: Ledger):
    """Issue tokens from SYSTEM_WALLET."""
    step_header(2, "Fund the Users",
        "Tokens enter circulation from SYSTEM_WALLET, so every mint sums to zero.")

    grants = [
        ("lender", "SOL", CONFIG.lender_sol),
        ("alice", "USDC", CONFIG.alice_usdc),
        ("liquidator", "SOL", CONFIG.liquidator_sol),
    ]
    for wallet, _, _ in grants:
        ledger.register_wallet(wallet)
    moves = [Move(units(amount, mint), mint, SYSTEM_WALLET, wallet, "initial_balance")
             for wallet, mint, amount in grants]
    pending = build_transaction(ledger, moves, origin=TransactionOrigin(
        OriginType.SYSTEM, "faucet", event_type="fund"))
    print(f"  funding {ledger.execute(pending).value}")
    print_wallets(ledger, ["lender", "alice", "liquidator", SYSTEM_WALLET], ("USDC", "SOL"))
    return ledger


def step_03_refresh(ledger: Ledger):
    """Reserves take their prices from a pricing source when refreshed."""
    step_header(3, "Refresh the Reserves",
        "Value-dependent instructions need records refreshed in the current slot.")

    prices = StaticPricingSource()
    publish(prices, ledger, CONFIG.sol_price)
    refresh_all(ledger, prices)
    for reserve in ledger.list_reserves():
        print(f"  {reserve.liquidity.mint:<5} ${reserve.liquidity.market_price.to_decimal():,.2f} "
              f"at slot {reserve.last_update.slot}")
    return prices


# ============================================================================
# PHASE 2: POSITIONS (Steps 4-6)
# ============================================================================

def step_04_supply(ledger: Ledger, prices: StaticPricingSource):
    step_header(4, "Supply Liquidity",
        "A lender deposits SOL and receives cSOL at the current exchange rate.")

    run(ledger, "deposit_reserve_liquidity", reserve_key="sol_reserve",
        user="lender", amount=units(CONFIG.lender_sol, "SOL"))
    print_wallets(ledger, ["lender"])


def step_05_pledge(ledger: Ledger, prices: StaticPricingSource):
    step_header(5, "Pledge Collateral",
        "Alice opens an obligation and pledges USDC in one instruction.")

    run(ledger, "init_obligation", market_key="main_market", owner="alice", key=CONFIG.obligation)
    refresh_all(ledger, prices)
    run(ledger, "deposit_reserve_liquidity_and_obligation_collateral",
        obligation_key=CONFIG.obligation, reserve_key="usdc_reserve",
        user="alice", amount=units(CONFIG.alice_usdc, "USDC"))
    refresh_all(ledger, prices)
    print_obligation(ledger)


def step_06_borrow(ledger: Ledger, prices: StaticPricingSource):
    step_header(6, "Borrow",
        "Alice borrows SOL up to her allowed borrow value.")

    section_header("Asking for too much")
    try:
        transact(ledger, "borrow_obligation_liquidity", obligation_key=CONFIG.obligation,
                 reserve_key="sol_reserve", user="alice", amount=units(20, "SOL"))
    except LendingError as exc:
        print(f"  20 SOL refused: {type(exc).__name__}: {exc}")

    section_header("A borrow within limits")
    pending = transact(ledger, "borrow_obligation_liquidity", obligation_key=CONFIG.obligation,
                       reserve_key="sol_reserve", user="alice",
                       amount=units(CONFIG.alice_borrow_sol, "SOL"))
    print(f"  borrow {ledger.execute(pending).value}")
    refresh_all(ledger, prices)
    print_wallets(ledger, ["alice"])
    print_obligation(ledger)
    return pending


# ============================================================================
# PHASE 3: GUARANTEES (Steps 7-8)
# ============================================================================

def step_07_idempotency(ledger: Ledger, borrow):
    step_header(7, "Idempotent Retries",
        "Submitting the same pending transaction twice applies it once.")

    print(f"  intent {borrow.intent_id[:16]}... resubmitted: {ledger.execute(borrow).value}")
    print_wallets(ledger, ["alice"])


def step_08_staleness(ledger: Ledger, prices: StaticPricingSource):
    step_header(8, "Staleness",
        "After the clock moves, borrows wait for a refresh.")

    ledger.advance_slots(CONFIG.idle_slots)
    publish(prices, ledger, CONFIG.sol_price)
    print(f"  Clock now at slot {ledger.clock.slot}")
    try:
        transact(ledger, "borrow_obligation_liquidity", obligation_key=CONFIG.obligation,
                 reserve_key="sol_reserve", user="alice", amount=units(1, "SOL"))
    except StalenessError as exc:
        print(f"  Rejected before building: {type(exc).__name__}: {exc}")

    section_header("Refresh accrues interest")
    refresh_all(ledger, prices)
    debt = ledger.get_obligation(CONFIG.obligation).borrows[0].borrowed_amount_wads
    print(f"  Alice owes {debt.to_decimal() / 10 ** 9:.9f} SOL")


# ============================================================================
# PHASE 4: LIQUIDATION (Steps 9-10)
# ============================================================================

def step_09_price_shock(ledger: Ledger, prices: StaticPricingSource):
    step_header(9, "Price Shock",
        f"SOL rises to ${CONFIG.sol_shock_price} and Alice's debt crosses the threshold.")

    publish(prices, ledger, CONFIG.sol_shock_price)
    refresh_all(ledger, prices)
    print_obligation(ledger)


def step_10_liquidate(ledger: Ledger, prices: StaticPricingSource):
    step_header(10, "Liquidate",
        "A liquidator repays part of the debt and redeems the seized cUSDC.")

    before = ledger.get_balance("liquidator", "SOL")
    run(ledger, "liquidate_obligation_and_redeem_reserve_collateral",
        obligation_key=CONFIG.obligation, repay_reserve_key="sol_reserve",
        withdraw_reserve_key="usdc_reserve", liquidator="liquidator", amount=U64_MAX)
    repaid = before - ledger.get_balance("liquidator", "SOL")
    print(f"\n  Repaid {show(repaid, 'SOL')}")
    print_wallets(ledger, ["liquidator", "treasury"])

    section_header("After liquidation")
    refresh_all(ledger, prices)
    print_obligation(ledger)


# ============================================================================
# PHASE 5: CONSERVATION (Step 11)
# ============================================================================

def step_11_conservation(ledger: Ledger):
    step_header(11, "Conservation",
        "Every mint sums to zero and every reserve matches its vaults.")

    check = ledger.verify_double_entry()
    for mint, supply in check["supplies"].items():
        print(f"  {mint:<6} circulating {show(supply, mint) if mint in DECIMALS else supply}")
    print(f"\n  Double entry holds: {check['valid']}")
    mismatches = ledger.verify_reserves()
    print(f"  Reserve mismatches: {len(mismatches)}")
    return check["valid"] and not mismatches


def main():
    """Run the complete tutorial."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 70)
    print("       LENDING LEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    # Phase 1: Setup
    ledger = step_01_deploy()
    wait_for_enter()

    ledger = step_02_fund_wallets(ledger)
    wait_for_enter()

    prices = step_03_refresh(ledger)
    wait_for_enter()

    # Phase 2: Positions
    step_04_supply(ledger, prices)
    wait_for_enter()

    step_05_pledge(ledger, prices)
    wait_for_enter()

    borrow = step_06_borrow(ledger, prices)
    wait_for_enter()

    # Phase 3: Guarantees
    step_07_idempotency(ledger, borrow)
    wait_for_enter()

    step_08_staleness(ledger, prices)
    wait_for_enter()

    # Phase 4: Liquidation
    step_09_price_shock(ledger, prices)
    wait_for_enter()

    step_10_liquidate(ledger, prices)
    wait_for_enter()

    # Phase 5: Conservation
    ok = step_11_conservation(ledger)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    You've learned:

    SETUP
      - Markets and reserves are deployed from YAML
      - Prices enter through a refresh, never through user instructions

    POSITIONS
      - Deposits mint cTokens at the reserve exchange rate
      - Borrowing is limited by the allowed borrow value

    GUARANTEES
      - A pending transaction applies at most once
      - Stale records block value-dependent instructions

    LIQUIDATION
      - Repayment is capped by the close factor
      - The liquidator earns a bonus and the protocol takes a share of it

    Next steps:
      - Edit market.example.yaml and rerun
      - Run tests: pytest tests/
    """)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
