"""
Tests for Ledger registration, execution and verification.

Test coverage:
- Wallet, mint and account registration
- Validation: unregistered wallets and mints, overdrafts, slot, stale records
- Atomicity and idempotency of execute()
- Clock movement
- Conservation and reserve vault checks
- set_balance() test-mode guard and clone() independence
"""

import pytest
from dataclasses import replace

from lending import (
    Ledger, Move, AccountStateChange, ExecuteResult, Clock, SYSTEM_WALLET,
    build_transaction, empty_pending_transaction, init_lending_market,
    LedgerError, WalletNotRegistered, MintNotRegistered, AccountNotRegistered,
)

from tests.conftest import (
    USDC, SOL, MARKET, OWNER, USDC_RESERVE, SOL_RESERVE,
    fund, run,
)


@pytest.fixture
def bare():
    ledger = Ledger("bare", verbose=False)
    ledger.register_mint("USDC")
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


def transfer(ledger, quantity, source="alice", dest="bob", mint="USDC"):
    return build_transaction(ledger, [Move(quantity, mint, source, dest, "transfer")])


# ============================================================================
# Registration
# ============================================================================

class TestRegistration:

    def test_system_wallet_registered(self, bare):
        assert bare.is_registered(SYSTEM_WALLET)

    def test_duplicate_wallet(self, bare):
        with pytest.raises(ValueError):
            bare.register_wallet("alice")

    def test_duplicate_mint(self, bare):
        with pytest.raises(ValueError):
            bare.register_mint("USDC")

    def test_unknown_wallet_and_mint(self, bare):
        with pytest.raises(WalletNotRegistered):
            bare.get_balance("carol", "USDC")
        with pytest.raises(MintNotRegistered):
            bare.get_balance("alice", "SOL")

    def test_account_lookup_checks_type(self, ledger):
        assert ledger.get_lending_market(MARKET).owner == OWNER
        with pytest.raises(AccountNotRegistered):
            ledger.get_reserve(MARKET)
        with pytest.raises(AccountNotRegistered):
            ledger.get_obligation("missing")

    def test_init_reserve_registers_mints_and_vaults(self, ledger):
        reserve = ledger.get_reserve(USDC_RESERVE)
        assert {"USDC", "cUSDC", "SOL", "cSOL"} <= ledger.mints
        assert ledger.is_registered(reserve.liquidity.supply_vault)
        assert ledger.is_registered(reserve.collateral.supply_vault)
        assert ledger.is_registered("treasury")

    def test_list_reserves_sorted(self, ledger):
        assert [r.key for r in ledger.list_reserves()] == [SOL_RESERVE, USDC_RESERVE]
        assert ledger.list_reserves("other_market") == []

    def test_duplicate_account(self, ledger):
        with pytest.raises(ValueError):
            ledger.register_account(init_lending_market(MARKET, OWNER))


# ============================================================================
# Execution
# ============================================================================

class TestExecute:

    def test_applies_moves(self, bare):
        fund(bare, "alice", "USDC", 100)
        assert bare.execute(transfer(bare, 40)) == ExecuteResult.APPLIED
        assert bare.get_balance("alice", "USDC") == 60
        assert bare.get_balance("bob", "USDC") == 40
        assert len(bare.transaction_log) == 2

    def test_overdraft_rejected(self, bare):
        assert bare.execute(transfer(bare, 1)) == ExecuteResult.REJECTED
        assert bare.get_balance("bob", "USDC") == 0

    def test_system_wallet_may_go_negative(self, bare):
        fund(bare, "alice", "USDC", 100)
        assert bare.get_balance(SYSTEM_WALLET, "USDC") == -100

    def test_unregistered_wallet_rejected(self, bare):
        fund(bare, "alice", "USDC", 100)
        assert bare.execute(transfer(bare, 1, dest="carol")) == ExecuteResult.REJECTED

    def test_unregistered_mint_rejected(self, bare):
        assert bare.execute(transfer(bare, 1, mint="SOL")) == ExecuteResult.REJECTED

    def test_net_balance_checked_across_moves(self, bare):
        """A wallet may pass tokens through within one transaction."""
        fund(bare, "alice", "USDC", 10)
        pending = build_transaction(bare, [
            Move(10, "USDC", "alice", "bob", "leg1"),
            Move(10, "USDC", "bob", "alice", "leg2"),
        ])
        assert bare.execute(pending) == ExecuteResult.APPLIED

    def test_atomic_on_rejection(self, bare):
        fund(bare, "alice", "USDC", 10)
        pending = build_transaction(bare, [
            Move(10, "USDC", "alice", "bob", "leg1"),
            Move(5, "USDC", "bob", "carol", "leg2"),
        ])
        assert bare.execute(pending) == ExecuteResult.REJECTED
        assert bare.get_balance("alice", "USDC") == 10
        assert bare.get_balance("bob", "USDC") == 0

    def test_idempotent(self, bare):
        fund(bare, "alice", "USDC", 100)
        pending = transfer(bare, 40)
        assert bare.execute(pending) == ExecuteResult.APPLIED
        assert bare.execute(pending) == ExecuteResult.ALREADY_APPLIED
        assert bare.get_balance("bob", "USDC") == 40

    def test_empty_transaction(self, bare):
        assert bare.execute(empty_pending_transaction(bare)) == ExecuteResult.APPLIED
        assert bare.transaction_log == []

    def test_built_at_other_slot_rejected(self, bare):
        fund(bare, "alice", "USDC", 100)
        pending = transfer(bare, 40)
        bare.advance_slots(1)
        assert bare.execute(pending) == ExecuteResult.REJECTED

    def test_stale_record_rejected(self, ledger):
        market = ledger.get_lending_market(MARKET)
        outdated = replace(market, borrow_disabled=True)
        change = AccountStateChange(MARKET, outdated, replace(market, emergency_mode=True))
        assert ledger.execute(build_transaction(ledger, [], [change])) == ExecuteResult.REJECTED
        assert not ledger.get_lending_market(MARKET).emergency_mode

    def test_record_changed_twice_rejected(self, ledger):
        market = ledger.get_lending_market(MARKET)
        first = replace(market, emergency_mode=True)
        changes = [AccountStateChange(MARKET, market, first),
                   AccountStateChange(MARKET, first, replace(first, borrow_disabled=True))]
        assert ledger.execute(build_transaction(ledger, [], changes)) == ExecuteResult.REJECTED

    def test_record_key_must_match(self, ledger):
        market = ledger.get_lending_market(MARKET)
        change = AccountStateChange("other", None, market)
        assert ledger.execute(build_transaction(ledger, [], [change])) == ExecuteResult.REJECTED

    def test_exec_id(self, bare):
        fund(bare, "alice", "USDC", 1)
        assert bare.transaction_log[0].exec_id == "exec:bare:000000000000:0"


# ============================================================================
# Clock
# ============================================================================

class TestClock:

    def test_advance_slots_moves_time(self, bare):
        bare.advance_slots(10)
        assert bare.clock == Clock(slot=10, unix_timestamp=5)

    def test_explicit_timestamp(self, bare):
        bare.advance_clock(4, unix_timestamp=100)
        assert bare.clock.unix_timestamp == 100

    def test_cannot_go_backwards(self, bare):
        bare.advance_slots(10)
        with pytest.raises(ValueError):
            bare.advance_clock(5)

    def test_initial_clock(self):
        assert Ledger("x", initial_clock=Clock(7, 3), verbose=False).clock.slot == 7


# ============================================================================
# Verification
# ============================================================================

class TestVerification:

    def test_double_entry(self, bare):
        fund(bare, "alice", "USDC", 100)
        bare.execute(transfer(bare, 30))
        result = bare.verify_double_entry(expected_supplies={"USDC": 100})
        assert result['valid']
        assert result['supplies'] == {"USDC": 100}

    def test_double_entry_unexpected_supply(self, bare):
        fund(bare, "alice", "USDC", 100)
        result = bare.verify_double_entry(expected_supplies={"USDC": 99, "SOL": 1})
        assert not result['valid']
        assert len(result['discrepancies']) == 2

    def test_reserves_consistent_after_deposits(self, borrowed_ledger):
        assert borrowed_ledger.verify_reserves() == []
        assert borrowed_ledger.verify_double_entry()['valid']

    def test_reserve_mismatch_reported(self, priced_ledger):
        priced_ledger.set_balance("usdc_reserve_liquidity_vault", "USDC", 5)
        [discrepancy] = priced_ledger.verify_reserves()
        assert discrepancy['field'] == 'available_amount'
        assert discrepancy['actual'] == 5


class TestTestMode:

    def test_set_balance_disabled(self, bare):
        with pytest.raises(LedgerError):
            bare.set_balance("alice", "USDC", 100)

    def test_set_balance_keeps_conservation(self, ledger):
        ledger.set_balance("alice", "USDC", 100 * USDC)
        assert ledger.get_balance("alice", "USDC") == 100 * USDC
        assert ledger.verify_double_entry()['valid']


def test_clone_is_independent(borrowed_ledger, prices):
    cloned = borrowed_ledger.clone()
    fund(cloned, "bob", "SOL", SOL)
    assert cloned.get_balance("bob", "SOL") == SOL
    assert borrowed_ledger.get_balance("bob", "SOL") == 0
    assert cloned.get_obligation("alice_obligation") == borrowed_ledger.get_obligation("alice_obligation")


def test_repeated_instruction_is_idempotent(priced_ledger):
    fund(priced_ledger, "bob", "USDC", 10 * USDC)
    pending = run(priced_ledger, "deposit_reserve_liquidity",
                  reserve_key=USDC_RESERVE, user="bob", amount=10 * USDC)
    assert priced_ledger.execute(pending) == ExecuteResult.ALREADY_APPLIED
    assert priced_ledger.get_balance("bob", "cUSDC") == 10 * USDC
