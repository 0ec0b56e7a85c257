"""
ledger.py - In-memory executor for lending instructions

The Ledger class is the only stateful component. It stores token balances
per wallet and mint together with the market, reserve and obligation records,
and applies PendingTransactions built by the instruction layer.

Key responsibilities:
    - Implements LedgerView protocol for read-only access by instruction builders
    - Executes transactions atomically (all moves and record changes, or none)
    - Rejects record changes whose old_state no longer matches (optimistic concurrency)
    - Idempotent execution keyed on the content-hash intent_id
    - Keeps the clock, which only moves forward
    - Verifies conservation of every mint and reserve vault consistency
"""

from __future__ import annotations
from collections import defaultdict
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .core import (
    SLOTS_PER_SECOND, SYSTEM_WALLET,
    Clock, ExecuteResult, Move, PendingTransaction, Transaction,
    LedgerError, WalletNotRegistered, MintNotRegistered, AccountNotRegistered,
)
from .lending_market import LendingMarket
from .obligation import Obligation
from .reserve import Reserve


logger = logging.getLogger(__name__)


class Ledger:
    """
    Token balances and lending records with atomic, audited execution.

    Implements the LedgerView protocol, so the ledger itself can be passed to
    the compute_* builders.

    Design Principles:
        - Always validates: wallets, mints, non-negative balances and the
          old_state of every record change are checked before anything is applied.
        - Always records: every applied transaction is appended to transaction_log.

    SYSTEM_WALLET is registered automatically and may go negative: it is the
    mint authority, so its balance of a mint is minus that mint's supply.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own Ledger instance.

    Example:
        ledger = Ledger("main")
        ledger.register_mint("USDC")
        ledger.register_wallet("alice")
        ledger.register_account(init_lending_market("market", "admin"))

        pending = transact(ledger, "deposit_reserve_liquidity",
                           reserve_key="usdc_reserve", user="alice", amount=1_000_000)
        result = ledger.execute(pending)
    """

    def __init__(
        self,
        name: str,
        initial_clock: Optional[Clock] = None,
        verbose: bool = True,
        test_mode: bool = False,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_clock: Starting slot and timestamp (default: slot 0, time 0)
            verbose: Log every executed transaction at INFO (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.mints: Set[str] = set()
        self.accounts: Dict[str, Any] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._clock: Clock = initial_clock or Clock()
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def clock(self) -> Clock:
        return self._clock

    def get_balance(self, wallet_id: str, mint: str) -> int:
        """
        Get the balance of a mint in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            MintNotRegistered: If mint is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if mint not in self.mints:
            raise MintNotRegistered(f"Mint {mint} not registered")
        return self.balances[wallet_id].get(mint, 0)

    def _get_account(self, key: str, kind: type) -> Any:
        record = self.accounts.get(key)
        if record is None or not isinstance(record, kind):
            raise AccountNotRegistered(f"No {kind.__name__} registered under {key}")
        return record

    def get_reserve(self, key: str) -> Reserve:
        return self._get_account(key, Reserve)

    def get_obligation(self, key: str) -> Obligation:
        return self._get_account(key, Obligation)

    def get_lending_market(self, key: str) -> LendingMarket:
        return self._get_account(key, LendingMarket)

    def list_wallets(self) -> Set[str]:
        return self.registered_wallets.copy()

    def list_reserves(self, lending_market: Optional[str] = None) -> List[Reserve]:
        """Reserves sorted by key, optionally filtered by market."""
        return [
            record for _, record in sorted(self.accounts.items())
            if isinstance(record, Reserve)
            and (lending_market is None or record.lending_market == lending_market)
        ]

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def total_supply(self, mint: str) -> int:
        """Tokens of a mint held outside SYSTEM_WALLET."""
        if mint not in self.mints:
            raise MintNotRegistered(f"Mint {mint} not registered")
        return sum(
            self.balances[w].get(mint, 0)
            for w in sorted(self.registered_wallets) if w != SYSTEM_WALLET
        )

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        """
        Verify that conservation holds for every mint.

        Every token enters circulation from SYSTEM_WALLET, so the sum of all
        balances of a mint, SYSTEM_WALLET included, is always zero.

        Args:
            expected_supplies: Optional mapping of mint to expected circulating
                               supply (total_supply()).

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, int] - Circulating supply of each mint
            - 'discrepancies': List[Dict] - Details of any violations

        Example:
            result = ledger.verify_double_entry()
            assert result['valid'], f"Conservation violated: {result['discrepancies']}"
        """
        supplies = {}
        discrepancies = []

        for mint in sorted(self.mints):
            circulating = self.total_supply(mint)
            supplies[mint] = circulating
            net = circulating + self.balances[SYSTEM_WALLET].get(mint, 0)
            if net != 0:
                discrepancies.append({'mint': mint, 'expected': 0, 'actual': net,
                                      'error': 'net balance is not zero'})
            if expected_supplies and mint in expected_supplies:
                expected = expected_supplies[mint]
                if circulating != expected:
                    discrepancies.append({
                        'mint': mint,
                        'expected': expected,
                        'actual': circulating,
                        'difference': circulating - expected,
                    })

        if expected_supplies:
            for mint, expected in expected_supplies.items():
                if mint not in supplies:
                    discrepancies.append({'mint': mint, 'expected': expected, 'actual': 0,
                                          'error': 'mint not registered'})

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def verify_reserves(self) -> List[Dict[str, Any]]:
        """
        Check every reserve record against the token balances.

        A reserve's liquidity vault must hold exactly its available_amount and
        its collateral mint's circulating supply must equal mint_total_supply.

        Returns:
            List of discrepancies (empty when consistent)
        """
        discrepancies = []
        for reserve in self.list_reserves():
            vault_balance = self.get_balance(reserve.liquidity.supply_vault, reserve.liquidity.mint)
            if vault_balance != reserve.liquidity.available_amount:
                discrepancies.append({
                    'reserve': reserve.key,
                    'field': 'available_amount',
                    'expected': reserve.liquidity.available_amount,
                    'actual': vault_balance,
                })
            collateral_supply = self.total_supply(reserve.collateral.mint)
            if collateral_supply != reserve.collateral.mint_total_supply:
                discrepancies.append({
                    'reserve': reserve.key,
                    'field': 'mint_total_supply',
                    'expected': reserve.collateral.mint_total_supply,
                    'actual': collateral_supply,
                })
        return discrepancies

    # ========================================================================
    # CLOCK
    # ========================================================================

    def advance_clock(self, slot: int, unix_timestamp: Optional[int] = None) -> None:
        """
        Move the clock forward.

        Args:
            slot: New current slot
            unix_timestamp: New time in seconds; derived from the slot
                            distance at SLOTS_PER_SECOND when omitted

        Raises:
            ValueError: If the slot or timestamp would move backwards
        """
        if unix_timestamp is None:
            elapsed = max(slot - self._clock.slot, 0)
            unix_timestamp = self._clock.unix_timestamp + elapsed // SLOTS_PER_SECOND
        if slot < self._clock.slot or unix_timestamp < self._clock.unix_timestamp:
            raise ValueError(
                f"Cannot move clock backwards: slot {slot} ts {unix_timestamp} "
                f"< slot {self._clock.slot} ts {self._clock.unix_timestamp}"
            )
        self._clock = Clock(slot=slot, unix_timestamp=unix_timestamp)

    def advance_slots(self, slots: int) -> None:
        self.advance_clock(self._clock.slot + slots)

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(int)
        return wallet_id

    def register_mint(self, mint: str) -> None:
        if mint in self.mints:
            raise ValueError(f"Mint {mint} already registered")
        self.mints.add(mint)
        if self.verbose:
            logger.info("Registered mint %s", mint)

    def register_account(self, record: Any) -> None:
        """
        Store a market, reserve or obligation record under its key.

        Reserves also register their mints and vault wallets when missing.

        Raises:
            ValueError: If the key is already in use
        """
        if record.key in self.accounts:
            raise ValueError(f"Account {record.key} already registered")
        self._register_reserve_resources(record)
        self.accounts[record.key] = record
        if self.verbose:
            logger.info("Registered %s %s", type(record).__name__, record.key)

    def _register_reserve_resources(self, record: Any) -> None:
        if not isinstance(record, Reserve):
            return
        for mint in (record.liquidity.mint, record.collateral.mint):
            if mint not in self.mints:
                self.register_mint(mint)
        for wallet in (record.liquidity.supply_vault, record.collateral.supply_vault,
                       record.config.fee_receiver):
            if wallet and wallet not in self.registered_wallets:
                self.register_wallet(wallet)

    def set_balance(self, wallet_id: str, mint: str, quantity: int) -> None:
        """
        Set a wallet's balance directly.

        WARNING: Only available in test mode. SYSTEM_WALLET absorbs the
        difference so verify_double_entry() still holds.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if mint not in self.mints:
            raise MintNotRegistered(f"Mint {mint} not registered")
        delta = quantity - self.balances[wallet_id][mint]
        self.balances[wallet_id][mint] = quantity
        self.balances[SYSTEM_WALLET][mint] -= delta

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{slot}"""
        return f"exec:{self.name}:{sequence:012d}:{self._clock.slot}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves and record changes are validated first, then applied
        together. A pending transaction with an already executed intent_id is
        not applied again.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                logger.info("ALREADY_APPLIED: intent_id=%s", pending.intent_id)
            return ExecuteResult.ALREADY_APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            logger.warning("REJECTED %s: %s", pending, reason)
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            slot=pending.slot,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_slot=self._clock.slot,
            sequence_number=sequence,
        )

        self._execute_moves(tx.moves)
        for sc in tx.state_changes:
            self._register_reserve_resources(sc.new_state)
            self.accounts[sc.account] = sc.new_state

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            logger.info("APPLIED%s", repr(tx))
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Built at the current slot
        2. Mint and wallet registration
        3. Record changes match the current records (old_state)
        4. No wallet other than SYSTEM_WALLET ends up negative

        Returns:
            Tuple of (success: bool, reason: str)
        """
        if pending.slot != self._clock.slot:
            return False, f"built at slot {pending.slot}, ledger is at slot {self._clock.slot}"

        for move in pending.moves:
            if move.mint not in self.mints:
                return False, f"mint not registered: {move.mint}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        seen_accounts = set()
        for sc in pending.state_changes:
            if sc.account in seen_accounts:
                return False, f"account changed twice: {sc.account}"
            seen_accounts.add(sc.account)
            if sc.new_state is None or getattr(sc.new_state, "key", None) != sc.account:
                return False, f"new state does not match account {sc.account}"
            current = self.accounts.get(sc.account)
            if current != sc.old_state:
                return False, f"stale state for {sc.account}"

        net: Dict[Tuple[str, str], int] = defaultdict(int)
        for move in pending.moves:
            net[(move.source, move.mint)] -= move.quantity
            net[(move.dest, move.mint)] += move.quantity

        for (wallet, mint), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            proposed = self.balances[wallet][mint] + delta
            if proposed < 0:
                return False, f"{wallet} {mint}: {proposed} < 0"

        return True, ""

    def _execute_moves(self, moves: Tuple[Move, ...]) -> None:
        for move in moves:
            self.balances[move.source][move.mint] -= move.quantity
            self.balances[move.dest][move.mint] += move.quantity

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create an independent copy of this ledger.

        Records are frozen dataclasses and are shared; balances and
        collections are copied.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._clock = self._clock
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.mints = self.mints.copy()
        cloned.accounts = dict(self.accounts)
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence
        cloned.balances = {
            wallet: defaultdict(int, bals) for wallet, bals in self.balances.items()
        }
        return cloned
