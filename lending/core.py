"""
Core types and pure functions for the lending ledger.

This module provides the foundational data structures and protocols shared by
every other module:
1. Protocols: LedgerView for read-only access to accounts and token balances
2. Immutable data structures: Clock, LastUpdate, Move, PendingTransaction, Transaction
3. Exceptions: LendingError and its category hierarchy
4. Protocol-wide constants (slots per year, close factor, global caps)

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass, replace
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum, Flag
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable, TYPE_CHECKING
)

if TYPE_CHECKING:
    from .reserve import Reserve
    from .obligation import Obligation
    from .lending_market import LendingMarket


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All on-chain style arithmetic is integer based (see fixed_point.py).
# Decimal is only used at the edges: configuration parsing and display.
# The context is fixed at module load so those conversions are reproducible.
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 50
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Mint authority for collateral tokens. Mints are moves out of this wallet,
# burns are moves into it, so its balance is the negated mint supply.
SYSTEM_WALLET = "system"

# Scale of FixedPointValue.
WAD = 10 ** 18

# Sentinel amount meaning "as much as possible" for borrow, repay,
# withdraw and liquidate.
U64_MAX = 2 ** 64 - 1

SLOTS_PER_SECOND = 2
SLOTS_PER_MINUTE = SLOTS_PER_SECOND * 60
SLOTS_PER_HOUR = SLOTS_PER_MINUTE * 60
SLOTS_PER_DAY = SLOTS_PER_HOUR * 24
SLOTS_PER_YEAR = SLOTS_PER_DAY * 365

FULL_BPS = 10_000

# Liquidation defaults, overridable per market.
LIQUIDATION_CLOSE_FACTOR = 20
LIQUIDATION_CLOSE_VALUE = 2
MAX_LIQUIDATABLE_VALUE_AT_ONCE = 500_000
CLOSE_TO_INSOLVENCY_RISKY_LTV = 95

# Global borrow value caps (quote currency).
GLOBAL_ALLOWED_BORROW_VALUE = 45_000_000
GLOBAL_UNHEALTHY_BORROW_VALUE = 50_000_000

MIN_NET_VALUE_IN_OBLIGATION = Decimal("0.000001")

# Confidence interval must be within this percentage of the price.
MAX_CONFIDENCE_PERCENTAGE = 2

MAX_OBLIGATION_DEPOSITS = 8
MAX_OBLIGATION_BORROWS = 5


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Instruction builders (see instructions.py) accept a LedgerView and return a
    PendingTransaction; they cannot modify balances or accounts themselves.
    The Ledger class implements this protocol and also provides mutation
    methods. For testing, FakeView provides a truly immutable implementation.
    """

    @property
    def clock(self) -> 'Clock':
        """Return the current slot and unix timestamp."""
        ...

    def get_balance(self, wallet_id: str, mint: str) -> int:
        """
        Return the token balance of a wallet for a mint (0 if it holds none).
        """
        ...

    def get_reserve(self, key: str) -> 'Reserve':
        """Return the current Reserve record stored under key."""
        ...

    def get_obligation(self, key: str) -> 'Obligation':
        """Return the current Obligation record stored under key."""
        ...

    def get_lending_market(self, key: str) -> 'LendingMarket':
        """Return the current LendingMarket record stored under key."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    ALREADY_APPLIED: Intent ID was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation (unknown wallet or mint, insufficient
              funds, or an account changed since the transaction was built).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"           # Depositor, borrower or liquidator instruction
    ADMIN = "admin"                       # Market owner configuration change
    REFRESH = "refresh"                   # Permissionless reserve/obligation refresh
    SYSTEM = "system"                     # Initial setup
    EXTERNAL = "external"                 # External system integration


class PriceStatusFlags(Flag):
    """
    Oracle checks that passed at the last reserve refresh.

    Operations state which flags they require; a reserve missing any
    required flag is treated as stale.
    """
    NONE = 0
    PRICE_LOADED = 1
    PRICE_AGE_CHECKED = 2
    TWAP_CHECKED = 4
    TWAP_AGE_CHECKED = 8
    ALL_CHECKS = 15
    LIQUIDATION_CHECKS = 3


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending errors."""
    pass


class LendingArithmeticError(LendingError, ArithmeticError):
    """Raised when checked fixed-point arithmetic fails."""
    pass


class MathOverflow(LendingArithmeticError):
    """Raised when a result exceeds the representable fixed-point range."""
    pass


class NegativeResult(LendingArithmeticError):
    """Raised when an unsigned result would be negative."""
    pass


class DivideByZero(LendingArithmeticError, ZeroDivisionError):
    """Raised on fixed-point division by zero."""
    pass


class NegativeInterestRate(LendingArithmeticError):
    """Raised when a cumulative borrow rate would decrease."""
    pass


class StalenessError(LendingError):
    """Base for records that must be refreshed before use."""
    pass


class ReserveStale(StalenessError):
    """Raised when a reserve was not refreshed in the current slot."""
    pass


class ObligationStale(StalenessError):
    """Raised when an obligation was not refreshed in the current slot."""
    pass


class HealthError(LendingError):
    """Base for operations refused because of obligation health."""
    pass


class ObligationHealthy(HealthError):
    """Raised when liquidating an obligation that is not liquidatable."""
    pass


class BorrowTooLarge(HealthError):
    """Raised when a borrow exceeds the remaining borrow capacity."""
    pass


class WithdrawTooLarge(HealthError):
    """Raised when a withdrawal would leave the obligation under-collateralized."""
    pass


class WorseLTVBlocked(HealthError):
    """Raised when an operation would worsen the loan-to-value beyond what is allowed."""
    pass


class LiabilitiesBiggerThanAssets(HealthError):
    """Raised when an operation would leave debt larger than deposits."""
    pass


class NetValueRemainingTooSmall(HealthError):
    """Raised when an operation would leave a non-zero but dust net value."""
    pass


class StateError(LendingError):
    """Base for operations refused because of account state."""
    pass


class ReserveFrozen(StateError):
    """Raised when opening a position in a frozen reserve."""
    pass


class ReserveDeprecated(StateError):
    """Raised when opening a position in a deprecated reserve."""
    pass


class GlobalEmergencyMode(StateError):
    """Raised for user operations while the market is in emergency mode."""
    pass


class BorrowingDisabled(StateError):
    """Raised when borrowing is disabled market-wide."""
    pass


class InsufficientLiquidity(StateError):
    """Raised when a reserve does not hold enough available liquidity."""
    pass


class DepositLimitExceeded(StateError):
    """Raised when a deposit would push reserve supply above its deposit limit."""
    pass


class BorrowLimitExceeded(StateError):
    """Raised when a borrow would push reserve borrows above its borrow limit."""
    pass


class BorrowAttributionLimitExceeded(StateError):
    """Raised when a borrow would exceed a deposit reserve's attributed borrow limit."""
    pass


class ObligationReserveLimit(StateError):
    """Raised when an obligation has no free deposit or borrow slot."""
    pass


class InvalidObligationCollateral(StateError):
    """Raised when an obligation has no deposit in the given reserve."""
    pass


class InvalidObligationLiquidity(StateError):
    """Raised when an obligation has no borrow from the given reserve."""
    pass


class ObligationCollateralEmpty(StateError):
    """Raised when a deposit entry holds no collateral value."""
    pass


class ObligationLiquidityEmpty(StateError):
    """Raised when a borrow entry holds no debt value."""
    pass


class ZeroRepay(StateError):
    """Raised when repaying a borrow whose amount is zero."""
    pass


class ObligationDepositsEmpty(StateError):
    """Raised when an obligation has no deposits."""
    pass


class ObligationDepositsZero(StateError):
    """Raised when an obligation's deposits are worth nothing."""
    pass


class ObligationBorrowsZero(StateError):
    """Raised when an obligation's borrows are worth nothing."""
    pass


class CollateralNonLiquidatable(StateError):
    """Raised when seizing collateral from a reserve with zero LTV or threshold."""
    pass


class FlashLoansDisabled(StateError):
    """Raised when the reserve has no flash loan fee configured."""
    pass


class InsufficientProtocolFeesToRedeem(StateError):
    """Raised when there are no protocol fees available to redeem."""
    pass


class IsolatedAssetTierViolation(StateError):
    """Raised when isolated collateral or debt would be mixed with other assets."""
    pass


class ObligationInDeprecatedReserve(StateError):
    """Raised when withdrawing from an active reserve while holding deprecated collateral."""
    pass


class InvalidAccountInput(StateError):
    """Raised when a required account is missing or belongs to another market."""
    pass


class LastSlotGreaterThanCurrent(StateError):
    """Raised when a record was updated at a slot later than the current one."""
    pass


class AuthorizationError(LendingError):
    """Base for operations attempted by the wrong signer."""
    pass


class InvalidMarketOwner(AuthorizationError):
    """Raised when a market-owner operation is attempted by someone else."""
    pass


class InvalidObligationOwner(AuthorizationError):
    """Raised when an owner-only obligation operation is attempted by someone else."""
    pass


class InvalidInput(LendingError, ValueError):
    """Base for invalid arguments and configuration values."""
    pass


class InvalidAmount(InvalidInput):
    """Raised when an amount is zero or otherwise unusable."""
    pass


class BorrowTooSmall(InvalidAmount):
    """Raised when a borrow is consumed entirely by its fee."""
    pass


class RepayTooSmall(InvalidAmount):
    """Raised when a repayment rounds to nothing."""
    pass


class WithdrawTooSmall(InvalidAmount):
    """Raised when a withdrawal rounds to nothing."""
    pass


class LiquidationTooSmall(InvalidAmount):
    """Raised when a liquidation would repay or seize nothing."""
    pass


class InvalidConfig(InvalidInput):
    """Raised when a reserve or market configuration is inconsistent."""
    pass


class InvalidFlag(InvalidInput):
    """Raised when a boolean or bounded market setting gets an out-of-range value."""
    pass


class InvalidUpdateMode(InvalidInput):
    """Raised for an unrecognized configuration update mode."""
    pass


class InvalidBorrowRateCurvePoint(InvalidConfig):
    """Raised when a borrow rate curve is not monotonic or out of range."""
    pass


class InvalidTwapConfig(InvalidConfig):
    """Raised when TWAP divergence checks are enabled without a TWAP max age."""
    pass


class LiquidationSlippageError(InvalidInput):
    """Raised when a liquidation yields less collateral than the caller accepts."""
    pass


class OracleError(LendingError):
    """Base for unusable oracle prices."""
    pass


class PriceIsZero(OracleError):
    """Raised when the oracle reports a zero or negative price."""
    pass


class PriceConfidenceTooWide(OracleError):
    """Raised when the oracle confidence interval is too wide relative to the price."""
    pass


class LedgerError(LendingError):
    """Base exception for errors raised by the in-memory ledger."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would make a non-system wallet balance negative."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class MintNotRegistered(LedgerError):
    """Raised when operating on a mint that has not been registered."""
    pass


class AccountNotRegistered(LedgerError):
    """Raised when an account key is unknown or holds a different record type."""
    pass


# ============================================================================
# CLOCK AND STALENESS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Clock:
    """Current slot and unix timestamp (seconds), supplied by the caller."""
    slot: int = 0
    unix_timestamp: int = 0

    def __post_init__(self):
        if self.slot < 0 or self.unix_timestamp < 0:
            raise ValueError(f"Clock values must be non-negative, got {self}")


@dataclass(frozen=True, slots=True)
class LastUpdate:
    """
    Slot of the last refresh, a stale marker, and which oracle checks passed.

    Every mutation of a reserve or obligation marks it stale; only a refresh
    clears the marker.
    """
    slot: int = 0
    stale: bool = True
    price_status: PriceStatusFlags = PriceStatusFlags.NONE

    def slots_elapsed(self, current_slot: int) -> int:
        if current_slot < self.slot:
            raise LastSlotGreaterThanCurrent(
                f"Last update slot {self.slot} is after current slot {current_slot}"
            )
        return current_slot - self.slot

    def update_slot(
        self,
        slot: int,
        price_status: Optional[PriceStatusFlags] = None,
    ) -> LastUpdate:
        status = self.price_status if price_status is None else price_status
        return LastUpdate(slot=slot, stale=False, price_status=status)

    def mark_stale(self) -> LastUpdate:
        return replace(self, stale=True)

    def is_stale(
        self,
        current_slot: int,
        required: PriceStatusFlags = PriceStatusFlags.NONE,
    ) -> bool:
        """
        True if the record must be refreshed before use at current_slot.

        A record is stale when its marker is set, when it was refreshed in a
        different slot, or when its price status lacks any required flag.
        """
        if self.stale or self.slot != current_slot:
            return True
        return (self.price_status & required) != required


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source (USER_ACTION, ADMIN, REFRESH, ...)
        source_id: Identifier of the signer or component (wallet ID, "refresh", ...)
        account: Key of the primary account touched (reserve or obligation), if any
        event_type: Instruction name (e.g., "borrow_obligation_liquidity")
    """
    origin_type: OriginType
    source_id: str
    account: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.account:
            parts.append(f"account={self.account}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# ACCOUNT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccountStateChange:
    """
    Record of an account update for transaction logging and optimistic checks.

    Stores complete before/after records. The ledger applies new_state only if
    the account currently equals old_state.

    Attributes:
        account: Key of the reserve, obligation or market that changed
        old_state: Record before the change (None when the account is created)
        new_state: Record after the change
    """
    account: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute top-level fields that differ between old and new record.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        if self.new_state is None or not is_dataclass(self.new_state):
            return {}
        changes = {}
        for f in fields(self.new_state):
            new_val = getattr(self.new_state, f.name)
            old_val = getattr(self.old_state, f.name, None) if self.old_state is not None else None
            if old_val != new_val:
                changes[f.name] = (old_val, new_val)
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single token transfer between two wallets.

    Attributes:
        quantity: Amount in the mint's smallest unit (positive integer).
        mint: Token mint being transferred (liquidity or collateral mint).
        source: The wallet ID from which tokens are debited.
        dest: The wallet ID to which tokens are credited.
        contract_id: Identifier of the instruction leg generating this move.
        metadata: Optional additional information about the move.
    """
    quantity: int
    mint: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.mint or not self.mint.strip():
            raise ValueError("Move mint cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.mint}: {self.source}→{self.dest})"


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Dataclass records are serialized field by field, so two records with equal
    contents always hash equally regardless of how they were constructed.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{type(value).__name__}.{value.value}"
    if isinstance(value, Decimal):
        normalized = value.normalize()
        if normalized == normalized.to_integral_value():
            return f"D:{int(normalized)}"
        return f"D:{format(normalized, 'f')}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if is_dataclass(value) and not isinstance(value, type):
        serialized = ",".join(
            f"{f.name}={_canonicalize(getattr(value, f.name))}" for f in fields(value)
        )
        return f"{type(value).__name__}({serialized})"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[AccountStateChange, ...],
    origin: TransactionOrigin,
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    The hash covers moves, account changes and origin, never the slot, so
    the same instruction built twice against the same state has the same ID.
    Used for idempotency checking in Ledger.execute().
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (m.quantity, m.mint, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.account:
        content_parts.append(f"account:{origin.account}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for m in sorted_moves:
        content_parts.append(f"move:{m.quantity}|{m.mint}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.account):
        old_canonical = _canonicalize(sc.old_state)
        new_canonical = _canonicalize(sc.new_state)
        content_parts.append(f"state_change:{sc.account}|{old_canonical}|{new_canonical}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction built but not yet executed - represents INTENT.

    Created by the compute_* instruction builders and submitted to the ledger.

    Lifecycle:
    1. Builder creates PendingTransaction with moves, state_changes, origin, slot
    2. intent_id is auto-computed from content (deterministic hash)
    3. Ledger.execute() validates and executes, creating a Transaction record

    Attributes:
        moves: Tuple of token transfers between wallets
        state_changes: Tuple of account changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        slot: Slot at which the transaction was built
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[AccountStateChange, ...]
    origin: TransactionOrigin
    slot: int
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(self.moves, self.state_changes, self.origin)
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves and no account changes."""
        return not self.moves and not self.state_changes

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} changes, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[AccountStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and account changes.

    Args:
        view: Read-only ledger view (provides the current slot)
        moves: List of moves to include in the transaction
        state_changes: Optional list of AccountStateChange objects
        origin: Transaction origin (defaults to a USER_ACTION origin)

    Returns:
        A PendingTransaction ready for execution
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="user",
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=tuple(state_changes or ()),
        origin=origin,
        slot=view.clock.slot,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Create an empty PendingTransaction (no moves, no account changes)."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        slot=view.clock.slot,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of token transfers between wallets
        state_changes: Tuple of account changes
        origin: Who/what created this transaction and why
        slot: Slot at which the PendingTransaction was built
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence)
        ledger_name: Name of the ledger that executed this
        execution_slot: Ledger slot when this was executed
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[AccountStateChange, ...]
    origin: TransactionOrigin
    slot: int
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_slot: int
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes:
            raise ValueError("Transaction must have moves or state_changes")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   slot           : ' + str(self.slot))}│",
            f"│{pad('   ledger_name    : ' + self.ledger_name)}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity} {move.mint}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Account Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.account + ']')}│")
                for field_name in sc.changed_fields():
                    lines.append(f"│{pad('      ' + field_name)}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
