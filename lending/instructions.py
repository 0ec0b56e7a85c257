"""
instructions.py - Instruction builders for the lending ledger

Each compute_* function is a convenience wrapper in the same three steps:
1. Load records from a read-only LedgerView
2. Call the pure operation (operations.py, liquidation.py, obligation.py)
3. Return a PendingTransaction with the token Moves and AccountStateChanges

Nothing is applied until Ledger.execute() runs the PendingTransaction. A
failing operation raises before any PendingTransaction exists.

Token flows (SYSTEM_WALLET is the collateral mint authority):
    deposit liquidity      user -> liquidity vault, SYSTEM -> user (cTokens)
    redeem collateral      user -> SYSTEM (cTokens), liquidity vault -> user
    deposit collateral     user -> collateral vault (cTokens)
    withdraw collateral    collateral vault -> user (cTokens)
    borrow                 liquidity vault -> user, liquidity vault -> fee receiver
    repay                  user -> liquidity vault
    liquidate and redeem   liquidator -> repay vault, collateral vault -> liquidator,
                           then burn and split liquidity with the fee receiver
    redeem fees            liquidity vault -> fee receiver

transact() dispatches any instruction by name.
"""

from __future__ import annotations
import inspect
from typing import Any, Callable, Dict, List, Optional

from .core import (
    SYSTEM_WALLET, LedgerView, Move, PendingTransaction, AccountStateChange,
    TransactionOrigin, OriginType, InvalidObligationOwner,
    build_transaction, empty_pending_transaction,
)
from .lending_market import init_lending_market, update_lending_market, update_market_owner
from .liquidation import liquidate_and_redeem
from .obligation import Obligation, init_obligation, refresh_obligation
from .operations import (
    init_reserve, refresh_reserve, deposit_reserve_liquidity, redeem_reserve_collateral,
    deposit_obligation_collateral, withdraw_obligation_collateral,
    borrow_obligation_liquidity, repay_obligation_liquidity,
    flash_borrow_reserve_liquidity, flash_repay_reserve_liquidity,
    redeem_fees, update_reserve_config,
)
from .pricing_source import PricingSource, get_validated_price
from .reserve import Reserve, ReserveCollateral, ReserveConfig, ReserveLiquidity


# ============================================================================
# HELPERS
# ============================================================================

def _origin(
    source_id: str,
    account: str,
    event_type: str,
    origin_type: OriginType = OriginType.USER_ACTION,
) -> TransactionOrigin:
    return TransactionOrigin(origin_type, source_id, account=account, event_type=event_type)


def _add_move(
    moves: List[Move],
    quantity: int,
    mint: str,
    source: str,
    dest: str,
    contract_id: str,
) -> None:
    if quantity > 0:
        moves.append(Move(quantity, mint, source, dest, contract_id))


def _state_changes(view: LedgerView, *records: Any) -> List[AccountStateChange]:
    """One AccountStateChange per record that differs from the stored version."""
    changes = []
    for record in records:
        if isinstance(record, Reserve):
            old = view.get_reserve(record.key)
        elif isinstance(record, Obligation):
            old = view.get_obligation(record.key)
        else:
            old = view.get_lending_market(record.key)
        if old != record:
            changes.append(AccountStateChange(record.key, old, record))
    return changes


def _check_obligation_owner(obligation: Obligation, user: str) -> None:
    if obligation.owner != user:
        raise InvalidObligationOwner(f"{user} does not own obligation {obligation.key}")


def _load(view: LedgerView, reserve_key: str):
    reserve = view.get_reserve(reserve_key)
    market = view.get_lending_market(reserve.lending_market)
    return market, reserve


def _deposit_reserves(view: LedgerView, obligation: Obligation) -> Dict[str, Reserve]:
    return {c.deposit_reserve: view.get_reserve(c.deposit_reserve) for c in obligation.deposits}


def _obligation_reserves(view: LedgerView, obligation: Obligation) -> Dict[str, Reserve]:
    reserves = _deposit_reserves(view, obligation)
    for liquidity in obligation.borrows:
        reserves[liquidity.borrow_reserve] = view.get_reserve(liquidity.borrow_reserve)
    return reserves


# ============================================================================
# MARKET ADMINISTRATION
# ============================================================================

def compute_init_lending_market(
    view: LedgerView,
    key: str,
    owner: str,
    quote_currency: str = "USD",
) -> PendingTransaction:
    market = init_lending_market(key, owner, quote_currency)
    return build_transaction(
        view, [], [AccountStateChange(key, None, market)],
        _origin(owner, key, "init_lending_market", OriginType.ADMIN),
    )


def compute_update_lending_market(
    view: LedgerView,
    market_key: str,
    caller: str,
    mode: int,
    value: Any,
) -> PendingTransaction:
    market = update_lending_market(view.get_lending_market(market_key), caller, mode, value)
    return build_transaction(
        view, [], _state_changes(view, market),
        _origin(caller, market_key, "update_lending_market", OriginType.ADMIN),
    )


def compute_update_market_owner(
    view: LedgerView,
    market_key: str,
    caller: str,
    new_owner: str,
) -> PendingTransaction:
    market = update_market_owner(view.get_lending_market(market_key), caller, new_owner)
    return build_transaction(
        view, [], _state_changes(view, market),
        _origin(caller, market_key, "update_market_owner", OriginType.ADMIN),
    )


def compute_init_reserve(
    view: LedgerView,
    market_key: str,
    caller: str,
    key: str,
    liquidity_mint: str,
    mint_decimals: int,
    config: ReserveConfig,
    collateral_mint: Optional[str] = None,
    supply_vault: Optional[str] = None,
    collateral_supply_vault: Optional[str] = None,
) -> PendingTransaction:
    """
    Create a reserve; mints and vault wallets default to names derived from key.

    Executing the transaction registers the mints and vault wallets.
    """
    reserve = init_reserve(
        view.get_lending_market(market_key),
        caller,
        key,
        ReserveLiquidity(
            mint=liquidity_mint,
            supply_vault=supply_vault or f"{key}_liquidity_vault",
            mint_decimals=mint_decimals,
        ),
        ReserveCollateral(
            mint=collateral_mint or f"c{liquidity_mint}",
            supply_vault=collateral_supply_vault or f"{key}_collateral_vault",
        ),
        config,
        view.clock,
    )
    return build_transaction(
        view, [], [AccountStateChange(key, None, reserve)],
        _origin(caller, key, "init_reserve", OriginType.ADMIN),
    )


def compute_update_reserve_config(
    view: LedgerView,
    reserve_key: str,
    caller: str,
    mode: int,
    value: Any,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    reserve = update_reserve_config(market, caller, reserve, mode, value)
    return build_transaction(
        view, [], _state_changes(view, reserve),
        _origin(caller, reserve_key, "update_reserve_config", OriginType.ADMIN),
    )


def compute_init_obligation(
    view: LedgerView,
    market_key: str,
    owner: str,
    key: str,
) -> PendingTransaction:
    view.get_lending_market(market_key)
    obligation = init_obligation(key, market_key, owner, view.clock.slot)
    return build_transaction(
        view, [], [AccountStateChange(key, None, obligation)],
        _origin(owner, key, "init_obligation"),
    )


# ============================================================================
# REFRESH
# ============================================================================

def compute_refresh_reserve(
    view: LedgerView,
    reserve_key: str,
    pricing_source: Optional[PricingSource] = None,
) -> PendingTransaction:
    """
    Accrue interest and load the latest oracle price, if the source has one.

    A reserve already refreshed in this slot with an unchanged price yields an
    empty transaction.
    """
    reserve = view.get_reserve(reserve_key)
    clock = view.clock
    price = None
    if pricing_source is not None:
        feed = pricing_source.get_price(reserve.liquidity.mint, clock.unix_timestamp)
        if feed is not None:
            price = get_validated_price(feed, reserve.config.token_info, clock.unix_timestamp)
    reserve = refresh_reserve(reserve, clock, price)
    changes = _state_changes(view, reserve)
    if not changes:
        return empty_pending_transaction(view)
    return build_transaction(
        view, [], changes, _origin("refresh", reserve_key, "refresh_reserve", OriginType.REFRESH),
    )


def compute_refresh_obligation(view: LedgerView, obligation_key: str) -> PendingTransaction:
    obligation = view.get_obligation(obligation_key)
    market = view.get_lending_market(obligation.lending_market)
    result = refresh_obligation(
        obligation, market, view.clock.slot, _obligation_reserves(view, obligation)
    )
    changes = _state_changes(view, result.obligation, *result.reserves.values())
    if not changes:
        return empty_pending_transaction(view)
    return build_transaction(
        view, [], changes,
        _origin("refresh", obligation_key, "refresh_obligation", OriginType.REFRESH),
    )


def compute_refresh_obligation_and_reserves(
    view: LedgerView,
    obligation_key: str,
    pricing_source: Optional[PricingSource] = None,
) -> PendingTransaction:
    """Refresh every reserve an obligation references, then the obligation, in one transaction."""
    obligation = view.get_obligation(obligation_key)
    market = view.get_lending_market(obligation.lending_market)
    clock = view.clock
    reserves = {}
    for key, reserve in _obligation_reserves(view, obligation).items():
        price = None
        if pricing_source is not None:
            feed = pricing_source.get_price(reserve.liquidity.mint, clock.unix_timestamp)
            if feed is not None:
                price = get_validated_price(feed, reserve.config.token_info, clock.unix_timestamp)
        reserves[key] = refresh_reserve(reserve, clock, price)
    result = refresh_obligation(obligation, market, clock.slot, reserves)
    changes = _state_changes(view, result.obligation, *result.reserves.values())
    if not changes:
        return empty_pending_transaction(view)
    return build_transaction(
        view, [], changes,
        _origin("refresh", obligation_key, "refresh_obligation_and_reserves", OriginType.REFRESH),
    )


# ============================================================================
# RESERVE LIQUIDITY
# ============================================================================

def compute_deposit_reserve_liquidity(
    view: LedgerView,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    updated, collateral_amount = deposit_reserve_liquidity(market, reserve, view.clock, amount)

    contract_id = f"deposit_reserve_liquidity:{reserve_key}"
    moves: List[Move] = []
    _add_move(moves, amount, reserve.liquidity.mint, user, reserve.liquidity.supply_vault, contract_id)
    _add_move(moves, collateral_amount, reserve.collateral.mint, SYSTEM_WALLET, user, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, updated),
        _origin(user, reserve_key, "deposit_reserve_liquidity"),
    )


def compute_redeem_reserve_collateral(
    view: LedgerView,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    updated, liquidity_amount = redeem_reserve_collateral(market, reserve, view.clock, amount)

    contract_id = f"redeem_reserve_collateral:{reserve_key}"
    moves: List[Move] = []
    _add_move(moves, amount, reserve.collateral.mint, user, SYSTEM_WALLET, contract_id)
    _add_move(moves, liquidity_amount, reserve.liquidity.mint,
              reserve.liquidity.supply_vault, user, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, updated),
        _origin(user, reserve_key, "redeem_reserve_collateral"),
    )


def compute_flash_borrow_reserve_liquidity(
    view: LedgerView,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    updated = flash_borrow_reserve_liquidity(market, reserve, view.clock, amount)

    moves: List[Move] = []
    _add_move(moves, amount, reserve.liquidity.mint, reserve.liquidity.supply_vault, user,
              f"flash_borrow:{reserve_key}")
    return build_transaction(
        view, moves, _state_changes(view, updated),
        _origin(user, reserve_key, "flash_borrow_reserve_liquidity"),
    )


def compute_flash_repay_reserve_liquidity(
    view: LedgerView,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    updated, flash_loan_fee = flash_repay_reserve_liquidity(market, reserve, view.clock, amount)

    contract_id = f"flash_repay:{reserve_key}"
    moves: List[Move] = []
    _add_move(moves, amount, reserve.liquidity.mint, user, reserve.liquidity.supply_vault, contract_id)
    _add_move(moves, flash_loan_fee, reserve.liquidity.mint, user,
              reserve.config.fee_receiver, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, updated),
        _origin(user, reserve_key, "flash_repay_reserve_liquidity"),
    )


def compute_redeem_fees(view: LedgerView, reserve_key: str) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    updated, amount = redeem_fees(market, reserve, view.clock)

    moves: List[Move] = []
    _add_move(moves, amount, reserve.liquidity.mint, reserve.liquidity.supply_vault,
              reserve.config.fee_receiver, f"redeem_fees:{reserve_key}")
    return build_transaction(
        view, moves, _state_changes(view, updated),
        _origin(reserve.config.fee_receiver, reserve_key, "redeem_fees"),
    )


# ============================================================================
# OBLIGATIONS
# ============================================================================

def compute_deposit_obligation_collateral(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    _check_obligation_owner(obligation, user)
    updated_reserve, updated = deposit_obligation_collateral(
        market, reserve, obligation, view.clock, amount
    )

    moves: List[Move] = []
    _add_move(moves, amount, reserve.collateral.mint, user, reserve.collateral.supply_vault,
              f"deposit_obligation_collateral:{obligation_key}")
    return build_transaction(
        view, moves, _state_changes(view, updated_reserve, updated),
        _origin(user, obligation_key, "deposit_obligation_collateral"),
    )


def compute_deposit_reserve_liquidity_and_obligation_collateral(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    """Deposit liquidity and pledge the minted cTokens to an obligation in one step."""
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    _check_obligation_owner(obligation, user)
    clock = view.clock

    reserve_after, collateral_amount = deposit_reserve_liquidity(market, reserve, clock, amount)
    reserve_after = refresh_reserve(reserve_after, clock)
    reserve_after, updated = deposit_obligation_collateral(
        market, reserve_after, obligation, clock, collateral_amount
    )

    contract_id = f"deposit_and_pledge:{obligation_key}"
    moves: List[Move] = []
    _add_move(moves, amount, reserve.liquidity.mint, user, reserve.liquidity.supply_vault, contract_id)
    _add_move(moves, collateral_amount, reserve.collateral.mint, SYSTEM_WALLET,
              reserve.collateral.supply_vault, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, reserve_after, updated),
        _origin(user, obligation_key, "deposit_reserve_liquidity_and_obligation_collateral"),
    )


def compute_withdraw_obligation_collateral(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    _check_obligation_owner(obligation, user)
    result = withdraw_obligation_collateral(market, reserve, obligation, view.clock, amount)

    moves: List[Move] = []
    _add_move(moves, result.withdraw_amount, reserve.collateral.mint,
              reserve.collateral.supply_vault, user,
              f"withdraw_obligation_collateral:{obligation_key}")
    return build_transaction(
        view, moves, _state_changes(view, result.reserve, result.obligation),
        _origin(user, obligation_key, "withdraw_obligation_collateral"),
    )


def compute_withdraw_obligation_collateral_and_redeem_reserve_collateral(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    """Withdraw collateral from an obligation and redeem it for liquidity in one step."""
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    _check_obligation_owner(obligation, user)
    clock = view.clock

    result = withdraw_obligation_collateral(market, reserve, obligation, clock, amount)
    reserve_after = refresh_reserve(result.reserve, clock)
    reserve_after, liquidity_amount = redeem_reserve_collateral(
        market, reserve_after, clock, result.withdraw_amount
    )

    contract_id = f"withdraw_and_redeem:{obligation_key}"
    moves: List[Move] = []
    _add_move(moves, result.withdraw_amount, reserve.collateral.mint,
              reserve.collateral.supply_vault, SYSTEM_WALLET, contract_id)
    _add_move(moves, liquidity_amount, reserve.liquidity.mint,
              reserve.liquidity.supply_vault, user, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, reserve_after, result.obligation),
        _origin(user, obligation_key, "withdraw_obligation_collateral_and_redeem_reserve_collateral"),
    )


def compute_borrow_obligation_liquidity(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    _check_obligation_owner(obligation, user)
    result = borrow_obligation_liquidity(
        market, reserve, obligation, view.clock, amount, _deposit_reserves(view, obligation)
    )

    contract_id = f"borrow_obligation_liquidity:{obligation_key}"
    moves: List[Move] = []
    _add_move(moves, result.receive_amount, reserve.liquidity.mint,
              reserve.liquidity.supply_vault, user, contract_id)
    _add_move(moves, result.borrow_fee, reserve.liquidity.mint,
              reserve.liquidity.supply_vault, reserve.config.fee_receiver, contract_id)
    return build_transaction(
        view, moves, _state_changes(view, result.obligation, *result.reserves.values()),
        _origin(user, obligation_key, "borrow_obligation_liquidity"),
    )


def compute_repay_obligation_liquidity(
    view: LedgerView,
    obligation_key: str,
    reserve_key: str,
    user: str,
    amount: int,
) -> PendingTransaction:
    """Repay a borrow; anyone may repay on the owner's behalf."""
    market, reserve = _load(view, reserve_key)
    obligation = view.get_obligation(obligation_key)
    result = repay_obligation_liquidity(market, reserve, obligation, view.clock, amount)

    moves: List[Move] = []
    _add_move(moves, result.repay_amount, reserve.liquidity.mint, user,
              reserve.liquidity.supply_vault, f"repay_obligation_liquidity:{obligation_key}")
    return build_transaction(
        view, moves, _state_changes(view, result.reserve, result.obligation),
        _origin(user, obligation_key, "repay_obligation_liquidity"),
    )


def compute_liquidate_obligation_and_redeem_reserve_collateral(
    view: LedgerView,
    obligation_key: str,
    repay_reserve_key: str,
    withdraw_reserve_key: str,
    liquidator: str,
    amount: int,
    min_acceptable_received_collateral_amount: int = 0,
) -> PendingTransaction:
    """
    Liquidate an unhealthy obligation and redeem the seized collateral.

    The protocol fee is paid from the redeemed liquidity, or in cTokens when
    the withdraw reserve has no liquidity to redeem against.
    """
    market, repay_reserve = _load(view, repay_reserve_key)
    withdraw_reserve = view.get_reserve(withdraw_reserve_key)
    obligation = view.get_obligation(obligation_key)
    result = liquidate_and_redeem(
        market, obligation, repay_reserve, withdraw_reserve, view.clock,
        amount, min_acceptable_received_collateral_amount,
    )

    contract_id = f"liquidate:{obligation_key}"
    repay_liquidity = repay_reserve.liquidity
    withdraw_liquidity = withdraw_reserve.liquidity
    collateral = withdraw_reserve.collateral
    fee_receiver = withdraw_reserve.config.fee_receiver

    moves: List[Move] = []
    _add_move(moves, result.repay_amount, repay_liquidity.mint, liquidator,
              repay_liquidity.supply_vault, contract_id)
    _add_move(moves, result.withdraw_collateral_amount, collateral.mint,
              collateral.supply_vault, liquidator, contract_id)
    if result.fee_in_collateral:
        _add_move(moves, result.protocol_fee, collateral.mint, liquidator, fee_receiver, contract_id)
    else:
        _add_move(moves, result.redeem_collateral_amount, collateral.mint,
                  liquidator, SYSTEM_WALLET, contract_id)
        _add_move(moves, result.liquidator_liquidity_amount, withdraw_liquidity.mint,
                  withdraw_liquidity.supply_vault, liquidator, contract_id)
        _add_move(moves, result.protocol_fee, withdraw_liquidity.mint,
                  withdraw_liquidity.supply_vault, fee_receiver, contract_id)

    records = [result.obligation, result.withdraw_reserve]
    if result.repay_reserve.key != result.withdraw_reserve.key:
        records.append(result.repay_reserve)
    return build_transaction(
        view, moves, _state_changes(view, *records),
        _origin(liquidator, obligation_key, "liquidate_obligation_and_redeem_reserve_collateral"),
    )


# ============================================================================
# DISPATCH
# ============================================================================

INSTRUCTIONS: Dict[str, Callable[..., PendingTransaction]] = {
    "init_lending_market": compute_init_lending_market,
    "update_lending_market": compute_update_lending_market,
    "update_market_owner": compute_update_market_owner,
    "init_reserve": compute_init_reserve,
    "update_reserve_config": compute_update_reserve_config,
    "init_obligation": compute_init_obligation,
    "refresh_reserve": compute_refresh_reserve,
    "refresh_obligation": compute_refresh_obligation,
    "refresh_obligation_and_reserves": compute_refresh_obligation_and_reserves,
    "deposit_reserve_liquidity": compute_deposit_reserve_liquidity,
    "redeem_reserve_collateral": compute_redeem_reserve_collateral,
    "flash_borrow_reserve_liquidity": compute_flash_borrow_reserve_liquidity,
    "flash_repay_reserve_liquidity": compute_flash_repay_reserve_liquidity,
    "redeem_fees": compute_redeem_fees,
    "deposit_obligation_collateral": compute_deposit_obligation_collateral,
    "deposit_reserve_liquidity_and_obligation_collateral":
        compute_deposit_reserve_liquidity_and_obligation_collateral,
    "withdraw_obligation_collateral": compute_withdraw_obligation_collateral,
    "withdraw_obligation_collateral_and_redeem_reserve_collateral":
        compute_withdraw_obligation_collateral_and_redeem_reserve_collateral,
    "borrow_obligation_liquidity": compute_borrow_obligation_liquidity,
    "repay_obligation_liquidity": compute_repay_obligation_liquidity,
    "liquidate_obligation_and_redeem_reserve_collateral":
        compute_liquidate_obligation_and_redeem_reserve_collateral,
}


def transact(view: LedgerView, instruction: str, **kwargs) -> PendingTransaction:
    """
    Build the PendingTransaction for a named instruction.

    This is the unified entry point for every lending instruction, routing to
    the matching compute_* function.

    Args:
        view: Read-only ledger access
        instruction: Key of INSTRUCTIONS (e.g. "borrow_obligation_liquidity")
        **kwargs: Parameters of the compute_* function, minus view

    Returns:
        PendingTransaction ready for Ledger.execute()

    Raises:
        ValueError: Unknown instruction or missing parameters

    Example:
        pending = transact(ledger, "borrow_obligation_liquidity",
                           obligation_key="alice_obligation", reserve_key="sol_reserve",
                           user="alice", amount=10 * 10**9)
    """
    handler = INSTRUCTIONS.get(instruction)
    if handler is None:
        raise ValueError(f"Unknown instruction: {instruction}")

    parameters = list(inspect.signature(handler).parameters.values())[1:]
    missing = [
        p.name for p in parameters
        if p.default is inspect.Parameter.empty and p.name not in kwargs
    ]
    if missing:
        raise ValueError(f"Missing parameters for {instruction}: {', '.join(missing)}")
    unknown = sorted(set(kwargs) - {p.name for p in parameters})
    if unknown:
        raise ValueError(f"Unexpected parameters for {instruction}: {', '.join(unknown)}")
    return handler(view, **kwargs)
