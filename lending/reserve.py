"""
reserve.py - Single-asset liquidity pools

A Reserve pools one liquidity token. Depositors receive collateral tokens
(cTokens) at the reserve's exchange rate; borrowers draw liquidity and owe a
debt that grows with the cumulative borrow rate.

Architecture:
- Frozen dataclasses (ReserveLiquidity, ReserveCollateral, ReserveConfig, Reserve)
- Methods return new records; nothing is mutated in place
- Staleness, status and market gates are enforced by operations.py, which
  composes the arithmetic here into complete state transitions

Key quantities:
    total_supply  = available_amount + borrowed_amount - accumulated_protocol_fees
    utilization   = borrowed_amount / total_supply        (0 when supply is 0)
    exchange rate = mint_total_supply / total_supply      (1 when either is 0)
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
import logging
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .core import (
    FULL_BPS, U64_MAX, LastUpdate, PriceStatusFlags,
    InsufficientLiquidity, InvalidAmount, BorrowTooSmall, BorrowTooLarge,
    FlashLoansDisabled, InvalidConfig, InvalidUpdateMode,
    ReserveFrozen, ReserveDeprecated,
)
from .fixed_point import FixedPointValue, ZERO, ONE
from .interest_rate import InterestRateModel, compounded_interest
from .pricing_source import TokenInfo


logger = logging.getLogger(__name__)


INITIAL_COLLATERAL_RATE = ONE


# ============================================================================
# STATUS, TIERS AND PERMISSIONS
# ============================================================================

class ReserveStatus(Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    DEPRECATED = "deprecated"


class AssetTier(Enum):
    """
    Isolation class of a reserve's asset.

    ISOLATED_COLLATERAL may only back debt when it is the sole deposit and can
    never be borrowed. ISOLATED_DEBT may only be borrowed alone and can never
    be used as collateral.
    """
    REGULAR = "regular"
    ISOLATED_COLLATERAL = "isolated_collateral"
    ISOLATED_DEBT = "isolated_debt"


class ReserveAction(Enum):
    DEPOSIT_LIQUIDITY = "deposit_liquidity"
    REDEEM_COLLATERAL = "redeem_collateral"
    DEPOSIT_COLLATERAL = "deposit_collateral"
    WITHDRAW_COLLATERAL = "withdraw_collateral"
    BORROW = "borrow"
    REPAY = "repay"
    LIQUIDATE = "liquidate"
    FLASH_BORROW = "flash_borrow"
    FLASH_REPAY = "flash_repay"
    REDEEM_FEES = "redeem_fees"


_OPENING_ACTIONS = frozenset({
    ReserveAction.DEPOSIT_LIQUIDITY,
    ReserveAction.DEPOSIT_COLLATERAL,
    ReserveAction.BORROW,
    ReserveAction.FLASH_BORROW,
})

# Frozen and deprecated reserves only allow unwinding existing positions.
RESERVE_STATUS_PERMISSIONS: Dict[ReserveStatus, FrozenSet[ReserveAction]] = {
    ReserveStatus.ACTIVE: frozenset(ReserveAction),
    ReserveStatus.FROZEN: frozenset(ReserveAction) - _OPENING_ACTIONS,
    ReserveStatus.DEPRECATED: frozenset(ReserveAction) - _OPENING_ACTIONS,
}

_STATUS_ERRORS = {
    ReserveStatus.FROZEN: ReserveFrozen,
    ReserveStatus.DEPRECATED: ReserveDeprecated,
}


def check_reserve_action(reserve: Reserve, action: ReserveAction) -> None:
    """
    Raise if the reserve's status does not permit the action.

    Raises:
        ReserveFrozen: Opening action on a frozen reserve
        ReserveDeprecated: Opening action on a deprecated reserve
    """
    status = reserve.config.status
    if action not in RESERVE_STATUS_PERMISSIONS[status]:
        raise _STATUS_ERRORS[status](
            f"Reserve {reserve.key} is {status.value}: {action.value} not permitted"
        )


# ============================================================================
# FEES
# ============================================================================

class FeeCalculation(Enum):
    EXCLUSIVE = "exclusive"     # Fee is added on top of the amount
    INCLUSIVE = "inclusive"     # Fee is carved out of the amount


def _calculate_fee(amount: FixedPointValue, fee_bps: int, calculation: FeeCalculation) -> int:
    if fee_bps == 0 or amount.is_zero():
        return 0
    rate = FixedPointValue.from_bps(fee_bps)
    if calculation == FeeCalculation.EXCLUSIVE:
        fee = amount * rate
    else:
        fee = amount * rate / (ONE + rate)
    # Non-zero fee rates always charge at least one token unit.
    fee_amount = max(fee.to_round(), 1)
    if FixedPointValue.from_int(fee_amount) >= amount:
        raise BorrowTooSmall(f"Fee {fee_amount} consumes the whole amount {amount}")
    return fee_amount


@dataclass(frozen=True, slots=True)
class ReserveFees:
    """
    Attributes:
        borrow_fee_bps: Origination fee on borrows
        flash_loan_fee_bps: Fee on flash loans; None disables flash loans
    """
    borrow_fee_bps: int = 0
    flash_loan_fee_bps: Optional[int] = None

    def calculate_borrow_fees(
        self,
        borrow_amount: FixedPointValue,
        calculation: FeeCalculation,
    ) -> int:
        return _calculate_fee(borrow_amount, self.borrow_fee_bps, calculation)

    def calculate_flash_loan_fees(self, flash_loan_amount: FixedPointValue) -> int:
        if self.flash_loan_fee_bps is None:
            raise FlashLoansDisabled("Flash loans are disabled for this reserve")
        return _calculate_fee(flash_loan_amount, self.flash_loan_fee_bps, FeeCalculation.EXCLUSIVE)


# ============================================================================
# CONFIG
# ============================================================================

@dataclass(frozen=True, slots=True)
class ReserveConfig:
    """
    Risk and fee parameters of a reserve. Validated by validate_reserve_config().

    Attributes:
        status: ACTIVE, FROZEN or DEPRECATED (see RESERVE_STATUS_PERMISSIONS)
        asset_tier: Isolation class of the asset
        loan_to_value_pct: Share of deposit value that may be borrowed against
        liquidation_threshold_pct: Share of deposit value at which positions become liquidatable
        min_liquidation_bonus_bps: Floor of the liquidator bonus
        max_liquidation_bonus_bps: Cap of the liquidator bonus
        bad_debt_liquidation_bonus_bps: Bonus used for obligations close to insolvency
        protocol_liquidation_fee_pct: Share of the liquidation bonus kept by the protocol
        protocol_take_rate_pct: Share of accrued interest kept by the protocol
        fees: Borrow and flash loan fees
        borrow_rate_curve: Utilization to annual borrow rate
        borrow_factor_pct: Risk weight applied to borrow values (>= 100)
        deposit_limit: Max total supply in liquidity token units
        borrow_limit: Max total borrowed in liquidity token units
        attributed_borrow_limit: Max borrow value attributed to this reserve's collateral
        token_info: Oracle configuration
        fee_receiver: Wallet receiving borrow, flash loan and protocol liquidation fees
    """
    status: ReserveStatus = ReserveStatus.ACTIVE
    asset_tier: AssetTier = AssetTier.REGULAR
    loan_to_value_pct: int = 0
    liquidation_threshold_pct: int = 0
    min_liquidation_bonus_bps: int = 0
    max_liquidation_bonus_bps: int = 0
    bad_debt_liquidation_bonus_bps: int = 0
    protocol_liquidation_fee_pct: int = 0
    protocol_take_rate_pct: int = 0
    fees: ReserveFees = field(default_factory=ReserveFees)
    borrow_rate_curve: InterestRateModel = field(default_factory=InterestRateModel)
    borrow_factor_pct: int = 100
    deposit_limit: int = U64_MAX
    borrow_limit: int = U64_MAX
    attributed_borrow_limit: int = U64_MAX
    token_info: TokenInfo = field(default_factory=TokenInfo)
    fee_receiver: str = ""


def validate_reserve_config(config: ReserveConfig) -> None:
    """
    Check a reserve configuration for internal consistency.

    Raises:
        InvalidConfig: Any parameter out of range or inconsistent with another
        InvalidBorrowRateCurvePoint: Invalid borrow rate curve
        InvalidTwapConfig: TWAP divergence enabled without a TWAP max age
    """
    if not 0 <= config.loan_to_value_pct < 100:
        raise InvalidConfig(f"Loan to value must be within 0..99%, got {config.loan_to_value_pct}")
    if not config.loan_to_value_pct <= config.liquidation_threshold_pct <= 100:
        raise InvalidConfig(
            f"Liquidation threshold {config.liquidation_threshold_pct}% must be between "
            f"LTV {config.loan_to_value_pct}% and 100%"
        )
    if config.max_liquidation_bonus_bps > FULL_BPS:
        raise InvalidConfig(f"Max liquidation bonus exceeds {FULL_BPS} bps")
    if not 0 <= config.min_liquidation_bonus_bps <= config.max_liquidation_bonus_bps:
        raise InvalidConfig(
            f"Min liquidation bonus {config.min_liquidation_bonus_bps} bps exceeds "
            f"max {config.max_liquidation_bonus_bps} bps"
        )
    if not 0 <= config.bad_debt_liquidation_bonus_bps < 100:
        raise InvalidConfig(
            f"Bad debt liquidation bonus must be below 100 bps, "
            f"got {config.bad_debt_liquidation_bonus_bps}"
        )
    if not 0 <= config.protocol_liquidation_fee_pct <= 100:
        raise InvalidConfig("Protocol liquidation fee must be within 0..100%")
    if not 0 <= config.protocol_take_rate_pct <= 100:
        raise InvalidConfig("Protocol take rate must be within 0..100%")
    if not 0 <= config.fees.borrow_fee_bps < FULL_BPS:
        raise InvalidConfig(f"Borrow fee must be below {FULL_BPS} bps")
    flash_fee = config.fees.flash_loan_fee_bps
    if flash_fee is not None and not 0 <= flash_fee < FULL_BPS:
        raise InvalidConfig(f"Flash loan fee must be below {FULL_BPS} bps")
    if config.borrow_factor_pct < 100:
        raise InvalidConfig(f"Borrow factor must be at least 100%, got {config.borrow_factor_pct}")
    if min(config.deposit_limit, config.borrow_limit, config.attributed_borrow_limit) < 0:
        raise InvalidConfig("Reserve limits must be non-negative")
    if config.asset_tier == AssetTier.ISOLATED_DEBT and (
        config.loan_to_value_pct != 0 or config.liquidation_threshold_pct != 0
    ):
        raise InvalidConfig("Isolated debt assets cannot be used as collateral")
    if config.asset_tier == AssetTier.ISOLATED_COLLATERAL and config.borrow_limit != 0:
        raise InvalidConfig("Isolated collateral assets cannot be borrowed")
    if not config.fee_receiver:
        raise InvalidConfig("Reserve fee receiver must be set")
    config.borrow_rate_curve.validate()
    config.token_info.validate()


class UpdateConfigMode(IntEnum):
    """Single-field reserve configuration updates (owner only)."""
    LOAN_TO_VALUE_PCT = 1
    MAX_LIQUIDATION_BONUS_BPS = 2
    LIQUIDATION_THRESHOLD_PCT = 3
    PROTOCOL_LIQUIDATION_FEE_PCT = 4
    PROTOCOL_TAKE_RATE_PCT = 5
    BORROW_FEE_BPS = 6
    FLASH_LOAN_FEE_BPS = 7
    DEPOSIT_LIMIT = 9
    BORROW_LIMIT = 10
    TOKEN_INFO_TWAP_DIVERGENCE = 14
    TOKEN_INFO_NAME = 17
    TOKEN_INFO_PRICE_MAX_AGE = 18
    TOKEN_INFO_TWAP_MAX_AGE = 19
    BORROW_RATE_CURVE = 24
    ENTIRE_RESERVE_CONFIG = 25
    BAD_DEBT_LIQUIDATION_BONUS_BPS = 30
    MIN_LIQUIDATION_BONUS_BPS = 31
    BORROW_FACTOR = 33
    ASSET_TIER = 34
    RESERVE_STATUS = 39
    ATTRIBUTED_BORROW_LIMIT = 40
    FEE_RECEIVER = 41


_INT_CONFIG_FIELDS = {
    UpdateConfigMode.LOAN_TO_VALUE_PCT: "loan_to_value_pct",
    UpdateConfigMode.MAX_LIQUIDATION_BONUS_BPS: "max_liquidation_bonus_bps",
    UpdateConfigMode.LIQUIDATION_THRESHOLD_PCT: "liquidation_threshold_pct",
    UpdateConfigMode.PROTOCOL_LIQUIDATION_FEE_PCT: "protocol_liquidation_fee_pct",
    UpdateConfigMode.PROTOCOL_TAKE_RATE_PCT: "protocol_take_rate_pct",
    UpdateConfigMode.DEPOSIT_LIMIT: "deposit_limit",
    UpdateConfigMode.BORROW_LIMIT: "borrow_limit",
    UpdateConfigMode.BAD_DEBT_LIQUIDATION_BONUS_BPS: "bad_debt_liquidation_bonus_bps",
    UpdateConfigMode.MIN_LIQUIDATION_BONUS_BPS: "min_liquidation_bonus_bps",
    UpdateConfigMode.BORROW_FACTOR: "borrow_factor_pct",
    UpdateConfigMode.ATTRIBUTED_BORROW_LIMIT: "attributed_borrow_limit",
}

_INT_TOKEN_INFO_FIELDS = {
    UpdateConfigMode.TOKEN_INFO_TWAP_DIVERGENCE: "max_twap_divergence_bps",
    UpdateConfigMode.TOKEN_INFO_PRICE_MAX_AGE: "max_age_price_seconds",
    UpdateConfigMode.TOKEN_INFO_TWAP_MAX_AGE: "max_age_twap_seconds",
}


def _expect(value: Any, expected_type: type, mode: UpdateConfigMode) -> Any:
    if isinstance(value, bool) or not isinstance(value, expected_type):
        raise InvalidConfig(
            f"{mode.name} expects {expected_type.__name__}, got {type(value).__name__}"
        )
    return value


def _enum_value(enum_type: type, value: Any, mode: UpdateConfigMode) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        raise InvalidConfig(f"{mode.name}: invalid {enum_type.__name__} {value!r}") from None


def apply_config_update(config: ReserveConfig, mode: int, value: Any) -> ReserveConfig:
    """
    Return a copy of config with the field group selected by mode replaced.

    The result is validated as a whole.

    Raises:
        InvalidUpdateMode: mode is not an UpdateConfigMode value
        InvalidConfig: value has the wrong type or the result is inconsistent
    """
    try:
        mode = UpdateConfigMode(mode)
    except ValueError:
        raise InvalidUpdateMode(f"Unknown reserve config update mode: {mode}") from None

    if mode in _INT_CONFIG_FIELDS:
        new_config = replace(config, **{_INT_CONFIG_FIELDS[mode]: _expect(value, int, mode)})
    elif mode in _INT_TOKEN_INFO_FIELDS:
        token_info = replace(
            config.token_info, **{_INT_TOKEN_INFO_FIELDS[mode]: _expect(value, int, mode)}
        )
        new_config = replace(config, token_info=token_info)
    elif mode == UpdateConfigMode.FEE_RECEIVER:
        new_config = replace(config, fee_receiver=_expect(value, str, mode))
    elif mode == UpdateConfigMode.TOKEN_INFO_NAME:
        token_info = replace(config.token_info, symbol=_expect(value, str, mode))
        new_config = replace(config, token_info=token_info)
    elif mode == UpdateConfigMode.BORROW_FEE_BPS:
        fees = replace(config.fees, borrow_fee_bps=_expect(value, int, mode))
        new_config = replace(config, fees=fees)
    elif mode == UpdateConfigMode.FLASH_LOAN_FEE_BPS:
        if value is not None:
            _expect(value, int, mode)
        new_config = replace(config, fees=replace(config.fees, flash_loan_fee_bps=value))
    elif mode == UpdateConfigMode.BORROW_RATE_CURVE:
        new_config = replace(config, borrow_rate_curve=_expect(value, InterestRateModel, mode))
    elif mode == UpdateConfigMode.ENTIRE_RESERVE_CONFIG:
        new_config = _expect(value, ReserveConfig, mode)
    elif mode == UpdateConfigMode.ASSET_TIER:
        new_config = replace(config, asset_tier=_enum_value(AssetTier, value, mode))
    elif mode == UpdateConfigMode.RESERVE_STATUS:
        new_config = replace(config, status=_enum_value(ReserveStatus, value, mode))
    else:
        raise InvalidUpdateMode(f"Unhandled reserve config update mode: {mode.name}")

    validate_reserve_config(new_config)
    return new_config


# ============================================================================
# LIQUIDITY AND COLLATERAL
# ============================================================================

@dataclass(frozen=True, slots=True)
class ReserveLiquidity:
    """
    Liquidity side of a reserve.

    Attributes:
        mint: Liquidity token mint
        supply_vault: Wallet holding available liquidity
        mint_decimals: Decimals of the liquidity token
        available_amount: Liquidity held in the supply vault and not lent out
        borrowed_amount: Outstanding debt including accrued interest
        cumulative_borrow_rate: Interest index, starts at 1 and never decreases
        accumulated_protocol_fees: Protocol share of interest not yet redeemed
        market_price: Oracle price of one whole token in quote currency
        market_price_confidence: Oracle confidence interval of market_price
        smoothed_market_price: Oracle TWAP of one whole token
        market_price_last_updated_ts: Publish time of market_price
    """
    mint: str
    supply_vault: str
    mint_decimals: int
    available_amount: int = 0
    borrowed_amount: FixedPointValue = ZERO
    cumulative_borrow_rate: FixedPointValue = ONE
    accumulated_protocol_fees: FixedPointValue = ZERO
    market_price: FixedPointValue = ZERO
    market_price_confidence: FixedPointValue = ZERO
    smoothed_market_price: FixedPointValue = ZERO
    market_price_last_updated_ts: int = 0

    def total_supply(self) -> FixedPointValue:
        return (FixedPointValue.from_int(self.available_amount)
                + self.borrowed_amount
                - self.accumulated_protocol_fees)

    def utilization_rate(self) -> FixedPointValue:
        total_supply = self.total_supply()
        if total_supply.is_zero():
            return ZERO
        return self.borrowed_amount / total_supply

    def price_upper_bound(self) -> FixedPointValue:
        """Spot price widened by its confidence interval, or the TWAP if higher."""
        return max(self.market_price + self.market_price_confidence, self.smoothed_market_price)

    def deposit(self, liquidity_amount: int) -> ReserveLiquidity:
        return replace(self, available_amount=self.available_amount + liquidity_amount)

    def withdraw(self, liquidity_amount: int) -> ReserveLiquidity:
        if liquidity_amount > self.available_amount:
            raise InsufficientLiquidity(
                f"Withdraw of {liquidity_amount} exceeds available {self.available_amount}"
            )
        return replace(self, available_amount=self.available_amount - liquidity_amount)

    def borrow(self, borrow_amount: FixedPointValue) -> ReserveLiquidity:
        amount = borrow_amount.to_floor()
        if amount > self.available_amount:
            raise InsufficientLiquidity(
                f"Borrow of {amount} exceeds available {self.available_amount}"
            )
        return replace(
            self,
            available_amount=self.available_amount - amount,
            borrowed_amount=self.borrowed_amount + borrow_amount,
        )

    def repay(self, repay_amount: int, settle_amount: FixedPointValue) -> ReserveLiquidity:
        safe_settle = min(settle_amount, self.borrowed_amount)
        return replace(
            self,
            available_amount=self.available_amount + repay_amount,
            borrowed_amount=self.borrowed_amount - safe_settle,
        )

    def redeem_fees(self, withdraw_amount: int) -> ReserveLiquidity:
        return replace(
            self,
            available_amount=self.available_amount - withdraw_amount,
            accumulated_protocol_fees=(
                self.accumulated_protocol_fees - FixedPointValue.from_int(withdraw_amount)
            ),
        )

    def compound_interest(
        self,
        compounded_rate: FixedPointValue,
        protocol_take_rate_pct: int,
    ) -> ReserveLiquidity:
        new_borrowed = self.borrowed_amount * compounded_rate
        new_interest = new_borrowed - self.borrowed_amount
        protocol_fees = new_interest * FixedPointValue.from_percent(protocol_take_rate_pct)
        return replace(
            self,
            borrowed_amount=new_borrowed,
            cumulative_borrow_rate=self.cumulative_borrow_rate * compounded_rate,
            accumulated_protocol_fees=self.accumulated_protocol_fees + protocol_fees,
        )


@dataclass(frozen=True, slots=True)
class ReserveCollateral:
    """
    Collateral token side of a reserve.

    Attributes:
        mint: Collateral token (cToken) mint
        supply_vault: Wallet holding cTokens deposited into obligations
        mint_total_supply: cTokens in circulation
    """
    mint: str
    supply_vault: str
    mint_total_supply: int = 0

    def mint_tokens(self, collateral_amount: int) -> ReserveCollateral:
        return replace(self, mint_total_supply=self.mint_total_supply + collateral_amount)

    def burn_tokens(self, collateral_amount: int) -> ReserveCollateral:
        if collateral_amount > self.mint_total_supply:
            raise InsufficientLiquidity(
                f"Burn of {collateral_amount} exceeds supply {self.mint_total_supply}"
            )
        return replace(self, mint_total_supply=self.mint_total_supply - collateral_amount)


@dataclass(frozen=True, slots=True)
class CollateralExchangeRate:
    """
    Exact ratio of cToken supply to total liquidity.

    Conversions floor, so rounding always favors the reserve.
    """
    collateral_supply: int
    total_liquidity: FixedPointValue

    @property
    def rate(self) -> FixedPointValue:
        if self.collateral_supply == 0 or self.total_liquidity.is_zero():
            return INITIAL_COLLATERAL_RATE
        return FixedPointValue.from_int(self.collateral_supply) / self.total_liquidity

    def _is_initial(self) -> bool:
        return self.collateral_supply == 0 or self.total_liquidity.is_zero()

    def collateral_to_liquidity(self, collateral_amount: int) -> int:
        return self.fraction_collateral_to_liquidity(collateral_amount).to_floor()

    def fraction_collateral_to_liquidity(self, collateral_amount: int) -> FixedPointValue:
        if self._is_initial():
            return FixedPointValue.from_int(collateral_amount)
        return FixedPointValue(
            collateral_amount * self.total_liquidity.raw // self.collateral_supply
        )

    def liquidity_to_collateral(self, liquidity_amount: int) -> int:
        if self._is_initial():
            return liquidity_amount
        return (FixedPointValue.from_int(liquidity_amount).raw
                * self.collateral_supply // self.total_liquidity.raw)


# ============================================================================
# RESERVE
# ============================================================================

@dataclass(frozen=True, slots=True)
class CalculateBorrowResult:
    borrow_amount: FixedPointValue      # Debt added, fee included
    receive_amount: int                 # Tokens sent to the borrower
    borrow_fee: int                     # Tokens sent to the fee receiver


@dataclass(frozen=True, slots=True)
class CalculateRepayResult:
    settle_amount: FixedPointValue      # Debt removed
    repay_amount: int                   # Tokens paid in (settle rounded up)


@dataclass(frozen=True, slots=True)
class Reserve:
    """
    A single-asset lending pool.

    Attributes:
        key: Account key of the reserve
        lending_market: Key of the market this reserve belongs to
        liquidity: Liquidity side (balances, interest index, prices)
        collateral: Collateral token side
        config: Risk and fee parameters
        last_update: Refresh slot, stale marker and oracle check status
        attributed_borrow_value: Borrow value attributed to this reserve's collateral
    """
    key: str
    lending_market: str
    liquidity: ReserveLiquidity
    collateral: ReserveCollateral
    config: ReserveConfig = field(default_factory=ReserveConfig)
    last_update: LastUpdate = field(default_factory=LastUpdate)
    attributed_borrow_value: FixedPointValue = ZERO

    @property
    def decimals_factor(self) -> int:
        return 10 ** self.liquidity.mint_decimals

    def is_stale(
        self,
        current_slot: int,
        required: PriceStatusFlags = PriceStatusFlags.NONE,
    ) -> bool:
        return self.last_update.is_stale(current_slot, required)

    def mark_stale(self) -> Reserve:
        return replace(self, last_update=self.last_update.mark_stale())

    def collateral_exchange_rate(self) -> CollateralExchangeRate:
        return CollateralExchangeRate(
            collateral_supply=self.collateral.mint_total_supply,
            total_liquidity=self.liquidity.total_supply(),
        )

    def current_borrow_rate(self) -> FixedPointValue:
        utilization = self.liquidity.utilization_rate()
        return self.config.borrow_rate_curve.borrow_rate(utilization)

    def borrow_factor(self) -> FixedPointValue:
        return max(ONE, FixedPointValue.from_percent(self.config.borrow_factor_pct))

    def market_value(self, liquidity_amount: FixedPointValue) -> FixedPointValue:
        return liquidity_amount * self.liquidity.market_price / self.decimals_factor

    def market_value_upper_bound(self, liquidity_amount: FixedPointValue) -> FixedPointValue:
        return liquidity_amount * self.liquidity.price_upper_bound() / self.decimals_factor

    def accrue_interest(self, current_slot: int) -> Reserve:
        """Compound interest for the slots elapsed since the last refresh."""
        slots_elapsed = self.last_update.slots_elapsed(current_slot)
        if slots_elapsed == 0:
            return self
        rate = compounded_interest(self.current_borrow_rate(), slots_elapsed)
        liquidity = self.liquidity.compound_interest(rate, self.config.protocol_take_rate_pct)
        logger.debug(
            "Reserve %s accrued %s slots: borrowed %s -> %s",
            self.key, slots_elapsed, self.liquidity.borrowed_amount, liquidity.borrowed_amount,
        )
        return replace(self, liquidity=liquidity)

    def deposit_liquidity(self, liquidity_amount: int) -> Tuple[Reserve, int]:
        """Add liquidity and mint cTokens; returns (reserve, collateral_minted)."""
        collateral_amount = self.collateral_exchange_rate().liquidity_to_collateral(liquidity_amount)
        if collateral_amount == 0:
            raise InvalidAmount(f"Deposit of {liquidity_amount} is too small to mint collateral")
        reserve = replace(
            self,
            liquidity=self.liquidity.deposit(liquidity_amount),
            collateral=self.collateral.mint_tokens(collateral_amount),
        )
        return reserve, collateral_amount

    def redeem_collateral(self, collateral_amount: int) -> Tuple[Reserve, int]:
        """Burn cTokens and release liquidity; returns (reserve, liquidity_released)."""
        liquidity_amount = self.collateral_exchange_rate().collateral_to_liquidity(collateral_amount)
        if liquidity_amount == 0:
            raise InvalidAmount(f"Redeeming {collateral_amount} collateral releases no liquidity")
        reserve = replace(
            self,
            liquidity=self.liquidity.withdraw(liquidity_amount),
            collateral=self.collateral.burn_tokens(collateral_amount),
        )
        return reserve, liquidity_amount

    def calculate_borrow(
        self,
        amount_to_borrow: int,
        max_borrow_factor_adjusted_debt_value: FixedPointValue,
        remaining_reserve_borrow: FixedPointValue,
    ) -> CalculateBorrowResult:
        """
        Size a borrow against the obligation's remaining borrow value.

        U64_MAX borrows the most allowed by the remaining value, the reserve's
        remaining borrow capacity and its available liquidity, with the fee
        carved out. Any other amount is received in full and the fee is
        added to the debt.

        Raises:
            BorrowTooLarge: The debt value (fee included) exceeds the remaining value
            BorrowTooSmall: The fee would consume the whole amount
        """
        price = self.liquidity.price_upper_bound()
        borrow_factor = self.borrow_factor()

        if amount_to_borrow == U64_MAX:
            borrow_amount = (max_borrow_factor_adjusted_debt_value
                             * self.decimals_factor / price / borrow_factor)
            borrow_amount = min(
                borrow_amount,
                remaining_reserve_borrow,
                FixedPointValue.from_int(self.liquidity.available_amount),
            )
            borrow_fee = self.config.fees.calculate_borrow_fees(
                borrow_amount, FeeCalculation.INCLUSIVE
            )
            receive_amount = borrow_amount.to_floor() - borrow_fee
            return CalculateBorrowResult(borrow_amount, receive_amount, borrow_fee)

        borrow_amount = FixedPointValue.from_int(amount_to_borrow)
        borrow_fee = self.config.fees.calculate_borrow_fees(
            borrow_amount, FeeCalculation.EXCLUSIVE
        )
        borrow_amount = borrow_amount + borrow_fee
        debt_value = borrow_amount * price * borrow_factor / self.decimals_factor
        if debt_value > max_borrow_factor_adjusted_debt_value:
            raise BorrowTooLarge(
                f"Borrow value {debt_value} exceeds remaining borrow value "
                f"{max_borrow_factor_adjusted_debt_value}"
            )
        return CalculateBorrowResult(borrow_amount, amount_to_borrow, borrow_fee)

    def calculate_repay(
        self,
        amount_to_repay: int,
        borrowed_amount: FixedPointValue,
    ) -> CalculateRepayResult:
        if amount_to_repay == U64_MAX:
            return CalculateRepayResult(borrowed_amount, borrowed_amount.to_ceil())
        settle_amount = min(FixedPointValue.from_int(amount_to_repay), borrowed_amount)
        return CalculateRepayResult(settle_amount, settle_amount.to_ceil())

    def calculate_redeem_fees(self) -> int:
        return min(
            self.liquidity.available_amount,
            self.liquidity.accumulated_protocol_fees.to_floor(),
        )

    def deposit_limit_crossed(self) -> bool:
        return self.liquidity.total_supply() > FixedPointValue.from_int(self.config.deposit_limit)

    def borrow_limit_crossed(self) -> bool:
        return self.liquidity.borrowed_amount > FixedPointValue.from_int(self.config.borrow_limit)
