"""
lending - Collateralized Lending Ledger

Reserves, obligations and liquidations of a pooled lending market with
deterministic fixed-point accounting, executed on an in-memory double-entry
ledger.

Usage:
    from lending import Ledger, Move, build_transaction, transact, SYSTEM_WALLET

    ledger = Ledger("main")
    deploy(ledger, load_config("market.example.yaml"))
    ledger.register_wallet("alice")

    # Fund wallets via SYSTEM_WALLET (proper issuance)
    funding = build_transaction(ledger, [
        Move(1_000_000_000, "USDC", SYSTEM_WALLET, "alice", "initial_balance")
    ])
    ledger.execute(funding)

    # Refresh, then deposit
    ledger.execute(transact(ledger, "refresh_reserve",
                            reserve_key="usdc_reserve", pricing_source=prices))
    ledger.execute(transact(ledger, "deposit_reserve_liquidity",
                            reserve_key="usdc_reserve", user="alice", amount=1_000_000_000))
"""

# Core types
from .core import (
    LedgerView,
    Clock,
    LastUpdate,
    PriceStatusFlags,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    AccountStateChange,
    ExecuteResult,
    build_transaction,
    empty_pending_transaction,
    SYSTEM_WALLET,
    WAD,
    U64_MAX,
    SLOTS_PER_YEAR,
    # Exceptions
    LendingError,
    LendingArithmeticError,
    MathOverflow,
    NegativeResult,
    DivideByZero,
    NegativeInterestRate,
    StalenessError,
    ReserveStale,
    ObligationStale,
    HealthError,
    ObligationHealthy,
    BorrowTooLarge,
    WithdrawTooLarge,
    WorseLTVBlocked,
    LiabilitiesBiggerThanAssets,
    NetValueRemainingTooSmall,
    StateError,
    ReserveFrozen,
    ReserveDeprecated,
    GlobalEmergencyMode,
    BorrowingDisabled,
    InsufficientLiquidity,
    DepositLimitExceeded,
    BorrowLimitExceeded,
    BorrowAttributionLimitExceeded,
    ObligationReserveLimit,
    InvalidObligationCollateral,
    InvalidObligationLiquidity,
    ObligationCollateralEmpty,
    ObligationLiquidityEmpty,
    ZeroRepay,
    ObligationDepositsEmpty,
    ObligationDepositsZero,
    ObligationBorrowsZero,
    CollateralNonLiquidatable,
    FlashLoansDisabled,
    InsufficientProtocolFeesToRedeem,
    IsolatedAssetTierViolation,
    ObligationInDeprecatedReserve,
    InvalidAccountInput,
    LastSlotGreaterThanCurrent,
    AuthorizationError,
    InvalidMarketOwner,
    InvalidObligationOwner,
    InvalidInput,
    InvalidAmount,
    BorrowTooSmall,
    RepayTooSmall,
    WithdrawTooSmall,
    LiquidationTooSmall,
    InvalidConfig,
    InvalidFlag,
    InvalidUpdateMode,
    InvalidBorrowRateCurvePoint,
    InvalidTwapConfig,
    LiquidationSlippageError,
    OracleError,
    PriceIsZero,
    PriceConfidenceTooWide,
    LedgerError,
    InsufficientFunds,
    WalletNotRegistered,
    MintNotRegistered,
    AccountNotRegistered,
)

# Fixed point and interest
from .fixed_point import FixedPointValue, ZERO, ONE
from .interest_rate import InterestRateModel, compounded_interest, slot_rate

# Oracle prices
from .pricing_source import (
    OraclePrice, TokenInfo, ValidatedPrice, get_validated_price,
    PricingSource, StaticPricingSource, TimeSeriesPricingSource,
)

# Records
from .lending_market import (
    LendingMarket, UpdateLendingMarketMode, init_lending_market,
    update_lending_market, update_market_owner,
)
from .reserve import (
    Reserve, ReserveLiquidity, ReserveCollateral, ReserveConfig, ReserveFees,
    ReserveStatus, AssetTier, ReserveAction, FeeCalculation, UpdateConfigMode,
    CollateralExchangeRate, RESERVE_STATUS_PERMISSIONS,
    validate_reserve_config, apply_config_update,
)
from .obligation import (
    Obligation, ObligationCollateral, ObligationLiquidity,
    init_obligation, refresh_obligation, RefreshObligationResult,
)

# Operations
from .operations import (
    init_reserve, refresh_reserve, is_price_refresh_needed,
    deposit_reserve_liquidity, redeem_reserve_collateral,
    deposit_obligation_collateral, withdraw_obligation_collateral,
    borrow_obligation_liquidity, repay_obligation_liquidity,
    flash_borrow_reserve_liquidity, flash_repay_reserve_liquidity,
    redeem_fees, update_reserve_config,
    WithdrawResult, BorrowResult, RepayResult,
)
from .liquidation import (
    calculate_liquidation_bonus, max_liquidatable_borrowed_amount,
    calculate_liquidation, calculate_protocol_liquidation_fee,
    liquidate_obligation, liquidate_and_redeem, redeemable_collateral,
    CalculateLiquidationResult, LiquidateObligationResult, LiquidateAndRedeemResult,
)

# Instructions and executor
from .instructions import INSTRUCTIONS, transact
from .ledger import Ledger
from .config import MarketDeployment, ReserveDeployment, load_config, deploy

__all__ = [
    # Core
    'LedgerView', 'Clock', 'LastUpdate', 'PriceStatusFlags', 'Move', 'Transaction',
    'PendingTransaction', 'TransactionOrigin', 'OriginType', 'AccountStateChange',
    'ExecuteResult', 'build_transaction', 'empty_pending_transaction',
    'SYSTEM_WALLET', 'WAD', 'U64_MAX', 'SLOTS_PER_YEAR',
    # Exceptions
    'LendingError', 'LendingArithmeticError', 'MathOverflow', 'NegativeResult',
    'DivideByZero', 'NegativeInterestRate', 'StalenessError', 'ReserveStale',
    'ObligationStale', 'HealthError', 'ObligationHealthy', 'BorrowTooLarge',
    'WithdrawTooLarge', 'WorseLTVBlocked', 'LiabilitiesBiggerThanAssets',
    'NetValueRemainingTooSmall', 'StateError', 'ReserveFrozen', 'ReserveDeprecated',
    'GlobalEmergencyMode', 'BorrowingDisabled', 'InsufficientLiquidity',
    'DepositLimitExceeded', 'BorrowLimitExceeded', 'BorrowAttributionLimitExceeded',
    'ObligationReserveLimit', 'InvalidObligationCollateral', 'InvalidObligationLiquidity',
    'ObligationCollateralEmpty', 'ObligationLiquidityEmpty', 'ZeroRepay',
    'ObligationDepositsEmpty', 'ObligationDepositsZero', 'ObligationBorrowsZero',
    'CollateralNonLiquidatable', 'FlashLoansDisabled', 'InsufficientProtocolFeesToRedeem',
    'IsolatedAssetTierViolation', 'ObligationInDeprecatedReserve', 'InvalidAccountInput',
    'LastSlotGreaterThanCurrent', 'AuthorizationError', 'InvalidMarketOwner',
    'InvalidObligationOwner', 'InvalidInput', 'InvalidAmount', 'BorrowTooSmall',
    'RepayTooSmall', 'WithdrawTooSmall', 'LiquidationTooSmall', 'InvalidConfig',
    'InvalidFlag', 'InvalidUpdateMode', 'InvalidBorrowRateCurvePoint', 'InvalidTwapConfig',
    'LiquidationSlippageError', 'OracleError', 'PriceIsZero', 'PriceConfidenceTooWide',
    'LedgerError', 'InsufficientFunds', 'WalletNotRegistered', 'MintNotRegistered',
    'AccountNotRegistered',
    # Fixed point and interest
    'FixedPointValue', 'ZERO', 'ONE', 'InterestRateModel', 'compounded_interest', 'slot_rate',
    # Pricing
    'OraclePrice', 'TokenInfo', 'ValidatedPrice', 'get_validated_price',
    'PricingSource', 'StaticPricingSource', 'TimeSeriesPricingSource',
    # Records
    'LendingMarket', 'UpdateLendingMarketMode', 'init_lending_market',
    'update_lending_market', 'update_market_owner',
    'Reserve', 'ReserveLiquidity', 'ReserveCollateral', 'ReserveConfig', 'ReserveFees',
    'ReserveStatus', 'AssetTier', 'ReserveAction', 'FeeCalculation', 'UpdateConfigMode',
    'CollateralExchangeRate', 'RESERVE_STATUS_PERMISSIONS',
    'validate_reserve_config', 'apply_config_update',
    'Obligation', 'ObligationCollateral', 'ObligationLiquidity',
    'init_obligation', 'refresh_obligation', 'RefreshObligationResult',
    # Operations
    'init_reserve', 'refresh_reserve', 'is_price_refresh_needed',
    'deposit_reserve_liquidity', 'redeem_reserve_collateral',
    'deposit_obligation_collateral', 'withdraw_obligation_collateral',
    'borrow_obligation_liquidity', 'repay_obligation_liquidity',
    'flash_borrow_reserve_liquidity', 'flash_repay_reserve_liquidity',
    'redeem_fees', 'update_reserve_config',
    'WithdrawResult', 'BorrowResult', 'RepayResult',
    # Liquidation
    'calculate_liquidation_bonus', 'max_liquidatable_borrowed_amount',
    'calculate_liquidation', 'calculate_protocol_liquidation_fee',
    'liquidate_obligation', 'liquidate_and_redeem', 'redeemable_collateral',
    'CalculateLiquidationResult', 'LiquidateObligationResult', 'LiquidateAndRedeemResult',
    # Instructions and executor
    'INSTRUCTIONS', 'transact', 'Ledger',
    # Configuration
    'MarketDeployment', 'ReserveDeployment', 'load_config', 'deploy',
]

__version__ = '1.0.0'
