"""Deployment loader: reads a market description from YAML, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .core import (
    U64_MAX, AccountStateChange, ExecuteResult, OriginType, TransactionOrigin,
    InvalidConfig, LedgerError, build_transaction,
)
from .fixed_point import FixedPointValue
from .instructions import transact
from .interest_rate import InterestRateModel
from .lending_market import LendingMarket
from .pricing_source import TokenInfo
from .reserve import (
    AssetTier, ReserveConfig, ReserveFees, ReserveStatus, validate_reserve_config,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Deployment dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReserveDeployment:
    key: str
    liquidity_mint: str
    mint_decimals: int
    config: ReserveConfig
    collateral_mint: Optional[str] = None


@dataclass(frozen=True)
class MarketDeployment:
    market: LendingMarket
    reserves: tuple[ReserveDeployment, ...] = ()


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _limit(value: Any) -> int:
    """Reserve limits accept an int or "max" for no limit."""
    if isinstance(value, str) and value.strip().lower() == "max":
        return U64_MAX
    return int(value)


def _build_market(raw: dict[str, Any]) -> LendingMarket:
    defaults = LendingMarket(key="", owner="")
    min_net_value = raw.get("min_net_value_in_obligation")
    if min_net_value is None:
        min_net = defaults.min_net_value_in_obligation
    else:
        try:
            min_net = FixedPointValue.from_decimal(Decimal(str(min_net_value)))
        except InvalidOperation:
            raise ValueError(f"Invalid min_net_value_in_obligation: {min_net_value!r}") from None
    return LendingMarket(
        key=raw.get("key", ""),
        owner=raw.get("owner", ""),
        quote_currency=raw.get("quote_currency", "USD"),
        emergency_mode=bool(raw.get("emergency_mode", False)),
        borrow_disabled=bool(raw.get("borrow_disabled", False)),
        autodeleverage_enabled=bool(raw.get("autodeleverage_enabled", False)),
        price_refresh_trigger_to_max_age_pct=int(
            raw.get("price_refresh_trigger_to_max_age_pct",
                    defaults.price_refresh_trigger_to_max_age_pct)
        ),
        liquidation_max_debt_close_factor_pct=int(
            raw.get("liquidation_max_debt_close_factor_pct",
                    defaults.liquidation_max_debt_close_factor_pct)
        ),
        insolvency_risk_unhealthy_ltv_pct=int(
            raw.get("insolvency_risk_unhealthy_ltv_pct", defaults.insolvency_risk_unhealthy_ltv_pct)
        ),
        min_full_liquidation_value_threshold=int(
            raw.get("min_full_liquidation_value_threshold",
                    defaults.min_full_liquidation_value_threshold)
        ),
        max_liquidatable_debt_market_value_at_once=int(
            raw.get("max_liquidatable_debt_market_value_at_once",
                    defaults.max_liquidatable_debt_market_value_at_once)
        ),
        global_unhealthy_borrow_value=int(
            raw.get("global_unhealthy_borrow_value", defaults.global_unhealthy_borrow_value)
        ),
        global_allowed_borrow_value=int(
            raw.get("global_allowed_borrow_value", defaults.global_allowed_borrow_value)
        ),
        min_net_value_in_obligation=min_net,
    )


def _build_token_info(raw: dict[str, Any], symbol: str) -> TokenInfo:
    defaults = TokenInfo()
    return TokenInfo(
        symbol=raw.get("symbol", symbol),
        max_age_price_seconds=int(raw.get("max_age_price_seconds", defaults.max_age_price_seconds)),
        max_age_twap_seconds=int(raw.get("max_age_twap_seconds", defaults.max_age_twap_seconds)),
        max_twap_divergence_bps=int(
            raw.get("max_twap_divergence_bps", defaults.max_twap_divergence_bps)
        ),
        max_confidence_pct=int(raw.get("max_confidence_pct", defaults.max_confidence_pct)),
    )


def _build_borrow_rate_curve(raw: dict[str, Any]) -> InterestRateModel:
    defaults = InterestRateModel()
    return InterestRateModel(
        optimal_utilization_bps=int(
            raw.get("optimal_utilization_bps", defaults.optimal_utilization_bps)
        ),
        optimal_borrow_rate_bps=int(
            raw.get("optimal_borrow_rate_bps", defaults.optimal_borrow_rate_bps)
        ),
        max_borrow_rate_bps=int(raw.get("max_borrow_rate_bps", defaults.max_borrow_rate_bps)),
        min_borrow_rate_bps=int(raw.get("min_borrow_rate_bps", defaults.min_borrow_rate_bps)),
    )


def _build_fees(raw: dict[str, Any]) -> ReserveFees:
    flash_fee = raw.get("flash_loan_fee_bps")
    return ReserveFees(
        borrow_fee_bps=int(raw.get("borrow_fee_bps", 0)),
        flash_loan_fee_bps=None if flash_fee is None else int(flash_fee),
    )


def _build_reserve_config(raw: dict[str, Any], symbol: str) -> ReserveConfig:
    try:
        status = ReserveStatus[str(raw.get("status", "ACTIVE")).upper()]
        asset_tier = AssetTier[str(raw.get("asset_tier", "REGULAR")).upper()]
    except KeyError as exc:
        raise InvalidConfig(f"{symbol}: unknown status or asset tier {exc}") from None
    return ReserveConfig(
        status=status,
        asset_tier=asset_tier,
        loan_to_value_pct=int(raw.get("loan_to_value_pct", 0)),
        liquidation_threshold_pct=int(raw.get("liquidation_threshold_pct", 0)),
        min_liquidation_bonus_bps=int(raw.get("min_liquidation_bonus_bps", 0)),
        max_liquidation_bonus_bps=int(raw.get("max_liquidation_bonus_bps", 0)),
        bad_debt_liquidation_bonus_bps=int(raw.get("bad_debt_liquidation_bonus_bps", 0)),
        protocol_liquidation_fee_pct=int(raw.get("protocol_liquidation_fee_pct", 0)),
        protocol_take_rate_pct=int(raw.get("protocol_take_rate_pct", 0)),
        fees=_build_fees(raw.get("fees", {})),
        borrow_rate_curve=_build_borrow_rate_curve(raw.get("borrow_rate_curve", {})),
        borrow_factor_pct=int(raw.get("borrow_factor_pct", 100)),
        deposit_limit=_limit(raw.get("deposit_limit", U64_MAX)),
        borrow_limit=_limit(raw.get("borrow_limit", U64_MAX)),
        attributed_borrow_limit=_limit(raw.get("attributed_borrow_limit", U64_MAX)),
        token_info=_build_token_info(raw.get("token_info", {}), symbol),
        fee_receiver=raw.get("fee_receiver", ""),
    )


def _build_reserves(raw: list[dict[str, Any]]) -> tuple[ReserveDeployment, ...]:
    reserves: list[ReserveDeployment] = []
    for r in raw:
        mint = r.get("mint", "")
        reserves.append(
            ReserveDeployment(
                key=r.get("key", f"{mint.lower()}_reserve"),
                liquidity_mint=mint,
                mint_decimals=int(r.get("decimals", 0)),
                collateral_mint=r.get("collateral_mint"),
                config=_build_reserve_config(r.get("config", {}), mint),
            )
        )
    return tuple(reserves)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path) -> MarketDeployment:
    """Load and validate a market deployment from YAML + .env.

    Args:
        config_path: Path to the deployment YAML (see market.example.yaml).
    """
    load_dotenv()

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    deployment = MarketDeployment(
        market=_build_market(raw.get("market", {})),
        reserves=_build_reserves(raw.get("reserves", [])),
    )

    _validate(deployment)
    logger.info(
        "Deployment loaded from %s: market %s with %d reserves",
        config_path, deployment.market.key, len(deployment.reserves),
    )
    return deployment


def _validate(deployment: MarketDeployment) -> None:
    """Raise on invalid configuration."""
    market = deployment.market
    if not market.key:
        raise ValueError("Market key must be configured")
    if not market.owner:
        raise ValueError(f"Market '{market.key}' has no owner")

    keys: set[str] = set()
    mints: set[str] = set()
    for reserve in deployment.reserves:
        if not reserve.liquidity_mint:
            raise ValueError(f"Reserve '{reserve.key}' has no mint")
        if reserve.key in keys:
            raise ValueError(f"Duplicate reserve key '{reserve.key}'")
        if reserve.liquidity_mint in mints:
            raise ValueError(f"Duplicate reserve mint '{reserve.liquidity_mint}'")
        keys.add(reserve.key)
        mints.add(reserve.liquidity_mint)
        validate_reserve_config(reserve.config)


def deploy(ledger, deployment: MarketDeployment) -> None:
    """Create the market and its reserves on a Ledger through the owner's instructions.

    Raises:
        LedgerError: If the ledger rejects any of the setup transactions
    """
    market = deployment.market
    pending = build_transaction(
        ledger, [], [AccountStateChange(market.key, None, market)],
        TransactionOrigin(OriginType.ADMIN, market.owner, account=market.key,
                          event_type="init_lending_market"),
    )
    if ledger.execute(pending) == ExecuteResult.REJECTED:
        raise LedgerError(f"Failed to create market {market.key}")

    for reserve in deployment.reserves:
        pending = transact(
            ledger, "init_reserve",
            market_key=market.key, caller=market.owner, key=reserve.key,
            liquidity_mint=reserve.liquidity_mint, mint_decimals=reserve.mint_decimals,
            config=reserve.config, collateral_mint=reserve.collateral_mint,
        )
        if ledger.execute(pending) == ExecuteResult.REJECTED:
            raise LedgerError(f"Failed to create reserve {reserve.key}")
