"""
Pool, reserve and rate-strategy parameters.

All values are fixed-point integers:
- rates / utilization in ray (1e27 = 100%)
- LTV, thresholds, bonus, reserve factor in basis points (10000 = 100%)
- health-factor thresholds in wad (1e18 = 1.0)

Market presets mirror the Ithaca Arbitrum deployment (USDC, WETH) and the
Aave commons market used for the governance strategy (DAI).
Environment overrides are applied by `load_params()`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal

RAY = 10 ** 27
WAD = 10 ** 18


def ray(value: str) -> int:
    """Convert a decimal string (e.g. "0.065") to a ray integer."""
    return int(Decimal(value) * RAY)


def wad(value: str) -> int:
    """Convert a decimal string to a wad integer."""
    return int(Decimal(value) * WAD)


@dataclass(frozen=True)
class RateStrategyParams:
    """Kinked (two-slope) interest rate strategy."""
    name: str
    optimal_utilization: int
    base_variable_rate: int
    variable_slope1: int
    variable_slope2: int
    stable_slope1: int
    stable_slope2: int
    base_stable_rate: int = 0
    # Market lending rate the stable curve starts from


@dataclass(frozen=True)
class GovernanceRateParams:
    """Initial values for the governance-tunable probabilistic strategy."""
    intercept: int = ray("0.1")
    # a: rate at zero utilization
    slope: int = ray("0.08")
    # m: sensitivity to utilization
    withdrawal_shock_probability: int = ray("0.3")
    # q: probability that suppliers withdraw in a shock
    model_reserve_factor: int | None = ray("0.5")
    # η in ray; None falls back to the reserve's own reserve factor
    base_stable_rate: int = ray("0.039")
    stable_slope1: int = ray("0.02")
    stable_slope2: int = ray("0.6")
    stable_kink_low: int = ray("0.5")
    stable_kink_high: int = ray("0.9")
    governance: str = "governance"


@dataclass(frozen=True)
class ReserveConfig:
    """Risk parameters of one listed asset."""
    symbol: str
    decimals: int
    base_ltv: int
    liquidation_threshold: int
    liquidation_bonus: int
    reserve_factor: int
    borrowing_enabled: bool = True
    stable_borrowing_enabled: bool = False


@dataclass(frozen=True)
class MarginCollateralParams:
    """Fixed risk parameters applied to externally reported margin collateral."""
    ltv: int = 8000
    liquidation_threshold: int = 10_000
    liquidation_bonus: int = 10_500
    reference_asset: str = "WETH"


@dataclass(frozen=True)
class LiquidationParams:
    """Close-factor policy shared by both liquidation flows."""
    close_factor: int = 5000
    # 50% of the borrower's debt in the target asset per call
    full_liquidation_health_factor: int = wad("0.95")
    # Below this HF the whole debt may be liquidated in one call
    max_stable_loan_percent: int = 2500
    # Stable borrows are capped at 25% of available liquidity


@dataclass(frozen=True)
class PoolParams:
    """Addresses and policies of one pool instance."""
    pool_address: str = "lending-pool"
    treasury: str = "treasury"
    settlement_counterparty: str = "fundlock"
    receiver_account: str = "receiver"
    margin: MarginCollateralParams = field(default_factory=MarginCollateralParams)
    liquidation: LiquidationParams = field(default_factory=LiquidationParams)
    governance: GovernanceRateParams = field(default_factory=GovernanceRateParams)


# ── Market presets ──────────────────────────────────────────────

RATE_STRATEGY_STABLE_TWO = RateStrategyParams(
    name="rateStrategyStableTwo",
    optimal_utilization=ray("0.8"),
    base_variable_rate=0,
    variable_slope1=ray("0.04"),
    variable_slope2=ray("0.75"),
    stable_slope1=ray("0.02"),
    stable_slope2=ray("0.75"),
    base_stable_rate=ray("0.039"),
)

RATE_STRATEGY_STABLE_THREE = RateStrategyParams(
    name="rateStrategyStableThree",
    optimal_utilization=ray("0.8"),
    base_variable_rate=ray("0.05"),
    variable_slope1=ray("0.065"),
    variable_slope2=ray("1"),
    stable_slope1=ray("0.02"),
    stable_slope2=ray("0.6"),
    base_stable_rate=ray("0.039"),
)

RATE_STRATEGY_WETH = RateStrategyParams(
    name="rateStrategyWETH",
    optimal_utilization=ray("0.65"),
    base_variable_rate=0,
    variable_slope1=ray("0.09"),
    variable_slope2=ray("1.5"),
    stable_slope1=ray("0.1"),
    stable_slope2=ray("1"),
    base_stable_rate=ray("0.03"),
)

STRATEGY_USDC = ReserveConfig(
    symbol="USDC",
    decimals=6,
    base_ltv=8000,
    liquidation_threshold=8500,
    liquidation_bonus=10_500,
    reserve_factor=1000,
)

STRATEGY_WETH = ReserveConfig(
    symbol="WETH",
    decimals=18,
    base_ltv=8000,
    liquidation_threshold=8250,
    liquidation_bonus=10_500,
    reserve_factor=1000,
)

STRATEGY_DAI = ReserveConfig(
    symbol="DAI",
    decimals=18,
    base_ltv=7500,
    liquidation_threshold=8000,
    liquidation_bonus=10_500,
    reserve_factor=1000,
)

# symbol -> (reserve config, rate strategy)
ITHACA_ARBITRUM_RESERVES = {
    "USDC": (STRATEGY_USDC, RATE_STRATEGY_STABLE_THREE),
    "WETH": (STRATEGY_WETH, RATE_STRATEGY_WETH),
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def _env_wad(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = wad(raw.strip())
    except ArithmeticError as exc:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {raw!r}")
    return value


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def load_params(base: PoolParams | None = None) -> PoolParams:
    """
    Build pool parameters from defaults plus environment overrides.

    Recognised variables:
        POOL_MARGIN_LTV, POOL_MARGIN_LIQUIDATION_THRESHOLD,
        POOL_MARGIN_LIQUIDATION_BONUS (bp), POOL_MARGIN_REFERENCE_ASSET,
        POOL_CLOSE_FACTOR (bp), POOL_FULL_LIQUIDATION_HF (decimal, e.g. 0.95),
        POOL_GOVERNANCE_ADDRESS, POOL_SETTLEMENT_ADDRESS,
        POOL_RECEIVER_ADDRESS, POOL_TREASURY_ADDRESS
    """
    base = base or PoolParams()

    margin = MarginCollateralParams(
        ltv=_env_int("POOL_MARGIN_LTV", base.margin.ltv),
        liquidation_threshold=_env_int(
            "POOL_MARGIN_LIQUIDATION_THRESHOLD", base.margin.liquidation_threshold
        ),
        liquidation_bonus=_env_int(
            "POOL_MARGIN_LIQUIDATION_BONUS", base.margin.liquidation_bonus
        ),
        reference_asset=_env_str("POOL_MARGIN_REFERENCE_ASSET", base.margin.reference_asset),
    )
    liquidation = replace(
        base.liquidation,
        close_factor=_env_int("POOL_CLOSE_FACTOR", base.liquidation.close_factor),
        full_liquidation_health_factor=_env_wad(
            "POOL_FULL_LIQUIDATION_HF", base.liquidation.full_liquidation_health_factor
        ),
    )
    governance = replace(
        base.governance,
        governance=_env_str("POOL_GOVERNANCE_ADDRESS", base.governance.governance),
    )

    return PoolParams(
        pool_address=base.pool_address,
        treasury=_env_str("POOL_TREASURY_ADDRESS", base.treasury),
        settlement_counterparty=_env_str("POOL_SETTLEMENT_ADDRESS", base.settlement_counterparty),
        receiver_account=_env_str("POOL_RECEIVER_ADDRESS", base.receiver_account),
        margin=margin,
        liquidation=liquidation,
        governance=governance,
    )


# Convenient default instances (used throughout codebase)
MARGIN = MarginCollateralParams()
LIQUIDATION = LiquidationParams()
GOVERNANCE_RATES = GovernanceRateParams()
POOL = PoolParams()
