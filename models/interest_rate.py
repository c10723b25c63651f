"""
Reserve interest rate strategies: utilization -> (liquidity, stable, variable) rates.

Two interchangeable strategies share the `calculate_interest_rates` contract:
- KinkedRateStrategy: static two-slope curve
- GovernanceRateStrategy: probabilistic withdrawal-shock model whose intercept,
  slope and shock probability are tunable by a single governance address

Exact rates are ray integers. `borrow_rate` / `supply_rate` give a vectorised
float view of the same curves for analysis and reporting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from config.params import GOVERNANCE_RATES, GovernanceRateParams, RateStrategyParams
from models.errors import AuthorizationError, InfeasibleOperationError
from models.wad_ray_math import (
    PERCENTAGE_FACTOR,
    RAY,
    bps_to_ray,
    percent_mul,
    ray_div,
    ray_mul,
    wad_to_ray,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterestRates:
    """Annualised ray rates produced by a strategy."""
    liquidity_rate: int
    stable_borrow_rate: int
    variable_borrow_rate: int


class RateStrategy(Protocol):
    def calculate_interest_rates(
        self,
        available_liquidity: int,
        total_stable_debt: int,
        total_variable_debt: int,
        average_stable_rate: int,
        reserve_factor: int,
    ) -> InterestRates:
        ...


def _require_non_negative(**values: int) -> None:
    for name, value in values.items():
        if value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")


def utilization_rate(available_liquidity: int, total_debt: int) -> int:
    """U = debt / (debt + available liquidity) in ray; 0 for an empty reserve."""
    _require_non_negative(available_liquidity=available_liquidity, total_debt=total_debt)
    if total_debt == 0:
        return 0
    return ray_div(total_debt, available_liquidity + total_debt)


def overall_borrow_rate(
    total_stable_debt: int,
    total_variable_debt: int,
    variable_borrow_rate: int,
    average_stable_rate: int,
) -> int:
    """Debt-weighted average of the stable and variable rates."""
    total_debt = total_stable_debt + total_variable_debt
    if total_debt == 0:
        return 0
    weighted_variable = ray_mul(wad_to_ray(total_variable_debt), variable_borrow_rate)
    weighted_stable = ray_mul(wad_to_ray(total_stable_debt), average_stable_rate)
    return ray_div(weighted_variable + weighted_stable, wad_to_ray(total_debt))


def _as_float(value: int) -> float:
    return value / RAY


class KinkedRateStrategy:
    """
    Two-slope interest rate model.

    Below optimal utilization:
        R_var = base + slope1 * (U / U_opt)
        R_stable = base_stable + stable_slope1 * (U / U_opt)
    Above optimal utilization:
        R_var = base + slope1 + slope2 * ((U - U_opt) / (1 - U_opt))
        R_stable = base_stable + stable_slope1 + stable_slope2

    Liquidity rate = overall_borrow_rate * U * (1 - reserve_factor)
    """

    def __init__(self, params: RateStrategyParams):
        if not 0 <= params.optimal_utilization <= RAY:
            raise ValueError("optimal_utilization must be within [0, 1] ray")
        self.params = params

    def calculate_interest_rates(
        self,
        available_liquidity: int,
        total_stable_debt: int,
        total_variable_debt: int,
        average_stable_rate: int,
        reserve_factor: int,
    ) -> InterestRates:
        _require_non_negative(
            available_liquidity=available_liquidity,
            total_stable_debt=total_stable_debt,
            total_variable_debt=total_variable_debt,
            average_stable_rate=average_stable_rate,
            reserve_factor=reserve_factor,
        )
        if reserve_factor > PERCENTAGE_FACTOR:
            raise ValueError("reserve_factor cannot exceed 10000 bp")

        p = self.params
        total_debt = total_stable_debt + total_variable_debt
        u = utilization_rate(available_liquidity, total_debt)

        stable_rate = p.base_stable_rate
        if u > p.optimal_utilization:
            excess_ratio = ray_div(u - p.optimal_utilization, RAY - p.optimal_utilization)
            variable_rate = (
                p.base_variable_rate + p.variable_slope1 + ray_mul(p.variable_slope2, excess_ratio)
            )
            stable_rate += p.stable_slope1 + p.stable_slope2
        elif u == 0:
            variable_rate = p.base_variable_rate
        else:
            variable_rate = p.base_variable_rate + ray_div(
                ray_mul(u, p.variable_slope1), p.optimal_utilization
            )
            stable_rate += ray_div(ray_mul(u, p.stable_slope1), p.optimal_utilization)

        overall = overall_borrow_rate(
            total_stable_debt, total_variable_debt, variable_rate, average_stable_rate
        )
        liquidity_rate = percent_mul(ray_mul(overall, u), PERCENTAGE_FACTOR - reserve_factor)

        return InterestRates(
            liquidity_rate=liquidity_rate,
            stable_borrow_rate=stable_rate,
            variable_borrow_rate=variable_rate,
        )

    def borrow_rate(self, utilization: float | np.ndarray) -> float | np.ndarray:
        """Annualised variable borrow rate as a float, vectorised over utilization."""
        p = self.params
        u = np.asarray(utilization, dtype=np.float64)
        u_opt = _as_float(p.optimal_utilization)
        base = _as_float(p.base_variable_rate)
        slope1 = _as_float(p.variable_slope1)
        slope2 = _as_float(p.variable_slope2)
        with np.errstate(divide="ignore", invalid="ignore"):
            below = base + slope1 * (u / u_opt) if u_opt > 0 else np.full_like(u, base)
            above = base + slope1 + slope2 * ((u - u_opt) / (1.0 - u_opt))
        return np.where(u <= u_opt, below, above)

    def supply_rate(self, utilization: float | np.ndarray,
                    reserve_factor: int = 0) -> float | np.ndarray:
        """Supply rate assuming all debt is variable."""
        u = np.asarray(utilization, dtype=np.float64)
        return self.borrow_rate(u) * u * (1.0 - reserve_factor / PERCENTAGE_FACTOR)


class GovernanceRateStrategy:
    """
    Probabilistic withdrawal-shock rate model.

    a = intercept, m = slope, q = withdrawal shock probability,
    η = reserve factor, U = utilization

        R_var = a + m · (1 + (η · q) / (1 - η)) · U
        R_liq = U · ((1 - q) · (a + m · U) + q · (1 - η) · (a + m / (1 - η)))

    The stable rate steps up by stable_slope1 above the low kink and by
    stable_slope2 above the high kink.

    Only the governance address may change a, m and q.
    """

    def __init__(self, params: GovernanceRateParams = GOVERNANCE_RATES):
        _require_non_negative(
            intercept=params.intercept,
            slope=params.slope,
            withdrawal_shock_probability=params.withdrawal_shock_probability,
        )
        self.governance = params.governance
        self.model_reserve_factor = params.model_reserve_factor
        self.base_stable_rate = params.base_stable_rate
        self.stable_slope1 = params.stable_slope1
        self.stable_slope2 = params.stable_slope2
        self.stable_kink_low = params.stable_kink_low
        self.stable_kink_high = params.stable_kink_high
        self._intercept = params.intercept
        self._slope = params.slope
        self._withdrawal_shock_probability = params.withdrawal_shock_probability

    @property
    def intercept(self) -> int:
        return self._intercept

    @property
    def slope(self) -> int:
        return self._slope

    @property
    def withdrawal_shock_probability(self) -> int:
        return self._withdrawal_shock_probability

    def _require_governance(self, caller: str) -> None:
        if caller != self.governance:
            raise AuthorizationError("NotGovernance")

    def set_intercept(self, caller: str, value: int) -> None:
        self._require_governance(caller)
        _require_non_negative(intercept=value)
        LOGGER.info("Governance %s set intercept %d -> %d", caller, self._intercept, value)
        self._intercept = value

    def set_slope(self, caller: str, value: int) -> None:
        self._require_governance(caller)
        _require_non_negative(slope=value)
        LOGGER.info("Governance %s set slope %d -> %d", caller, self._slope, value)
        self._slope = value

    def set_withdrawal_shock_probability(self, caller: str, value: int) -> None:
        self._require_governance(caller)
        _require_non_negative(withdrawal_shock_probability=value)
        LOGGER.info(
            "Governance %s set withdrawal shock probability %d -> %d",
            caller, self._withdrawal_shock_probability, value,
        )
        self._withdrawal_shock_probability = value

    def _eta(self, reserve_factor: int) -> int:
        eta = (
            self.model_reserve_factor
            if self.model_reserve_factor is not None
            else bps_to_ray(reserve_factor)
        )
        if eta >= RAY:
            raise InfeasibleOperationError("model reserve factor must be below 100%")
        return eta

    def _stable_rate(self, u: int) -> int:
        rate = self.base_stable_rate
        if u > self.stable_kink_low:
            rate += self.stable_slope1
        if u > self.stable_kink_high:
            rate += self.stable_slope2
        return rate

    def calculate_interest_rates(
        self,
        available_liquidity: int,
        total_stable_debt: int,
        total_variable_debt: int,
        average_stable_rate: int,
        reserve_factor: int,
    ) -> InterestRates:
        _require_non_negative(
            available_liquidity=available_liquidity,
            total_stable_debt=total_stable_debt,
            total_variable_debt=total_variable_debt,
            average_stable_rate=average_stable_rate,
            reserve_factor=reserve_factor,
        )
        q = self._withdrawal_shock_probability
        if q > RAY:
            raise InfeasibleOperationError("withdrawal shock probability above 100%")

        a = self._intercept
        m = self._slope
        eta = self._eta(reserve_factor)
        one_minus_eta = RAY - eta
        u = utilization_rate(available_liquidity, total_stable_debt + total_variable_debt)

        shock_multiplier = RAY + ray_div(ray_mul(eta, q), one_minus_eta)
        variable_rate = a + ray_mul(ray_mul(m, shock_multiplier), u)

        no_shock_term = ray_mul(RAY - q, a + ray_mul(m, u))
        shock_term = ray_mul(ray_mul(q, one_minus_eta), a + ray_div(m, one_minus_eta))
        liquidity_rate = ray_mul(u, no_shock_term + shock_term)

        return InterestRates(
            liquidity_rate=liquidity_rate,
            stable_borrow_rate=self._stable_rate(u),
            variable_borrow_rate=variable_rate,
        )

    def _float_params(self, reserve_factor: int) -> tuple[float, float, float, float]:
        eta = _as_float(self._eta(reserve_factor))
        return (
            _as_float(self._intercept),
            _as_float(self._slope),
            _as_float(self._withdrawal_shock_probability),
            eta,
        )

    def borrow_rate(self, utilization: float | np.ndarray,
                    reserve_factor: int = 0) -> float | np.ndarray:
        """Annualised variable borrow rate as a float, vectorised over utilization."""
        a, m, q, eta = self._float_params(reserve_factor)
        u = np.asarray(utilization, dtype=np.float64)
        return a + m * (1.0 + (eta * q) / (1.0 - eta)) * u

    def supply_rate(self, utilization: float | np.ndarray,
                    reserve_factor: int = 0) -> float | np.ndarray:
        """Expected supply rate under the withdrawal-shock model."""
        a, m, q, eta = self._float_params(reserve_factor)
        u = np.asarray(utilization, dtype=np.float64)
        return u * ((1.0 - q) * (a + m * u) + q * (1.0 - eta) * (a + m / (1.0 - eta)))
