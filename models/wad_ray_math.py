"""
Deterministic fixed-point arithmetic on Python ints.

wad = 18 fractional digits (base-currency values, health factor)
ray = 27 fractional digits (rates, indices)
bp  = 4 fractional digits (LTV, thresholds, bonus, reserve factor)

All multiplications and divisions round half up, matching the on-ledger
arithmetic the pool's balances are expressed in.
"""

from __future__ import annotations

from models.errors import InfeasibleOperationError

WAD = 10 ** 18
HALF_WAD = WAD // 2
RAY = 10 ** 27
HALF_RAY = RAY // 2
WAD_RAY_RATIO = 10 ** 9

PERCENTAGE_FACTOR = 10_000
HALF_PERCENT = PERCENTAGE_FACTOR // 2

SECONDS_PER_YEAR = 365 * 24 * 60 * 60

# Health-factor sentinel for positions without debt.
MAX_UINT256 = 2 ** 256 - 1


def _check_non_negative(*values: int) -> None:
    for v in values:
        if v < 0:
            raise ValueError(f"fixed-point operand must be non-negative, got {v}")


def wad_mul(a: int, b: int) -> int:
    _check_non_negative(a, b)
    return (a * b + HALF_WAD) // WAD


def wad_div(a: int, b: int) -> int:
    _check_non_negative(a, b)
    if b == 0:
        raise InfeasibleOperationError("wad_div by zero")
    return (a * WAD + b // 2) // b


def ray_mul(a: int, b: int) -> int:
    _check_non_negative(a, b)
    return (a * b + HALF_RAY) // RAY


def ray_div(a: int, b: int) -> int:
    _check_non_negative(a, b)
    if b == 0:
        raise InfeasibleOperationError("ray_div by zero")
    return (a * RAY + b // 2) // b


def ray_to_wad(a: int) -> int:
    _check_non_negative(a)
    return (a + WAD_RAY_RATIO // 2) // WAD_RAY_RATIO


def wad_to_ray(a: int) -> int:
    _check_non_negative(a)
    return a * WAD_RAY_RATIO


def percent_mul(value: int, percentage: int) -> int:
    """value * percentage / 10000, percentage in basis points."""
    _check_non_negative(value, percentage)
    if value == 0 or percentage == 0:
        return 0
    return (value * percentage + HALF_PERCENT) // PERCENTAGE_FACTOR


def percent_div(value: int, percentage: int) -> int:
    """value * 10000 / percentage, percentage in basis points."""
    _check_non_negative(value, percentage)
    if percentage == 0:
        raise InfeasibleOperationError("percent_div by zero")
    return (value * PERCENTAGE_FACTOR + percentage // 2) // percentage


def bps_to_ray(bps: int) -> int:
    _check_non_negative(bps)
    return bps * RAY // PERCENTAGE_FACTOR


def calculate_linear_interest(rate: int, last_update_timestamp: int, now: int) -> int:
    """Accumulated linear interest factor (ray) over [last_update_timestamp, now]."""
    _check_non_negative(rate)
    elapsed = now - last_update_timestamp
    if elapsed < 0:
        raise ValueError("now precedes last update timestamp")
    return rate * elapsed // SECONDS_PER_YEAR + RAY


def calculate_compounded_interest(rate: int, last_update_timestamp: int, now: int) -> int:
    """
    Compounded interest factor (ray) using a three-term binomial expansion.

    (1 + r/s)^n ≈ 1 + n·x + n(n-1)/2·x² + n(n-1)(n-2)/6·x³,  x = r/s
    """
    _check_non_negative(rate)
    exp = now - last_update_timestamp
    if exp < 0:
        raise ValueError("now precedes last update timestamp")
    if exp == 0:
        return RAY

    exp_minus_one = exp - 1
    exp_minus_two = exp - 2 if exp > 2 else 0

    rate_per_second = rate // SECONDS_PER_YEAR
    base_power_two = ray_mul(rate_per_second, rate_per_second)
    base_power_three = ray_mul(base_power_two, rate_per_second)

    second_term = exp * exp_minus_one * base_power_two // 2
    third_term = exp * exp_minus_one * exp_minus_two * base_power_three // 6

    return RAY + rate_per_second * exp + second_term + third_term
