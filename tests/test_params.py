"""Tests for parameter defaults, presets and environment overrides."""

import pytest

from config.params import (
    ITHACA_ARBITRUM_RESERVES,
    LIQUIDATION,
    MARGIN,
    PoolParams,
    load_params,
    ray,
    wad,
)

ENV_VARS = [
    "POOL_MARGIN_LTV",
    "POOL_MARGIN_LIQUIDATION_THRESHOLD",
    "POOL_MARGIN_LIQUIDATION_BONUS",
    "POOL_MARGIN_REFERENCE_ASSET",
    "POOL_CLOSE_FACTOR",
    "POOL_FULL_LIQUIDATION_HF",
    "POOL_GOVERNANCE_ADDRESS",
    "POOL_SETTLEMENT_ADDRESS",
    "POOL_RECEIVER_ADDRESS",
    "POOL_TREASURY_ADDRESS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_decimal_helpers():
    assert ray("0.065") == 65 * 10 ** 24
    assert wad("0.95") == 95 * 10 ** 16


def test_defaults():
    assert MARGIN.ltv == 8000
    assert MARGIN.liquidation_threshold == 10_000
    assert MARGIN.reference_asset == "WETH"
    assert LIQUIDATION.close_factor == 5000
    assert LIQUIDATION.full_liquidation_health_factor == wad("0.95")


def test_presets():
    usdc, usdc_rates = ITHACA_ARBITRUM_RESERVES["USDC"]
    assert usdc.decimals == 6
    assert (usdc.base_ltv, usdc.liquidation_threshold, usdc.liquidation_bonus) == (8000, 8500, 10_500)
    assert usdc_rates.optimal_utilization == ray("0.8")
    weth, _ = ITHACA_ARBITRUM_RESERVES["WETH"]
    assert weth.liquidation_threshold == 8250


def test_load_params_without_env(clean_env):
    assert load_params() == PoolParams()


def test_load_params_overrides(clean_env):
    clean_env.setenv("POOL_MARGIN_LTV", "7000")
    clean_env.setenv("POOL_MARGIN_REFERENCE_ASSET", "USDC")
    clean_env.setenv("POOL_FULL_LIQUIDATION_HF", "0.9")
    clean_env.setenv("POOL_SETTLEMENT_ADDRESS", "clearing-house")
    clean_env.setenv("POOL_GOVERNANCE_ADDRESS", "dao")

    params = load_params()
    assert params.margin.ltv == 7000
    assert params.margin.liquidation_threshold == 10_000
    assert params.margin.reference_asset == "USDC"
    assert params.liquidation.full_liquidation_health_factor == wad("0.9")
    assert params.liquidation.max_stable_loan_percent == 2500
    assert params.settlement_counterparty == "clearing-house"
    assert params.governance.governance == "dao"


@pytest.mark.parametrize("name,value", [
    ("POOL_MARGIN_LTV", "eighty"),
    ("POOL_CLOSE_FACTOR", "-1"),
    ("POOL_FULL_LIQUIDATION_HF", "not-a-number"),
])
def test_malformed_values_name_the_variable(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_params()
