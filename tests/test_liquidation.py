"""Tests for standard and margin-collateral liquidations."""

from dataclasses import replace

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from config.params import (
    RATE_STRATEGY_STABLE_THREE,
    RATE_STRATEGY_WETH,
    STRATEGY_USDC,
    STRATEGY_WETH,
    wad,
)
from data.margin_feed import MarginFeed, MarginSnapshot
from data.price_oracle import StaticPriceOracle
from data.settlement import DebitInstruction, RecordingSettlement
from models.errors import (
    AuthorizationError,
    CollateralCannotBeLiquidatedError,
    CurrencyNotBorrowedError,
    HealthFactorNotBelowThresholdError,
    NotEnoughLiquidityToLiquidateError,
    ReserveInactiveError,
    ReservePausedError,
)
from models.interest_rate import KinkedRateStrategy
from models.pool import LendingPool, RateMode
from models.wad_ray_math import WAD, percent_div, percent_mul

USDC = 10 ** 6
USDC_PRICE = wad("0.0005")


def make_pool(lender_weth=100 * WAD, usdc_config=STRATEGY_USDC, settlement=None):
    oracle = StaticPriceOracle({"WETH": WAD, "USDC": USDC_PRICE})
    feed = MarginFeed()
    settlement = settlement if settlement is not None else RecordingSettlement()
    pool = LendingPool(oracle, feed, settlement)
    pool.init_reserve(usdc_config, KinkedRateStrategy(RATE_STRATEGY_STABLE_THREE))
    pool.init_reserve(STRATEGY_WETH, KinkedRateStrategy(RATE_STRATEGY_WETH))
    pool.deposit("USDC", 100_000 * USDC, "lender")
    if lender_weth:
        pool.deposit("WETH", lender_weth, "lender")
    return pool, oracle, feed, settlement


def open_weth_backed_loan(pool, borrower="borrower"):
    """10 WETH collateral against 15000 USDC (7.5 ETH) of variable debt."""
    pool.deposit("WETH", 10 * WAD, borrower)
    pool.borrow("USDC", 15_000 * USDC, RateMode.VARIABLE, borrower)


def expected_seizure(debt_amount, collateral_price):
    # debt_price * amount * 1.05 * 10^18 / (collateral_price * 10^6)
    return USDC_PRICE * debt_amount * 105 * 10 ** 18 // (collateral_price * 10 ** 6 * 100)


class TestStandardLiquidation:
    def setup_method(self):
        self.pool, self.oracle, self.feed, _ = make_pool()
        open_weth_backed_loan(self.pool)

    def test_healthy_borrower_cannot_be_liquidated(self):
        with pytest.raises(HealthFactorNotBelowThresholdError):
            self.pool.liquidation_call("WETH", "USDC", "borrower", 1000 * USDC)

    def test_close_factor_caps_repayment(self):
        # HF = 9 * 0.825 / 7.5 = 0.99
        self.oracle.set_asset_price("WETH", wad("0.9"))
        result = self.pool.liquidation_call("WETH", "USDC", "borrower", 15_000 * USDC)

        assert result.close_factor == 5000
        assert result.debt_repaid == 7_500 * USDC
        assert result.collateral_seized == expected_seizure(7_500 * USDC, wad("0.9"))
        assert result.collateral_seized == wad("4.375")

        debt = self.pool.get_user_reserve_data("USDC", "borrower")
        assert debt.variable_debt == 7_500 * USDC
        collateral = self.pool.get_user_reserve_data("WETH", "borrower")
        assert collateral.supply_balance == 10 * WAD - wad("4.375")

    def test_liquidator_receives_claim_as_collateral(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        self.pool.liquidation_call("WETH", "USDC", "borrower", 1_000 * USDC, liquidator="keeper")
        received = self.pool.get_user_reserve_data("WETH", "keeper")
        assert received.supply_balance == expected_seizure(1_000 * USDC, wad("0.9"))
        assert received.usage_as_collateral_enabled

    def test_receive_underlying_draws_reserve_liquidity(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        available = self.pool.get_reserve_data("WETH").available_liquidity
        result = self.pool.liquidation_call(
            "WETH", "USDC", "borrower", 1_000 * USDC, receive_underlying=True
        )
        assert self.pool.get_reserve_data("WETH").available_liquidity == (
            available - result.collateral_seized
        )
        assert self.pool.get_user_reserve_data("WETH", "liquidator").supply_balance == 0

    def test_full_liquidation_below_threshold(self):
        # HF = 8.5 * 0.825 / 7.5 = 0.935
        self.oracle.set_asset_price("WETH", wad("0.85"))
        result = self.pool.liquidation_call("WETH", "USDC", "borrower", 15_000 * USDC)
        assert result.close_factor == 10_000
        assert result.debt_repaid == 15_000 * USDC
        assert self.pool.get_user_reserve_data("USDC", "borrower").variable_debt == 0

    def test_seizure_capped_at_held_collateral(self):
        # 7.875 ETH of collateral value needed, only 7 held
        self.oracle.set_asset_price("WETH", wad("0.7"))
        result = self.pool.liquidation_call("WETH", "USDC", "borrower", 15_000 * USDC)

        assert result.collateral_seized == 10 * WAD
        expected_debt = percent_div(
            wad("0.7") * 10 * WAD * 10 ** 6 // (USDC_PRICE * 10 ** 18), 10_500
        )
        assert result.debt_repaid == expected_debt
        assert result.debt_repaid < 15_000 * USDC

        collateral = self.pool.get_user_reserve_data("WETH", "borrower")
        assert collateral.supply_balance == 0
        assert not collateral.usage_as_collateral_enabled
        assert self.pool.get_user_reserve_data("USDC", "borrower").variable_debt > 0

    def test_debt_asset_must_be_borrowed(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        with pytest.raises(CurrencyNotBorrowedError) as info:
            self.pool.liquidation_call("WETH", "WETH", "borrower", WAD)
        assert info.value.code == "SPECIFIED_CURRENCY_NOT_BORROWED_BY_USER"

    def test_collateral_must_be_enabled(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        with pytest.raises(CollateralCannotBeLiquidatedError) as info:
            self.pool.liquidation_call("USDC", "USDC", "borrower", 1000 * USDC)
        assert info.value.code == "COLLATERAL_CANNOT_BE_LIQUIDATED"

    def test_inactive_reserve(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        self.pool.set_reserve_active("USDC", False)
        with pytest.raises(ReserveInactiveError) as info:
            self.pool.liquidation_call("WETH", "USDC", "borrower", 1000 * USDC)
        assert info.value.code == "NO_ACTIVE_RESERVE"

    def test_event_recorded_on_commit(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        self.pool.liquidation_call("WETH", "USDC", "borrower", 1000 * USDC)
        event = self.pool.events[-1]
        assert event.name == "LiquidationCall"
        assert event.data["debt_to_cover"] == 1000 * USDC


class TestUnderlyingLiquidityShortfall:
    def test_rolls_back_when_reserve_cannot_pay_out(self):
        pool, oracle, _, _ = make_pool(lender_weth=0)
        open_weth_backed_loan(pool)
        # whale drains WETH liquidity down to 2
        pool.deposit("USDC", 50_000 * USDC, "whale")
        pool.borrow("WETH", 8 * WAD, RateMode.VARIABLE, "whale")
        oracle.set_asset_price("WETH", wad("0.9"))
        events_before = len(pool.events)

        with pytest.raises(NotEnoughLiquidityToLiquidateError):
            pool.liquidation_call("WETH", "USDC", "borrower", 7_500 * USDC,
                                  receive_underlying=True)

        assert len(pool.events) == events_before
        assert pool.get_user_reserve_data("USDC", "borrower").variable_debt == 15_000 * USDC
        assert pool.get_user_reserve_data("WETH", "borrower").supply_balance == 10 * WAD


class TestMixedDebtLiquidation:
    def setup_method(self):
        self.pool, self.oracle, _, _ = make_pool(
            usdc_config=replace(STRATEGY_USDC, stable_borrowing_enabled=True)
        )
        self.pool.deposit("WETH", 10 * WAD, "borrower")
        self.pool.borrow("USDC", 2_000 * USDC, RateMode.STABLE, "borrower")
        self.pool.borrow("USDC", 13_000 * USDC, RateMode.VARIABLE, "borrower")

    def test_stable_debt_is_repaid_first(self):
        # HF = 9 * 0.825 / 7.5 = 0.99
        self.oracle.set_asset_price("WETH", wad("0.9"))
        before = self.pool.get_user_reserve_data("USDC", "borrower")
        result = self.pool.liquidation_call("WETH", "USDC", "borrower", 3_000 * USDC)

        assert result.debt_repaid == 3_000 * USDC
        after = self.pool.get_user_reserve_data("USDC", "borrower")
        assert after.stable_debt == 0
        assert after.variable_debt == 12_000 * USDC
        assert (
            before.stable_debt + before.variable_debt - after.stable_debt - after.variable_debt
            == result.debt_repaid
        )

        reserve = self.pool.get_reserve_data("USDC")
        assert reserve.principal_stable_debt == 0
        assert reserve.average_stable_rate == 0

    def test_partial_repayment_stays_in_stable_debt(self):
        self.oracle.set_asset_price("WETH", wad("0.9"))
        self.pool.liquidation_call("WETH", "USDC", "borrower", 500 * USDC)
        after = self.pool.get_user_reserve_data("USDC", "borrower")
        assert after.stable_debt == 1_500 * USDC
        assert after.variable_debt == 13_000 * USDC
        assert self.pool.get_reserve_data("USDC").principal_stable_debt == 1_500 * USDC


class TestLiquidationProperties:
    @given(price_cents=st.integers(min_value=50, max_value=150))
    @settings(max_examples=40, deadline=None)
    def test_threshold_close_factor_and_seizure_bounds(self, price_cents):
        pool, oracle, _, _ = make_pool()
        open_weth_backed_loan(pool)
        oracle.set_asset_price("WETH", price_cents * 10 ** 16)

        report = pool.get_user_account_data("borrower")
        debt_before = pool.get_user_reserve_data("USDC", "borrower").variable_debt
        held = pool.get_user_reserve_data("WETH", "borrower").supply_balance

        if report.health_factor >= WAD:
            with pytest.raises(HealthFactorNotBelowThresholdError):
                pool.liquidation_call("WETH", "USDC", "borrower", debt_before)
            return

        result = pool.liquidation_call("WETH", "USDC", "borrower", debt_before)
        assert 0 < result.debt_repaid <= debt_before
        assert result.collateral_seized <= held
        if report.health_factor >= wad("0.95"):
            assert result.debt_repaid <= percent_mul(debt_before, 5000)


def open_margin_loan(pool, feed):
    """Trader with 3 WETH of margin collateral borrows 4000 USDC (2 ETH)."""
    feed.set_data("trader", MarginSnapshot(collateral=3 * WAD), sequence=1)
    pool.set_using_margin_collateral("trader", True)
    pool.borrow("USDC", 4_000 * USDC, RateMode.VARIABLE, "trader")


class RefusingSettlement:
    def submit(self, instruction):
        raise RuntimeError("counterparty offline")


class TestMarginLiquidation:
    def setup_method(self):
        self.pool, self.oracle, self.feed, self.settlement = make_pool()
        open_margin_loan(self.pool, self.feed)

    def _crash_margin(self):
        # 2 WETH collateral with -0.5 WETH mark-to-market -> 1.5 ETH, HF 0.75
        self.feed.set_data(
            "trader", MarginSnapshot(collateral=2 * WAD, mark_to_market=-wad("0.5")), sequence=2
        )

    def test_only_settlement_counterparty_may_call(self):
        self._crash_margin()
        with pytest.raises(AuthorizationError):
            self.pool.liquidate_margin_collateral(
                "mallory", "trader", 4_000 * USDC, "USDC", "WETH", WAD
            )
        assert self.settlement.instructions == []

    def test_engine_rejects_callers_other_than_pool(self):
        self._crash_margin()
        with pytest.raises(AuthorizationError):
            self.pool.liquidation_engine.liquidate_margin_collateral(
                "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", WAD, "receiver", self.pool.now
            )

    def test_healthy_margin_account(self):
        with pytest.raises(HealthFactorNotBelowThresholdError):
            self.pool.liquidate_margin_collateral(
                "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", WAD
            )

    def test_partial_liquidation_leaves_debt(self):
        self._crash_margin()
        before = self.feed.snapshot("trader")
        result = self.pool.liquidate_margin_collateral(
            "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", WAD
        )

        # 4000 USDC would need 2.1 WETH; capped at 1 WETH
        assert result.collateral_seized == WAD
        expected_debt = percent_div(WAD * WAD * 10 ** 6 // (USDC_PRICE * 10 ** 18), 10_500)
        assert result.debt_repaid == expected_debt
        assert result.debt_repaid < 4_000 * USDC
        assert self.settlement.instructions == [
            DebitInstruction(account="trader", asset="WETH", amount=WAD, destination="receiver")
        ]
        assert self.feed.snapshot("trader") == before
        assert self.pool.events[-1].name == "MarginCollateralLiquidated"

        # counterparty reflects the debit; nothing is left to borrow against
        self.feed.set_data("trader", MarginSnapshot(collateral=0), sequence=3)
        report = self.pool.get_user_account_data("trader")
        assert report.health_factor == 0
        assert report.available_borrows_value == 0
        assert report.total_debt_value > 0
        assert self.pool.amount_to_liquidate("trader") == report.total_debt_value

    def test_half_close_factor_near_threshold(self):
        # 1.96 WETH against 2 ETH of debt: HF 0.98
        self.feed.set_data("trader", MarginSnapshot(collateral=wad("1.96")), sequence=2)
        assert self.pool.get_user_account_data("trader").health_factor == wad("0.98")

        result = self.pool.liquidate_margin_collateral(
            "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", 10 * WAD
        )
        assert result.close_factor == 5000
        assert result.debt_repaid == 2_000 * USDC
        assert result.collateral_seized == expected_seizure(2_000 * USDC, WAD)
        assert self.pool.get_user_reserve_data("USDC", "trader").variable_debt == 2_000 * USDC

    def test_paused_reference_reserve_refuses(self):
        self._crash_margin()
        self.pool.set_reserve_paused("WETH", True)
        with pytest.raises(ReservePausedError):
            self.pool.liquidate_margin_collateral(
                "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", WAD
            )
        assert self.settlement.instructions == []
        assert self.pool.get_user_reserve_data("USDC", "trader").variable_debt == 4_000 * USDC

    def test_refused_instruction_rolls_back_debit(self):
        pool, _, feed, _ = make_pool(settlement=RefusingSettlement())
        open_margin_loan(pool, feed)
        feed.set_data(
            "trader", MarginSnapshot(collateral=2 * WAD, mark_to_market=-wad("0.5")), sequence=2
        )
        events_before = len(pool.events)

        with pytest.raises(RuntimeError, match="counterparty offline"):
            pool.liquidate_margin_collateral(
                "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", WAD
            )
        assert pool.get_user_reserve_data("USDC", "trader").variable_debt == 4_000 * USDC
        assert len(pool.events) == events_before

    def test_seizure_bounded_by_available_margin(self):
        self._crash_margin()
        result = self.pool.liquidate_margin_collateral(
            "fundlock", "trader", 4_000 * USDC, "USDC", "WETH", 10 * WAD
        )
        assert result.collateral_seized == wad("1.5")

    def test_seizure_in_another_listed_asset(self):
        self._crash_margin()
        result = self.pool.liquidate_margin_collateral(
            "fundlock", "trader", 1_000 * USDC, "USDC", "USDC", 10_000 * USDC
        )
        # same-asset seizure: 1000 USDC of debt costs 1050 USDC of margin
        assert result.collateral_seized == 1_050 * USDC
        assert result.debt_repaid == 1_000 * USDC
        assert self.settlement.instructions[-1].asset == "USDC"

    def test_not_opted_in(self):
        pool, oracle, _, _ = make_pool()
        open_weth_backed_loan(pool)
        oracle.set_asset_price("WETH", wad("0.9"))
        with pytest.raises(CollateralCannotBeLiquidatedError):
            pool.liquidate_margin_collateral(
                "fundlock", "borrower", 1_000 * USDC, "USDC", "WETH", WAD
            )
