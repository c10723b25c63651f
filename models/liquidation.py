"""
Liquidation engine: standard reserve-collateral and margin-collateral flows.

Both flows share one eligibility routine:
- HF must be below 1.0 (wad)
- the chosen collateral must be usable
- the borrower must owe the debt asset
- close factor: 50% of the debt, 100% when HF < full_liquidation_health_factor

Seized collateral = debt_to_cover · price_debt · bonus / price_collateral
(converted through both assets' decimals). When that exceeds what can be
seized, collateral is capped and the repaid debt shrinks proportionally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from config.params import LIQUIDATION, MARGIN, LiquidationParams, MarginCollateralParams
from data.price_oracle import PriceOracle, require_price
from data.settlement import DebitInstruction
from models.account_aggregator import AccountAggregator
from models.errors import (
    AuthorizationError,
    CollateralCannotBeLiquidatedError,
    CurrencyNotBorrowedError,
    HealthFactorNotBelowThresholdError,
    InvalidAmountError,
    NotEnoughLiquidityToLiquidateError,
    UnknownReserveError,
)
from models.reserve import LedgerState, Reserve, UserPosition
from models.wad_ray_math import PERCENTAGE_FACTOR, WAD, percent_div, percent_mul

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiquidationPlan:
    """Eligibility outcome shared by both liquidation flows."""
    health_factor: int
    close_factor: int
    stable_debt: int
    variable_debt: int
    max_liquidatable_debt: int
    debt_to_cover: int
    # requested amount clamped to max_liquidatable_debt


@dataclass(frozen=True)
class LiquidationResult:
    """What one liquidation actually moved."""
    borrower: str
    debt_asset: str
    collateral_asset: str
    debt_repaid: int
    collateral_seized: int
    health_factor_before: int
    close_factor: int
    receive_underlying: bool = False
    instruction: DebitInstruction | None = None
    # set by the margin flow; submitted to the settlement counterparty on commit


class LiquidationEngine:
    """
    Executes liquidations against a `LedgerState`.

    The margin flow is internal to the pool: callers other than `pool_address`
    are rejected.
    """

    def __init__(self, state: LedgerState, aggregator: AccountAggregator, oracle: PriceOracle,
                 pool_address: str,
                 params: LiquidationParams = LIQUIDATION,
                 margin_params: MarginCollateralParams = MARGIN):
        self.state = state
        self.aggregator = aggregator
        self.oracle = oracle
        self.pool_address = pool_address
        self.params = params
        self.margin_params = margin_params

    def _reserve(self, asset: str) -> Reserve:
        reserve = self.state.reserves.get(asset)
        if reserve is None:
            raise UnknownReserveError(f"reserve {asset} is not listed")
        return reserve

    def close_factor(self, health_factor: int) -> int:
        """Share of the debt (bp) that one call may repay."""
        if health_factor >= WAD:
            return 0
        if health_factor < self.params.full_liquidation_health_factor:
            return PERCENTAGE_FACTOR
        return self.params.close_factor

    def evaluate(self, borrower: str, debt_asset: str, debt_to_cover: int, now: int,
                 collateral_usable: bool) -> LiquidationPlan:
        """Check eligibility and clamp the requested debt to the close factor."""
        if debt_to_cover <= 0:
            raise InvalidAmountError("debt_to_cover must be positive")

        report = self.aggregator.get_account_data(borrower, now)
        if report.health_factor >= WAD:
            raise HealthFactorNotBelowThresholdError(
                f"health factor of {borrower} is {report.health_factor}, not below 1"
            )
        if not collateral_usable:
            raise CollateralCannotBeLiquidatedError(
                f"chosen collateral of {borrower} cannot be liquidated"
            )

        debt_reserve = self._reserve(debt_asset)
        position = self.state.peek_position(borrower, debt_asset)
        stable_debt = position.stable_debt(now) if position else 0
        variable_debt = position.variable_debt(debt_reserve, now) if position else 0
        if stable_debt + variable_debt == 0:
            raise CurrencyNotBorrowedError(f"{borrower} has no {debt_asset} debt")

        close_factor = self.close_factor(report.health_factor)
        max_liquidatable = percent_mul(stable_debt + variable_debt, close_factor)
        return LiquidationPlan(
            health_factor=report.health_factor,
            close_factor=close_factor,
            stable_debt=stable_debt,
            variable_debt=variable_debt,
            max_liquidatable_debt=max_liquidatable,
            debt_to_cover=min(debt_to_cover, max_liquidatable),
        )

    def collateral_to_seize(self, collateral_asset: str, collateral_decimals: int,
                            debt_asset: str, debt_decimals: int, debt_to_cover: int,
                            bonus: int, available_collateral: int) -> tuple[int, int]:
        """
        Returns (collateral seized, debt repaid).

        Capping at `available_collateral` reduces the repaid debt in proportion.
        """
        collateral_price = require_price(self.oracle, collateral_asset)
        debt_price = require_price(self.oracle, debt_asset)

        max_collateral = percent_mul(
            debt_price * debt_to_cover * 10 ** collateral_decimals, bonus
        ) // (collateral_price * 10 ** debt_decimals)

        if max_collateral <= available_collateral:
            return max_collateral, debt_to_cover

        debt_needed = percent_div(
            collateral_price * available_collateral * 10 ** debt_decimals
            // (debt_price * 10 ** collateral_decimals),
            bonus,
        )
        return available_collateral, min(debt_needed, debt_to_cover)

    def _repay(self, reserve: Reserve, position: UserPosition, amount: int, now: int) -> None:
        # stable first, then variable
        from_stable = min(amount, position.stable_debt(now))
        if from_stable > 0:
            reserve.burn_stable_debt(position, from_stable, now)
        remainder = amount - from_stable
        if remainder > 0:
            reserve.burn_variable_debt(position, remainder)

    def _settle_debt(self, borrower: str, debt_reserve: Reserve, amount: int, now: int) -> None:
        debt_reserve.accrue(now)
        self._repay(debt_reserve, self.state.position(borrower, debt_reserve.asset), amount, now)
        debt_reserve.available_liquidity += amount
        debt_reserve.accrue(now)

    # ── Standard flow ───────────────────────────────────────────

    def liquidation_call(self, collateral_asset: str, debt_asset: str, borrower: str,
                         debt_to_cover: int, receive_underlying: bool, liquidator: str,
                         now: int) -> LiquidationResult:
        collateral_reserve = self._reserve(collateral_asset)
        debt_reserve = self._reserve(debt_asset)
        for reserve in (collateral_reserve, debt_reserve):
            reserve.require_active()
            reserve.require_not_paused()

        collateral_position = self.state.peek_position(borrower, collateral_asset)
        collateral_balance = (
            collateral_position.supply_balance(collateral_reserve, now)
            if collateral_position else 0
        )
        usable = (
            collateral_position is not None
            and collateral_position.usage_as_collateral_enabled
            and collateral_reserve.config.liquidation_threshold > 0
            and collateral_balance > 0
        )
        plan = self.evaluate(borrower, debt_asset, debt_to_cover, now, usable)

        seized, debt_repaid = self.collateral_to_seize(
            collateral_asset, collateral_reserve.config.decimals,
            debt_asset, debt_reserve.config.decimals,
            plan.debt_to_cover, collateral_reserve.config.liquidation_bonus,
            collateral_balance,
        )
        if receive_underlying and collateral_reserve.available_liquidity < seized:
            raise NotEnoughLiquidityToLiquidateError(
                f"{collateral_asset} reserve holds {collateral_reserve.available_liquidity}, "
                f"needs {seized}"
            )

        self._settle_debt(borrower, debt_reserve, debt_repaid, now)

        collateral_reserve.accrue(now)
        if receive_underlying:
            collateral_reserve.burn_supply(collateral_position, seized)
            collateral_reserve.available_liquidity -= seized
        else:
            liquidator_position = self.state.position(liquidator, collateral_asset)
            first_receipt = liquidator_position.scaled_balance == 0
            collateral_reserve.transfer_supply(collateral_position, liquidator_position, seized)
            if first_receipt:
                liquidator_position.usage_as_collateral_enabled = True
        collateral_reserve.accrue(now)

        if collateral_position.scaled_balance == 0:
            collateral_position.usage_as_collateral_enabled = False

        LOGGER.info(
            "Liquidated %s: repaid %d %s, seized %d %s (HF %d, close factor %d bp)",
            borrower, debt_repaid, debt_asset, seized, collateral_asset,
            plan.health_factor, plan.close_factor,
        )
        return LiquidationResult(
            borrower=borrower,
            debt_asset=debt_asset,
            collateral_asset=collateral_asset,
            debt_repaid=debt_repaid,
            collateral_seized=seized,
            health_factor_before=plan.health_factor,
            close_factor=plan.close_factor,
            receive_underlying=receive_underlying,
        )

    # ── Margin flow ─────────────────────────────────────────────

    def available_margin_collateral(self, borrower: str, asset: str) -> int:
        """Usable margin collateral of `borrower` expressed in `asset` units."""
        if not self.state.uses_margin_collateral(borrower):
            return 0
        _, amount = self.aggregator.margin_collateral(borrower)
        if amount == 0 or asset == self.margin_params.reference_asset:
            return amount
        value = self.aggregator.margin_collateral_value(borrower)
        reserve = self._reserve(asset)
        return value * 10 ** reserve.config.decimals // require_price(self.oracle, asset)

    def liquidate_margin_collateral(self, caller: str, borrower: str, debt_to_cover: int,
                                    debt_asset: str, margin_reference_asset: str,
                                    max_collateral_to_liquidate: int, destination: str,
                                    now: int) -> LiquidationResult:
        """
        Repay `borrower`'s debt against their external margin collateral.

        The margin snapshot is left untouched; the returned instruction tells
        the settlement counterparty how much to move to `destination`.
        """
        if caller != self.pool_address:
            raise AuthorizationError(f"{caller} may not liquidate margin collateral")
        if max_collateral_to_liquidate <= 0:
            raise InvalidAmountError("max_collateral_to_liquidate must be positive")

        debt_reserve = self._reserve(debt_asset)
        collateral_reserve = self._reserve(margin_reference_asset)
        for reserve in (collateral_reserve, debt_reserve):
            reserve.require_active()
            reserve.require_not_paused()

        available = self.available_margin_collateral(borrower, margin_reference_asset)
        plan = self.evaluate(borrower, debt_asset, debt_to_cover, now, available > 0)

        seized, debt_repaid = self.collateral_to_seize(
            margin_reference_asset, collateral_reserve.config.decimals,
            debt_asset, debt_reserve.config.decimals,
            plan.debt_to_cover, self.margin_params.liquidation_bonus,
            min(available, max_collateral_to_liquidate),
        )
        if debt_repaid == 0:
            raise InvalidAmountError("seizable margin collateral covers no debt")

        self._settle_debt(borrower, debt_reserve, debt_repaid, now)

        instruction = DebitInstruction(
            account=borrower,
            asset=margin_reference_asset,
            amount=seized,
            destination=destination,
        )
        LOGGER.info(
            "Margin-liquidated %s: repaid %d %s, debit %d %s to %s (HF %d)",
            borrower, debt_repaid, debt_asset, seized, margin_reference_asset,
            destination, plan.health_factor,
        )
        return LiquidationResult(
            borrower=borrower,
            debt_asset=debt_asset,
            collateral_asset=margin_reference_asset,
            debt_repaid=debt_repaid,
            collateral_seized=seized,
            health_factor_before=plan.health_factor,
            close_factor=plan.close_factor,
            instruction=instruction,
        )
