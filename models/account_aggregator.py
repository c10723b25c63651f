"""
Account solvency aggregation across reserve collateral and margin collateral.

For one user and one timestamp:
1. Value every reserve supply flagged as collateral (liquidation threshold > 0)
2. Value the external margin collateral when the user opted in
3. Value every reserve debt
4. Weight LTV / liquidation threshold by collateral value
5. HF = collateral · avg_LT / debt
6. available_borrows = max(0, collateral · avg_LTV - debt)

All values are wad base currency. Nothing here mutates pool state.
"""

from __future__ import annotations

from dataclasses import dataclass

from config.params import MARGIN, MarginCollateralParams
from data.margin_feed import MarginSnapshot, MarginSource
from data.price_oracle import PriceOracle, require_price
from models.errors import UnknownReserveError
from models.reserve import LedgerState
from models.wad_ray_math import MAX_UINT256, WAD, percent_mul, wad_div

MARGIN_SOURCE = "MARGIN"


@dataclass(frozen=True)
class CollateralContribution:
    """One collateral source's share of the account value."""
    source: str
    # reserve symbol, or MARGIN_SOURCE for the external margin position
    amount: int
    # native units of the priced asset
    value: int
    ltv: int
    liquidation_threshold: int


@dataclass(frozen=True)
class SolvencyReport:
    """Derived account summary; recomputed on every read."""
    total_collateral_value: int
    total_debt_value: int
    avg_ltv: int
    avg_liquidation_threshold: int
    health_factor: int
    available_borrows_value: int
    collateral: tuple[CollateralContribution, ...] = ()
    margin_snapshot: MarginSnapshot | None = None
    # carried for reporting only (maintenance margin and VaR are not in the HF)

    @property
    def is_liquidatable(self) -> bool:
        return self.health_factor < WAD

    def to_dict(self) -> dict:
        margin = None
        if self.margin_snapshot is not None:
            margin = {
                "maintenance_margin": self.margin_snapshot.maintenance_margin,
                "mark_to_market": self.margin_snapshot.mark_to_market,
                "collateral": self.margin_snapshot.collateral,
                "value_at_risk": self.margin_snapshot.value_at_risk,
                "sequence": self.margin_snapshot.sequence,
            }
        return {
            "total_collateral_value": self.total_collateral_value,
            "total_debt_value": self.total_debt_value,
            "avg_ltv": self.avg_ltv,
            "avg_liquidation_threshold": self.avg_liquidation_threshold,
            "health_factor": self.health_factor,
            "available_borrows_value": self.available_borrows_value,
            "collateral": [
                {
                    "source": c.source,
                    "amount": c.amount,
                    "value": c.value,
                    "ltv": c.ltv,
                    "liquidation_threshold": c.liquidation_threshold,
                }
                for c in self.collateral
            ],
            "margin": margin,
        }


def calculate_health_factor(total_collateral: int, total_debt: int,
                            avg_liquidation_threshold: int) -> int:
    if total_debt == 0:
        return MAX_UINT256
    return wad_div(percent_mul(total_collateral, avg_liquidation_threshold), total_debt)


def calculate_available_borrows(total_collateral: int, total_debt: int, avg_ltv: int) -> int:
    borrowing_power = percent_mul(total_collateral, avg_ltv)
    if borrowing_power <= total_debt:
        return 0
    return borrowing_power - total_debt


def value_of(price: int, amount: int, decimals: int) -> int:
    """Base-currency value of `amount` native units at `price` per whole token."""
    return price * amount // 10 ** decimals


class AccountAggregator:
    """Reads a `LedgerState` and prices it into a `SolvencyReport`."""

    def __init__(self, state: LedgerState, oracle: PriceOracle, margin_source: MarginSource,
                 margin_params: MarginCollateralParams = MARGIN):
        self.state = state
        self.oracle = oracle
        self.margin_source = margin_source
        self.margin_params = margin_params

    def margin_collateral(self, user: str) -> tuple[MarginSnapshot, int]:
        """Latest snapshot and its usable collateral in reference-asset units."""
        snapshot = self.margin_source.snapshot(user)
        return snapshot, snapshot.collateral_value()

    def margin_collateral_value(self, user: str) -> int:
        """Usable margin collateral in base currency."""
        _, amount = self.margin_collateral(user)
        if amount == 0:
            return 0
        return self._reference_value(amount)

    def _reference_value(self, amount: int) -> int:
        asset = self.margin_params.reference_asset
        reserve = self.state.reserves.get(asset)
        if reserve is None:
            raise UnknownReserveError(f"margin reference asset {asset} is not listed")
        return value_of(require_price(self.oracle, asset), amount, reserve.config.decimals)

    def get_account_data(self, user: str, now: int,
                         using_margin: bool | None = None) -> SolvencyReport:
        """
        Aggregate the user's position at `now`.

        `using_margin` overrides the stored opt-in flag, so a toggle can be
        evaluated before it is applied.
        """
        if using_margin is None:
            using_margin = self.state.uses_margin_collateral(user)

        contributions: list[CollateralContribution] = []
        total_debt = 0

        for asset, position in self.state.user_positions(user).items():
            reserve = self.state.reserves[asset]
            config = reserve.config
            is_collateral = (
                position.usage_as_collateral_enabled
                and config.liquidation_threshold > 0
                and position.scaled_balance > 0
            )
            if not is_collateral and not position.is_borrowing():
                continue

            price = require_price(self.oracle, asset)
            if is_collateral:
                balance = position.supply_balance(reserve, now)
                contributions.append(CollateralContribution(
                    source=asset,
                    amount=balance,
                    value=value_of(price, balance, config.decimals),
                    ltv=config.base_ltv,
                    liquidation_threshold=config.liquidation_threshold,
                ))
            if position.is_borrowing():
                debt = position.stable_debt(now) + position.variable_debt(reserve, now)
                total_debt += value_of(price, debt, config.decimals)

        margin_snapshot = None
        if using_margin:
            margin_snapshot, amount = self.margin_collateral(user)
            if amount > 0:
                contributions.append(CollateralContribution(
                    source=MARGIN_SOURCE,
                    amount=amount,
                    value=self._reference_value(amount),
                    ltv=self.margin_params.ltv,
                    liquidation_threshold=self.margin_params.liquidation_threshold,
                ))

        total_collateral = sum(c.value for c in contributions)
        if total_collateral > 0:
            avg_ltv = sum(c.ltv * c.value for c in contributions) // total_collateral
            avg_lt = (
                sum(c.liquidation_threshold * c.value for c in contributions) // total_collateral
            )
        else:
            avg_ltv = avg_lt = 0

        return SolvencyReport(
            total_collateral_value=total_collateral,
            total_debt_value=total_debt,
            avg_ltv=avg_ltv,
            avg_liquidation_threshold=avg_lt,
            health_factor=calculate_health_factor(total_collateral, total_debt, avg_lt),
            available_borrows_value=calculate_available_borrows(
                total_collateral, total_debt, avg_ltv
            ),
            collateral=tuple(contributions),
            margin_snapshot=margin_snapshot,
        )
