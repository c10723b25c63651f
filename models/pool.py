"""
Lending pool facade.

Owns the reserve arena, the logical clock and the collaborators (price oracle,
margin feed, settlement counterparty). Every mutating entry point runs inside
an atomic section: the ledger is snapshotted first and restored if the
operation raises, and events are only published once the operation has
committed. A margin liquidation hands its settlement instruction over as the
final step of its atomic section.

Time is a logical block timestamp in seconds, advanced explicitly with
`advance_time` / `set_timestamp`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator

from config.params import POOL, PoolParams, ReserveConfig
from data.margin_feed import MarginSource
from data.price_oracle import PriceOracle, require_price
from data.settlement import RecordingSettlement, SettlementCounterparty
from models.account_aggregator import AccountAggregator, SolvencyReport, value_of
from models.errors import (
    AmountBiggerThanMaxLoanSizeStableError,
    AuthorizationError,
    BorrowingNotEnabledError,
    CollateralBalanceZeroError,
    CollateralSameAsBorrowingCurrencyError,
    HealthFactorLowerThanLiquidationThresholdError,
    InsufficientCollateralError,
    InvalidAmountError,
    NoDebtOfSelectedTypeError,
    NotEnoughAvailableBalanceError,
    NotEnoughLiquidityError,
    ReservePausedError,
    StableBorrowingNotEnabledError,
    StatePreconditionError,
    UnknownReserveError,
)
from models.interest_rate import RateStrategy
from models.liquidation import LiquidationEngine, LiquidationResult
from models.reserve import LedgerState, Reserve
from models.wad_ray_math import MAX_UINT256, WAD, percent_div, percent_mul

LOGGER = logging.getLogger(__name__)

MAX_AMOUNT = MAX_UINT256
# withdraw / repay the whole balance


class RateMode(IntEnum):
    STABLE = 1
    VARIABLE = 2


@dataclass(frozen=True)
class PoolEvent:
    name: str
    timestamp: int
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class UserReserveData:
    """A user's current balances in one reserve."""
    asset: str
    supply_balance: int
    stable_debt: int
    variable_debt: int
    stable_rate: int
    usage_as_collateral_enabled: bool


class LendingPool:
    """
    Multi-collateral lending pool.

    Reserves are listed with `init_reserve`; users then deposit, borrow, repay
    and withdraw. Accounts that opt in also count their external margin
    collateral, which the settlement counterparty may liquidate through
    `liquidate_margin_collateral`.
    """

    def __init__(self, oracle: PriceOracle, margin_feed: MarginSource,
                 settlement: SettlementCounterparty | None = None,
                 params: PoolParams = POOL,
                 timestamp: int = 0):
        self.params = params
        self.oracle = oracle
        self.margin_feed = margin_feed
        self.settlement = settlement if settlement is not None else RecordingSettlement()
        self.state = LedgerState()
        self.aggregator = AccountAggregator(self.state, oracle, margin_feed, params.margin)
        self.liquidation_engine = LiquidationEngine(
            self.state, self.aggregator, oracle,
            pool_address=params.pool_address,
            params=params.liquidation,
            margin_params=params.margin,
        )
        self.paused = False
        self.events: list[PoolEvent] = []
        self._timestamp = timestamp

    # ── Clock ───────────────────────────────────────────────────

    @property
    def now(self) -> int:
        return self._timestamp

    def set_timestamp(self, timestamp: int) -> None:
        if timestamp < self._timestamp:
            raise ValueError(f"time cannot go backwards: {timestamp} < {self._timestamp}")
        self._timestamp = timestamp

    def advance_time(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        self._timestamp += seconds
        return self._timestamp

    # ── Internals ───────────────────────────────────────────────

    @contextmanager
    def _atomic(self, operation: str) -> Iterator[list[PoolEvent]]:
        snapshot = self.state.snapshot()
        pending: list[PoolEvent] = []
        try:
            yield pending
            self._credit_treasury()
        except Exception as exc:
            self.state.restore(snapshot)
            LOGGER.warning("Rolled back %s: %s", operation, exc)
            raise
        self.events.extend(pending)

    def _credit_treasury(self) -> None:
        # accrued reserve-factor share becomes the treasury's supply claim
        for asset, reserve in self.state.reserves.items():
            if reserve.accrued_to_treasury == 0:
                continue
            position = self.state.position(self.params.treasury, asset)
            position.scaled_balance += reserve.accrued_to_treasury
            LOGGER.debug("Credited %d scaled %s to %s", reserve.accrued_to_treasury,
                         asset, self.params.treasury)
            reserve.accrued_to_treasury = 0

    def _event(self, name: str, **data) -> PoolEvent:
        return PoolEvent(name=name, timestamp=self.now, data=data)

    def _reserve(self, asset: str) -> Reserve:
        reserve = self.state.reserves.get(asset)
        if reserve is None:
            raise UnknownReserveError(f"reserve {asset} is not listed")
        return reserve

    def _require_not_paused(self) -> None:
        if self.paused:
            raise ReservePausedError("pool is paused")

    def _require_healthy(self, user: str, action: str) -> SolvencyReport:
        report = self.aggregator.get_account_data(user, self.now)
        if report.health_factor < WAD:
            raise HealthFactorLowerThanLiquidationThresholdError(
                f"{action} would leave {user} with health factor {report.health_factor}"
            )
        return report

    # ── Reserve administration ──────────────────────────────────

    def init_reserve(self, config: ReserveConfig, strategy: RateStrategy) -> Reserve:
        """List a new asset; rates are derived immediately from the empty state."""
        if config.symbol in self.state.reserves:
            raise StatePreconditionError(f"reserve {config.symbol} already initialized")
        if config.base_ltv > config.liquidation_threshold:
            raise ValueError("base_ltv cannot exceed liquidation_threshold")
        reserve = Reserve(
            asset=config.symbol,
            config=config,
            strategy=strategy,
            last_update_timestamp=self.now,
        )
        reserve.accrue(self.now)
        self.state.reserves[config.symbol] = reserve
        LOGGER.info("Initialized reserve %s (%d decimals)", config.symbol, config.decimals)
        return reserve

    def set_reserve_active(self, asset: str, active: bool) -> None:
        self._reserve(asset).active = active

    def set_reserve_frozen(self, asset: str, frozen: bool) -> None:
        self._reserve(asset).frozen = frozen

    def set_reserve_paused(self, asset: str, paused: bool) -> None:
        self._reserve(asset).paused = paused

    def set_paused(self, paused: bool) -> None:
        LOGGER.info("Pool %s", "paused" if paused else "unpaused")
        self.paused = paused

    # ── Supply side ─────────────────────────────────────────────

    def deposit(self, asset: str, amount: int, on_behalf_of: str) -> None:
        reserve = self._reserve(asset)
        with self._atomic("deposit") as events:
            self._require_not_paused()
            reserve.require_active()
            reserve.require_not_paused()
            reserve.require_not_frozen()
            if amount <= 0:
                raise InvalidAmountError("deposit amount must be positive")

            reserve.accrue(self.now)
            position = self.state.position(on_behalf_of, asset)
            first_deposit = position.scaled_balance == 0
            reserve.available_liquidity += amount
            reserve.mint_supply(position, amount)
            if first_deposit:
                position.usage_as_collateral_enabled = True
                events.append(self._event("ReserveUsedAsCollateralEnabled",
                                          asset=asset, user=on_behalf_of))
            reserve.accrue(self.now)
            events.append(self._event("Deposit", asset=asset, user=on_behalf_of, amount=amount))
        LOGGER.info("Deposit %d %s for %s", amount, asset, on_behalf_of)

    def withdraw(self, asset: str, amount: int, user: str, to: str | None = None) -> int:
        """Withdraw `amount` (or MAX_AMOUNT for everything); returns the amount withdrawn."""
        reserve = self._reserve(asset)
        with self._atomic("withdraw") as events:
            self._require_not_paused()
            reserve.require_active()
            reserve.require_not_paused()

            position = self.state.peek_position(user, asset)
            balance = position.supply_balance(reserve, self.now) if position else 0
            to_withdraw = balance if amount == MAX_AMOUNT else amount
            if to_withdraw <= 0:
                raise InvalidAmountError("withdraw amount must be positive")
            if to_withdraw > balance:
                raise NotEnoughAvailableBalanceError(
                    f"{user} holds {balance} {asset}, asked for {to_withdraw}"
                )
            if to_withdraw > reserve.available_liquidity:
                raise NotEnoughLiquidityError(
                    f"{asset} reserve holds {reserve.available_liquidity}, asked for {to_withdraw}"
                )

            was_collateral = position.usage_as_collateral_enabled
            reserve.accrue(self.now)
            reserve.burn_supply(position, to_withdraw)
            reserve.available_liquidity -= to_withdraw
            reserve.accrue(self.now)
            if position.scaled_balance == 0 and was_collateral:
                position.usage_as_collateral_enabled = False
                events.append(self._event("ReserveUsedAsCollateralDisabled",
                                          asset=asset, user=user))
            if was_collateral:
                self._require_healthy(user, "withdraw")
            events.append(self._event("Withdraw", asset=asset, user=user,
                                      to=to or user, amount=to_withdraw))
        LOGGER.info("Withdraw %d %s from %s", to_withdraw, asset, user)
        return to_withdraw

    def set_usage_as_collateral(self, user: str, asset: str, enabled: bool) -> None:
        reserve = self._reserve(asset)
        with self._atomic("set_usage_as_collateral") as events:
            self._require_not_paused()
            reserve.require_active()
            reserve.require_not_paused()
            position = self.state.peek_position(user, asset)
            if position is None or position.supply_balance(reserve, self.now) == 0:
                raise CollateralBalanceZeroError(f"{user} holds no {asset}")
            position.usage_as_collateral_enabled = enabled
            if not enabled:
                self._require_healthy(user, "disabling collateral")
            name = "ReserveUsedAsCollateralEnabled" if enabled else "ReserveUsedAsCollateralDisabled"
            events.append(self._event(name, asset=asset, user=user))

    # ── Margin collateral opt-in ────────────────────────────────

    def set_using_margin_collateral(self, user: str, enabled: bool) -> None:
        """Opt in or out of counting the external margin position as collateral."""
        with self._atomic("set_using_margin_collateral") as events:
            self._require_not_paused()
            report = self.aggregator.get_account_data(user, self.now, using_margin=enabled)
            if report.total_debt_value > 0 and report.health_factor < WAD:
                raise HealthFactorLowerThanLiquidationThresholdError(
                    f"margin collateral toggle would leave {user} with health factor "
                    f"{report.health_factor}"
                )
            if enabled:
                self.state.margin_collateral_users.add(user)
            else:
                self.state.margin_collateral_users.discard(user)
            events.append(self._event("MarginCollateralUsage", user=user, enabled=enabled))
        LOGGER.info("%s margin collateral for %s", "Enabled" if enabled else "Disabled", user)

    def is_using_margin_collateral(self, user: str) -> bool:
        return self.state.uses_margin_collateral(user)

    # ── Borrow side ─────────────────────────────────────────────

    def borrow(self, asset: str, amount: int, rate_mode: RateMode, user: str) -> None:
        reserve = self._reserve(asset)
        rate_mode = RateMode(rate_mode)
        with self._atomic("borrow") as events:
            self._require_not_paused()
            reserve.require_active()
            reserve.require_not_paused()
            reserve.require_not_frozen()
            if not reserve.config.borrowing_enabled:
                raise BorrowingNotEnabledError(f"borrowing {asset} is disabled")
            if amount <= 0:
                raise InvalidAmountError("borrow amount must be positive")
            if amount > reserve.available_liquidity:
                raise NotEnoughLiquidityError(
                    f"{asset} reserve holds {reserve.available_liquidity}, asked for {amount}"
                )

            report = self.aggregator.get_account_data(user, self.now)
            if report.total_collateral_value == 0:
                raise CollateralBalanceZeroError(f"{user} has no collateral")
            if report.health_factor < WAD:
                raise HealthFactorLowerThanLiquidationThresholdError(
                    f"{user} health factor is {report.health_factor}"
                )
            amount_value = value_of(
                require_price(self.oracle, asset), amount, reserve.config.decimals
            )
            if report.avg_ltv == 0:
                raise InsufficientCollateralError(f"{user} collateral has zero LTV")
            collateral_needed = percent_div(report.total_debt_value + amount_value, report.avg_ltv)
            if collateral_needed > report.total_collateral_value:
                raise InsufficientCollateralError(
                    f"{user} needs {collateral_needed} collateral, has "
                    f"{report.total_collateral_value}"
                )

            position = self.state.position(user, asset)
            if rate_mode is RateMode.STABLE:
                if not reserve.config.stable_borrowing_enabled:
                    raise StableBorrowingNotEnabledError(f"stable borrowing {asset} is disabled")
                if (
                    position.usage_as_collateral_enabled
                    and reserve.config.base_ltv > 0
                    and amount <= position.supply_balance(reserve, self.now)
                ):
                    raise CollateralSameAsBorrowingCurrencyError(
                        f"{user} would borrow {asset} at stable rate against itself"
                    )
                max_loan = percent_mul(
                    reserve.available_liquidity, self.params.liquidation.max_stable_loan_percent
                )
                if amount > max_loan:
                    raise AmountBiggerThanMaxLoanSizeStableError(
                        f"stable loan of {amount} {asset} exceeds {max_loan}"
                    )

            reserve.accrue(self.now)
            if rate_mode is RateMode.STABLE:
                rate = reserve.current_stable_borrow_rate
                reserve.mint_stable_debt(position, amount, rate, self.now)
            else:
                rate = reserve.current_variable_borrow_rate
                reserve.mint_variable_debt(position, amount)
            reserve.available_liquidity -= amount
            reserve.accrue(self.now)
            self._require_healthy(user, "borrow")
            events.append(self._event("Borrow", asset=asset, user=user, amount=amount,
                                      rate_mode=int(rate_mode), rate=rate))
        LOGGER.info("Borrow %d %s by %s (%s)", amount, asset, user, rate_mode.name.lower())

    def repay(self, asset: str, amount: int, rate_mode: RateMode, on_behalf_of: str) -> int:
        """Repay debt of one rate mode; returns the amount actually repaid."""
        reserve = self._reserve(asset)
        rate_mode = RateMode(rate_mode)
        with self._atomic("repay") as events:
            self._require_not_paused()
            reserve.require_active()
            reserve.require_not_paused()
            if amount <= 0:
                raise InvalidAmountError("repay amount must be positive")

            position = self.state.peek_position(on_behalf_of, asset)
            if position is None:
                raise NoDebtOfSelectedTypeError(f"{on_behalf_of} owes no {asset}")
            if rate_mode is RateMode.STABLE:
                debt = position.stable_debt(self.now)
            else:
                debt = position.variable_debt(reserve, self.now)
            if debt == 0:
                raise NoDebtOfSelectedTypeError(
                    f"{on_behalf_of} has no {rate_mode.name.lower()} {asset} debt"
                )
            payback = min(amount, debt)

            reserve.accrue(self.now)
            if rate_mode is RateMode.STABLE:
                reserve.burn_stable_debt(position, payback, self.now)
            else:
                reserve.burn_variable_debt(position, payback)
            reserve.available_liquidity += payback
            reserve.accrue(self.now)
            events.append(self._event("Repay", asset=asset, user=on_behalf_of,
                                      amount=payback, rate_mode=int(rate_mode)))
        LOGGER.info("Repay %d %s for %s", payback, asset, on_behalf_of)
        return payback

    # ── Liquidations ────────────────────────────────────────────

    def liquidation_call(self, collateral_asset: str, debt_asset: str, borrower: str,
                         debt_to_cover: int, receive_underlying: bool = False,
                         liquidator: str = "liquidator") -> LiquidationResult:
        with self._atomic("liquidation_call") as events:
            self._require_not_paused()
            result = self.liquidation_engine.liquidation_call(
                collateral_asset, debt_asset, borrower, debt_to_cover,
                receive_underlying, liquidator, self.now,
            )
            events.append(self._event(
                "LiquidationCall",
                collateral_asset=collateral_asset,
                debt_asset=debt_asset,
                user=borrower,
                debt_to_cover=result.debt_repaid,
                liquidated_collateral_amount=result.collateral_seized,
                liquidator=liquidator,
                receive_underlying=receive_underlying,
            ))
        return result

    def liquidate_margin_collateral(self, caller: str, borrower: str, debt_to_cover: int,
                                    debt_asset: str, margin_reference_asset: str,
                                    max_collateral_to_liquidate: int) -> LiquidationResult:
        """
        Liquidate against external margin collateral. Only the settlement
        counterparty may call; the seized amount is debited to the receiver
        account through a settlement instruction. The instruction is submitted
        inside the atomic section, so if the counterparty raises, the debt
        debit is restored and no event is published.
        """
        if caller != self.params.settlement_counterparty:
            raise AuthorizationError(f"{caller} is not the settlement counterparty")
        with self._atomic("liquidate_margin_collateral") as events:
            self._require_not_paused()
            result = self.liquidation_engine.liquidate_margin_collateral(
                self.params.pool_address, borrower, debt_to_cover, debt_asset,
                margin_reference_asset, max_collateral_to_liquidate,
                self.params.receiver_account, self.now,
            )
            events.append(self._event(
                "MarginCollateralLiquidated",
                user=borrower,
                debt_asset=debt_asset,
                collateral_asset=margin_reference_asset,
                debt_repaid=result.debt_repaid,
                collateral_seized=result.collateral_seized,
                destination=self.params.receiver_account,
            ))
            # last step: a refused instruction rolls the debit back
            self.settlement.submit(result.instruction)
        return result

    # ── Reads ───────────────────────────────────────────────────

    def get_user_account_data(self, user: str) -> SolvencyReport:
        return self.aggregator.get_account_data(user, self.now)

    def amount_to_liquidate(self, borrower: str) -> int:
        """Borrower's total debt in base currency."""
        return self.get_user_account_data(borrower).total_debt_value

    def get_reserve_data(self, asset: str) -> Reserve:
        return self._reserve(asset)

    def get_user_reserve_data(self, asset: str, user: str) -> UserReserveData:
        reserve = self._reserve(asset)
        position = self.state.peek_position(user, asset)
        if position is None:
            return UserReserveData(asset, 0, 0, 0, 0, False)
        return UserReserveData(
            asset=asset,
            supply_balance=position.supply_balance(reserve, self.now),
            stable_debt=position.stable_debt(self.now),
            variable_debt=position.variable_debt(reserve, self.now),
            stable_rate=position.stable_rate,
            usage_as_collateral_enabled=position.usage_as_collateral_enabled,
        )
