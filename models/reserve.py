"""
Reserve ledger: per-asset indices, debt totals and rate accrual.

Balances are stored scaled. A position's supply balance and variable debt are
recovered on read by multiplying with the reserve's liquidity index and
variable borrow index:

    supply_balance = scaled_balance * liquidity_index
    variable_debt  = scaled_variable_debt * variable_borrow_index

Stable debt keeps a principal per position and per reserve; it compounds
from its own rate since its last update.

Every balance-changing operation calls `Reserve.accrue(now)` first, mutates
balances, then calls `Reserve.accrue(now)` again (a no-op on the indices at
the same timestamp) to re-derive rates from the new state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from config.params import ReserveConfig
from models.errors import ReserveFrozenError, ReserveInactiveError, ReservePausedError
from models.interest_rate import RateStrategy, utilization_rate
from models.wad_ray_math import (
    RAY,
    calculate_compounded_interest,
    calculate_linear_interest,
    percent_mul,
    ray_div,
    ray_mul,
    wad_to_ray,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class UserPosition:
    """One user's balances in one reserve; amounts are scaled or principal."""
    scaled_balance: int = 0
    scaled_variable_debt: int = 0
    principal_stable_debt: int = 0
    stable_rate: int = 0
    stable_timestamp: int = 0
    usage_as_collateral_enabled: bool = False

    def supply_balance(self, reserve: Reserve, now: int) -> int:
        if self.scaled_balance == 0:
            return 0
        return ray_mul(self.scaled_balance, reserve.normalized_income(now))

    def variable_debt(self, reserve: Reserve, now: int) -> int:
        if self.scaled_variable_debt == 0:
            return 0
        return ray_mul(self.scaled_variable_debt, reserve.normalized_debt(now))

    def stable_debt(self, now: int) -> int:
        if self.principal_stable_debt == 0:
            return 0
        factor = calculate_compounded_interest(self.stable_rate, self.stable_timestamp, now)
        return ray_mul(self.principal_stable_debt, factor)

    def is_borrowing(self) -> bool:
        return self.scaled_variable_debt > 0 or self.principal_stable_debt > 0


@dataclass
class Reserve:
    """Mutable state of one listed asset."""
    asset: str
    config: ReserveConfig
    strategy: RateStrategy
    active: bool = True
    frozen: bool = False
    paused: bool = False
    liquidity_index: int = RAY
    variable_borrow_index: int = RAY
    current_liquidity_rate: int = 0
    current_variable_borrow_rate: int = 0
    current_stable_borrow_rate: int = 0
    principal_stable_debt: int = 0
    average_stable_rate: int = 0
    stable_debt_timestamp: int = 0
    scaled_variable_debt: int = 0
    scaled_total_supply: int = 0
    available_liquidity: int = 0
    accrued_to_treasury: int = 0
    # scaled; moved onto the treasury position when a pool operation commits
    last_update_timestamp: int = 0

    # ── State checks ────────────────────────────────────────────

    def require_active(self) -> None:
        if not self.active:
            raise ReserveInactiveError(f"reserve {self.asset} is not active")

    def require_not_frozen(self) -> None:
        if self.frozen:
            raise ReserveFrozenError(f"reserve {self.asset} is frozen")

    def require_not_paused(self) -> None:
        if self.paused:
            raise ReservePausedError(f"reserve {self.asset} is paused")

    # ── Views ───────────────────────────────────────────────────

    def normalized_income(self, now: int) -> int:
        """Liquidity index projected to `now` without mutating state."""
        if now <= self.last_update_timestamp:
            return self.liquidity_index
        factor = calculate_linear_interest(
            self.current_liquidity_rate, self.last_update_timestamp, now
        )
        return ray_mul(factor, self.liquidity_index)

    def normalized_debt(self, now: int) -> int:
        """Variable borrow index projected to `now` without mutating state."""
        if now <= self.last_update_timestamp:
            return self.variable_borrow_index
        factor = calculate_compounded_interest(
            self.current_variable_borrow_rate, self.last_update_timestamp, now
        )
        return ray_mul(factor, self.variable_borrow_index)

    def current_variable_debt(self, now: int | None = None) -> int:
        index = self.variable_borrow_index if now is None else self.normalized_debt(now)
        return ray_mul(self.scaled_variable_debt, index)

    def current_stable_debt(self, now: int) -> int:
        if self.principal_stable_debt == 0:
            return 0
        factor = calculate_compounded_interest(
            self.average_stable_rate, self.stable_debt_timestamp, now
        )
        return ray_mul(self.principal_stable_debt, factor)

    def total_debt(self, now: int) -> int:
        return self.current_stable_debt(now) + self.current_variable_debt(now)

    def utilization(self, now: int) -> int:
        return utilization_rate(self.available_liquidity, self.total_debt(now))

    # ── Accrual ─────────────────────────────────────────────────

    def accrue(self, now: int) -> None:
        """
        Advance indices to `now`, then re-derive rates from the current state.

        Calling twice at the same timestamp without balance changes is a no-op.
        """
        if now < self.last_update_timestamp:
            raise ValueError(
                f"cannot accrue {self.asset} backwards: {now} < {self.last_update_timestamp}"
            )
        if now > self.last_update_timestamp:
            previous_variable_index = self.variable_borrow_index
            self._update_indexes(now)
            self._mint_to_treasury(previous_variable_index, now)
        self._update_interest_rates(now)
        self.last_update_timestamp = now

    def _update_indexes(self, now: int) -> None:
        if self.current_liquidity_rate > 0:
            cumulated = calculate_linear_interest(
                self.current_liquidity_rate, self.last_update_timestamp, now
            )
            self.liquidity_index = ray_mul(cumulated, self.liquidity_index)
        if self.scaled_variable_debt > 0:
            compounded = calculate_compounded_interest(
                self.current_variable_borrow_rate, self.last_update_timestamp, now
            )
            self.variable_borrow_index = ray_mul(compounded, self.variable_borrow_index)
        LOGGER.debug(
            "Accrued %s to %d: liquidity_index=%d variable_borrow_index=%d",
            self.asset, now, self.liquidity_index, self.variable_borrow_index,
        )

    def _mint_to_treasury(self, previous_variable_index: int, now: int) -> None:
        if self.config.reserve_factor == 0:
            return
        previous_variable_debt = ray_mul(self.scaled_variable_debt, previous_variable_index)
        current_variable_debt = ray_mul(self.scaled_variable_debt, self.variable_borrow_index)

        previous_stable_debt = 0
        if self.principal_stable_debt > 0:
            previous_stable_debt = ray_mul(
                self.principal_stable_debt,
                calculate_compounded_interest(
                    self.average_stable_rate,
                    self.stable_debt_timestamp,
                    self.last_update_timestamp,
                ),
            )
        current_stable_debt = self.current_stable_debt(now)

        accrued = (
            current_variable_debt + current_stable_debt
            - previous_variable_debt - previous_stable_debt
        )
        amount_to_mint = percent_mul(max(accrued, 0), self.config.reserve_factor)
        if amount_to_mint > 0:
            scaled = ray_div(amount_to_mint, self.liquidity_index)
            self.accrued_to_treasury += scaled
            self.scaled_total_supply += scaled

    def _update_interest_rates(self, now: int) -> None:
        rates = self.strategy.calculate_interest_rates(
            self.available_liquidity,
            self.current_stable_debt(now),
            self.current_variable_debt(),
            self.average_stable_rate,
            self.config.reserve_factor,
        )
        self.current_liquidity_rate = rates.liquidity_rate
        self.current_stable_borrow_rate = rates.stable_borrow_rate
        self.current_variable_borrow_rate = rates.variable_borrow_rate

    def update_stable_rate(self, amount_changed: int, rate_changed: int, now: int) -> None:
        """
        Fold stable principal in (amount_changed > 0) or out (< 0) at rate_changed.

        Keeps average_stable_rate * total_stable_debt equal to the sum of
        principal * rate over positions, up to rounding.
        """
        if rate_changed < 0:
            raise ValueError("rate_changed must be non-negative")
        previous_total = self.current_stable_debt(now)

        if amount_changed >= 0:
            next_total = previous_total + amount_changed
            if next_total == 0:
                self.average_stable_rate = 0
            else:
                self.average_stable_rate = ray_div(
                    ray_mul(self.average_stable_rate, wad_to_ray(previous_total))
                    + ray_mul(rate_changed, wad_to_ray(amount_changed)),
                    wad_to_ray(next_total),
                )
        else:
            amount = -amount_changed
            if previous_total <= amount:
                next_total = 0
                self.average_stable_rate = 0
            else:
                next_total = previous_total - amount
                first_term = ray_mul(self.average_stable_rate, wad_to_ray(previous_total))
                second_term = ray_mul(rate_changed, wad_to_ray(amount))
                if second_term >= first_term:
                    next_total = 0
                    self.average_stable_rate = 0
                else:
                    self.average_stable_rate = ray_div(
                        first_term - second_term, wad_to_ray(next_total)
                    )

        self.principal_stable_debt = next_total
        self.stable_debt_timestamp = now

    # ── Position mutations (indices must be current) ────────────

    def mint_supply(self, position: UserPosition, amount: int) -> None:
        scaled = ray_div(amount, self.liquidity_index)
        position.scaled_balance += scaled
        self.scaled_total_supply += scaled

    def burn_supply(self, position: UserPosition, amount: int) -> None:
        balance = ray_mul(position.scaled_balance, self.liquidity_index)
        if amount >= balance:
            scaled = position.scaled_balance
        else:
            scaled = min(ray_div(amount, self.liquidity_index), position.scaled_balance)
        position.scaled_balance -= scaled
        self.scaled_total_supply = max(self.scaled_total_supply - scaled, 0)

    def transfer_supply(self, source: UserPosition, target: UserPosition, amount: int) -> None:
        balance = ray_mul(source.scaled_balance, self.liquidity_index)
        if amount >= balance:
            scaled = source.scaled_balance
        else:
            scaled = min(ray_div(amount, self.liquidity_index), source.scaled_balance)
        source.scaled_balance -= scaled
        target.scaled_balance += scaled

    def mint_variable_debt(self, position: UserPosition, amount: int) -> None:
        scaled = ray_div(amount, self.variable_borrow_index)
        position.scaled_variable_debt += scaled
        self.scaled_variable_debt += scaled

    def burn_variable_debt(self, position: UserPosition, amount: int) -> None:
        debt = ray_mul(position.scaled_variable_debt, self.variable_borrow_index)
        if amount >= debt:
            scaled = position.scaled_variable_debt
        else:
            scaled = min(ray_div(amount, self.variable_borrow_index), position.scaled_variable_debt)
        position.scaled_variable_debt -= scaled
        self.scaled_variable_debt = max(self.scaled_variable_debt - scaled, 0)

    def mint_stable_debt(self, position: UserPosition, amount: int, rate: int, now: int) -> None:
        """Add stable debt at `rate`, re-averaging the position's own rate."""
        current_balance = position.stable_debt(now)
        next_balance = current_balance + amount
        position.stable_rate = ray_div(
            ray_mul(position.stable_rate, wad_to_ray(current_balance))
            + ray_mul(rate, wad_to_ray(amount)),
            wad_to_ray(next_balance),
        )
        position.principal_stable_debt = next_balance
        position.stable_timestamp = now
        self.update_stable_rate(amount, rate, now)

    def burn_stable_debt(self, position: UserPosition, amount: int, now: int) -> None:
        current_balance = position.stable_debt(now)
        amount = min(amount, current_balance)
        self.update_stable_rate(-amount, position.stable_rate, now)
        position.principal_stable_debt = current_balance - amount
        if position.principal_stable_debt == 0:
            position.stable_rate = 0
            position.stable_timestamp = 0
        else:
            position.stable_timestamp = now


@dataclass
class LedgerState:
    """Arena of reserves, positions and margin-collateral flags."""
    reserves: dict[str, Reserve] = field(default_factory=dict)
    positions: dict[str, dict[str, UserPosition]] = field(default_factory=dict)
    margin_collateral_users: set[str] = field(default_factory=set)

    def position(self, user: str, asset: str) -> UserPosition:
        """Return the user's position in `asset`, creating an empty one."""
        return self.positions.setdefault(user, {}).setdefault(asset, UserPosition())

    def peek_position(self, user: str, asset: str) -> UserPosition | None:
        return self.positions.get(user, {}).get(asset)

    def user_positions(self, user: str) -> dict[str, UserPosition]:
        return self.positions.get(user, {})

    def uses_margin_collateral(self, user: str) -> bool:
        return user in self.margin_collateral_users

    def snapshot(self) -> LedgerState:
        # rate strategies stay shared between the snapshot and the live state
        return LedgerState(
            reserves={asset: replace(r) for asset, r in self.reserves.items()},
            positions={
                user: {asset: replace(p) for asset, p in by_asset.items()}
                for user, by_asset in self.positions.items()
            },
            margin_collateral_users=set(self.margin_collateral_users),
        )

    def restore(self, snapshot: LedgerState) -> None:
        """Restore in place so references held by callers see the rollback."""
        _restore_records(self.reserves, snapshot.reserves)
        for user in list(self.positions):
            if user not in snapshot.positions:
                del self.positions[user]
        for user, saved in snapshot.positions.items():
            _restore_records(self.positions.setdefault(user, {}), saved)
        self.margin_collateral_users.clear()
        self.margin_collateral_users.update(snapshot.margin_collateral_users)


def _restore_records(live: dict, saved: dict) -> None:
    for key in list(live):
        if key not in saved:
            del live[key]
    for key, record in saved.items():
        current = live.get(key)
        if current is None:
            live[key] = record
        else:
            vars(current).update(vars(record))
