"""
Error taxonomy for the lending pool.

Every error carries a short `code` so callers can match on it without parsing
messages:
- AuthorizationError: wrong caller for a privileged entry point
- StatePreconditionError: reserve/position state forbids the operation
- ArithmeticBoundError: requested amount exceeds what is available
- InfeasibleOperationError: zero or malformed oracle/feed values
"""

from __future__ import annotations


class LendingPoolError(Exception):
    """Base class for all pool errors."""

    code = "LENDING_POOL_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class AuthorizationError(LendingPoolError):
    code = "NOT_AUTHORIZED"


# ── State preconditions ─────────────────────────────────────────

class StatePreconditionError(LendingPoolError):
    code = "STATE_PRECONDITION"


class UnknownReserveError(StatePreconditionError):
    code = "UNKNOWN_RESERVE"


class ReserveInactiveError(StatePreconditionError):
    code = "NO_ACTIVE_RESERVE"


class ReserveFrozenError(StatePreconditionError):
    code = "RESERVE_FROZEN"


class ReservePausedError(StatePreconditionError):
    code = "IS_PAUSED"


class InvalidAmountError(StatePreconditionError):
    code = "INVALID_AMOUNT"


class BorrowingNotEnabledError(StatePreconditionError):
    code = "BORROWING_NOT_ENABLED"


class StableBorrowingNotEnabledError(StatePreconditionError):
    code = "STABLE_BORROWING_NOT_ENABLED"


class CollateralSameAsBorrowingCurrencyError(StatePreconditionError):
    code = "COLLATERAL_SAME_AS_BORROWING_CURRENCY"


class CollateralBalanceZeroError(StatePreconditionError):
    code = "COLLATERAL_BALANCE_IS_0"


class NoDebtOfSelectedTypeError(StatePreconditionError):
    code = "NO_DEBT_OF_SELECTED_TYPE"


class HealthFactorLowerThanLiquidationThresholdError(StatePreconditionError):
    code = "HEALTH_FACTOR_LOWER_THAN_LIQUIDATION_THRESHOLD"


class HealthFactorNotBelowThresholdError(StatePreconditionError):
    code = "HEALTH_FACTOR_NOT_BELOW_THRESHOLD"


class CurrencyNotBorrowedError(StatePreconditionError):
    code = "SPECIFIED_CURRENCY_NOT_BORROWED_BY_USER"


class CollateralCannotBeLiquidatedError(StatePreconditionError):
    code = "COLLATERAL_CANNOT_BE_LIQUIDATED"


# ── Arithmetic bounds ───────────────────────────────────────────

class ArithmeticBoundError(LendingPoolError):
    code = "ARITHMETIC_BOUND"


class NotEnoughAvailableBalanceError(ArithmeticBoundError):
    code = "NOT_ENOUGH_AVAILABLE_USER_BALANCE"


class InsufficientCollateralError(ArithmeticBoundError):
    code = "COLLATERAL_CANNOT_COVER_NEW_BORROW"


class NotEnoughLiquidityError(ArithmeticBoundError):
    code = "NOT_ENOUGH_LIQUIDITY"


class NotEnoughLiquidityToLiquidateError(ArithmeticBoundError):
    code = "NOT_ENOUGH_LIQUIDITY_TO_LIQUIDATE"


class AmountBiggerThanMaxLoanSizeStableError(ArithmeticBoundError):
    code = "AMOUNT_BIGGER_THAN_MAX_LOAN_SIZE_STABLE"


# ── Infeasible values ───────────────────────────────────────────

class InfeasibleOperationError(LendingPoolError):
    code = "INFEASIBLE_OPERATION"


class OracleError(InfeasibleOperationError):
    code = "INVALID_MARKET_VALUE"
