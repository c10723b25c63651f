"""
CLI entry point: replay a lending-pool scenario and print account solvency.

Usage:
    python run_pool.py scenarios/margin_liquidation.json
    python run_pool.py scenario.json --users alice bob --log-level DEBUG

A scenario is a JSON object:
    reserves:   list of preset symbols ("USDC", "WETH", "DAI") or full reserve
                configs with a "strategy" name (a kinked preset or "governance")
    prices:     {asset: decimal price in base currency per whole token}
    operations: ordered list of {"op": ..., ...}; token amounts are decimal
                strings in whole tokens, "max" means the whole balance/debt
"""

import argparse
import json
import logging
import sys
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / ".env")

from config.params import (
    ITHACA_ARBITRUM_RESERVES,
    RATE_STRATEGY_STABLE_THREE,
    RATE_STRATEGY_STABLE_TWO,
    RATE_STRATEGY_WETH,
    STRATEGY_DAI,
    ReserveConfig,
    load_params,
    wad,
)
from data.margin_feed import MarginFeed, MarginSnapshot
from data.price_oracle import StaticPriceOracle
from data.settlement import RecordingSettlement
from models.errors import LendingPoolError
from models.interest_rate import GovernanceRateStrategy, KinkedRateStrategy
from models.pool import MAX_AMOUNT, LendingPool, RateMode

LOGGER = logging.getLogger(__name__)

RESERVE_PRESETS = {
    **ITHACA_ARBITRUM_RESERVES,
    "DAI": (STRATEGY_DAI, RATE_STRATEGY_STABLE_TWO),
}

KINKED_STRATEGIES = {
    p.name: p for p in (RATE_STRATEGY_STABLE_TWO, RATE_STRATEGY_STABLE_THREE, RATE_STRATEGY_WETH)
}


def to_units(amount, decimals: int) -> int:
    """Whole-token decimal (string or number) -> native integer units."""
    if isinstance(amount, str) and amount.lower() == "max":
        return MAX_AMOUNT
    return int(Decimal(str(amount)) * 10 ** decimals)


def build_reserve(pool: LendingPool, entry, governance_params) -> None:
    if isinstance(entry, str):
        if entry not in RESERVE_PRESETS:
            raise ValueError(f"unknown reserve preset {entry!r}")
        config, strategy_params = RESERVE_PRESETS[entry]
        pool.init_reserve(config, KinkedRateStrategy(strategy_params))
        return

    strategy_name = entry.get("strategy", "rateStrategyStableTwo")
    if strategy_name == "governance":
        strategy = GovernanceRateStrategy(governance_params)
    elif strategy_name in KINKED_STRATEGIES:
        strategy = KinkedRateStrategy(KINKED_STRATEGIES[strategy_name])
    else:
        raise ValueError(f"unknown rate strategy {strategy_name!r}")
    config = ReserveConfig(
        symbol=entry["symbol"],
        decimals=int(entry["decimals"]),
        base_ltv=int(entry["base_ltv"]),
        liquidation_threshold=int(entry["liquidation_threshold"]),
        liquidation_bonus=int(entry["liquidation_bonus"]),
        reserve_factor=int(entry.get("reserve_factor", 0)),
        borrowing_enabled=bool(entry.get("borrowing_enabled", True)),
        stable_borrowing_enabled=bool(entry.get("stable_borrowing_enabled", False)),
    )
    pool.init_reserve(config, strategy)


def apply_operation(pool: LendingPool, oracle: StaticPriceOracle, feed: MarginFeed,
                    operation: dict):
    op = operation["op"]

    def units(key: str, asset_key: str = "asset") -> int:
        asset = operation[asset_key]
        return to_units(operation[key], pool.get_reserve_data(asset).config.decimals)

    if op == "advance_time":
        return pool.advance_time(int(operation["seconds"]))
    if op == "set_price":
        return oracle.set_asset_price(operation["asset"], wad(str(operation["price"])))
    if op == "margin":
        decimals = pool.get_reserve_data(pool.params.margin.reference_asset).config.decimals
        snapshot = MarginSnapshot(
            maintenance_margin=to_units(operation.get("maintenance_margin", 0), decimals),
            mark_to_market=to_units(operation.get("mark_to_market", 0), decimals),
            collateral=to_units(operation.get("collateral", 0), decimals),
            value_at_risk=to_units(operation.get("value_at_risk", 0), decimals),
        )
        return feed.set_data(operation["user"], snapshot, int(operation.get("sequence", 0)))
    if op == "deposit":
        return pool.deposit(operation["asset"], units("amount"), operation["user"])
    if op == "withdraw":
        return pool.withdraw(operation["asset"], units("amount"), operation["user"])
    if op == "borrow":
        mode = RateMode[operation.get("rate_mode", "variable").upper()]
        return pool.borrow(operation["asset"], units("amount"), mode, operation["user"])
    if op == "repay":
        mode = RateMode[operation.get("rate_mode", "variable").upper()]
        return pool.repay(operation["asset"], units("amount"), mode, operation["user"])
    if op == "use_margin_collateral":
        return pool.set_using_margin_collateral(operation["user"], bool(operation["enabled"]))
    if op == "set_usage_as_collateral":
        return pool.set_usage_as_collateral(
            operation["user"], operation["asset"], bool(operation["enabled"])
        )
    if op == "liquidate":
        return pool.liquidation_call(
            operation["collateral_asset"],
            operation["debt_asset"],
            operation["borrower"],
            units("debt_to_cover", "debt_asset"),
            receive_underlying=bool(operation.get("receive_underlying", False)),
            liquidator=operation.get("liquidator", "liquidator"),
        )
    if op == "liquidate_margin":
        return pool.liquidate_margin_collateral(
            operation.get("caller", pool.params.settlement_counterparty),
            operation["borrower"],
            units("debt_to_cover", "debt_asset"),
            operation["debt_asset"],
            operation["collateral_asset"],
            units("max_collateral", "collateral_asset"),
        )
    raise ValueError(f"unknown operation {op!r}")


def run_scenario(scenario: dict, params=None, stop_on_error: bool = False) -> dict:
    """Replay a scenario; returns reports, events and settlement instructions."""
    params = params or load_params()
    oracle = StaticPriceOracle()
    feed = MarginFeed()
    settlement = RecordingSettlement()
    pool = LendingPool(oracle, feed, settlement, params=params)

    for asset, price in scenario.get("prices", {}).items():
        oracle.set_asset_price(asset, wad(str(price)))
    for entry in scenario.get("reserves", []):
        build_reserve(pool, entry, params.governance)

    failures = []
    users = set()
    for index, operation in enumerate(scenario.get("operations", [])):
        for key in ("user", "borrower"):
            if key in operation:
                users.add(operation[key])
        try:
            apply_operation(pool, oracle, feed, operation)
        except LendingPoolError as exc:
            if stop_on_error:
                raise
            LOGGER.warning("Operation %d (%s) failed: %s", index, operation["op"], exc.code)
            failures.append({"index": index, "op": operation["op"], "error": exc.code})

    return {
        "timestamp": pool.now,
        "accounts": {
            user: pool.get_user_account_data(user).to_dict() for user in sorted(users)
        },
        "events": [
            {"name": e.name, "timestamp": e.timestamp, **e.data} for e in pool.events
        ],
        "settlement": [
            {
                "account": i.account,
                "asset": i.asset,
                "amount": i.amount,
                "destination": i.destination,
            }
            for i in settlement.instructions
        ],
        "failures": failures,
    }


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Replay a lending-pool scenario and print account solvency as JSON"
    )
    parser.add_argument("scenario", type=Path, help="Path to a scenario JSON file")
    parser.add_argument("--users", nargs="*", default=None,
                        help="Only report these accounts")
    parser.add_argument("--stop-on-error", action="store_true",
                        help="Abort on the first failed operation")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    scenario = json.loads(args.scenario.read_text())
    try:
        output = run_scenario(scenario, stop_on_error=args.stop_on_error)
    except LendingPoolError as exc:
        print(f"error: {exc.code}: {exc.message}", file=sys.stderr)
        return 1

    if args.users is not None:
        output["accounts"] = {
            u: r for u, r in output["accounts"].items() if u in set(args.users)
        }
    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
