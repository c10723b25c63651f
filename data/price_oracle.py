"""
Price oracle collaborator.

Prices are base currency (wad) per whole unit of the asset. The pool only
reads through `get_asset_price`; `StaticPriceOracle` is the in-memory source
used by tests, the CLI and local scenarios.
"""

from __future__ import annotations

import logging
from typing import Protocol

from models.errors import OracleError

LOGGER = logging.getLogger(__name__)


class PriceOracle(Protocol):
    """Read-only price source."""

    def get_asset_price(self, asset: str) -> int: ...


class StaticPriceOracle:
    """Mutable in-memory price table."""

    def __init__(self, prices: dict[str, int] | None = None):
        self._prices: dict[str, int] = {}
        for asset, price in (prices or {}).items():
            self.set_asset_price(asset, price)

    def set_asset_price(self, asset: str, price: int) -> None:
        if not isinstance(price, int) or isinstance(price, bool):
            raise OracleError(f"price for {asset} must be an integer, got {price!r}")
        if price < 0:
            raise OracleError(f"price for {asset} must be non-negative, got {price}")
        LOGGER.debug("Price %s -> %d", asset, price)
        self._prices[asset] = price

    def get_asset_price(self, asset: str) -> int:
        return self._prices.get(asset, 0)


def require_price(oracle: PriceOracle, asset: str) -> int:
    """Fetch a price and treat zero or malformed values as infeasible."""
    price = oracle.get_asset_price(asset)
    if not isinstance(price, int) or isinstance(price, bool) or price <= 0:
        raise OracleError(f"invalid price for {asset}: {price!r}")
    return price
