"""
External margin feed collaborator.

The margin venue pushes one snapshot per account together with a sequence
number. The pool always reads the latest stored snapshot; pushes carrying a
sequence lower than the stored one are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from models.errors import OracleError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarginSnapshot:
    """Risk summary of an account's off-pool margin position (reference asset units)."""
    maintenance_margin: int = 0
    mark_to_market: int = 0
    collateral: int = 0
    value_at_risk: int = 0
    sequence: int = 0

    def collateral_value(self) -> int:
        """Collateral reduced by negative mark-to-market, floored at zero."""
        return max(0, self.collateral + min(self.mark_to_market, 0))


EMPTY_SNAPSHOT = MarginSnapshot()


class MarginSource(Protocol):
    """Read side of the margin feed as seen by the aggregator."""

    def snapshot(self, account: str) -> MarginSnapshot: ...


def _validate(account: str, snapshot: MarginSnapshot) -> None:
    for name in ("maintenance_margin", "mark_to_market", "collateral", "value_at_risk"):
        value = getattr(snapshot, name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise OracleError(f"margin field {name} for {account} must be an integer")
    for name in ("maintenance_margin", "collateral", "value_at_risk"):
        if getattr(snapshot, name) < 0:
            raise OracleError(f"margin field {name} for {account} must be non-negative")


class MarginFeed:
    """In-memory store of the latest pushed snapshot per account."""

    def __init__(self):
        self._snapshots: dict[str, MarginSnapshot] = {}

    def set_data(self, account: str, snapshot: MarginSnapshot, sequence: int) -> bool:
        """Store a snapshot; returns False when the push is stale and ignored."""
        _validate(account, snapshot)
        current = self._snapshots.get(account)
        if current is not None and sequence < current.sequence:
            LOGGER.warning(
                "Ignoring stale margin update for %s: sequence %d < %d",
                account, sequence, current.sequence,
            )
            return False
        self._snapshots[account] = MarginSnapshot(
            maintenance_margin=snapshot.maintenance_margin,
            mark_to_market=snapshot.mark_to_market,
            collateral=snapshot.collateral,
            value_at_risk=snapshot.value_at_risk,
            sequence=sequence,
        )
        return True

    def update_data(self, updates: Iterable[tuple[str, MarginSnapshot]], sequence: int) -> int:
        """Bulk push sharing one sequence number; returns the count applied."""
        applied = 0
        for account, snapshot in updates:
            if self.set_data(account, snapshot, sequence):
                applied += 1
        return applied

    def snapshot(self, account: str) -> MarginSnapshot:
        return self._snapshots.get(account, EMPTY_SNAPSHOT)
