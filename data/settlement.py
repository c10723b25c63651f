"""
Settlement counterparty collaborator.

On a margin-collateral liquidation the pool emits one debit instruction; the
counterparty moves the collateral and reflects it in its next margin feed push.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitInstruction:
    """Move `amount` of `asset` out of `account`'s margin position to `destination`."""
    account: str
    asset: str
    amount: int
    destination: str


class SettlementCounterparty(Protocol):
    def submit(self, instruction: DebitInstruction) -> None: ...


class RecordingSettlement:
    """Keeps submitted instructions in order."""

    def __init__(self):
        self.instructions: list[DebitInstruction] = []

    def submit(self, instruction: DebitInstruction) -> None:
        LOGGER.info(
            "Debit %d %s from %s to %s",
            instruction.amount, instruction.asset, instruction.account, instruction.destination,
        )
        self.instructions.append(instruction)
