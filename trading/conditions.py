"""
Condition Validators — "is the trade that queued this order still wanted?"
Consulted by the executor before retrying an order.
"""

from __future__ import annotations
from exchange.models import ConditionCheck, PendingOrder


class ConditionValidator:
    """Strategy layers subclass this to re-check their entry/exit thesis."""

    async def still_valid(self, order: PendingOrder) -> ConditionCheck:
        raise NotImplementedError


class AlwaysValid(ConditionValidator):
    """Default: every queued decision stays valid until it executes or fails."""

    async def still_valid(self, order: PendingOrder) -> ConditionCheck:
        return ConditionCheck(valid=True)
