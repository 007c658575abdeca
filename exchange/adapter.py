"""
Exchange Adapter — turns raw client calls into tagged results.
Timeouts and transport exceptions never escape as exceptions from place().
"""

from __future__ import annotations
import asyncio
from typing import Optional, Protocol
import logging

from exchange.errors import ExchangeError, classify_error
from exchange.models import ErrorKind, OrderStatusReport, PendingOrder, PlaceResult

logger = logging.getLogger(__name__)


class ExchangeClient(Protocol):
    """What the executor needs from an exchange SDK."""

    async def place_order(
        self,
        pair: str,
        side: str,
        volume: str,
        order_type: str = "market",
        price: Optional[str] = None,
        userref: Optional[int] = None,
    ) -> str:
        ...

    async def get_order_status(self, exchange_order_id: str) -> OrderStatusReport:
        ...

    async def close(self) -> None:
        ...


class ExchangeAdapter:
    """Wraps one credential's client with a timeout and error classification."""

    def __init__(self, client: ExchangeClient, timeout: float):
        self.client = client
        self.timeout = timeout

    async def place(self, order: PendingOrder) -> PlaceResult:
        try:
            txid = await asyncio.wait_for(
                self.client.place_order(
                    pair=order.pair,
                    side=order.side.value,
                    volume=order.volume,
                    order_type=order.type.value,
                    price=order.price,
                    userref=order.userref,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return PlaceResult.rejected(
                ErrorKind.TRANSIENT, f"Exchange call timeout after {self.timeout}s"
            )
        except ExchangeError as e:
            return PlaceResult.rejected(classify_error(e.message), e.message)

        if not txid:
            return PlaceResult.rejected(
                ErrorKind.UNKNOWN, "Unknown error: No transaction ID returned"
            )
        return PlaceResult.ok(txid)

    async def status(self, exchange_order_id: str) -> OrderStatusReport:
        """Raises ExchangeError (timeouts included); callers poll and tolerate it."""
        try:
            return await asyncio.wait_for(
                self.client.get_order_status(exchange_order_id), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise ExchangeError(f"Order status timeout after {self.timeout}s") from e

    async def close(self):
        await self.client.close()
