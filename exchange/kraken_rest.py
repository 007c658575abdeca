"""
Kraken REST API Client.
Handles authentication and the two private endpoints the executor needs.
"""

from __future__ import annotations
import base64
import hashlib
import hmac
import time
import urllib.parse
from decimal import Decimal
from typing import Any, Dict, Optional
import aiohttp
import logging

from exchange.errors import ExchangeError, KrakenAPIError
from exchange.models import ExchangeOrderState, OrderStatusReport

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "pending": ExchangeOrderState.PENDING,
    "open": ExchangeOrderState.OPEN,
    "closed": ExchangeOrderState.CLOSED,
    "canceled": ExchangeOrderState.CANCELED,
    "expired": ExchangeOrderState.EXPIRED,
}


class KrakenRestClient:
    """Async Kraken private REST API wrapper, bound to one API key."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://api.kraken.com",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._last_nonce = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _next_nonce(self) -> int:
        # Kraken rejects non-increasing nonces per key
        nonce = int(time.time() * 1000)
        if nonce <= self._last_nonce:
            nonce = self._last_nonce + 1
        self._last_nonce = nonce
        return nonce

    def _sign(self, url_path: str, post_data: str, nonce: int) -> str:
        """API-Sign: HMAC-SHA512 of path + SHA256(nonce + postdata), base64 secret."""
        sha = hashlib.sha256((str(nonce) + post_data).encode("utf-8")).digest()
        mac = hmac.new(
            base64.b64decode(self.api_secret),
            url_path.encode("utf-8") + sha,
            hashlib.sha512,
        )
        return base64.b64encode(mac.digest()).decode("utf-8")

    async def _private(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make an authenticated private API call and return its result payload."""
        session = await self._get_session()
        url_path = f"/0/private/{method}"
        nonce = self._next_nonce()
        data = {"nonce": str(nonce)}
        data.update({k: str(v) for k, v in (params or {}).items() if v is not None})
        post_data = urllib.parse.urlencode(data)

        headers = {
            "API-Key": self.api_key,
            "API-Sign": self._sign(url_path, post_data, nonce),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }

        try:
            async with session.post(f"{self.base_url}{url_path}", data=post_data, headers=headers) as resp:
                if resp.status == 429:
                    raise ExchangeError("HTTP 429: rate limit exceeded", status=resp.status)
                if resp.status >= 500:
                    raise ExchangeError(
                        f"HTTP {resp.status}: service unavailable", status=resp.status
                    )
                payload = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error(f"[KRAKEN] {method} network error: {e}")
            raise ExchangeError(f"Network error: {e}") from e
        except ValueError as e:
            raise ExchangeError(f"Invalid response from exchange: {e}") from e

        errors = payload.get("error") or []
        if errors:
            logger.error(f"[KRAKEN] {method} error: {errors}")
            raise KrakenAPIError(errors)
        return payload.get("result", {})

    async def place_order(
        self,
        pair: str,
        side: str,
        volume: str,
        order_type: str = "market",
        price: Optional[str] = None,
        userref: Optional[int] = None,
    ) -> str:
        """Place an order. Returns the exchange transaction id."""
        params: Dict[str, Any] = {
            "pair": pair,
            "type": side,
            "ordertype": order_type,
            "volume": volume,
        }
        if order_type == "limit" and price:
            params["price"] = price
        if userref is not None:
            params["userref"] = userref

        logger.info(f"[KRAKEN] Placing: {side} {volume} {pair} @ {price or 'market'} ({order_type})")
        result = await self._private("AddOrder", params)
        txids = result.get("txid") or []
        if not txids:
            raise ExchangeError("Unknown error: No transaction ID returned")
        return txids[0]

    async def get_order_status(self, exchange_order_id: str) -> OrderStatusReport:
        """Query a single order's status."""
        result = await self._private("QueryOrders", {"txid": exchange_order_id})
        info = result.get(exchange_order_id)
        if info is None:
            return OrderStatusReport(exchange_order_id, ExchangeOrderState.UNKNOWN)

        executed_volume = info.get("vol_exec")
        executed_price = info.get("price")
        if executed_price is not None and Decimal(executed_price) == 0:
            executed_price = None

        return OrderStatusReport(
            exchange_order_id=exchange_order_id,
            state=_STATE_MAP.get(info.get("status", ""), ExchangeOrderState.UNKNOWN),
            executed_price=executed_price,
            executed_volume=executed_volume,
        )
