"""
Telegram Notifier — Sends order fills, failures and service status.
Also the executor's completion notifier.
"""

from __future__ import annotations
import aiohttp
from typing import Optional, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from exchange.models import ExecutionResult, PendingOrder

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends messages via Telegram Bot API."""

    def __init__(self, bot_token: str, chat_id: str, enabled: bool = True):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled and bool(bot_token) and bool(chat_id)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, message: str, parse_mode: str = "HTML"):
        """Send a message to the configured chat."""
        if not self.enabled:
            logger.debug(f"[TG] (disabled) Would send: {message[:100]}...")
            return

        try:
            session = await self._get_session()
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            payload = {
                "chat_id": self.chat_id,
                "text": message,
                "parse_mode": parse_mode,
                "disable_web_page_preview": True,
            }

            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"[TG] Send failed ({resp.status}): {body[:200]}")
                else:
                    logger.debug(f"[TG] Sent: {message[:80]}...")

        except aiohttp.ClientError as e:
            logger.warning(f"[TG] Error sending message: {e}")

    async def on_order_completed(self, order: "PendingOrder", result: "ExecutionResult"):
        """Fill alert. Called once per COMPLETED order."""
        emoji = "🟢" if order.side.value == "buy" else "🔴"
        msg = (
            f"{emoji} <b>ORDER FILLED — {order.side.value.upper()}</b>\n\n"
            f"Pair: <code>{order.pair}</code>\n"
            f"Volume: <code>{result.executed_volume or order.volume}</code>\n"
            f"Price: <code>{result.executed_price or 'market'}</code>\n"
            f"Exchange ID: <code>{result.exchange_order_id}</code>\n"
            f"Bot: <code>{order.bot_id}</code> (attempt {order.attempts}/{order.max_attempts})"
        )
        if order.reason:
            msg += f"\nReason: {order.reason}"
        await self.send(msg)

    async def send_order_failed(self, order: "PendingOrder"):
        """Terminal failure alert."""
        msg = (
            f"❌ <b>ORDER FAILED</b>\n\n"
            f"Pair: <code>{order.pair}</code> ({order.side.value} {order.volume})\n"
            f"Bot: <code>{order.bot_id}</code>\n"
            f"Attempts: {order.attempts}/{order.max_attempts}\n"
            f"Last error: {order.last_error or 'unknown'}"
        )
        await self.send(msg)

    async def send_service_status(self, status: str):
        """Send service lifecycle status."""
        await self.send(f"🤖 <b>ORDER PIPELINE</b>: {status}")
