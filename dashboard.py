"""
Dashboard — Operator JSON API for the order pipeline.
Uses aiohttp.web (already a dependency) for status, order lookup and admin actions.
Runs alongside the execution loop.
"""

from __future__ import annotations
import json
from decimal import Decimal
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from aiohttp import web
from exchange.models import utcnow
import logging

if TYPE_CHECKING:
    from trading.circuit_breaker import CircuitBreaker
    from trading.order_executor import OrderExecutor
    from trading.order_queue import OrderQueue

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime values."""
    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=DecimalEncoder),
        content_type="application/json",
        status=status,
    )


class Dashboard:
    """Operator web server."""

    def __init__(
        self,
        queue: "OrderQueue",
        breaker: "CircuitBreaker",
        executor: "OrderExecutor",
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.queue = queue
        self.breaker = breaker
        self.executor = executor
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/status", self._api_status)
        self.app.router.add_get("/api/orders", self._api_orders)
        self.app.router.add_get("/api/orders/{order_id}", self._api_order)
        self.app.router.add_post("/api/execute", self._api_execute)
        self.app.router.add_post("/api/breakers/reset", self._api_reset_breakers)
        self.app.router.add_post("/api/breakers/{key_id}/reset", self._api_reset_breaker)
        self.app.router.add_post("/api/orders/reset-processing", self._api_reset_processing)
        self.app.router.add_post("/api/orders/clear-failed-keys", self._api_clear_all_failed_keys)
        self.app.router.add_post("/api/orders/{order_id}/clear-failed-keys", self._api_clear_failed_keys)
        self.app.router.add_post("/api/orders/{order_id}/requeue", self._api_requeue)

    async def start(self):
        """Start the dashboard web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[DASHBOARD] Running on http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ─── Read routes ───

    async def _api_status(self, request: web.Request) -> web.Response:
        """Executor, queue and circuit breaker state in one call."""
        try:
            status = self.executor.get_status()
            status["timestamp"] = utcnow().isoformat()
            return json_response(status)
        except Exception as e:
            logger.error(f"[DASHBOARD] Status API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_orders(self, request: web.Request) -> web.Response:
        bot_id = request.query.get("bot_id")
        user_id = request.query.get("user_id")
        if bot_id:
            orders = self.queue.get_orders_by_bot(bot_id)
        elif user_id:
            orders = self.queue.get_orders_by_user(user_id)
        else:
            return json_response({"error": "bot_id or user_id is required"}, status=400)
        return json_response({"orders": [o.to_dict() for o in orders]})

    async def _api_order(self, request: web.Request) -> web.Response:
        order = self.queue.get_order(request.match_info["order_id"])
        if order is None:
            return json_response({"error": "Order not found"}, status=404)
        return json_response(order.to_dict())

    # ─── Admin routes ───

    async def _api_execute(self, request: web.Request) -> web.Response:
        """Run one execution cycle now instead of waiting for the next tick."""
        results = await self.executor.execute_pending_orders()
        logger.info(f"[ADMIN] Manual execution cycle: {len(results)} orders dispatched")
        return json_response({
            "processed": len(results),
            "succeeded": sum(1 for r in results if r.success),
            "results": [
                {
                    "order_id": r.order_id,
                    "success": r.success,
                    "should_retry": r.should_retry,
                    "exchange_order_id": r.exchange_order_id,
                    "error": r.error,
                }
                for r in results
            ],
        })

    async def _api_reset_breakers(self, request: web.Request) -> web.Response:
        self.breaker.reset_all()
        logger.info("[ADMIN] All circuit breakers reset")
        return json_response({"reset": "all"})

    async def _api_reset_breaker(self, request: web.Request) -> web.Response:
        key_id = request.match_info["key_id"]
        self.breaker.reset(key_id)
        logger.info(f"[ADMIN] Circuit breaker reset for key {key_id}")
        return json_response({"reset": key_id})

    async def _api_reset_processing(self, request: web.Request) -> web.Response:
        count = self.queue.reset_all_processing_orders()
        return json_response({"reset": count})

    async def _api_clear_all_failed_keys(self, request: web.Request) -> web.Response:
        count = self.queue.clear_all_failed_api_keys()
        return json_response({"cleared": count})

    async def _api_clear_failed_keys(self, request: web.Request) -> web.Response:
        order = self.queue.clear_failed_api_keys(request.match_info["order_id"])
        if order is None:
            return json_response({"error": "Order not found or already terminal"}, status=409)
        return json_response(order.to_dict())

    async def _api_requeue(self, request: web.Request) -> web.Response:
        order = self.queue.requeue_failed_order(request.match_info["order_id"])
        if order is None:
            return json_response({"error": "Order is not FAILED or its bot has a live order"}, status=409)
        return json_response(order.to_dict())
