"""
Order Pipeline — Main Orchestrator.
Wires store, queue, circuit breaker, executor, notifier and dashboard; runs the loops; shuts down.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
from typing import List, Optional
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

# Create data dir before FileHandler
os.makedirs("data", exist_ok=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("data/orders.log"),
    ],
)
logger = logging.getLogger(__name__)

from config import ServiceConfig
from exchange.models import ExecutionResult
from storage.database import Database
from trading.circuit_breaker import CircuitBreaker
from trading.order_queue import OrderQueue
from trading.order_executor import OrderExecutor
from notifications.telegram import TelegramNotifier
from dashboard import Dashboard


class Service:
    """Main pipeline orchestrator."""

    def __init__(self, config: ServiceConfig):
        self.config = config
        self._running = False
        self._loops: Optional[asyncio.Future] = None

        self.db = Database(config.storage.db_path)
        self.notifier = TelegramNotifier(
            bot_token=config.notifications.telegram_bot_token,
            chat_id=config.notifications.telegram_chat_id,
            enabled=config.notifications.enabled,
        )

        self.queue = OrderQueue(self.db, config.retry)
        self.breaker = CircuitBreaker(config.circuit_breaker)
        self.executor = OrderExecutor(
            queue=self.queue,
            breaker=self.breaker,
            credentials=self.db,
            config=config,
            notifier=self.notifier,
        )
        self.dashboard = Dashboard(
            self.queue, self.breaker, self.executor,
            host=config.dashboard.host, port=config.dashboard.port,
        )

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   ORDER EXECUTION PIPELINE — STARTING")
        logger.info("=" * 60)

        # 1. Connect database
        os.makedirs(os.path.dirname(self.config.storage.db_path) or "data", exist_ok=True)
        self.db.connect()

        # 2. Recover orders a previous process left mid-flight
        recovered = self.queue.reset_stuck_orders(self.config.execution.stuck_order_timeout)
        counts = self.queue.get_pending_orders_count()
        logger.info(
            f"[BOOT] Queue: {counts['pending']} pending, {counts['processing']} processing, "
            f"{counts['retry']} retry ({recovered} recovered)"
        )

        # 3. Operator API
        if self.config.dashboard.enabled:
            await self.dashboard.start()

        await self.notifier.send_service_status(
            f"Started ✅\nQueued: {counts['total']}\n"
            f"Concurrency: {self.config.rate_limit.max_concurrent_orders} "
            f"@ {self.config.rate_limit.max_orders_per_second}/s"
        )

        # 4. Run all async tasks
        self._running = True
        logger.info("[BOOT] ✅ All systems go. Running...")

        self._loops = asyncio.gather(
            self._execution_loop(),
            self._cleanup_loop(),
        )
        try:
            await self._loops
        except asyncio.CancelledError:
            logger.info("[SHUTDOWN] Loops cancelled")

    async def stop(self):
        """Graceful shutdown."""
        logger.info("[SHUTDOWN] Stopping pipeline...")
        self._running = False
        if self._loops is not None:
            self._loops.cancel()

        await self.dashboard.stop()
        await self.executor.close()
        await self.notifier.send_service_status("Stopped 🔴")
        await self.notifier.close()
        self.db.close()

        logger.info("[SHUTDOWN] Complete.")

    async def _execution_loop(self):
        """Drain the queue every poll interval."""
        interval = self.config.execution.poll_interval_sec

        while self._running:
            try:
                results = await self.executor.execute_pending_orders()
                await self._alert_failures(results)
            except Exception as e:
                logger.error(f"[EXEC] Execution cycle error: {e}", exc_info=True)

            await asyncio.sleep(interval)

    async def _alert_failures(self, results: List[ExecutionResult]):
        for order in self.executor.terminal_failures(results):
            await self.notifier.send_order_failed(order)

    async def _cleanup_loop(self):
        """Delete old COMPLETED/FAILED orders once a day."""
        while self._running:
            try:
                self.queue.cleanup_old_orders(self.config.execution.cleanup_days)
            except Exception as e:
                logger.error(f"[QUEUE] Cleanup error: {e}", exc_info=True)

            await asyncio.sleep(24 * 3600)


async def main():
    """Entry point."""
    config = ServiceConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())

    service = Service(config)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(service.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
        await service.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await service.stop()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
