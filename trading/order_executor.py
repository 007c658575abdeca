"""
Order Executor — Drains the order queue against a pool of API keys.

Per order:
  1. Abandon orders with a runaway error history
  2. On retries, re-check that the trading decision still holds
  3. Claim (PROCESSING), pick healthy keys, place, verify
  4. Write COMPLETED / RETRY / FAILED back through the queue
Nothing raised by the exchange escapes this class.
"""

from __future__ import annotations
import asyncio
from typing import Callable, Dict, List, Optional, Protocol, Set, TYPE_CHECKING
from exchange.adapter import ExchangeAdapter, ExchangeClient
from exchange.errors import classify_error, is_retryable_kind
from exchange.kraken_rest import KrakenRestClient
from exchange.models import (
    ApiCredential, ErrorKind, ExchangeOrderState, ExecutionResult,
    OrderStatus, OrderStatusReport, PendingOrder, PlaceResult,
)
from trading.conditions import AlwaysValid, ConditionValidator
from trading.rate_limiter import RateLimiter
import logging

if TYPE_CHECKING:
    from config import ServiceConfig
    from storage.base import CredentialStore
    from trading.circuit_breaker import CircuitBreaker
    from trading.order_queue import OrderQueue

logger = logging.getLogger(__name__)

_FAILED_STATES = (ExchangeOrderState.CANCELED, ExchangeOrderState.EXPIRED)


class CompletionNotifier(Protocol):
    async def on_order_completed(self, order: PendingOrder, result: ExecutionResult) -> None:
        ...


class OrderExecutor:
    """Bounded-concurrency, rate-limited executor with per-key failover."""

    def __init__(
        self,
        queue: "OrderQueue",
        breaker: "CircuitBreaker",
        credentials: "CredentialStore",
        config: "ServiceConfig",
        client_factory: Optional[Callable[[ApiCredential], ExchangeClient]] = None,
        validator: Optional[ConditionValidator] = None,
        notifier: Optional[CompletionNotifier] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.queue = queue
        self.breaker = breaker
        self.credentials = credentials
        self.config = config
        self.validator = validator or AlwaysValid()
        self.notifier = notifier
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit.max_orders_per_second)
        self._client_factory = client_factory or self._kraken_client
        self._adapters: Dict[str, ExchangeAdapter] = {}
        self._in_flight: Set[str] = set()
        self._rr_offsets: Dict[str, int] = {}

    def _kraken_client(self, credential: ApiCredential) -> ExchangeClient:
        return KrakenRestClient(
            credential.api_key, credential.api_secret, base_url=self.config.exchange.base_url
        )

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    # ==================== Main Cycle ====================

    async def execute_pending_orders(self) -> List[ExecutionResult]:
        """One scheduler tick. Returns the results of every order dispatched."""
        max_concurrent = self.config.rate_limit.max_concurrent_orders

        self.queue.reset_stuck_orders(
            self.config.execution.stuck_order_timeout, exclude=self._in_flight
        )

        if len(self._in_flight) >= max_concurrent:
            logger.info(
                f"[EXEC] Max concurrent orders reached ({len(self._in_flight)}/{max_concurrent}), skipping cycle"
            )
            return []

        orders = self.queue.get_orders_ready_for_execution(max_concurrent - len(self._in_flight))
        if not orders:
            logger.debug("[EXEC] No orders ready for execution")
            return []

        logger.info(f"[EXEC] Processing {len(orders)} orders")

        tasks = []
        for order in orders:
            if order.id in self._in_flight:
                logger.debug(f"[EXEC] Order {order.id} already in flight, skipping")
                continue
            await self.rate_limiter.acquire()
            # Another cycle may have taken it while we waited on the limiter.
            # Check and add with no await in between.
            if order.id in self._in_flight:
                logger.debug(f"[EXEC] Order {order.id} picked up by another cycle, skipping")
                continue
            self._in_flight.add(order.id)
            tasks.append(asyncio.create_task(self._dispatch(order)))

        if not tasks:
            return []

        results = await asyncio.gather(*tasks)
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"[EXEC] Cycle done: {succeeded}/{len(results)} orders completed")
        return list(results)

    async def _dispatch(self, order: PendingOrder) -> ExecutionResult:
        """
        Runs one order the caller has already added to the in-flight set.
        Any bug in here becomes a retryable failure, never a stuck order.
        """
        try:
            return await self.execute_order(order)
        except Exception as e:
            logger.exception(f"[EXEC] [{order.execution_id}] Unexpected error executing {order.id}: {e}")
            error = f"Executor error: {e}"
            updated = None
            try:
                updated = self.queue.mark_as_failed(order.id, error, retryable=True)
            except Exception as write_error:
                logger.error(
                    f"[EXEC] [{order.execution_id}] Could not record failure for {order.id}: {write_error}"
                )
            return self._failure(order.id, updated, error=error)
        finally:
            self._in_flight.discard(order.id)

    @staticmethod
    def _failure(order_id: str, updated: Optional[PendingOrder], **fields) -> ExecutionResult:
        """should_retry reflects what the queue actually recorded, not what was asked for."""
        retrying = updated is not None and updated.status == OrderStatus.RETRY
        return ExecutionResult(order_id=order_id, success=False, should_retry=retrying, **fields)

    # ==================== Single Order ====================

    async def execute_order(self, order: PendingOrder) -> ExecutionResult:
        exec_id = order.execution_id
        abandon_after = self.config.retry.abandon_after_errors

        # Before the claim, only fail the order from the status it was read in
        unclaimed = (order.status,)

        if len(order.errors) >= abandon_after:
            error = f"Abandoned after {len(order.errors)} errors"
            logger.error(f"[EXEC] [{exec_id}] Order {order.id}: {error}")
            updated = self.queue.mark_as_failed(order.id, error, retryable=False, only_from=unclaimed)
            return self._failure(order.id, updated, error=error)

        if order.attempts > 0:
            check = await self.validator.still_valid(order)
            if not check.valid:
                error = f"Requirements no longer met: {check.reason}"
                logger.info(f"[EXEC] [{exec_id}] Order {order.id} cancelled on retry: {check.reason}")
                updated = self.queue.mark_as_failed(
                    order.id, error, retryable=False, only_from=unclaimed
                )
                return self._failure(order.id, updated, error=error)

        claimed = self.queue.mark_as_processing(order.id)
        if claimed is None:
            return ExecutionResult(
                order_id=order.id, success=False, error="Order could not be claimed for processing"
            )
        order = claimed

        logger.info(
            f"[EXEC] [{exec_id}] Executing order {order.id}: {order.side.value} {order.volume} "
            f"{order.pair} (attempt {order.attempts + 1}/{order.max_attempts})"
        )

        configured = self.credentials.list_credentials(order.user_id)
        if not configured:
            error = "No API keys configured"
            logger.error(f"[EXEC] [{exec_id}] User {order.user_id} has no API keys")
            updated = self.queue.mark_as_failed(order.id, error, retryable=False)
            return self._failure(order.id, updated, error=error)

        candidates = self._select_candidates(order, configured)
        if not candidates:
            reason = "No healthy API keys available (all failed or circuit open)"
            logger.warning(f"[EXEC] [{exec_id}] {reason} for order {order.id}; clearing failed keys")
            updated = self.queue.defer(order.id, reason)
            return self._failure(order.id, updated, error=reason)

        failed_this_pass: List[str] = []
        last_error: Optional[str] = None
        last_key: Optional[str] = None

        for credential in candidates:
            adapter = self._adapter_for(credential)
            logger.info(f"[EXEC] [{exec_id}] Trying key '{credential.name}' ({credential.id})")

            placed = await adapter.place(order)

            if not placed.accepted:
                last_error, last_key = placed.message, credential.id
                self.breaker.record_failure(credential.id, placed.message, exec_id)
                logger.warning(
                    f"[EXEC] [{exec_id}] Key {credential.id} rejected "
                    f"({placed.error_kind.value}): {placed.message}"
                )

                if not is_retryable_kind(placed.error_kind) or self._funds_exhausted(order, placed):
                    updated = self.queue.mark_as_failed(
                        order.id, placed.message, credential.id,
                        retryable=False, failed_keys=failed_this_pass,
                    )
                    return self._failure(
                        order.id, updated, key_used=credential.id, error=placed.message
                    )

                failed_this_pass.append(credential.id)
                continue

            return await self._finish_accepted(order, credential, adapter, placed, failed_this_pass)

        logger.warning(
            f"[EXEC] [{exec_id}] All {len(candidates)} candidate keys failed for order {order.id}"
        )
        updated = self.queue.mark_as_failed(
            order.id, last_error or "All API keys failed", last_key,
            retryable=True, failed_keys=failed_this_pass,
        )
        return self._failure(order.id, updated, key_used=last_key, error=last_error)

    async def _finish_accepted(
        self,
        order: PendingOrder,
        credential: ApiCredential,
        adapter: ExchangeAdapter,
        placed: PlaceResult,
        failed_this_pass: List[str],
    ) -> ExecutionResult:
        exec_id = order.execution_id
        txid = placed.exchange_order_id
        logger.info(f"[EXEC] [{exec_id}] Order placed, txid={txid}. Verifying...")

        report = await self._verify_execution(adapter, txid, exec_id)

        if report.state in _FAILED_STATES:
            error = f"Order {txid} was {report.state.value} by exchange"
            logger.warning(f"[EXEC] [{exec_id}] {error}")
            updated = self.queue.mark_as_failed(
                order.id, error, credential.id, retryable=True, failed_keys=failed_this_pass
            )
            return self._failure(
                order.id, updated, exchange_order_id=txid, key_used=credential.id, error=error
            )

        self.breaker.record_success(credential.id, exec_id)
        completed = self.queue.mark_as_completed(
            order.id,
            txid,
            executed_price=report.executed_price,
            executed_volume=report.executed_volume,
            key_used=credential.id,
        )
        result = ExecutionResult(
            order_id=order.id,
            success=True,
            exchange_order_id=txid,
            executed_price=report.executed_price,
            executed_volume=report.executed_volume,
            key_used=credential.id,
        )
        logger.info(
            f"[EXEC] [{exec_id}] FILLED {order.side.value} {report.executed_volume or order.volume} "
            f"{order.pair} @ {report.executed_price or 'market'} (key: {credential.id})"
        )
        await self._notify(completed or order, result)
        return result

    async def _verify_execution(
        self, adapter: ExchangeAdapter, txid: str, exec_id: str,
    ) -> OrderStatusReport:
        """
        Poll order status a bounded number of times.
        CLOSED / CANCELED / EXPIRED end the loop; a lingering OPEN or unreadable
        status is reported back as-is and treated as accepted by the caller.
        """
        attempts = self.config.execution.verify_attempts
        delay = self.config.execution.verify_delay_sec
        last: Optional[OrderStatusReport] = None

        for attempt in range(1, attempts + 1):
            try:
                last = await adapter.status(txid)
            except Exception as e:
                logger.warning(
                    f"[EXEC] [{exec_id}] Status check {attempt}/{attempts} for {txid} failed: {e}"
                )
            else:
                if last.state == ExchangeOrderState.CLOSED or last.state in _FAILED_STATES:
                    return last

            if attempt < attempts:
                await asyncio.sleep(delay)

        if last is None:
            logger.warning(f"[EXEC] [{exec_id}] Could not verify {txid}; accepting as placed")
            return OrderStatusReport(exchange_order_id=txid, state=ExchangeOrderState.UNKNOWN)

        logger.warning(
            f"[EXEC] [{exec_id}] Order {txid} still '{last.state.value}' after {attempts} checks; accepting"
        )
        return last

    async def _notify(self, order: PendingOrder, result: ExecutionResult):
        if self.notifier is None:
            return
        try:
            await self.notifier.on_order_completed(order, result)
        except Exception as e:
            logger.warning(f"[EXEC] [{order.execution_id}] Completion notifier failed: {e}")

    # ==================== Credentials ====================

    def _select_candidates(
        self, order: PendingOrder, configured: List[ApiCredential],
    ) -> List[ApiCredential]:
        failed = set(order.failed_api_keys)
        healthy = []
        for credential in configured:
            if credential.id in failed:
                logger.debug(f"[EXEC] Skipping key {credential.id}: already failed for {order.id}")
            elif self.breaker.is_open(credential.id):
                logger.info(f"[EXEC] Skipping key {credential.id}: circuit open")
            else:
                healthy.append(credential)

        if self.config.execution.credential_selection == "round_robin" and len(healthy) > 1:
            offset = self._rr_offsets.get(order.user_id, 0) % len(healthy)
            self._rr_offsets[order.user_id] = offset + 1
            healthy = healthy[offset:] + healthy[:offset]
        return healthy

    def _funds_exhausted(self, order: PendingOrder, placed: PlaceResult) -> bool:
        """Optional cap on how many insufficient-funds failures an order may collect."""
        cap = self.config.retry.max_insufficient_funds_attempts
        if cap is None or placed.error_kind != ErrorKind.INSUFFICIENT_FUNDS:
            return False
        previous = sum(
            1 for e in order.errors
            if classify_error(e.message) == ErrorKind.INSUFFICIENT_FUNDS
        )
        return previous + 1 >= cap

    def _adapter_for(self, credential: ApiCredential) -> ExchangeAdapter:
        adapter = self._adapters.get(credential.id)
        if adapter is None:
            adapter = ExchangeAdapter(
                self._client_factory(credential), self.config.execution.exchange_timeout_sec
            )
            self._adapters[credential.id] = adapter
        return adapter

    # ==================== Status & Lifecycle ====================

    def terminal_failures(self, results: List[ExecutionResult]) -> List[PendingOrder]:
        """Orders from these results that are now FAILED for good."""
        failed = []
        for result in results:
            if result.success or result.should_retry:
                continue
            order = self.queue.get_order(result.order_id)
            if order is not None and order.status == OrderStatus.FAILED:
                failed.append(order)
        return failed

    def get_status(self) -> dict:
        return {
            "executing_orders": sorted(self._in_flight),
            "max_concurrent_orders": self.config.rate_limit.max_concurrent_orders,
            "max_orders_per_second": self.config.rate_limit.max_orders_per_second,
            "queue": self.queue.get_pending_orders_count(),
            "circuit_breakers": [s.to_dict() for s in self.breaker.get_all_states()],
        }

    async def close(self):
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
