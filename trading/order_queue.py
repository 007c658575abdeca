"""
Order Queue — Owns pending order persistence, deduplication and retry timing.

Lifecycle:
    PENDING -> PROCESSING -> COMPLETED
                          -> RETRY -> PROCESSING ...
                          -> FAILED
COMPLETED and FAILED are terminal; only requeue_failed_order (admin) touches them.
"""

from __future__ import annotations
import hashlib
import random
import secrets
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING
from exchange.errors import OrderValidationError
from exchange.models import (
    LIVE_STATUSES, OrderError, OrderSide, OrderSpec, OrderStatus, OrderType,
    PendingOrder, utcnow,
)
from storage.base import Cmp
import logging

if TYPE_CHECKING:
    from config import RetryConfig
    from storage.base import OrderStore

logger = logging.getLogger(__name__)

_MAX_SIGNED_32 = 2147483647


def generate_client_order_id(
    user_id: str, bot_id: str, pair: str, side: str, volume: str, created_at: datetime,
) -> str:
    """Deterministic idempotency key. Resolution is one second."""
    second = created_at.replace(microsecond=0).isoformat()
    data = f"{user_id}|{bot_id}|{pair}|{side}|{volume}|{second}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def generate_userref(client_order_id: str) -> int:
    """Non-negative value that fits the exchange's signed 32-bit userref field."""
    unsigned = int(client_order_id[:8], 16)
    signed = unsigned - (1 << 32) if unsigned >= (1 << 31) else unsigned
    return abs(signed) % _MAX_SIGNED_32


class OrderQueue:
    """Single source of truth for what should be executed and when."""

    def __init__(
        self,
        store: "OrderStore",
        config: "RetryConfig",
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.config = config
        self._clock = clock or utcnow
        self._rng = rng or random.Random()

    # ==================== Creation ====================

    def create_order(self, spec: OrderSpec) -> PendingOrder:
        """
        Create a PENDING order, or return the live/duplicate one that already covers it.
        Raises OrderValidationError on malformed input.
        """
        self._validate(spec)
        now = self._clock()

        existing = self.store.find_one(
            {"bot_id": spec.bot_id, "status": list(LIVE_STATUSES)}, order_by="created_at"
        )
        if existing:
            logger.info(
                f"[QUEUE] Bot {spec.bot_id} already has a {existing.side.value} order "
                f"in '{existing.status.value}' ({existing.id}). Skipping duplicate."
            )
            return existing

        client_order_id = generate_client_order_id(
            spec.user_id, spec.bot_id, spec.pair, spec.side.value, spec.volume, now
        )
        duplicate = self.store.find_one({
            "client_order_id": client_order_id,
            "status": [OrderStatus.PENDING, OrderStatus.PROCESSING,
                       OrderStatus.RETRY, OrderStatus.COMPLETED],
        })
        if duplicate:
            logger.info(
                f"[QUEUE] Duplicate order detected: {client_order_id} "
                f"(existing: {duplicate.id}, status: {duplicate.status.value})"
            )
            return duplicate

        order = PendingOrder(
            id="",
            user_id=spec.user_id,
            bot_id=spec.bot_id,
            pair=spec.pair,
            side=spec.side,
            type=spec.type,
            volume=spec.volume,
            price=spec.price,
            amount=spec.amount,
            reason=spec.reason,
            client_order_id=client_order_id,
            userref=generate_userref(client_order_id),
            execution_id=f"exec_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            status=OrderStatus.PENDING,
            attempts=0,
            max_attempts=self.config.max_attempts,
            created_at=now,
            updated_at=now,
        )
        order = self.store.create(order)

        logger.info(
            f"[QUEUE] [{order.execution_id}] Created PENDING order {order.id} "
            f"(client: {client_order_id}, userref: {order.userref}) for "
            f"{order.side.value} {order.volume} {order.pair} (amount: {order.amount or 0})"
        )
        return order

    def _validate(self, spec: OrderSpec):
        if not spec.user_id or not spec.bot_id:
            raise OrderValidationError("user_id and bot_id are required")
        if not spec.pair or not spec.pair.strip():
            raise OrderValidationError("pair is required")
        if not isinstance(spec.side, OrderSide):
            raise OrderValidationError(f"Invalid side: {spec.side!r}")
        if not isinstance(spec.type, OrderType):
            raise OrderValidationError(f"Invalid order type: {spec.type!r}")
        try:
            volume = Decimal(spec.volume)
        except (InvalidOperation, TypeError, ValueError):
            raise OrderValidationError(f"Invalid volume: {spec.volume!r}")
        if not volume.is_finite() or volume <= 0:
            raise OrderValidationError(f"Volume must be positive: {spec.volume!r}")
        if spec.type == OrderType.LIMIT:
            try:
                price = Decimal(spec.price) if spec.price is not None else None
            except (InvalidOperation, TypeError, ValueError):
                price = None
            if price is None or not price.is_finite() or price <= 0:
                raise OrderValidationError(f"Limit order needs a positive price: {spec.price!r}")

    # ==================== Reads ====================

    def get_order(self, order_id: str) -> Optional[PendingOrder]:
        return self.store.get(order_id)

    def get_orders_by_bot(self, bot_id: str) -> List[PendingOrder]:
        return self.store.find_many({"bot_id": bot_id}, order_by="created_at", descending=True)

    def get_orders_by_user(self, user_id: str, limit: int = 100) -> List[PendingOrder]:
        return self.store.find_many(
            {"user_id": user_id}, order_by="created_at", descending=True, limit=limit
        )

    def get_orders_ready_for_execution(self, limit: int = 10) -> List[PendingOrder]:
        """PENDING, or RETRY whose next_retry_at has passed. Oldest created_at first."""
        if limit <= 0:
            return []
        now = self._clock()
        candidates = self.store.find_many(
            {"status": OrderStatus.PENDING}, order_by="created_at", limit=limit
        )
        candidates += self.store.find_many(
            {"status": OrderStatus.RETRY, "next_retry_at": Cmp("<=", now)},
            order_by="created_at", limit=limit,
        )
        candidates += self.store.find_many(
            {"status": OrderStatus.RETRY, "next_retry_at": None},
            order_by="created_at", limit=limit,
        )
        candidates.sort(key=lambda o: (o.created_at, o.id))
        return candidates[:limit]

    def get_pending_orders_count(self) -> Dict[str, int]:
        pending = self.store.count({"status": OrderStatus.PENDING})
        processing = self.store.count({"status": OrderStatus.PROCESSING})
        retry = self.store.count({"status": OrderStatus.RETRY})
        return {
            "pending": pending,
            "processing": processing,
            "retry": retry,
            "total": pending + processing + retry,
        }

    # ==================== Transitions ====================

    def mark_as_processing(self, order_id: str) -> Optional[PendingOrder]:
        order = self.store.get(order_id)
        if order is None:
            logger.error(f"[QUEUE] Order {order_id} not found")
            return None
        if order.status not in (OrderStatus.PENDING, OrderStatus.RETRY):
            logger.warning(
                f"[QUEUE] [{order.execution_id}] Cannot mark {order_id} processing "
                f"(status is {order.status.value})"
            )
            return None
        return self._write(order, {
            "status": OrderStatus.PROCESSING,
            "updated_at": self._clock(),
        })

    def mark_as_completed(
        self,
        order_id: str,
        exchange_order_id: str,
        executed_price: Optional[str] = None,
        executed_volume: Optional[str] = None,
        key_used: Optional[str] = None,
    ) -> Optional[PendingOrder]:
        order = self._live_order(order_id, "complete")
        if order is None:
            return None

        now = self._clock()
        updated = self._write(order, {
            "status": OrderStatus.COMPLETED,
            "attempts": order.attempts + 1,
            "exchange_order_id": exchange_order_id,
            "executed_price": executed_price,
            "executed_volume": executed_volume,
            "api_key_used": key_used,
            "next_retry_at": None,
            "last_attempt_at": now,
            "completed_at": now,
            "updated_at": now,
        })
        if updated:
            logger.info(
                f"[QUEUE] [{order.execution_id}] Order {order_id} completed "
                f"with exchange order ID: {exchange_order_id}"
            )
        return updated

    def mark_as_failed(
        self,
        order_id: str,
        error: str,
        key_used: Optional[str] = None,
        retryable: bool = True,
        failed_keys: Iterable[str] = (),
        only_from: Optional[Iterable[OrderStatus]] = None,
    ) -> Optional[PendingOrder]:
        """
        Count one attempt; schedule a retry or fail the order for good.
        failed_keys: other credentials that also failed during this attempt.
        only_from: refuse unless the order is currently in one of these statuses.
        """
        order = self._live_order(order_id, "fail")
        if order is None:
            return None
        if only_from is not None and order.status not in tuple(only_from):
            logger.warning(
                f"[QUEUE] [{order.execution_id}] Not failing {order_id}: "
                f"status is {order.status.value}"
            )
            return None

        now = self._clock()
        attempts = order.attempts + 1
        errors = order.errors + [
            OrderError(timestamp=now, message=error, key_used=key_used,
                       execution_id=order.execution_id)
        ]
        failed_api_keys = list(order.failed_api_keys)
        for key in [*failed_keys, key_used]:
            if key and key not in failed_api_keys:
                failed_api_keys.append(key)

        patch: Dict[str, Any] = {
            "attempts": attempts,
            "errors": errors,
            "last_error": error,
            "failed_api_keys": failed_api_keys,
            "last_attempt_at": now,
            "updated_at": now,
        }
        if key_used is not None:
            patch["api_key_used"] = key_used

        abandoned = len(errors) >= self.config.abandon_after_errors
        if retryable and not abandoned and attempts < order.max_attempts:
            delay = self.calculate_retry_delay(attempts)
            patch["status"] = OrderStatus.RETRY
            patch["next_retry_at"] = now + timedelta(seconds=delay)
            updated = self._write(order, patch)
            if updated:
                logger.info(
                    f"[QUEUE] [{order.execution_id}] Order {order_id} will retry in {delay:.1f}s "
                    f"(attempt {attempts}/{order.max_attempts}): {error}"
                )
            return updated

        patch["status"] = OrderStatus.FAILED
        patch["next_retry_at"] = None
        updated = self._write(order, patch)
        if updated:
            why = "abandoned" if abandoned else "permanently failed"
            logger.error(
                f"[QUEUE] [{order.execution_id}] Order {order_id} {why} "
                f"after {attempts} attempts: {error}"
            )
        return updated

    def defer(self, order_id: str, reason: str) -> Optional[PendingOrder]:
        """
        Put a PROCESSING order back to RETRY without counting an attempt.
        Clears failed_api_keys so every credential gets another chance.
        """
        order = self.store.get(order_id)
        if order is None or order.status != OrderStatus.PROCESSING:
            logger.warning(f"[QUEUE] Cannot defer {order_id}: not processing")
            return None

        now = self._clock()
        delay = self.calculate_retry_delay(max(order.attempts, 1))
        updated = self._write(order, {
            "status": OrderStatus.RETRY,
            "failed_api_keys": [],
            "last_error": reason,
            "next_retry_at": now + timedelta(seconds=delay),
            "updated_at": now,
        })
        if updated:
            logger.info(
                f"[QUEUE] [{order.execution_id}] Order {order_id} deferred {delay:.1f}s: {reason}"
            )
        return updated

    # ==================== Retry Timing ====================

    def base_retry_delay(self, attempt: int) -> float:
        """Pre-jitter delay in seconds for the given attempt number (1-based)."""
        exponent = max(attempt, 1) - 1
        delay = self.config.initial_retry_delay * (self.config.retry_backoff_multiplier ** exponent)
        return min(delay, self.config.max_retry_delay)

    def calculate_retry_delay(self, attempt: int) -> float:
        """Backoff with ±jitter, never below one second."""
        delay = self.base_retry_delay(attempt)
        jitter = delay * self.config.jitter * self._rng.uniform(-1.0, 1.0)
        return max(1.0, delay + jitter)

    # ==================== Recovery & Admin ====================

    def reset_stuck_orders(self, timeout: float, exclude: Iterable[str] = ()) -> int:
        """
        PROCESSING orders untouched for longer than timeout go back to RETRY, due now.
        Orders in `exclude` (currently being worked by this process) are left alone.
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=timeout)
        skip = set(exclude)
        stuck = self.store.find_many({
            "status": OrderStatus.PROCESSING,
            "updated_at": Cmp("<", cutoff),
        })

        reset = 0
        for order in stuck:
            if order.id in skip:
                continue
            logger.warning(
                f"[QUEUE] [{order.execution_id}] Resetting stuck order {order.id} "
                f"(stuck since {order.updated_at.isoformat()}, attempts: {order.attempts})"
            )
            if self._write(order, {
                "status": OrderStatus.RETRY,
                "next_retry_at": now,
                "updated_at": now,
                "last_error": "Order was stuck in PROCESSING and was automatically reset",
                "errors": order.errors + [OrderError(
                    timestamp=now, message="Stuck in PROCESSING, auto-reset to RETRY",
                    execution_id=order.execution_id,
                )],
            }):
                reset += 1

        if reset:
            logger.info(f"[QUEUE] Reset {reset} stuck orders")
        return reset

    def reset_all_processing_orders(self) -> int:
        """Admin: force every PROCESSING order back to RETRY, regardless of age."""
        now = self._clock()
        count = 0
        for order in self.store.find_many({"status": OrderStatus.PROCESSING}):
            delay = self.calculate_retry_delay(order.attempts + 1)
            if self._write(order, {
                "status": OrderStatus.RETRY,
                "next_retry_at": now + timedelta(seconds=delay),
                "updated_at": now,
                "last_error": "Manually reset by admin",
                "errors": order.errors + [OrderError(
                    timestamp=now, message="Force-reset from PROCESSING to RETRY (admin)",
                    execution_id=order.execution_id,
                )],
            }):
                count += 1
        logger.info(f"[ADMIN] Force-reset {count} PROCESSING orders to RETRY")
        return count

    def clear_failed_api_keys(self, order_id: str) -> Optional[PendingOrder]:
        """Admin: let a live order try every credential again."""
        order = self._live_order(order_id, "clear failed keys on")
        if order is None:
            return None
        now = self._clock()
        updated = self._write(order, {
            "failed_api_keys": [],
            "updated_at": now,
            "last_error": "Cleared failed API keys - ready to retry",
            "errors": order.errors + [OrderError(
                timestamp=now,
                message=f"Cleared failed API keys {order.failed_api_keys} (admin)",
                execution_id=order.execution_id,
            )],
        })
        if updated:
            logger.info(f"[ADMIN] Cleared failed API keys on order {order_id}")
        return updated

    def clear_all_failed_api_keys(self) -> int:
        """Admin: clear failed_api_keys on every PENDING/RETRY order that has some."""
        count = 0
        for order in self.store.find_many(
            {"status": [OrderStatus.PENDING, OrderStatus.RETRY]}
        ):
            if order.failed_api_keys and self.clear_failed_api_keys(order.id):
                count += 1
        logger.info(f"[ADMIN] Cleared failed API keys from {count} orders")
        return count

    def requeue_failed_order(self, order_id: str) -> Optional[PendingOrder]:
        """
        Admin: move a FAILED order back to PENDING with a fresh attempt budget.
        Refused while the bot already has another live order.
        """
        order = self.store.get(order_id)
        if order is None or order.status != OrderStatus.FAILED:
            logger.warning(f"[ADMIN] Cannot requeue {order_id}: not a failed order")
            return None

        live = self.store.find_one({"bot_id": order.bot_id, "status": list(LIVE_STATUSES)})
        if live:
            logger.warning(
                f"[ADMIN] Cannot requeue {order_id}: bot {order.bot_id} already has live order {live.id}"
            )
            return None

        now = self._clock()
        updated = self._write(order, {
            "status": OrderStatus.PENDING,
            "attempts": 0,
            "failed_api_keys": [],
            "next_retry_at": None,
            "updated_at": now,
            "last_error": None,
            "errors": order.errors + [OrderError(
                timestamp=now,
                message=f"Requeued by admin after {order.attempts} attempts",
                execution_id=order.execution_id,
            )],
        })
        if updated:
            logger.info(f"[ADMIN] [{order.execution_id}] Requeued failed order {order_id}")
        return updated

    def cleanup_old_orders(self, days_to_keep: int = 30) -> int:
        """Delete COMPLETED/FAILED orders last updated more than days_to_keep ago."""
        cutoff = self._clock() - timedelta(days=days_to_keep)
        deleted = self.store.delete_many({
            "status": [OrderStatus.COMPLETED, OrderStatus.FAILED],
            "updated_at": Cmp("<", cutoff),
        })
        logger.info(f"[QUEUE] Cleaned up {deleted} old orders")
        return deleted

    # ==================== Helpers ====================

    def _live_order(self, order_id: str, action: str) -> Optional[PendingOrder]:
        order = self.store.get(order_id)
        if order is None:
            logger.error(f"[QUEUE] Order {order_id} not found")
            return None
        if order.is_terminal:
            logger.warning(
                f"[QUEUE] [{order.execution_id}] Refusing to {action} order {order_id} "
                f"(already {order.status.value})"
            )
            return None
        return order

    def _write(self, order: PendingOrder, patch: Dict[str, Any]) -> Optional[PendingOrder]:
        """Conditional on the status we read, so a concurrent transition wins cleanly."""
        if not self.store.update(order.id, patch, only_if_status=[order.status]):
            logger.warning(
                f"[QUEUE] [{order.execution_id}] Order {order.id} changed underneath us "
                f"(expected {order.status.value}); write skipped"
            )
            return None
        for name, value in patch.items():
            setattr(order, name, value)
        return order
