"""
Circuit Breaker — Per-credential health gate.
Stops using an API key that keeps failing and lets one trial through after a cool-off.
"""

from __future__ import annotations
from datetime import datetime
from typing import Callable, Dict, List, Optional, TYPE_CHECKING
from exchange.models import CircuitBreakerState, CircuitState, utcnow
import logging

if TYPE_CHECKING:
    from config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Tracks CLOSED / OPEN / HALF_OPEN state for each API key independently.

    State lives in this object only: a restart starts every key CLOSED again.
    Not internally synchronized. Call it from a single event loop; callers on
    several threads must wrap it in a lock.
    """

    def __init__(
        self,
        config: "CircuitBreakerConfig",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self._clock = clock or utcnow
        self._breakers: Dict[str, CircuitBreakerState] = {}

    def is_open(self, key_id: str) -> bool:
        """True only while OPEN. Moves OPEN -> HALF_OPEN once reset_timeout has passed."""
        if not self.config.enabled:
            return False

        breaker = self._breakers.get(key_id)
        if breaker is None or breaker.state != CircuitState.OPEN:
            return False

        elapsed = (self._clock() - breaker.opened_at).total_seconds()
        if elapsed >= self.config.reset_timeout:
            logger.info(
                f"[BREAKER] Key {key_id}: HALF_OPEN after {elapsed:.0f}s, allowing a trial"
            )
            breaker.state = CircuitState.HALF_OPEN
            breaker.failures = 0
            return False

        return True

    def record_success(self, key_id: str, execution_id: Optional[str] = None):
        if not self.config.enabled:
            return

        now = self._clock()
        breaker = self._breakers.get(key_id)
        if breaker is None:
            self._breakers[key_id] = CircuitBreakerState(key_id=key_id, last_success_time=now)
            return

        breaker.failures = 0
        breaker.last_success_time = now

        if breaker.state == CircuitState.HALF_OPEN:
            logger.info(
                f"[BREAKER] Key {key_id}: trial succeeded, closing circuit "
                f"({execution_id or 'no-trace'})"
            )
            breaker.state = CircuitState.CLOSED
            breaker.opened_at = None

    def record_failure(self, key_id: str, message: str = "", execution_id: Optional[str] = None):
        if not self.config.enabled:
            return

        now = self._clock()
        breaker = self._breakers.get(key_id)
        if breaker is None:
            breaker = CircuitBreakerState(key_id=key_id)
            self._breakers[key_id] = breaker

        previous = breaker.last_failure_time
        if previous is not None and (now - previous).total_seconds() <= self.config.failure_window:
            breaker.failures += 1
        else:
            breaker.failures = 1
        breaker.last_failure_time = now

        logger.warning(
            f"[BREAKER] Key {key_id}: failure {breaker.failures}/{self.config.failure_threshold} "
            f"- {message[:100]} ({execution_id or 'no-trace'})"
        )

        if breaker.state == CircuitState.HALF_OPEN:
            logger.warning(f"[BREAKER] Key {key_id}: trial failed, reopening circuit")
            breaker.state = CircuitState.OPEN
            breaker.opened_at = now
        elif (
            breaker.state == CircuitState.CLOSED
            and breaker.failures >= self.config.failure_threshold
        ):
            logger.warning(
                f"[BREAKER] Key {key_id}: OPENING circuit after {breaker.failures} failures"
            )
            breaker.state = CircuitState.OPEN
            breaker.opened_at = now

    def get_state(self, key_id: str) -> Optional[CircuitBreakerState]:
        return self._breakers.get(key_id)

    def get_all_states(self) -> List[CircuitBreakerState]:
        return list(self._breakers.values())

    def reset(self, key_id: str):
        """Admin: force a key back to CLOSED."""
        breaker = self._breakers.get(key_id)
        if breaker:
            logger.info(f"[BREAKER] Key {key_id}: manual reset")
            breaker.state = CircuitState.CLOSED
            breaker.failures = 0
            breaker.opened_at = None

    def reset_all(self):
        """Admin: forget every key's history."""
        logger.info(f"[BREAKER] Clearing all {len(self._breakers)} circuit breakers")
        self._breakers.clear()
