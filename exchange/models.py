"""
Data models for the order execution pipeline.
Volumes and prices travel as decimal strings; Decimal is used for any arithmetic.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.RETRY)
TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.FAILED)


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class CircuitState(Enum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Reject requests
    HALF_OPEN = "half_open"  # One trial allowed


class ErrorKind(Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_REQUEST = "invalid_request"
    INVALID_CREDENTIAL = "invalid_credential"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class ExchangeOrderState(Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class OrderError:
    """One entry in an order's append-only error history."""
    timestamp: datetime
    message: str
    key_used: Optional[str] = None
    execution_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"timestamp": self.timestamp.isoformat(), "message": self.message}
        if self.key_used is not None:
            data["key_used"] = self.key_used
        if self.execution_id is not None:
            data["execution_id"] = self.execution_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "OrderError":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            message=data["message"],
            key_used=data.get("key_used"),
            execution_id=data.get("execution_id"),
        )


@dataclass
class OrderSpec:
    """What the strategy layer asks for."""
    user_id: str
    bot_id: str
    pair: str
    side: OrderSide
    volume: str
    type: OrderType = OrderType.MARKET
    price: Optional[str] = None
    amount: Optional[Decimal] = None     # Quote-currency notional
    reason: Optional[str] = None


@dataclass
class PendingOrder:
    """One intent to buy/sell, with its full execution lifecycle."""
    id: str
    user_id: str
    bot_id: str
    pair: str
    side: OrderSide
    type: OrderType
    volume: str
    client_order_id: str
    userref: int
    execution_id: str
    price: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    errors: List[OrderError] = field(default_factory=list)
    last_error: Optional[str] = None
    failed_api_keys: List[str] = field(default_factory=list)
    api_key_used: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    exchange_order_id: Optional[str] = None
    executed_price: Optional[str] = None
    executed_volume: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "pair": self.pair,
            "side": self.side.value,
            "type": self.type.value,
            "volume": self.volume,
            "price": self.price,
            "amount": str(self.amount) if self.amount is not None else None,
            "reason": self.reason,
            "client_order_id": self.client_order_id,
            "userref": self.userref,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "errors": [e.to_dict() for e in self.errors],
            "last_error": self.last_error,
            "failed_api_keys": list(self.failed_api_keys),
            "api_key_used": self.api_key_used,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exchange_order_id": self.exchange_order_id,
            "executed_price": self.executed_price,
            "executed_volume": self.executed_volume,
        }


@dataclass
class CircuitBreakerState:
    """Health of a single API credential."""
    key_id: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "key_id": self.key_id,
            "state": self.state.value,
            "failures": self.failures,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


@dataclass
class ApiCredential:
    """An exchange API key pair belonging to a user."""
    id: str
    user_id: str
    name: str
    api_key: str
    api_secret: str
    is_active: bool = True


@dataclass
class PlaceResult:
    """
    Tagged outcome of an order placement.
    accepted=True carries exchange_order_id; otherwise error_kind + message.
    """
    accepted: bool
    exchange_order_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, exchange_order_id: str) -> "PlaceResult":
        return cls(accepted=True, exchange_order_id=exchange_order_id)

    @classmethod
    def rejected(cls, error_kind: ErrorKind, message: str) -> "PlaceResult":
        return cls(accepted=False, error_kind=error_kind, message=message)


@dataclass
class OrderStatusReport:
    """Normalized order status from the exchange."""
    exchange_order_id: str
    state: ExchangeOrderState
    executed_price: Optional[str] = None
    executed_volume: Optional[str] = None


@dataclass
class ExecutionResult:
    """What a single executeOrder pass resolved to."""
    order_id: str
    success: bool
    should_retry: bool = False
    exchange_order_id: Optional[str] = None
    executed_price: Optional[str] = None
    executed_volume: Optional[str] = None
    key_used: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ConditionCheck:
    """Answer from the condition validator on retries."""
    valid: bool
    reason: str = ""
