"""
Exchange error types and classification.
All string matching on exchange error text lives here.
"""

from __future__ import annotations
from typing import Optional, Tuple
from exchange.models import ErrorKind


class ExchangeError(Exception):
    """Raised by exchange clients. The message is the raw exchange/transport text."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class KrakenAPIError(ExchangeError):
    """Kraken answered with a non-empty error[] list."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"Kraken API Error: {', '.join(self.errors)}")


class OrderValidationError(ValueError):
    """Order spec rejected before it reaches the queue."""


# Ordered, first match wins.
_INSUFFICIENT_FUNDS: Tuple[str, ...] = (
    "insufficient funds",
    "insufficient balance",
)

_INVALID_CREDENTIAL: Tuple[str, ...] = (
    "permission denied",
    "invalid key",
    "invalid api key",
    "invalid credential",
    "invalid signature",
    "invalid nonce",
)

_INVALID_REQUEST: Tuple[str, ...] = (
    "invalid arguments",
    "invalid pair",
    "unknown asset pair",
    "invalid volume",
    "volume minimum not met",
    "unknown instrument",
    "invalid price",
)

_TRANSIENT: Tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "service unavailable",
    "unavailable",
    "busy",
    "cloudflare",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "http 520",
    "http 522",
    "http 524",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "econnrefused",
    "connection refused",
    "network error",
    "network",
)


def classify_error(message: str) -> ErrorKind:
    """Map raw error text onto an ErrorKind."""
    text = (message or "").lower()

    if any(p in text for p in _INSUFFICIENT_FUNDS):
        return ErrorKind.INSUFFICIENT_FUNDS
    if any(p in text for p in _INVALID_CREDENTIAL):
        return ErrorKind.INVALID_CREDENTIAL
    if any(p in text for p in _INVALID_REQUEST):
        return ErrorKind.INVALID_REQUEST
    if any(p in text for p in _TRANSIENT):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def is_retryable_kind(kind: ErrorKind) -> bool:
    return kind not in (ErrorKind.INVALID_REQUEST, ErrorKind.INVALID_CREDENTIAL)


def is_retryable_error(message: str) -> bool:
    """
    Insufficient funds, transient and unrecognised errors are retryable.
    Bad input and bad credentials are not.
    """
    return is_retryable_kind(classify_error(message))
