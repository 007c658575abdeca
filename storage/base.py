"""
Store contracts used by the order queue and executor.
Any backend that implements these can replace the SQLite store.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from exchange.models import ApiCredential, PendingOrder

Where = Dict[str, Any]

_OPS = ("<", "<=", ">", ">=")


@dataclass(frozen=True)
class Cmp:
    """Comparison filter value, e.g. {"updated_at": Cmp("<", cutoff)}."""
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in _OPS:
            raise ValueError(f"Unsupported comparison: {self.op}")

    def matches(self, actual: Any) -> bool:
        if actual is None:
            return False
        if self.op == "<":
            return actual < self.value
        if self.op == "<=":
            return actual <= self.value
        if self.op == ">":
            return actual > self.value
        return actual >= self.value


def is_membership(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


class OrderStore:
    """
    Keyed order storage.
    where: field -> scalar (==), collection (IN) or Cmp.
    """

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def create(self, order: PendingOrder) -> PendingOrder:
        raise NotImplementedError

    def get(self, order_id: str) -> Optional[PendingOrder]:
        raise NotImplementedError

    def find_one(self, where: Where, order_by: Optional[str] = None) -> Optional[PendingOrder]:
        found = self.find_many(where, order_by=order_by, limit=1)
        return found[0] if found else None

    def find_many(
        self,
        where: Where,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[PendingOrder]:
        raise NotImplementedError

    def update(
        self,
        order_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Iterable] = None,
    ) -> bool:
        """Single atomic write. Returns False if the row was missing or its status didn't match."""
        raise NotImplementedError

    def count(self, where: Where) -> int:
        raise NotImplementedError

    def delete_many(self, where: Where) -> int:
        raise NotImplementedError


class CredentialStore:
    """Per-user exchange API credentials."""

    def list_credentials(self, user_id: str) -> List[ApiCredential]:
        """Active credentials for the user, in insertion order."""
        raise NotImplementedError

    def add_credential(self, credential: ApiCredential) -> None:
        raise NotImplementedError


def sort_key_for(order_by: str):
    def key(order: PendingOrder):
        value = getattr(order, order_by)
        if isinstance(value, datetime):
            value = value.timestamp()
        return (value is None, value if value is not None else 0, order.id)
    return key
