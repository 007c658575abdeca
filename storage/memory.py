"""
In-memory store. Same contract as the SQLite store, no persistence.
Used by tests and for running several executors side by side.
"""

from __future__ import annotations
import copy
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from exchange.models import ApiCredential, PendingOrder
from storage.base import Cmp, CredentialStore, OrderStore, Where, is_membership, sort_key_for


def _matches(order: PendingOrder, where: Where) -> bool:
    for name, expected in where.items():
        actual = getattr(order, name)
        if isinstance(expected, Cmp):
            if not expected.matches(actual):
                return False
        elif is_membership(expected):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _normalize(value: Any) -> Any:
    # Accept raw enum values ("pending") as well as enum members
    return value.value if isinstance(value, Enum) else value


class InMemoryStore(OrderStore, CredentialStore):
    """Dict-backed order and credential store."""

    def __init__(self):
        self._orders: Dict[str, PendingOrder] = {}
        self._credentials: List[ApiCredential] = []

    # ==================== Orders ====================

    def create(self, order: PendingOrder) -> PendingOrder:
        if not order.id:
            order.id = self.new_id()
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} already exists")
        self._orders[order.id] = copy.deepcopy(order)
        return order

    def get(self, order_id: str) -> Optional[PendingOrder]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    def find_many(
        self,
        where: Where,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[PendingOrder]:
        found = [o for o in self._orders.values() if _matches(o, where)]
        found.sort(key=sort_key_for(order_by or "id"), reverse=descending)
        if limit is not None:
            found = found[:limit]
        return [copy.deepcopy(o) for o in found]

    def update(
        self,
        order_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Iterable] = None,
    ) -> bool:
        order = self._orders.get(order_id)
        if order is None:
            return False
        if only_if_status is not None:
            allowed = {_normalize(s) for s in only_if_status}
            if order.status.value not in allowed:
                return False
        for name, value in patch.items():
            if not hasattr(order, name):
                raise AttributeError(f"PendingOrder has no field {name!r}")
            setattr(order, name, copy.deepcopy(value))
        return True

    def count(self, where: Where) -> int:
        return sum(1 for o in self._orders.values() if _matches(o, where))

    def delete_many(self, where: Where) -> int:
        doomed = [oid for oid, o in self._orders.items() if _matches(o, where)]
        for oid in doomed:
            del self._orders[oid]
        return len(doomed)

    # ==================== Credentials ====================

    def list_credentials(self, user_id: str) -> List[ApiCredential]:
        return [c for c in self._credentials if c.user_id == user_id and c.is_active]

    def add_credential(self, credential: ApiCredential) -> None:
        self._credentials.append(credential)
