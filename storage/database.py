"""
SQLite Storage Layer.
Handles persistence for pending orders and per-user API credentials.
Decimal values stored as TEXT, timestamps as ISO-8601 UTC, lists as JSON.
"""

from __future__ import annotations
import sqlite3
import json
from decimal import Decimal
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from exchange.models import (
    ApiCredential, OrderError, OrderSide, OrderStatus, OrderType, PendingOrder,
)
from storage.base import Cmp, CredentialStore, OrderStore, Where, is_membership
import logging

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = (
    "id", "user_id", "bot_id", "pair", "side", "type", "volume", "price",
    "amount", "reason", "client_order_id", "userref", "execution_id",
    "status", "attempts", "max_attempts", "errors", "last_error",
    "failed_api_keys", "api_key_used", "next_retry_at", "created_at",
    "updated_at", "last_attempt_at", "completed_at", "exchange_order_id",
    "executed_price", "executed_volume",
)

_DATETIME_COLUMNS = {"next_retry_at", "created_at", "updated_at", "last_attempt_at", "completed_at"}


def to_column(name: str, value: Any) -> Any:
    """Python value -> SQLite value for a PendingOrder field."""
    if value is None:
        return None
    if name == "errors":
        return json.dumps([e.to_dict() for e in value])
    if name == "failed_api_keys":
        return json.dumps(list(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds")
    if isinstance(value, Decimal):
        return str(value)
    return value


class Database(OrderStore, CredentialStore):
    """SQLite database manager with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self):
        """Initialize database connection and create tables."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()
        logger.info(f"[DB] Connected to {self.db_path}")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database not connected"
        return self._conn

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS pending_orders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                bot_id TEXT NOT NULL,
                pair TEXT NOT NULL,
                side TEXT NOT NULL,
                type TEXT NOT NULL,
                volume TEXT NOT NULL,
                price TEXT,
                amount TEXT,
                reason TEXT,
                client_order_id TEXT NOT NULL,
                userref INTEGER NOT NULL,
                execution_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                errors TEXT NOT NULL DEFAULT '[]',
                last_error TEXT,
                failed_api_keys TEXT NOT NULL DEFAULT '[]',
                api_key_used TEXT,
                next_retry_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_attempt_at TEXT,
                completed_at TEXT,
                exchange_order_id TEXT,
                executed_price TEXT,
                executed_volume TEXT
            );

            CREATE TABLE IF NOT EXISTS api_keys (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                api_key TEXT NOT NULL,
                api_secret TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_orders_status ON pending_orders(status);
            CREATE INDEX IF NOT EXISTS idx_orders_bot_status ON pending_orders(bot_id, status);
            CREATE INDEX IF NOT EXISTS idx_orders_client_order_id ON pending_orders(client_order_id);
            CREATE INDEX IF NOT EXISTS idx_orders_user ON pending_orders(user_id);
            CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys(user_id);
        """)
        self.conn.commit()

    # ==================== Order Operations ====================

    def create(self, order: PendingOrder) -> PendingOrder:
        """Insert a new order, assigning its id if missing."""
        if not order.id:
            order.id = self.new_id()
        values = [to_column(c, getattr(order, c)) for c in _ORDER_COLUMNS]
        self.conn.execute(
            f"INSERT INTO pending_orders ({', '.join(_ORDER_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _ORDER_COLUMNS)})",
            values,
        )
        self.conn.commit()
        return order

    def get(self, order_id: str) -> Optional[PendingOrder]:
        row = self.conn.execute(
            "SELECT * FROM pending_orders WHERE id = ?", (order_id,)
        ).fetchone()
        return self._row_to_order(row) if row else None

    def find_many(
        self,
        where: Where,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[PendingOrder]:
        clause, params = self._where_clause(where)
        sql = f"SELECT * FROM pending_orders{clause}"
        if order_by:
            self._check_column(order_by)
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {order_by} {direction}, id {direction}"
        else:
            sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_order(r) for r in rows]

    def update(
        self,
        order_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Iterable] = None,
    ) -> bool:
        if not patch:
            return False
        for name in patch:
            self._check_column(name)
        assignments = ", ".join(f"{name} = ?" for name in patch)
        params = [to_column(name, value) for name, value in patch.items()]
        sql = f"UPDATE pending_orders SET {assignments} WHERE id = ?"
        params.append(order_id)
        if only_if_status is not None:
            statuses = [to_column("status", s) for s in only_if_status]
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        cursor = self.conn.execute(sql, params)
        self.conn.commit()
        return cursor.rowcount == 1

    def count(self, where: Where) -> int:
        clause, params = self._where_clause(where)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM pending_orders{clause}", params
        ).fetchone()
        return row["n"]

    def delete_many(self, where: Where) -> int:
        clause, params = self._where_clause(where)
        cursor = self.conn.execute(f"DELETE FROM pending_orders{clause}", params)
        self.conn.commit()
        return cursor.rowcount

    # ==================== Credential Operations ====================

    def list_credentials(self, user_id: str) -> List[ApiCredential]:
        rows = self.conn.execute(
            "SELECT * FROM api_keys WHERE user_id = ? AND is_active = 1 ORDER BY seq",
            (user_id,),
        ).fetchall()
        return [
            ApiCredential(
                id=r["id"],
                user_id=r["user_id"],
                name=r["name"],
                api_key=r["api_key"],
                api_secret=r["api_secret"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    def add_credential(self, credential: ApiCredential) -> None:
        self.conn.execute(
            """INSERT INTO api_keys (id, user_id, name, api_key, api_secret, is_active)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                credential.id, credential.user_id, credential.name,
                credential.api_key, credential.api_secret, int(credential.is_active),
            ),
        )
        self.conn.commit()
        logger.info(f"[DB] Added API key {credential.name} for user {credential.user_id}")

    # ==================== Helpers ====================

    def _check_column(self, name: str):
        if name not in _ORDER_COLUMNS:
            raise ValueError(f"Unknown order column: {name}")

    def _where_clause(self, where: Where) -> Tuple[str, List[Any]]:
        parts: List[str] = []
        params: List[Any] = []
        for name, expected in where.items():
            self._check_column(name)
            if isinstance(expected, Cmp):
                parts.append(f"{name} {expected.op} ?")
                params.append(to_column(name, expected.value))
            elif is_membership(expected):
                values = list(expected)
                if not values:
                    parts.append("0")
                    continue
                parts.append(f"{name} IN ({', '.join('?' for _ in values)})")
                params.extend(to_column(name, v) for v in values)
            elif expected is None:
                parts.append(f"{name} IS NULL")
            else:
                parts.append(f"{name} = ?")
                params.append(to_column(name, expected))
        clause = f" WHERE {' AND '.join(parts)}" if parts else ""
        return clause, params

    def _row_to_order(self, row) -> PendingOrder:
        def dt(name: str) -> Optional[datetime]:
            return datetime.fromisoformat(row[name]) if row[name] else None

        return PendingOrder(
            id=row["id"],
            user_id=row["user_id"],
            bot_id=row["bot_id"],
            pair=row["pair"],
            side=OrderSide(row["side"]),
            type=OrderType(row["type"]),
            volume=row["volume"],
            price=row["price"],
            amount=Decimal(row["amount"]) if row["amount"] else None,
            reason=row["reason"],
            client_order_id=row["client_order_id"],
            userref=row["userref"],
            execution_id=row["execution_id"],
            status=OrderStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            errors=[OrderError.from_dict(e) for e in json.loads(row["errors"] or "[]")],
            last_error=row["last_error"],
            failed_api_keys=json.loads(row["failed_api_keys"] or "[]"),
            api_key_used=row["api_key_used"],
            next_retry_at=dt("next_retry_at"),
            created_at=dt("created_at"),
            updated_at=dt("updated_at"),
            last_attempt_at=dt("last_attempt_at"),
            completed_at=dt("completed_at"),
            exchange_order_id=row["exchange_order_id"],
            executed_price=row["executed_price"],
            executed_volume=row["executed_volume"],
        )
