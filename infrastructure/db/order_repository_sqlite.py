from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog

from domain.errors import PersistenceError
from domain.models import Order, OrderStatus, PENDING_STATUSES, SubmitOutcome
from domain.repositories import OrderRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, sqlite_transaction

logger = structlog.get_logger(__name__)


def _format_ts(value: datetime) -> str:
    # Fixed-width ISO text so lexical order matches chronological order.
    return value.isoformat(timespec="microseconds")


class SqliteOrderRepository(OrderRepository):
    """
    SQLite-backed implementation of `OrderRepository`.

    Owns the `orders` table. `number` is the primary key, which is what
    makes submission race-free: the insert either wins or reports the
    existing owner. Expects the `users`/`balances` tables created by
    `SqliteUserRepository`.
    """

    def __init__(self, db_path: str, timeout: float = DEFAULT_STORAGE_TIMEOUT) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._ensure_table()

    def _ensure_table(self) -> None:
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    number TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users (id),
                    status TEXT NOT NULL,
                    accrual TEXT,
                    uploaded_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS orders_user_idx ON orders (user_id, uploaded_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS orders_status_idx ON orders (status)")

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> Order:
        return Order(
            number=row[0],
            user_id=str(row[1]),
            status=OrderStatus(row[2]),
            accrual=Decimal(row[3]) if row[3] is not None else None,
            uploaded_at=datetime.fromisoformat(row[4]),
        )

    def add_order(self, user_id: str, number: str, uploaded_at: datetime) -> SubmitOutcome:
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            cur = conn.execute(
                """
                INSERT INTO orders (number, user_id, status, uploaded_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (number) DO NOTHING
                """,
                (number, user_id, OrderStatus.NEW.value, _format_ts(uploaded_at)),
            )
            if cur.rowcount == 1:
                return SubmitOutcome.ACCEPTED

            row = conn.execute(
                "SELECT user_id FROM orders WHERE number = ?", (number,)
            ).fetchone()
            if row is None:
                # Orders are never deleted, so a conflict without a row is corruption.
                raise PersistenceError(f"Order {number} conflicted but cannot be read back.")
            if str(row[0]) == user_id:
                return SubmitOutcome.ALREADY_OWNED_BY_SAME_USER
            return SubmitOutcome.OWNED_BY_OTHER

    def get_orders(self, user_id: str) -> List[Order]:
        with sqlite_transaction(self._db_path, self._timeout) as conn:
            cur = conn.execute(
                """
                SELECT number, user_id, status, accrual, uploaded_at
                FROM orders
                WHERE user_id = ?
                ORDER BY uploaded_at DESC, rowid DESC
                """,
                (user_id,),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def get_pending_orders(self) -> List[Order]:
        with sqlite_transaction(self._db_path, self._timeout) as conn:
            cur = conn.execute(
                """
                SELECT number, user_id, status, accrual, uploaded_at
                FROM orders
                WHERE status IN (?, ?)
                ORDER BY uploaded_at, rowid
                """,
                tuple(status.value for status in PENDING_STATUSES),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def apply_accrual(self, number: str, status: OrderStatus, accrual: Optional[Decimal]) -> bool:
        # BEGIN IMMEDIATE holds the write lock across the status update and
        # the balance read-modify-write.
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            row = conn.execute(
                "SELECT user_id, status FROM orders WHERE number = ?", (number,)
            ).fetchone()
            if row is None or OrderStatus(row[1]) not in PENDING_STATUSES:
                return False
            user_id = str(row[0])

            conn.execute(
                "UPDATE orders SET status = ?, accrual = ? WHERE number = ?",
                (status.value, str(accrual) if accrual is not None else None, number),
            )

            if accrual:
                balance_row = conn.execute(
                    "SELECT current FROM balances WHERE user_id = ?", (user_id,)
                ).fetchone()
                if balance_row is None:
                    raise PersistenceError(f"User {user_id} has no balance row.")
                new_current = Decimal(balance_row[0]) + accrual
                conn.execute(
                    "UPDATE balances SET current = ? WHERE user_id = ?",
                    (str(new_current), user_id),
                )
                logger.debug(
                    "balance_credited",
                    user_id=user_id,
                    order=number,
                    accrual=str(accrual),
                    current=str(new_current),
                )
            return True
