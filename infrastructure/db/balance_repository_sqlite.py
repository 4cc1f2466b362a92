from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List

from domain.errors import InsufficientFundsError, PersistenceError
from domain.models import Balance, Withdrawal
from domain.repositories import BalanceRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, sqlite_transaction


class SqliteBalanceRepository(BalanceRepository):
    """
    SQLite-backed implementation of `BalanceRepository`.

    Manages the `withdrawals` table and debits the `balances` rows created
    by `SqliteUserRepository`.
    """

    def __init__(self, db_path: str, timeout: float = DEFAULT_STORAGE_TIMEOUT) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._ensure_table()

    def _ensure_table(self) -> None:
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS withdrawals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL REFERENCES users (id),
                    order_number TEXT NOT NULL,
                    sum TEXT NOT NULL,
                    processed_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS withdrawals_user_idx "
                "ON withdrawals (user_id, processed_at)"
            )

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> Withdrawal:
        return Withdrawal(
            order=row[0],
            sum=Decimal(row[1]),
            processed_at=datetime.fromisoformat(row[2]),
            user_id=str(row[3]),
        )

    @staticmethod
    def _read_balance(conn: sqlite3.Connection, user_id: str) -> Balance:
        row = conn.execute(
            "SELECT current, withdrawn FROM balances WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise PersistenceError(f"User {user_id} has no balance row.")
        return Balance(current=Decimal(row[0]), withdrawn=Decimal(row[1]))

    def get_balance(self, user_id: str) -> Balance:
        with sqlite_transaction(self._db_path, self._timeout) as conn:
            return self._read_balance(conn, user_id)

    def withdraw(
        self,
        user_id: str,
        order_number: str,
        amount: Decimal,
        processed_at: datetime,
    ) -> Withdrawal:
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            balance = self._read_balance(conn, user_id)
            if balance.current < amount:
                raise InsufficientFundsError(user_id, amount, balance.current)

            conn.execute(
                "UPDATE balances SET current = ?, withdrawn = ? WHERE user_id = ?",
                (str(balance.current - amount), str(balance.withdrawn + amount), user_id),
            )
            conn.execute(
                """
                INSERT INTO withdrawals (user_id, order_number, sum, processed_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, order_number, str(amount), processed_at.isoformat(timespec="microseconds")),
            )
        return Withdrawal(
            order=order_number,
            sum=amount,
            processed_at=processed_at,
            user_id=user_id,
        )

    def get_withdrawals(self, user_id: str) -> List[Withdrawal]:
        with sqlite_transaction(self._db_path, self._timeout) as conn:
            cur = conn.execute(
                """
                SELECT order_number, sum, processed_at, user_id
                FROM withdrawals
                WHERE user_id = ?
                ORDER BY processed_at DESC, id DESC
                """,
                (user_id,),
            )
            return [self._to_domain(row) for row in cur.fetchall()]
