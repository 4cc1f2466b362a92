from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List

from domain.errors import InsufficientFundsError, PersistenceError
from domain.models import Balance, Withdrawal
from domain.repositories import BalanceRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, postgres_transaction


class PostgresBalanceRepository(BalanceRepository):
    """
    Postgres-backed implementation of `BalanceRepository`.

    Manages the `withdrawals` table; balance rows belong to
    `PostgresUserRepository`.
    """

    def __init__(self, dsn: str, timeout: float = DEFAULT_STORAGE_TIMEOUT) -> None:
        self._dsn = dsn
        self._timeout = timeout
        self._ensure_table()

    def _ensure_table(self) -> None:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS withdrawals (
                        id BIGSERIAL PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users (id),
                        order_number TEXT NOT NULL,
                        sum NUMERIC(14, 2) NOT NULL CHECK (sum > 0),
                        processed_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS withdrawals_user_idx "
                    "ON withdrawals (user_id, processed_at)"
                )

    @staticmethod
    def _to_domain(row: tuple) -> Withdrawal:
        return Withdrawal(
            order=row[0],
            sum=row[1],
            processed_at=row[2],
            user_id=str(row[3]),
        )

    def get_balance(self, user_id: str) -> Balance:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT current, withdrawn FROM balances WHERE user_id = %s",
                    (user_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise PersistenceError(f"User {user_id} has no balance row.")
                return Balance(current=row[0], withdrawn=row[1])

    def withdraw(
        self,
        user_id: str,
        order_number: str,
        amount: Decimal,
        processed_at: datetime,
    ) -> Withdrawal:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT current FROM balances WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise PersistenceError(f"User {user_id} has no balance row.")
                current = row[0]
                if current < amount:
                    raise InsufficientFundsError(user_id, amount, current)

                cur.execute(
                    """
                    UPDATE balances
                    SET current = current - %s, withdrawn = withdrawn + %s
                    WHERE user_id = %s
                    """,
                    (amount, amount, user_id),
                )
                cur.execute(
                    """
                    INSERT INTO withdrawals (user_id, order_number, sum, processed_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user_id, order_number, amount, processed_at),
                )
        return Withdrawal(
            order=order_number,
            sum=amount,
            processed_at=processed_at,
            user_id=user_id,
        )

    def get_withdrawals(self, user_id: str) -> List[Withdrawal]:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT order_number, sum, processed_at, user_id
                    FROM withdrawals
                    WHERE user_id = %s
                    ORDER BY processed_at DESC, id DESC
                    """,
                    (user_id,),
                )
                return [self._to_domain(row) for row in cur.fetchall()]
