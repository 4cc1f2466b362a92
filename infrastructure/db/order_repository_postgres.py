from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog

from domain.errors import PersistenceError
from domain.models import Order, OrderStatus, PENDING_STATUSES, SubmitOutcome
from domain.repositories import OrderRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, postgres_transaction

logger = structlog.get_logger(__name__)

_ORDER_COLUMNS = "number, user_id, status, accrual, uploaded_at"


class PostgresOrderRepository(OrderRepository):
    """
    Postgres-backed implementation of `OrderRepository`.

    Accrual credits lock the owner's `balances` row with SELECT ... FOR
    UPDATE, the same lock withdrawals take, so credits and debits for one
    user never interleave.
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
                    CREATE TABLE IF NOT EXISTS orders (
                        seq BIGSERIAL,
                        number TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users (id),
                        status TEXT NOT NULL
                            CHECK (status IN ('NEW', 'PROCESSING', 'INVALID', 'PROCESSED')),
                        accrual NUMERIC(14, 2),
                        uploaded_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS orders_user_idx ON orders (user_id, uploaded_at)"
                )
                cur.execute("CREATE INDEX IF NOT EXISTS orders_status_idx ON orders (status)")

    @staticmethod
    def _to_domain(row: tuple) -> Order:
        return Order(
            number=row[0],
            user_id=str(row[1]),
            status=OrderStatus(row[2]),
            accrual=row[3],
            uploaded_at=row[4],
        )

    def add_order(self, user_id: str, number: str, uploaded_at: datetime) -> SubmitOutcome:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO orders (number, user_id, status, uploaded_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (number) DO NOTHING
                    RETURNING number
                    """,
                    (number, user_id, OrderStatus.NEW.value, uploaded_at),
                )
                if cur.fetchone() is not None:
                    return SubmitOutcome.ACCEPTED

                # ON CONFLICT waited for any concurrent inserter to commit,
                # so the winning row is visible here.
                cur.execute("SELECT user_id FROM orders WHERE number = %s", (number,))
                row = cur.fetchone()
                if row is None:
                    raise PersistenceError(f"Order {number} conflicted but cannot be read back.")
                if str(row[0]) == user_id:
                    return SubmitOutcome.ALREADY_OWNED_BY_SAME_USER
                return SubmitOutcome.OWNED_BY_OTHER

    def get_orders(self, user_id: str) -> List[Order]:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_ORDER_COLUMNS}
                    FROM orders
                    WHERE user_id = %s
                    ORDER BY uploaded_at DESC, seq DESC
                    """,
                    (user_id,),
                )
                return [self._to_domain(row) for row in cur.fetchall()]

    def get_pending_orders(self) -> List[Order]:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_ORDER_COLUMNS}
                    FROM orders
                    WHERE status IN %s
                    ORDER BY uploaded_at, seq
                    """,
                    (tuple(status.value for status in PENDING_STATUSES),),
                )
                return [self._to_domain(row) for row in cur.fetchall()]

    def apply_accrual(self, number: str, status: OrderStatus, accrual: Optional[Decimal]) -> bool:
        pending = tuple(s.value for s in PENDING_STATUSES)
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                # Conditional on the current status: a second pass over the
                # same order updates nothing and credits nothing.
                cur.execute(
                    """
                    UPDATE orders
                    SET status = %s, accrual = %s
                    WHERE number = %s AND status IN %s
                    RETURNING user_id
                    """,
                    (status.value, accrual, number, pending),
                )
                row = cur.fetchone()
                if row is None:
                    return False
                user_id = str(row[0])

                if accrual:
                    cur.execute(
                        "SELECT current FROM balances WHERE user_id = %s FOR UPDATE",
                        (user_id,),
                    )
                    if cur.fetchone() is None:
                        raise PersistenceError(f"User {user_id} has no balance row.")
                    cur.execute(
                        "UPDATE balances SET current = current + %s WHERE user_id = %s",
                        (accrual, user_id),
                    )
                    logger.debug(
                        "balance_credited",
                        user_id=user_id,
                        order=number,
                        accrual=str(accrual),
                    )
                return True
