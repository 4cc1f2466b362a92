from __future__ import annotations

from dataclasses import dataclass

import structlog

from domain.repositories import BalanceRepository, OrderRepository, UserRepository
from infrastructure.db.balance_repository_postgres import PostgresBalanceRepository
from infrastructure.db.balance_repository_sqlite import SqliteBalanceRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT
from infrastructure.db.order_repository_postgres import PostgresOrderRepository
from infrastructure.db.order_repository_sqlite import SqliteOrderRepository
from infrastructure.db.user_repository_postgres import PostgresUserRepository
from infrastructure.db.user_repository_sqlite import SqliteUserRepository

logger = structlog.get_logger(__name__)

_SQLITE_PREFIX = "sqlite:///"
_POSTGRES_PREFIXES = ("postgres://", "postgresql://")


@dataclass
class LedgerStore:
    """The three repositories backed by one database."""

    users: UserRepository
    orders: OrderRepository
    balances: BalanceRepository


def open_store(database_uri: str, timeout: float = DEFAULT_STORAGE_TIMEOUT) -> LedgerStore:
    """
    Build the repositories for `database_uri`.

    `postgres://` / `postgresql://` URIs select Postgres; `sqlite:///path`
    or a bare file path selects SQLite. Tables are created on first use.
    Users must be created first: orders and withdrawals reference them.
    """

    if database_uri.startswith(_POSTGRES_PREFIXES):
        logger.info("store_opening", engine="postgres")
        users = PostgresUserRepository(database_uri, timeout)
        return LedgerStore(
            users=users,
            orders=PostgresOrderRepository(database_uri, timeout),
            balances=PostgresBalanceRepository(database_uri, timeout),
        )

    db_path = database_uri[len(_SQLITE_PREFIX):] if database_uri.startswith(_SQLITE_PREFIX) else database_uri
    logger.info("store_opening", engine="sqlite", path=db_path)
    users = SqliteUserRepository(db_path, timeout)
    return LedgerStore(
        users=users,
        orders=SqliteOrderRepository(db_path, timeout),
        balances=SqliteBalanceRepository(db_path, timeout),
    )
