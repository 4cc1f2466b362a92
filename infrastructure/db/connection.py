"""
Connection helpers shared by the SQLite and Postgres repositories.

Each helper opens a fresh connection with a bounded timeout, runs the body
inside one transaction and closes the connection afterwards. Driver
exceptions are translated into `PersistenceError` / `StorageTimeoutError`
here so nothing above `infrastructure.db` ever sees `sqlite3` or `psycopg2`
types.
"""

from __future__ import annotations

import math
import sqlite3
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.errors
import structlog

from domain.errors import PersistenceError, StorageTimeoutError

logger = structlog.get_logger(__name__)

DEFAULT_STORAGE_TIMEOUT = 5.0

_SQLITE_BUSY_MARKERS = ("database is locked", "database table is locked", "busy")


def _is_sqlite_timeout(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and any(
        marker in message for marker in _SQLITE_BUSY_MARKERS
    )


@contextmanager
def sqlite_transaction(
    db_path: str,
    timeout: float = DEFAULT_STORAGE_TIMEOUT,
    immediate: bool = False,
) -> Iterator[sqlite3.Connection]:
    """
    Yield a SQLite connection inside an explicit transaction.

    `immediate=True` takes the database write lock up front (BEGIN
    IMMEDIATE), which serialises read-modify-write sequences against every
    other writer. Waiting for that lock is bounded by `timeout`.
    """

    try:
        conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    except sqlite3.Error as exc:
        logger.error("storage_connect_failed", engine="sqlite", error=str(exc))
        raise PersistenceError(f"Cannot open SQLite database {db_path!r}: {exc}") from exc

    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.rollback()
        if _is_sqlite_timeout(exc):
            logger.warning("storage_timeout", engine="sqlite", timeout=timeout)
            raise StorageTimeoutError(f"SQLite call timed out after {timeout}s") from exc
        logger.error("storage_error", engine="sqlite", error=str(exc))
        raise PersistenceError(str(exc)) from exc
    except BaseException:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def _postgres_connect(dsn: str, timeout: float):
    return psycopg2.connect(
        dsn,
        connect_timeout=max(1, math.ceil(timeout)),
        options=f"-c statement_timeout={int(timeout * 1000)}",
    )


@contextmanager
def postgres_transaction(
    dsn: str,
    timeout: float = DEFAULT_STORAGE_TIMEOUT,
) -> Iterator["psycopg2.extensions.connection"]:
    """
    Yield a Postgres connection inside a transaction.

    Every statement, including waits for row locks, is bounded by the
    server-side `statement_timeout`.
    """

    try:
        conn = _postgres_connect(dsn, timeout)
    except psycopg2.Error as exc:
        logger.error("storage_connect_failed", engine="postgres", error=str(exc))
        raise PersistenceError(f"Cannot connect to Postgres: {exc}") from exc

    try:
        with conn:
            yield conn
    except psycopg2.errors.QueryCanceled as exc:
        logger.warning("storage_timeout", engine="postgres", timeout=timeout)
        raise StorageTimeoutError(f"Postgres call timed out after {timeout}s") from exc
    except psycopg2.Error as exc:
        logger.error("storage_error", engine="postgres", error=str(exc))
        raise PersistenceError(str(exc)) from exc
    finally:
        conn.close()
