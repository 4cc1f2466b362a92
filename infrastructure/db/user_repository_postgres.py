from __future__ import annotations

import uuid
from typing import Optional

from domain.errors import ConflictError
from domain.models import User
from domain.repositories import UserRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, postgres_transaction


class PostgresUserRepository(UserRepository):
    """
    Postgres-backed implementation of `UserRepository`.

    Owns the `users` and `balances` tables. The balance row carries CHECK
    constraints so a negative `current` is rejected by the database even if
    a caller bypasses the repository.
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
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        login TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS balances (
                        user_id TEXT PRIMARY KEY REFERENCES users (id),
                        current NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (current >= 0),
                        withdrawn NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (withdrawn >= 0)
                    )
                    """
                )

    @staticmethod
    def _to_domain(row: tuple) -> User:
        return User(
            id=str(row[0]),
            login=row[1],
            password_hash=row[2],
        )

    def get_by_login(self, login: str) -> Optional[User]:
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, login, password_hash FROM users WHERE login = %s",
                    (login,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return self._to_domain(row)

    def create_user(self, login: str, password_hash: str) -> User:
        user = User(id=uuid.uuid4().hex, login=login, password_hash=password_hash)
        with postgres_transaction(self._dsn, self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO users (id, login, password_hash)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (login) DO NOTHING
                    """,
                    (user.id, user.login, user.password_hash),
                )
                if cur.rowcount == 0:
                    raise ConflictError(f"Login {login!r} is already taken.")
                cur.execute("INSERT INTO balances (user_id) VALUES (%s)", (user.id,))
        return user
