from __future__ import annotations

import sqlite3
import uuid
from typing import Optional

from domain.errors import ConflictError
from domain.models import User
from domain.repositories import UserRepository
from infrastructure.db.connection import DEFAULT_STORAGE_TIMEOUT, sqlite_transaction


class SqliteUserRepository(UserRepository):
    """
    SQLite-backed implementation of `UserRepository`.

    This repository owns the `users` and `balances` tables: a balance row
    is created in the same transaction as its user, so every user has
    exactly one. It is self-initialising: the tables are created if needed.
    """

    def __init__(self, db_path: str, timeout: float = DEFAULT_STORAGE_TIMEOUT) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._ensure_table()

    def _ensure_table(self) -> None:
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    login TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                    user_id TEXT PRIMARY KEY REFERENCES users (id),
                    current TEXT NOT NULL DEFAULT '0.00',
                    withdrawn TEXT NOT NULL DEFAULT '0.00'
                )
                """
            )

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> User:
        return User(
            id=str(row[0]),
            login=row[1],
            password_hash=row[2],
        )

    def get_by_login(self, login: str) -> Optional[User]:
        with sqlite_transaction(self._db_path, self._timeout) as conn:
            cur = conn.execute(
                "SELECT id, login, password_hash FROM users WHERE login = ?",
                (login,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def create_user(self, login: str, password_hash: str) -> User:
        user = User(id=uuid.uuid4().hex, login=login, password_hash=password_hash)
        with sqlite_transaction(self._db_path, self._timeout, immediate=True) as conn:
            cur = conn.execute(
                """
                INSERT INTO users (id, login, password_hash)
                VALUES (?, ?, ?)
                ON CONFLICT (login) DO NOTHING
                """,
                (user.id, user.login, user.password_hash),
            )
            if cur.rowcount == 0:
                raise ConflictError(f"Login {login!r} is already taken.")
            conn.execute("INSERT INTO balances (user_id) VALUES (?)", (user.id,))
        return user
