from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol

from domain.models import (
    AccrualResult,
    Balance,
    Order,
    OrderStatus,
    SubmitOutcome,
    User,
    Withdrawal,
)


class UserRepository(Protocol):
    """
    Abstraction over user persistence.

    Implementations are responsible for:
    - Mapping between database rows and the `User` domain model.
    - Creating the user's balance row together with the user.
    - Hiding any SQL / driver details from the application layer.
    """

    def get_by_login(self, login: str) -> Optional[User]:
        """Return the user with the given login, or None if not found."""

        ...

    def create_user(self, login: str, password_hash: str) -> User:
        """
        Persist a new user with a zero balance.

        Raises `ConflictError` if the login is already taken.
        """

        ...


class OrderRepository(Protocol):
    """
    Persistence abstraction for submitted orders.

    Order numbers form one namespace shared by all users; implementations
    must enforce uniqueness at the storage level rather than by a
    check-then-insert sequence.
    """

    def add_order(self, user_id: str, number: str, uploaded_at: datetime) -> SubmitOutcome:
        """
        Insert a NEW order unless the number already exists.

        Returns ACCEPTED for a fresh number, otherwise reports whether the
        existing row belongs to `user_id` or to someone else.
        """

        ...

    def get_orders(self, user_id: str) -> List[Order]:
        """Return the user's orders, most recently uploaded first."""

        ...

    def get_pending_orders(self) -> List[Order]:
        """Return every order still in NEW or PROCESSING."""

        ...

    def apply_accrual(self, number: str, status: OrderStatus, accrual: Optional[Decimal]) -> bool:
        """
        Move a pending order to `status` and credit `accrual` to its owner.

        The status update and the balance credit happen in one transaction.
        Returns False without changing anything if the order is no longer
        pending (already reconciled by an earlier pass).
        """

        ...


class BalanceRepository(Protocol):
    """Persistence abstraction for balances and withdrawals."""

    def get_balance(self, user_id: str) -> Balance:
        """Return both balance fields from a single row read."""

        ...

    def withdraw(
        self,
        user_id: str,
        order_number: str,
        amount: Decimal,
        processed_at: datetime,
    ) -> Withdrawal:
        """
        Debit `amount` and record the withdrawal atomically.

        The balance row is locked for the duration of the check and the
        debit. Raises `InsufficientFundsError` and changes nothing if
        `current < amount`.
        """

        ...

    def get_withdrawals(self, user_id: str) -> List[Withdrawal]:
        """Return the user's withdrawals, most recently processed first."""

        ...


class AccrualClient(Protocol):
    """Read access to the external accrual service."""

    def get_order(self, number: str, timeout: Optional[float] = None) -> Optional[AccrualResult]:
        """
        Fetch the accrual service's view of an order.

        Returns None when the service does not know the order yet.
        """

        ...
