from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import structlog
from werkzeug.security import check_password_hash, generate_password_hash

from domain.errors import AuthenticationError, UserNotFoundError, ValidationError
from domain.luhn import validate_order_number
from domain.models import Balance, Order, SubmitOutcome, User, Withdrawal, to_points
from domain.repositories import BalanceRepository, OrderRepository, UserRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_credentials(login: str, password: str) -> Optional[str]:
    if not isinstance(login, str) or not login.strip():
        return "Login must not be empty."
    if not isinstance(password, str) or not password:
        return "Password must not be empty."
    return None


def _parse_positive_amount(amount) -> Decimal:
    try:
        value = to_points(amount, exact=True)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Amount {amount!r} is not a valid points amount.") from None
    if value <= 0:
        raise ValidationError("Amount must be greater than zero.")
    return value


def _resolve_user(login: str, user_repo: UserRepository) -> User:
    user = user_repo.get_by_login(login)
    if user is None:
        raise UserNotFoundError(login)
    return user


def register_user(login: str, password: str, user_repo: UserRepository) -> User:
    """
    Create an account with a zero balance.

    The password is stored as a salted hash; a taken login raises
    `ConflictError` from the repository.
    """

    error = _validate_credentials(login, password)
    if error:
        raise ValidationError(error)

    user = user_repo.create_user(login, generate_password_hash(password))
    logger.info("user_registered", user_id=user.id, login=login)
    return user


def authenticate_user(login: str, password: str, user_repo: UserRepository) -> User:
    error = _validate_credentials(login, password)
    if error:
        raise ValidationError(error)

    user = user_repo.get_by_login(login)
    if user is None or not check_password_hash(user.password_hash, password):
        logger.info("authentication_failed", login=login)
        raise AuthenticationError("Wrong login or password.")
    return user


def submit_order(
    login: str,
    number: str,
    user_repo: UserRepository,
    order_repo: OrderRepository,
) -> SubmitOutcome:
    """
    Register an order number for the caller.

    The number is checked before the store is touched. Ownership is decided
    by the repository's atomic insert: the first submitter of a number owns
    it, a repeat by the owner is reported but creates nothing.
    """

    number = validate_order_number(number.strip() if isinstance(number, str) else "")
    user = _resolve_user(login, user_repo)

    outcome = order_repo.add_order(user.id, number, _utcnow())
    logger.info("order_submitted", user_id=user.id, order=number, outcome=outcome.value)
    return outcome


def list_orders(login: str, user_repo: UserRepository, order_repo: OrderRepository) -> List[Order]:
    user = _resolve_user(login, user_repo)
    return order_repo.get_orders(user.id)


def get_balance(login: str, user_repo: UserRepository, balance_repo: BalanceRepository) -> Balance:
    user = _resolve_user(login, user_repo)
    return balance_repo.get_balance(user.id)


def list_withdrawals(
    login: str,
    user_repo: UserRepository,
    balance_repo: BalanceRepository,
) -> List[Withdrawal]:
    user = _resolve_user(login, user_repo)
    return balance_repo.get_withdrawals(user.id)


def withdraw(
    login: str,
    order_number: str,
    amount,
    user_repo: UserRepository,
    balance_repo: BalanceRepository,
) -> Withdrawal:
    """
    Spend `amount` points against a new order number.

    - The order number must pass the Luhn check.
    - The check against `current` and the debit happen under the
      repository's balance-row lock; `InsufficientFundsError` leaves the
      balance and history untouched.
    """

    order_number = validate_order_number(
        order_number.strip() if isinstance(order_number, str) else ""
    )
    value = _parse_positive_amount(amount)
    user = _resolve_user(login, user_repo)

    withdrawal = balance_repo.withdraw(user.id, order_number, value, _utcnow())
    logger.info("balance_withdrawn", user_id=user.id, order=order_number, sum=str(value))
    return withdrawal
