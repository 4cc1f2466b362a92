from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error the core surfaces to its callers."""


class ValidationError(LedgerError):
    """Malformed input: bad order number, empty credentials, bad amount."""


class InvalidOrderNumberError(ValidationError):
    def __init__(self, number: str) -> None:
        super().__init__(f"Order number {number!r} is not valid.")
        self.number = number


class ConflictError(LedgerError):
    """The resource is already registered (login taken, order owned)."""


class InsufficientFundsError(LedgerError):
    def __init__(self, user_id: str, requested, available) -> None:
        super().__init__(
            f"Not enough points: requested {requested}, available {available}."
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class AuthenticationError(LedgerError):
    """Unknown login or wrong password."""


class UserNotFoundError(LedgerError):
    def __init__(self, login: str) -> None:
        super().__init__(f"User {login!r} does not exist.")
        self.login = login


class TransientExternalError(LedgerError):
    """
    The accrual service is unreachable, slow or asked us to back off.

    `retry_after` carries the server's Retry-After hint in seconds, if any.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AccrualResponseError(LedgerError):
    """The accrual service answered with something we cannot use."""


class PersistenceError(LedgerError):
    """Storage failure other than the expected unique-number conflict."""


class StorageTimeoutError(PersistenceError):
    """A storage call did not complete within its timeout."""
