from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.INVALID, OrderStatus.PROCESSED)


# Orders in these states are still waiting on the accrual service.
PENDING_STATUSES = (OrderStatus.NEW, OrderStatus.PROCESSING)


class AccrualStatus(str, Enum):
    """Order status as reported by the external accrual service."""

    REGISTERED = "REGISTERED"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"


class SubmitOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_OWNED_BY_SAME_USER = "ALREADY_OWNED_BY_SAME_USER"
    OWNED_BY_OTHER = "OWNED_BY_OTHER"


@dataclass
class User:
    """
    A loyalty programme member.

    `login` is the opaque identity handed to the core by the outer layer;
    `id` is the internal key every other table refers to.
    """

    id: str
    login: str
    password_hash: str


@dataclass
class Order:
    """
    A purchase receipt submitted for reward points.

    `number` is kept as the exact digit string the user submitted, so
    leading zeros survive and no numeric range is assumed.
    """

    number: str
    user_id: str
    status: OrderStatus
    uploaded_at: datetime
    accrual: Optional[Decimal] = None


@dataclass
class Balance:
    current: Decimal
    withdrawn: Decimal


@dataclass
class Withdrawal:
    order: str
    sum: Decimal
    processed_at: datetime
    user_id: str


@dataclass
class AccrualResult:
    """Parsed answer of the accrual service for a single order."""

    order: str
    status: AccrualStatus
    accrual: Optional[Decimal] = None

    @property
    def is_actionable(self) -> bool:
        return self.status != AccrualStatus.REGISTERED

    def to_order_status(self) -> OrderStatus:
        return OrderStatus(self.status.value)


POINTS_QUANTUM = Decimal("0.01")


def to_points(value, exact: bool = False) -> Decimal:
    """
    Convert a JSON number / string / Decimal to a points amount.

    Floats go through `str` first so 729.98 stays 729.98 instead of its
    binary approximation. NaN and infinities raise `ValueError`. With
    `exact=True` an amount finer than 0.01 raises `ValueError` instead of
    being rounded.
    """

    if isinstance(value, bool):
        raise TypeError("Boolean is not a points amount.")
    if isinstance(value, float):
        value = str(value)
    raw = Decimal(value)
    if not raw.is_finite():
        raise ValueError(f"{value!r} is not a finite points amount.")
    points = raw.quantize(POINTS_QUANTUM)
    if exact and points != raw:
        raise ValueError(f"{value!r} has more than two decimal places.")
    return points
