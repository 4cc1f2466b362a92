from __future__ import annotations

from domain.errors import InvalidOrderNumberError

_DIGITS = frozenset("0123456789")


def is_valid_order_number(number: str) -> bool:
    """
    Return True if `number` is a non-empty ASCII digit string passing the
    Luhn mod-10 check.

    Works on the string directly, so arbitrarily long numbers and leading
    zeros are handled without converting to an integer.
    """

    if not number or not set(number) <= _DIGITS:
        return False

    total = 0
    # Rightmost digit is the check digit; every second digit left of it doubles.
    for position, char in enumerate(reversed(number)):
        digit = ord(char) - ord("0")
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_order_number(number: str) -> str:
    """Return `number` unchanged or raise `InvalidOrderNumberError`."""

    if not is_valid_order_number(number):
        raise InvalidOrderNumberError(number)
    return number
