"""Column validators shared by the ORM models.

Hooked up with ``@validates`` so a bad value is refused whichever service
writes it.
"""

from decimal import Decimal, InvalidOperation


def non_negative(key: str, value):
    """Money and counters: ``None`` or >= 0."""
    if value is None:
        return value
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key} must be a number, got {value!r}")
    if amount < 0:
        raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def in_range(key: str, value, low: int, high: int):
    if value is not None and not low <= value <= high:
        raise ValueError(f"{key} must be between {low} and {high}, got {value}")
    return value


def validate_list(key: str, value):
    """JSON columns holding arrays (order items)."""
    if value is not None and not isinstance(value, list):
        raise ValueError(f"{key} must be a list, got {type(value).__name__}")
    return value


def validate_dict(key: str, value):
    """JSON columns holding objects (guest contact, print settings)."""
    if value is not None and not isinstance(value, dict):
        raise ValueError(f"{key} must be a dict, got {type(value).__name__}")
    return value
