"""
Lightweight domain validation helpers.

Pure checks with no I/O. Used at engine and module boundaries to enforce
Decimal for monetary amounts and ratios.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def require_decimal(value: Any, name: str = "amount") -> None:
    """Raise ValueError unless value is a finite Decimal."""
    if not isinstance(value, Decimal):
        raise ValueError(f"{name} must be Decimal, not {type(value).__name__}")
    if not value.is_finite():
        raise ValueError(f"{name} must be finite, got {value}")


def to_decimal(value: Any, name: str = "amount") -> Decimal:
    """
    Coerce int/str/Decimal into a finite Decimal.

    Floats are rejected outright; JSON-decoded params use strings.

    Raises:
        ValueError: If the value is a float, not numeric, or not finite.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{name} must not be {type(value).__name__}: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"{name} is not a number: {value!r}") from e
    else:
        raise ValueError(f"{name} must be numeric, got {type(value).__name__}")
    require_decimal(result, name)
    return result


def require_ratio(
    value: Decimal,
    name: str,
    *,
    minimum: Decimal = Decimal("0"),
    maximum: Decimal = Decimal("1"),
) -> None:
    """Raise ValueError unless minimum <= value <= maximum."""
    require_decimal(value, name)
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got {value}")
