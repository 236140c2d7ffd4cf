from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip()
    if not s:
        return None
    s = s.replace(",", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def fixed_scale(value: Decimal, places: int) -> Decimal | None:
    """
    Return `value` at exactly `places` decimals, or None if that would drop digits.

    - Decimal("12.5"), 2 -> Decimal("12.50")
    - Decimal("12.505"), 2 -> None
    """
    if not value.is_finite():
        return None
    q = Decimal(1).scaleb(-places)
    try:
        scaled = value.quantize(q)
    except InvalidOperation:
        return None
    if scaled != value:
        return None
    return scaled
