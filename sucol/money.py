"""Fixed-point currency helpers shared by the billing view model."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

PESO_SIGN = "₱"


def to_decimal(value: Any) -> Decimal:
    """Coerce an API value to an unrounded :class:`Decimal`.

    Missing, empty, and non-numeric values become zero, matching how the
    billing API's loosely typed payloads have always been read.
    """

    if value is None:
        return Decimal(0)
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, Decimal):
        candidate = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return Decimal(0)
        try:
            candidate = Decimal(text)
        except InvalidOperation:
            return Decimal(0)
    if not candidate.is_finite():
        return Decimal(0)
    return candidate


def to_money(value: Any) -> Decimal:
    """Return *value* as a cent-quantised amount."""

    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Any) -> str:
    return f"{to_money(value):,.2f}"


def format_peso(value: Any) -> str:
    return f"{PESO_SIGN}{format_amount(value)}"


__all__ = ["CENT", "ZERO", "PESO_SIGN", "to_decimal", "to_money", "format_amount", "format_peso"]
