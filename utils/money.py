# utils/money.py
# Decimal helpers shared by every money calculation

from decimal import Decimal, ROUND_HALF_UP
from typing import Any

ZERO = Decimal("0")
CENT = Decimal("0.01")
UNIT = Decimal("1")


def to_decimal(value: Any) -> Decimal:
    """Coerce DB/JSON numbers to Decimal without float artefacts. None -> 0."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_amount(value: Any) -> Decimal:
    """Round half-up to whole currency units."""
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


def round_cents(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_float(value: Any) -> float:
    """JSON-friendly rendering used in API payloads."""
    return float(round_cents(value))
