"""
Practice Payroll - Money and Serialization Helpers

All payroll amounts are Decimal and rounded half-up to the cent.
"""

import hashlib
import json
import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Union


ZERO = Decimal("0.00")
CENT = Decimal("0.01")

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    """Coerce to Decimal; floats go through str() so 0.1 stays 0.1."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_cents(value: Number) -> Decimal:
    """Round half-up to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_cents(values: Iterable[Number]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round_cents(total)


def format_amount(value: Number) -> str:
    """Two fraction digits, no grouping, for flat-file export."""
    amount = round_cents(value)
    if amount == 0:
        # -0.00 reads back from the database as 0.00
        amount = abs(amount)
    return f"{amount:.2f}"


def format_rand(value: Number) -> str:
    """Display format for documents e.g. R 30,000.00"""
    return f"R {round_cents(value):,.2f}"


def json_safe(value: Any) -> Any:
    """Convert Decimal, dates, UUIDs and enums so the value fits a JSON column."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, Decimal):
        # Scale-independent: 0.1800 from the database hashes like 0.18
        if value == round_cents(value):
            return format_amount(value)
        return format(value.normalize(), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(json_safe(value), sort_keys=True, separators=(",", ":"))


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
