from __future__ import annotations

import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from dateutil import parser as date_parser

from ordersync.errors import MoneyError, OrderValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_MONEY_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


def quantize(value: Decimal) -> Decimal:
    """Round half-up to whole cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_equal(left: Decimal | None, right: Decimal | None) -> bool:
    if left is None or right is None:
        return False
    return quantize(left) == quantize(right)


def divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator == 0:
        raise MoneyError(f"Cannot divide {numerator} by zero")
    return numerator / denominator


def money_sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def parse_money(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))

    cleaned = str(value).strip()
    cleaned = cleaned.replace("€", "").replace("£", "").replace("$", "").replace("EUR", "")
    cleaned = cleaned.replace(" ", "").replace("\u00a0", "")
    if not cleaned:
        return None

    # "10,50" is a decimal comma; "1,466.93" is a thousands separator
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    if not _MONEY_RE.match(cleaned):
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def to_money(value: Any, field: str) -> Decimal:
    parsed = parse_money(value)
    if parsed is None:
        raise OrderValidationError(f"Invalid or missing amount for {field}: {value!r}")
    return parsed


def parse_date(value: str | None, dayfirst: bool = False) -> Optional[datetime]:
    if not value:
        return None

    cleaned = value.strip()
    if not cleaned:
        return None

    try:
        return date_parser.parse(cleaned, dayfirst=dayfirst)
    except (ValueError, TypeError, OverflowError):
        return None


def format_money(value: Decimal) -> str:
    return f"{quantize(value):.2f}"
