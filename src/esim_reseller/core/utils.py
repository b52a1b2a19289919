"""Shared parsing and money utilities.

Suppliers and payment providers send timestamps and prices in several
shapes; everything is normalized here before it reaches the ledger.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    """Round a decimal to 2 places, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_money(value: Any) -> Decimal | None:
    """Parse a monetary amount into a Decimal without rounding.

    Handles formats like:
    - Numeric: 5.09, 5
    - String with currency: "$ 5.09", "$5.09", "USD 5.09"
    - String with commas: "1,234.56"

    Floats go through ``str`` so 0.1 stays 0.1 rather than its binary
    expansion.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.replace("$", "").replace("€", "").replace("£", "").replace("₹", "")
        cleaned = cleaned.replace("USD", "").replace("EUR", "").replace("INR", "")
        cleaned = cleaned.replace(",", "").strip()
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None
    return None


def minor_units_to_money(amount: Any, divisor: int = 100) -> Decimal:
    """Convert an integer amount in minor units (cents, paise) to a Decimal."""
    return to_money(Decimal(int(amount)) / Decimal(divisor))


def parse_datetime(date_str: str | None, formats: list[str] | None = None) -> datetime | None:
    """Parse datetime from various string formats.

    Args:
        date_str: Date string to parse
        formats: List of datetime formats to try. Defaults to common formats.

    Returns:
        Timezone-aware UTC datetime, or None if parsing fails
    """
    if not date_str:
        return None

    if formats is None:
        formats = [
            "%Y-%m-%dT%H:%M:%S.%fZ",
            "%Y-%m-%dT%H:%M:%SZ",
            "%Y-%m-%dT%H:%M:%S%z",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d %H:%M:%S",
        ]

    parsed: datetime | None = None
    for fmt in formats:
        try:
            parsed = datetime.strptime(date_str, fmt)
            break
        except (ValueError, TypeError):
            continue

    if parsed is None:
        normalized = date_str.replace("Z", "+00:00") if date_str.endswith("Z") else date_str
        try:
            parsed = datetime.fromisoformat(normalized)
        except (ValueError, TypeError):
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
