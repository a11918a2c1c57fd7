"""
Core Utilities

Shared helpers used across the application: clock, money, and the
parse-with-fallback helpers for JSON blobs stored in Redis and in Stripe
metadata. Metadata parsing never raises; malformed input falls back.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def to_minor_units(amount: float) -> int:
    """Convert a major-unit price (e.g. 129.99 PLN) to integer grosze/cents."""
    if amount is None:
        return 0
    quantized = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(quantized * 100)


def safe_parse_json(value: Any, fallback: Any) -> Any:
    """Parse a JSON string, returning fallback for anything that is not valid JSON text."""
    if not isinstance(value, str) or not value:
        return fallback
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return fallback


def coerce_quantity_map(value: Any) -> Dict[str, int]:
    """
    Keep only {str: non-negative int} pairs from a decoded mapping.

    Booleans, floats with a fractional part, negatives and non-numeric
    values are dropped rather than raised on.
    """
    if not isinstance(value, dict):
        return {}
    result: Dict[str, int] = {}
    for slug, amount in value.items():
        if not isinstance(slug, str) or not slug or isinstance(amount, bool):
            continue
        if isinstance(amount, float):
            if not amount.is_integer():
                continue
            amount = int(amount)
        if isinstance(amount, str):
            try:
                amount = int(amount)
            except ValueError:
                continue
        if isinstance(amount, int) and amount >= 0:
            result[slug] = amount
    return result


def parse_reserved_payload(value: Any) -> Dict[str, int]:
    """
    Decode a reservation payload into {slug: reserved_in_stock}.

    Accepts a JSON string or an already-decoded object, in either the
    record shape {"reservedInStockBySlug": {...}} or a bare {slug: amount}
    mapping. Anything else yields {}.
    """
    payload = safe_parse_json(value, {}) if isinstance(value, str) else value
    if not isinstance(payload, dict):
        return {}
    if "reservedInStockBySlug" in payload:
        return coerce_quantity_map(payload.get("reservedInStockBySlug"))
    return coerce_quantity_map(payload)
