"""Conversions between Stripe payload values and stored values."""

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

_CENTS = Decimal("0.01")


def cents_to_dollars(cents: int | Decimal | None) -> Decimal:
    """Convert a Stripe minor-unit amount to dollars with two places."""
    if cents is None:
        return Decimal("0.00")
    return (Decimal(cents) / 100).quantize(_CENTS, rounding=ROUND_HALF_UP)


def parse_amount(value: str | int | Decimal | None) -> Decimal | None:
    """Parse a dollar amount from session metadata (strings like "25" or "25.00")."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except ArithmeticError:
        return None


def timestamp_to_iso(timestamp: int | Decimal | None) -> str | None:
    """Convert a Stripe unix timestamp to an ISO-8601 UTC string."""
    if timestamp is None:
        return None
    return dt.datetime.fromtimestamp(int(timestamp), tz=dt.UTC).isoformat()


def utc_now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def tax_year_for(transaction_date: str) -> int:
    """Tax year of a transaction, taken from its own date."""
    return dt.datetime.fromisoformat(transaction_date).year


def stripe_id(value: Any) -> str | None:
    """Id of a Stripe reference that may be a plain id or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def session_email(session: dict[str, Any]) -> str | None:
    """Payer email of a checkout session."""
    details = session.get("customer_details") or {}
    return details.get("email") or session.get("customer_email")
