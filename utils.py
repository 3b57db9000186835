"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def from_timestamp(raw) -> Optional[datetime.datetime]:
    """Convert a provider unix timestamp to an aware UTC datetime."""
    if raw in (None, ""):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not parse timestamp: %r", raw)
        return None


def add_interval(start: datetime.datetime, interval: str, count: int = 1) -> datetime.datetime:
    """Add *count* billing intervals (``year``/``month``/``day``) to *start*.

    Month-end dates are clamped, so Jan 31 + 1 month is the last day of February.
    """
    if interval == "day":
        return start + datetime.timedelta(days=count)
    if interval == "year":
        months = 12 * count
    elif interval == "month":
        months = count
    else:
        raise ValueError(f"Unsupported billing interval: {interval!r}")
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------

_CENT = Decimal("0.01")


def minor_to_decimal(amount) -> Decimal:
    """Convert a provider amount in minor units (cents, paise) to a Decimal."""
    if amount in (None, ""):
        return Decimal("0.00")
    return (Decimal(int(amount)) / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def decimal_to_minor(amount: Decimal) -> int:
    """Convert a Decimal currency amount to integer minor units."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def clean_str(value) -> Optional[str]:
    """Strip *value* and map empty strings to ``None``."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None
