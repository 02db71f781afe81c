"""Date helpers for billing periods.

All datetimes in this service are naive UTC to match the database columns.
"""

import logging
import math
from calendar import monthrange
from datetime import datetime, timezone

from paygate.billing.plans import get_plan

logger = logging.getLogger(__name__)

_SENTINELS = {"", "null", "none", "undefined", "invalid date"}


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | float | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to naive UTC datetime."""
    if ts is None or ts <= 0:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by ``months`` calendar months.

    The day is clamped to the last day of the target month, so Jan 31 + 1
    month is Feb 28/29 rather than rolling into March.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_period_end(plan: str, start: datetime) -> datetime:
    """End of one billing period of ``plan`` starting at ``start``.

    Annual plans run a year; every other plan (monthly, premium, and the
    unknown-plan fallback) runs a month.
    """
    return add_months(start, get_plan(plan).interval_months)


def days_remaining(end: datetime | None, now: datetime | None = None) -> int | None:
    """Whole days left until ``end`` (rounded up, never negative)."""
    if end is None:
        return None
    now = now or utcnow()
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def parse_end_date(value: object) -> datetime | None:
    """Coerce an incoming end date into a naive UTC datetime.

    Returns ``None`` for anything that is not a real date: ``None``, empty or
    sentinel strings ("null", "Invalid Date"), and unparseable values. Callers
    drop the field when ``None`` comes back.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return ts_to_naive(value)
        except (OverflowError, OSError, ValueError):
            logger.warning("Out-of-range end date timestamp %r dropped", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in _SENTINELS:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable end date %r dropped", value)
            return None
        return parse_end_date(parsed)
    logger.warning("Unsupported end date type %s dropped", type(value).__name__)
    return None
