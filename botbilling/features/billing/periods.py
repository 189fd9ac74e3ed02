"""
Billing period arithmetic.

monthly = +1 calendar month, yearly = +1 calendar year, clamped to the last
day of the target month (relativedelta does the clamping).
"""
from datetime import datetime, timezone
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from botbilling.core.errors import ValidationError


CYCLE_DELTAS = {
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_period(billing_cycle: str, anchor: datetime) -> Tuple[datetime, datetime]:
    """
    Compute (start, end) of a billing period starting at anchor.

    New subscriptions anchor on now; renewals anchor on the previous
    period's end so periods chain without gaps.

    Raises:
        ValidationError: Unknown billing cycle
    """
    delta = CYCLE_DELTAS.get(billing_cycle)
    if delta is None:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle!r}")
    start = as_utc(anchor)
    return start, start + delta
