"""UTC time helpers shared by the ledger, billing and analytics."""

import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from tierline.core.errors import ValidationError

_PERIOD_RE = re.compile(r"(\d{4})-(0[1-9]|1[0-2])")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    return utc_now() if now is None else ensure_utc(now)


def through(value: datetime) -> datetime:
    """Exclusive window end that still covers events stamped exactly at `value`."""
    return ensure_utc(value) + timedelta(microseconds=1)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def parse_billing_period(billing_period: str) -> Tuple[datetime, datetime]:
    """Return the half-open [start, end) window for a "YYYY-MM" period."""
    match = _PERIOD_RE.fullmatch(billing_period or "")
    if not match:
        raise ValidationError(f"billing_period must be YYYY-MM, got {billing_period!r}")
    start = datetime(int(match.group(1)), int(match.group(2)), 1, tzinfo=timezone.utc)
    return start, add_months(start, 1)


def format_billing_period(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m")


def previous_billing_period(now: Optional[datetime] = None) -> str:
    start = month_start(normalize_now(now))
    return format_billing_period(start - timedelta(days=1))
