"""
Relative date resolution.

Relative tokens resolve to the start of a UTC day:

    today       -> 00:00 today
    yesterday   -> 00:00 yesterday
    7d          -> 00:00, 7 days ago
    2w          -> 00:00, 14 days ago
    3m          -> 00:00, 3 calendar months ago
    1y          -> 00:00, 1 calendar year ago

All datetimes are naive UTC to match the stored timestamps.
"""
import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]

RELATIVE_DATE_RE = re.compile(r'^(today|yesterday|(\d+)([dwmy]))$', re.IGNORECASE)

_ISO_FORMATS = ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S")


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_relative_date(value: Any) -> bool:
    return isinstance(value, str) and bool(RELATIVE_DATE_RE.match(value.strip()))


def _shift_months(dt: datetime, months: int) -> datetime:
    month_index = dt.year * 12 + (dt.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def resolve_relative_date(token: str, now: Optional[datetime] = None) -> datetime:
    """
    Resolve a relative date token against ``now``.

    Raises:
        ValueError: if the token is not a relative date
    """
    match = RELATIVE_DATE_RE.match(token.strip())
    if not match:
        raise ValueError(f"Not a relative date: {token!r}")

    now = now or utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    word = match.group(1).lower()
    if word == "today":
        return start_of_day
    if word == "yesterday":
        return start_of_day - timedelta(days=1)

    amount = int(match.group(2))
    unit = match.group(3).lower()
    if unit == "d":
        return start_of_day - timedelta(days=amount)
    if unit == "w":
        return start_of_day - timedelta(weeks=amount)
    if unit == "m":
        return _shift_months(start_of_day, amount)
    return _shift_months(start_of_day, amount * 12)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO date or datetime string; None when it isn't one."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in _ISO_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is not None and parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def resolve_date_value(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Resolve a relative token or ISO string to a datetime."""
    if is_relative_date(value):
        return resolve_relative_date(value, now)
    return parse_date(value)
