from __future__ import annotations

import re
from datetime import MINYEAR, date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "Asia/Jakarta"

MONTH_TOKEN = re.compile(r"^(\d{4})-(\d{2})$")
ONE_MICROSECOND = timedelta(microseconds=1)


def load_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def parse_month_token(value: str) -> date:
    match = MONTH_TOKEN.match(value.strip())
    if not match:
        raise ValueError("Invalid month format. Use YYYY-MM.")
    year, month = int(match.group(1)), int(match.group(2))
    if year < 1 or not 1 <= month <= 12:
        raise ValueError("Invalid month format. Use YYYY-MM.")
    return date(year, month, 1)


def parse_month_value(value: str) -> date:
    """Accept ``YYYY-MM`` or a ``YYYY-MM-DD`` date and return the month start."""
    try:
        return parse_month_token(value)
    except ValueError:
        try:
            return month_start(datetime.strptime(value.strip(), "%Y-%m-%d").date())
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def format_month_token(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    first = month_start(value)
    if first.month == 12:
        return first.replace(day=31)
    return shift_month(first, 1) - timedelta(days=1)


def resolve_month(token: str, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the inclusive ``(first instant, last instant)`` of a month.

    Bounds are wall-clock times in ``tz``. The result depends only on the
    token and the zone, never on the current time.
    """
    first_day = parse_month_token(token)
    start = datetime.combine(first_day, time.min, tzinfo=tz)
    end = datetime.combine(month_end(first_day), time.max, tzinfo=tz)
    return start, end


def current_month_token(now: datetime, tz: tzinfo) -> str:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return format_month_token(now.astimezone(tz).date())


def resolve_month_or_current(
    token: Optional[str], tz: tzinfo, now: Optional[datetime] = None
) -> Tuple[str, datetime, datetime]:
    if not token:
        token = current_month_token(now or datetime.now(timezone.utc), tz)
    start, end = resolve_month(token, tz)
    return token, start, end


def parse_day(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Invalid date format. Use YYYY-MM-DD.") from exc


def resolve_day_range(
    from_value: Optional[str], to_value: Optional[str], tz: tzinfo
) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = None
    end = None
    if from_value:
        start = datetime.combine(parse_day(from_value), time.min, tzinfo=tz)
    if to_value:
        end = datetime.combine(parse_day(to_value), time.max, tzinfo=tz)
    if start and end and start > end:
        raise ValueError("from must be on or before to.")
    return start, end


def localize(value: datetime, tz: tzinfo) -> datetime:
    """Attach ``tz`` to naive wall-clock input; leave aware values alone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def to_storage(value: datetime, tz: tzinfo) -> datetime:
    """Convert to naive UTC, clamping instants past either end of the calendar.

    ``0001-01`` east of UTC and ``9999-12`` west of it fall outside what
    ``datetime`` can hold once shifted to UTC; those bounds become
    ``datetime.min`` / ``datetime.max`` so range queries still work.
    """
    try:
        return localize(value, tz).astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError:
        return datetime.min if value.year == MINYEAR else datetime.max


def from_storage(value: datetime, tz: tzinfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    try:
        return value.astimezone(tz)
    except OverflowError:
        edge = datetime.min if value.year == MINYEAR else datetime.max
        return edge.replace(tzinfo=tz)


def local_date(value: datetime, tz: tzinfo) -> date:
    return from_storage(value, tz).date()
