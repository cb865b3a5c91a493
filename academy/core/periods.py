"""Wall-clock, instant and billing-period arithmetic.

Instants are persisted as naive UTC. Everything that talks about a local
wall-clock time carries an explicit IANA zone name so results never depend on
the host timezone.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from academy.core.errors import InvalidRange


CADENCE_MONTH = 'month'
CADENCE_FOUR_WEEKS = '4-weeks'
CADENCES = (CADENCE_MONTH, CADENCE_FOUR_WEEKS)

WEEKDAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')
MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str | time) -> time:
    if isinstance(value, time):
        return value
    hh, mm = str(value).split(':', 1)
    hour = int(hh)
    minute = int(mm[:2])
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError('Invalid HH:MM time')
    return time(hour=hour, minute=minute)


def minutes_since_midnight(value: time) -> int:
    return value.hour * 60 + value.minute


def format_minutes(value: int) -> str:
    return f'{value // 60:02d}:{value % 60:02d}'


def local_to_utc(local_date: date, local_time: time, tz_name: str) -> datetime:
    """Aware UTC instant for a local wall-clock reading.

    Ambiguous readings (clocks going back) resolve to the first occurrence.
    Readings inside a spring-forward gap do not exist and raise InvalidRange.
    """
    zone = ZoneInfo(tz_name)
    naive = datetime.combine(local_date, local_time.replace(tzinfo=None))
    local = naive.replace(tzinfo=zone, fold=0)
    instant = local.astimezone(timezone.utc)
    if instant.astimezone(zone).replace(tzinfo=None) != naive:
        raise InvalidRange(
            f'{naive.isoformat()} does not exist in {tz_name}',
            local=naive.isoformat(),
            timezone=tz_name,
        )
    return instant


def utc_to_local(instant: datetime, tz_name: str) -> datetime:
    return as_utc(instant).astimezone(ZoneInfo(tz_name))


def as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_storage(instant: datetime) -> datetime:
    return as_utc(instant).replace(tzinfo=None)


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_payment_date(start: date, cadence: str, multiplier: int = 1) -> date:
    if multiplier < 1:
        raise ValueError('cadence multiplier must be at least 1')
    if cadence == CADENCE_MONTH:
        return add_months(start, multiplier)
    if cadence == CADENCE_FOUR_WEEKS:
        return start + timedelta(days=28 * multiplier)
    raise ValueError(f'Unknown cadence {cadence}')


def payment_date_after(anchor: date, current: date, cadence: str, multiplier: int = 1) -> date:
    """First payment date after ``current`` on the schedule anchored at ``anchor``.

    Months are always counted from the anchor, so a Jan 31 start bills on
    Feb 28 and then returns to Mar 31.
    """
    steps = 1
    while True:
        candidate = next_payment_date(anchor, cadence, multiplier * steps)
        if candidate > current:
            return candidate
        steps += 1


def billing_period_for(anchor: date, cadence: str, multiplier: int = 1) -> tuple[date, date]:
    """Inclusive (start, end) of the period that begins on ``anchor``."""
    return anchor, next_payment_date(anchor, cadence, multiplier) - timedelta(days=1)


def local_dates_to_utc_bounds(start: date, end: date, tz_name: str) -> tuple[datetime, datetime]:
    """Naive UTC [start, end) covering the inclusive local dates ``start``..``end``."""
    if end < start:
        raise InvalidRange('period end is before period start', start=start.isoformat(), end=end.isoformat())
    zone = ZoneInfo(tz_name)
    lower = datetime.combine(start, time(0), tzinfo=zone)
    upper = datetime.combine(end + timedelta(days=1), time(0), tzinfo=zone)
    return to_storage(lower), to_storage(upper)


def format_month_range(start: date, end: date) -> str:
    if start.year == end.year and start.month == end.month:
        return f'{start.month}'
    if start.year != end.year:
        return f'{start.month}/{start.year}-{end.month}/{end.year}'
    return f'{start.month}-{end.month}'


def duration_hours(start: datetime, end: datetime) -> Decimal:
    seconds = int((as_utc(end) - as_utc(start)).total_seconds())
    return Decimal(seconds) / Decimal(3600)
