from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from academy.config import settings


APP_TIMEZONE = settings.app_timezone or "UTC"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def local_now(self, tz: str) -> datetime:
        return datetime.now(ZoneInfo(tz))

    def utc_now(self) -> datetime:
        """Naive UTC instant, the form every DateTime column is stored in."""
        return self.now().astimezone(timezone.utc).replace(tzinfo=None)


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError("Naive datetime not allowed in business logic")
    return dt


def utc_now_naive() -> datetime:
    return default_time_provider.utc_now()


default_time_provider = TimeProvider()
