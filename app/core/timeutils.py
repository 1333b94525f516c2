"""
Time helpers.

Database columns hold naive UTC datetimes; local wall-clock decisions
(peak window, sweeper thresholds) use the configured IANA time zone.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.core.config import settings


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(moment: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive input is assumed UTC already"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(moment: datetime, tz_name: str | None = None) -> datetime:
    """Convert a naive-UTC (or aware) datetime to the given zone"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name or settings.SWEEPER_TIMEZONE))


def is_peak_hour(moment: datetime) -> bool:
    """True when local time of ``moment`` falls in [PEAK_START_HOUR, PEAK_END_HOUR)"""
    hour = to_local(moment).hour
    return settings.PEAK_START_HOUR <= hour < settings.PEAK_END_HOUR


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, never negative"""
    return max(0, int((end - start).total_seconds() // 60))
