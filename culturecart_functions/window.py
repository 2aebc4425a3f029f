"""Aggregation windows.

A window is a half-open range [start, end) of UTC instants. The nightly
trigger aggregates "yesterday", which is the previous calendar day in a
configured timezone (UTC unless AGGREGATION_TIMEZONE says otherwise). The
host clock's local timezone is never consulted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidWindowError


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    @classmethod
    def between(cls, start: datetime, end: datetime) -> "Window":
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            raise InvalidWindowError(
                f"window start {start.isoformat()} must be before end {end.isoformat()}"
            )
        return cls(start=start, end=end)

    @property
    def key(self) -> str:
        """ISO-8601 interval string identifying this window."""
        return f"{_format(self.start)}/{_format(self.end)}"

    def range_filter(self) -> dict[str, datetime]:
        """Mongo range operator for fields that must fall inside the window."""
        return {"$gte": self.start, "$lt": self.end}


def _format(value: datetime) -> str:
    # Millisecond precision unless that would merge two distinct instants.
    if value.microsecond % 1000:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def previous_day(now: datetime | None = None, tz: str = "UTC") -> Window:
    """Return the window covering the calendar day before `now` in timezone `tz`."""
    if tz.upper() == "UTC":
        zone = timezone.utc
    else:
        try:
            zone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InvalidWindowError(f"unknown timezone {tz!r}") from e

    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    today = now.astimezone(zone).date()
    yesterday = today - timedelta(days=1)

    start = datetime.combine(yesterday, time.min, tzinfo=zone)
    end = datetime.combine(today, time.min, tzinfo=zone)
    return Window.between(start, end)
