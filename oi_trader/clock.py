from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_day_start(dt: datetime) -> datetime:
    utc = to_utc(dt)
    return datetime(utc.year, utc.month, utc.day, tzinfo=timezone.utc)


def next_utc_midnight(dt: datetime) -> datetime:
    return utc_day_start(dt) + timedelta(days=1)
