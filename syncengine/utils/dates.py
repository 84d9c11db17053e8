"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone

import pendulum

DEFAULT_TZ = "Europe/Stockholm"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz(tz_name: str | None = None) -> pendulum.DateTime:
    tz = pendulum.timezone(tz_name or timezone_name())
    return pendulum.now(tz)


def today_in_tz(tz_name: str | None = None) -> date:
    return now_in_tz(tz_name).date()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_date(value: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` date."""
    return date.fromisoformat(value)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a provider or stored timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    parsed = pendulum.parse(str(value))
    if not isinstance(parsed, datetime):
        raise ValueError(f"Not a timestamp: {value!r}")
    utc = parsed.in_timezone("UTC")
    return datetime(
        utc.year, utc.month, utc.day, utc.hour, utc.minute, utc.second, utc.microsecond, tzinfo=timezone.utc
    )


def to_utc_iso(value: str | datetime | None) -> str | None:
    """Render a timestamp as UTC ISO-8601 with microseconds so string order is time order."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def local_date(value: str | datetime | None, tz_name: str | None = None) -> date | None:
    """Calendar date of a timestamp in the shop's timezone."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return pendulum.instance(parsed).in_timezone(tz_name or timezone_name()).date()


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def date_range(start: date, end: date) -> list[date]:
    days = (end - start).days
    return [start + timedelta(days=offset) for offset in range(days + 1)]
