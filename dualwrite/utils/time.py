from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

UTC_TZ = ZoneInfo("UTC")


def now_utc() -> datetime:
    return datetime.now(tz=UTC_TZ)


def to_utc(dt: datetime) -> datetime:
    """
    Convert datetime to UTC.

    Contract:
    - If dt is naive, treat it as UTC. SQLite hands back naive datetimes for
      columns we always write in UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC_TZ)
    return dt.astimezone(UTC_TZ)


def days_ago(days: int | float, now: datetime | None = None) -> datetime:
    return (now or now_utc()) - timedelta(days=float(days))


def hours_ago(hours: int | float, now: datetime | None = None) -> datetime:
    return (now or now_utc()) - timedelta(hours=float(hours))


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return to_utc(dt).isoformat()


def fmt_ts_millis(dt: datetime) -> str:
    dt = to_utc(dt)
    return dt.strftime("%Y-%m-%d %H:%M:%S.") + f"{int(dt.microsecond / 1000):03d}"


def now_utc_str() -> str:
    return fmt_ts_millis(now_utc())
