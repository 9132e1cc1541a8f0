from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from ..config import get_settings


def get_app_tz() -> ZoneInfo:
    s = get_settings()
    try:
        return ZoneInfo(s.app.timezone)
    except Exception:
        return ZoneInfo("UTC")


def now_utc() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.utcnow().replace(tzinfo=None)


def normalize_to_utc_naive(dt: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are taken as app-local."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return from_local_to_utc_naive(dt)


def from_local_to_utc_naive(dt_local_naive: datetime) -> datetime:
    aware_local = dt_local_naive.replace(tzinfo=get_app_tz())
    return aware_local.astimezone(timezone.utc).replace(tzinfo=None)


def today_local(now: datetime | None = None) -> date:
    """Current calendar date in the app timezone. `now` is naive UTC."""
    n = (now or now_utc()).replace(tzinfo=timezone.utc)
    return n.astimezone(get_app_tz()).date()


def local_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    """Return [start, end) of a local calendar day as naive UTC datetimes."""
    start = from_local_to_utc_naive(datetime.combine(day, time.min))
    end = from_local_to_utc_naive(datetime.combine(day + timedelta(days=1), time.min))
    return start, end
