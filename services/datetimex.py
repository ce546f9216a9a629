# services/datetimex.py
from __future__ import annotations
import os
from datetime import datetime, date, time, timezone
from zoneinfo import ZoneInfo
import pandas as pd

APP_TZ = ZoneInfo(os.getenv("APP_TIMEZONE", "Asia/Jakarta"))


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Naive datetimes (e.g. read back from SQLite) are taken to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_z(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso_to_utc(s: str | None, assume_tz: ZoneInfo | None = None) -> datetime | None:
    """
    Parse a timestamp string into an aware UTC datetime.
    Strings without an offset are read in `assume_tz` (default UTC).
    """
    if not s:
        return None
    ts = pd.to_datetime(s, errors="coerce")
    if pd.isna(ts):
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize(assume_tz or timezone.utc)
    return ts.tz_convert("UTC").to_pydatetime()


def from_epoch(seconds: int | float | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def parse_due_date(s: str | None) -> datetime | None:
    """
    'YYYY-MM-DD' means end of that local day; full timestamps are parsed as-is.
    """
    if not s:
        return None
    s = str(s).strip()
    if len(s) == 10:
        try:
            return local_day_end_utc(date.fromisoformat(s))
        except ValueError:
            return None
    return parse_iso_to_utc(s, assume_tz=APP_TZ)


def local_day_end_utc(d: date) -> datetime:
    # 23:59:59 local, then convert to UTC
    local_end = datetime.combine(d, time(23, 59, 59), tzinfo=APP_TZ)
    return local_end.astimezone(timezone.utc)
