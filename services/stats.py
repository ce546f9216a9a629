# services/stats.py
from __future__ import annotations
from datetime import datetime

import pandas as pd

from models.payments_store import list_payments_for_owner
from services.datetimex import now_utc
from services.payments.errors import ValidationFailed

RANGES = {
    "week": pd.DateOffset(weeks=1),
    "month": pd.DateOffset(months=1),
    "year": pd.DateOffset(years=1),
}


def payments_frame(owner: str | None) -> pd.DataFrame:
    df = pd.DataFrame(list_payments_for_owner(owner),
                      columns=["amount", "status", "due_date", "paid_at"])
    for col in ("due_date", "paid_at"):
        df[col] = pd.to_datetime(df[col], utc=True, errors="coerce")
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0.0)
    return df


def payment_stats(owner: str | None, time_range: str = "month",
                  now: datetime | None = None) -> dict:
    """
    Dashboard numbers for one owner (None = every property):
      totalRevenue     sum of payments paid inside the range
      pendingPayments  payments still pending
      dueThisWeek      pending payments due in the next 7 days
      overduePayments  payments marked overdue
    """
    if time_range not in RANGES:
        raise ValidationFailed(f"range must be one of {'|'.join(RANGES)}")
    now_ts = pd.Timestamp(now or now_utc())
    if now_ts.tzinfo is None:
        now_ts = now_ts.tz_localize("UTC")
    start = now_ts - RANGES[time_range]

    df = payments_frame(owner)
    paid = df[(df["status"] == "paid") & df["paid_at"].between(start, now_ts)]
    pending = df[df["status"] == "pending"]
    due_soon = pending[pending["due_date"].between(now_ts, now_ts + pd.Timedelta(days=7))]

    return {
        "range": time_range,
        "totalRevenue": round(float(paid["amount"].sum()), 2),
        "pendingPayments": int(len(pending)),
        "dueThisWeek": int(len(due_soon)),
        "overduePayments": int((df["status"] == "overdue").sum()),
    }
