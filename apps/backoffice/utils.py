from __future__ import annotations

import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from dateutil import parser


def now_ts() -> float:
    return float(time.time())


def parse_any_date(value: Any) -> Optional[date]:
    """Best-effort date parser for stored invoice/due dates (ISO strings, epochs, datetimes)."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except Exception:
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text)
        except Exception:
            try:
                dt = parser.parse(text, fuzzy=True)
            except Exception:
                return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date()


def today_iso(now: float | None = None) -> str:
    ts = now_ts() if now is None else float(now)
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def add_days_iso(day: str, days: int) -> str:
    base = parse_any_date(day) or datetime.now(timezone.utc).date()
    return (base + timedelta(days=int(days))).isoformat()


_MC_PREFIX = re.compile(r"^MC-?", re.IGNORECASE)


def clean_mc_number(value: Any) -> Optional[str]:
    """Strip an optional MC- prefix and any non-digits: 'MC-012345' -> '012345'."""
    if value is None:
        return None
    s = _MC_PREFIX.sub("", str(value).strip())
    s = re.sub(r"\D", "", s)
    return s or None


def mask_secret(value: str) -> str:
    s = str(value or "")
    if len(s) <= 8:
        return "***"
    return f"{s[:4]}...{s[-4:]}"
