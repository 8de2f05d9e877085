from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz, like the rest of the schema)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_date(s: Any) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if s is None:
        return None
    if isinstance(s, date):
        return s
    s = str(s).strip()
    if not s:
        return None
    return date.fromisoformat(s)


def clean_str(v: Any) -> str:
    """Safely convert any value to stripped string."""
    if v is None:
        return ""
    return str(v).strip()


def clean_str_list(values: Any) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    out: list[str] = []
    for v in values:
        t = clean_str(v)
        if t and t not in out:
            out.append(t)
    return out
