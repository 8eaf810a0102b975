from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def today_iso(now: datetime | None = None) -> str:
    return (now or datetime.now()).date().isoformat()


def parse_day(value: str) -> Optional[date]:
    """Parse `YYYY-MM-DD` or the date part of an ISO timestamp; None when unparsable."""
    try:
        return date.fromisoformat(str(value or "").strip()[:10])
    except ValueError:
        return None


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value or "").strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(first: str, second: str) -> Optional[int]:
    first_day, second_day = parse_day(first), parse_day(second)
    if first_day is None or second_day is None:
        return None
    return abs((second_day - first_day).days)


def hours_since(timestamp: str, now: datetime) -> Optional[float]:
    try:
        return (now - parse_timestamp(timestamp)).total_seconds() / 3600.0
    except ValueError:
        return None


def format_saved_at(saved_at: str, now: datetime | None = None) -> str:
    """Relative "saved" label for draft lists (e.g. "3 minutes ago")."""
    if not saved_at:
        return ""
    try:
        saved = parse_timestamp(saved_at)
    except ValueError:
        return ""
    seconds = int(((now or utc_now()) - saved).total_seconds())
    if seconds < 10:
        return "just now"
    if seconds < 60:
        return f"{seconds} seconds ago"
    for unit_seconds, label in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds:
            count = seconds // unit_seconds
            return f"{count} {label} ago" if count == 1 else f"{count} {label}s ago"
    return "just now"
