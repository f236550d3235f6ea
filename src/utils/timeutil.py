"""UTC timestamp helpers matching SQLite's datetime('now') text format."""

from __future__ import annotations

from datetime import datetime, timezone

SQLITE_FMT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_str() -> str:
    return utcnow().strftime(SQLITE_FMT)


def to_str(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(SQLITE_FMT)


def parse_ts(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def hours_since(value: str | None, now: datetime | None = None) -> float:
    ts = parse_ts(value)
    if ts is None:
        return 0.0
    now = now or utcnow()
    return max(0.0, (now - ts).total_seconds() / 3600)
