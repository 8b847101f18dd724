"""Time helpers. All engine timestamps are timezone-aware UTC."""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_dt(value: Optional[Any]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them naive) and convert aware ones."""
    if value is None:
        return None
    if getattr(value, "tzinfo", None) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_now(clock: Optional[Clock] = None, now: Optional[datetime] = None) -> datetime:
    if now is not None:
        return normalize_dt(now)
    return normalize_dt((clock or utcnow)())
