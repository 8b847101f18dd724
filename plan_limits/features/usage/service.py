"""
plan_limits/features/usage/service.py

Windowed usage counters for periodic allowances.

Handles:
- Reading units consumed in a window (missing row reads as zero)
- Race-safe increments (insert, or atomic add on uniqueness conflict)
"""

from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError

from plan_limits.core.clock import Clock, normalize_dt, resolve_now
from plan_limits.core.database import get_db_session, usage_windows
from plan_limits.core.errors import ConfigurationError
from plan_limits.core.retry import with_write_retry
from plan_limits.models.owner import OwnerRef, as_owner_ref
from plan_limits.models.usage import UsageRecord

logger = logging.getLogger("plan_limits.usage")

Window = Tuple[datetime, datetime]


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        owner_type=row.owner_type,
        owner_id=row.owner_id,
        limit_key=row.limit_key,
        window_start=normalize_dt(row.window_start),
        window_end=normalize_dt(row.window_end),
        used=int(row.used),
        last_used_at=normalize_dt(row.last_used_at),
    )


def _window_filter(owner: OwnerRef, limit_key: str, window_start: datetime):
    return (
        (usage_windows.c.owner_type == owner.owner_type)
        & (usage_windows.c.owner_id == owner.owner_id)
        & (usage_windows.c.limit_key == limit_key)
        & (usage_windows.c.window_start == window_start)
    )


class UsageStore:
    """Durable per-window counters, one row per (owner, limit key, window start)."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock

    def get_record(self, owner, limit_key: str, window: Window) -> Optional[UsageRecord]:
        ref = as_owner_ref(owner)
        with get_db_session() as session:
            row = session.execute(
                select(usage_windows).where(_window_filter(ref, limit_key, window[0]))
            ).first()
            return _row_to_record(row) if row else None

    def get_usage(self, owner, limit_key: str, window: Window) -> int:
        record = self.get_record(owner, limit_key, window)
        return record.used if record else 0

    def increment(self, owner, limit_key: str, window: Window, amount: int = 1, now: Optional[datetime] = None) -> int:
        """
        Add `amount` units to the window's counter.

        Concurrent first increments race on the unique window key: the loser
        falls back to an atomic `used = used + amount` on the existing row.

        Returns:
            The counter value after this increment
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ConfigurationError(f"Usage increments must be non-negative integers, got {amount!r}")
        ref = as_owner_ref(owner)
        start, end = window
        ts = resolve_now(self.clock, now)

        def _write() -> int:
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(usage_windows).values(
                            owner_type=ref.owner_type,
                            owner_id=ref.owner_id,
                            limit_key=limit_key,
                            window_start=start,
                            window_end=end,
                            used=amount,
                            last_used_at=ts,
                            created_at=ts,
                            updated_at=ts,
                        )
                    )
                return amount
            except IntegrityError:
                pass

            with get_db_session() as session:
                session.execute(
                    update(usage_windows)
                    .where(_window_filter(ref, limit_key, start))
                    .values(used=usage_windows.c.used + amount, last_used_at=ts, updated_at=ts)
                )
                used = session.execute(
                    select(usage_windows.c.used).where(_window_filter(ref, limit_key, start))
                ).scalar_one()
            return int(used)

        used = with_write_retry("usage_increment", _write)
        logger.debug(
            "[usage] INCREMENTED",
            extra={
                "owner_type": ref.owner_type,
                "owner_id": ref.owner_id,
                "limit_key": limit_key,
                "amount": amount,
                "used": used,
            },
        )
        return used

    def history(self, owner, limit_key: str, limit: int = 12) -> List[UsageRecord]:
        """Most recent windows first."""
        ref = as_owner_ref(owner)
        with get_db_session() as session:
            rows = session.execute(
                select(usage_windows)
                .where(
                    (usage_windows.c.owner_type == ref.owner_type)
                    & (usage_windows.c.owner_id == ref.owner_id)
                    & (usage_windows.c.limit_key == limit_key)
                )
                .order_by(usage_windows.c.window_start.desc())
                .limit(limit)
            ).all()
            return [_row_to_record(row) for row in rows]

    def prune_before(self, cutoff: datetime) -> int:
        """Delete rows whose window ended before `cutoff`. Operational housekeeping only."""
        with get_db_session() as session:
            result = session.execute(delete(usage_windows).where(usage_windows.c.window_end < cutoff))
            deleted = result.rowcount or 0
        logger.info("[usage] PRUNED", extra={"deleted": deleted, "cutoff": cutoff.isoformat()})
        return deleted
