"""
plan_limits/features/enforcement/service.py

Grace manager: warning / grace / block state machine per (owner, limit key).

Handles:
- Idempotent exceed and block transitions (first caller wins, one event each)
- Monotonic warning announcements within a window
- Lazy reset of periodic state when the allowance window rolls over

Concurrency: the unique (owner_type, owner_id, limit_key) constraint decides
which writer creates the row, and every transition is a conditional UPDATE
(`... WHERE exceeded_at IS NULL`, `... WHERE blocked_at IS NULL`,
`... WHERE last_warning_threshold < :t`) whose rowcount decides which writer
emits the event. Events go out after the write has committed.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.exc import IntegrityError

from plan_limits.core.clock import Clock, normalize_dt, resolve_now
from plan_limits.core.database import get_db_session, enforcement_states
from plan_limits.core.errors import ConfigurationError, StorageConflictError
from plan_limits.core.retry import with_write_retry
from plan_limits.features.events.service import BLOCK, GRACE_START, WARNING, EventDispatcher, LimitEvent
from plan_limits.features.periods.service import PeriodCalculator
from plan_limits.features.plans.service import PlanResolver
from plan_limits.models.enforcement_state import EnforcementState
from plan_limits.models.owner import OwnerRef, as_owner_ref
from plan_limits.models.plan import AfterLimit, LimitConfig, unconfigured_limit

logger = logging.getLogger("plan_limits.enforcement")

Window = Tuple[datetime, datetime]


def _epoch(moment: datetime) -> int:
    return int(normalize_dt(moment).timestamp())


def _window_data(window: Optional[Window]) -> Dict[str, Any]:
    if window is None:
        return {}
    return {"window_start_epoch": _epoch(window[0]), "window_end_epoch": _epoch(window[1])}


def _row_to_state(row) -> EnforcementState:
    return EnforcementState(
        id=row.id,
        owner_type=row.owner_type,
        owner_id=row.owner_id,
        limit_key=row.limit_key,
        exceeded_at=normalize_dt(row.exceeded_at),
        blocked_at=normalize_dt(row.blocked_at),
        last_warning_threshold=row.last_warning_threshold,
        last_warning_at=normalize_dt(row.last_warning_at),
        data=dict(row.data or {}),
    )


def _owner_key_filter(owner: OwnerRef, limit_key: str):
    return (
        (enforcement_states.c.owner_type == owner.owner_type)
        & (enforcement_states.c.owner_id == owner.owner_id)
        & (enforcement_states.c.limit_key == limit_key)
    )


def is_stale(state: EnforcementState, window: Optional[Window]) -> bool:
    """True when a periodic state row belongs to a window other than `window`."""
    if window is None:
        return False
    start = normalize_dt(window[0])
    stamped = state.window_start_epoch
    if stamped is not None and stamped != _epoch(start):
        return True
    return state.exceeded_at is not None and state.exceeded_at < start


class GraceManager:
    """Persisted enforcement state transitions and queries."""

    def __init__(
        self,
        resolver: PlanResolver,
        periods: PeriodCalculator,
        events: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.resolver = resolver
        self.periods = periods
        self.events = events or EventDispatcher()
        self.clock = clock
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    # ---------- helpers ----------

    def _config(self, owner: OwnerRef, limit_key: str) -> LimitConfig:
        return self.resolver.limit_config_for(owner, limit_key) or unconfigured_limit(limit_key)

    def current_window(self, owner: OwnerRef, config: LimitConfig, now: datetime) -> Optional[Window]:
        if not config.is_periodic:
            return None
        return self.periods.window_for(owner, config.per, now)

    def _retry(self, operation: str, fn):
        return with_write_retry(operation, fn, max_attempts=self.max_attempts, backoff_seconds=self.backoff_seconds)

    def _find(self, owner: OwnerRef, limit_key: str) -> Optional[EnforcementState]:
        with get_db_session() as session:
            row = session.execute(select(enforcement_states).where(_owner_key_filter(owner, limit_key))).first()
            return _row_to_state(row) if row else None

    def _load(self, state_id: int) -> Optional[EnforcementState]:
        with get_db_session() as session:
            row = session.execute(select(enforcement_states).where(enforcement_states.c.id == state_id)).first()
            return _row_to_state(row) if row else None

    def _fresh(self, owner: OwnerRef, limit_key: str, window: Optional[Window]) -> Optional[EnforcementState]:
        state = self._find(owner, limit_key)
        if state is None or not is_stale(state, window):
            return state

        with get_db_session() as session:
            session.execute(delete(enforcement_states).where(enforcement_states.c.id == state.id))
        logger.info(
            "[grace] STALE_WINDOW_RESET",
            extra={
                "owner_type": owner.owner_type,
                "owner_id": owner.owner_id,
                "limit_key": limit_key,
                "stale_window_start_epoch": state.window_start_epoch,
                "window_start_epoch": _epoch(window[0]),
            },
        )
        return None

    def _insert_or_get(self, owner: OwnerRef, limit_key: str, data: Dict[str, Any], now: datetime) -> int:
        try:
            with get_db_session() as session:
                result = session.execute(
                    insert(enforcement_states).values(
                        owner_type=owner.owner_type,
                        owner_id=owner.owner_id,
                        limit_key=limit_key,
                        data=data,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError:
            # Lost the creation race; the winner's row is the one to update
            existing = self._find(owner, limit_key)
            if existing is None:
                raise StorageConflictError(
                    f"Enforcement state for {limit_key} vanished during creation",
                    operation="state_create",
                )
            return existing.id

    def _reload(self, state_id: int, limit_key: str, operation: str) -> EnforcementState:
        state = self._load(state_id)
        if state is None:
            raise StorageConflictError(f"Enforcement state for {limit_key} was reset concurrently", operation=operation)
        return state

    # ---------- queries ----------

    def get_state(self, owner, limit_key: str, now: Optional[datetime] = None) -> Optional[EnforcementState]:
        """Current state row, or None (stale periodic rows are discarded first)."""
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        window = self.current_window(ref, self._config(ref, limit_key), now)
        return self._retry("state_read", lambda: self._fresh(ref, limit_key, window))

    def grace_active(self, owner, limit_key: str, now: Optional[datetime] = None) -> bool:
        now = resolve_now(self.clock, now)
        state = self.get_state(owner, limit_key, now)
        return bool(state and state.grace_active(now))

    def grace_expired(self, owner, limit_key: str, now: Optional[datetime] = None) -> bool:
        now = resolve_now(self.clock, now)
        state = self.get_state(owner, limit_key, now)
        return bool(state and state.grace_expired(now))

    def grace_ends_at(self, owner, limit_key: str, now: Optional[datetime] = None) -> Optional[datetime]:
        state = self.get_state(owner, limit_key, now)
        return state.grace_ends_at if state else None

    def should_block(
        self,
        owner,
        limit_key: str,
        usage: int = 0,
        by: int = 0,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Policy decision for a prospective action adding `by` units to `usage`.

        - just_warn: never blocks
        - block_usage: blocks whenever usage + by would exceed the amount
        - grace_then_block: blocks only once grace has expired
        """
        ref = as_owner_ref(owner)
        config = self._config(ref, limit_key)
        if config.is_unlimited or config.after_limit == AfterLimit.JUST_WARN:
            return False
        if config.after_limit == AfterLimit.BLOCK_USAGE:
            return usage + by > config.amount

        now = resolve_now(self.clock, now)
        state = self.get_state(ref, limit_key, now)
        return bool(state and state.grace_expired(now))

    # ---------- transitions ----------

    def mark_exceeded(
        self,
        owner,
        limit_key: str,
        grace_period: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> EnforcementState:
        """
        Record the first crossing of the cap and start grace.

        Later callers get the existing row back unchanged; exceeded_at is never
        refreshed. GraceStart is emitted exactly once per occurrence.
        """
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        config = self._config(ref, limit_key)
        grace = grace_period if grace_period is not None else config.grace_period
        window = self.current_window(ref, config, now)

        def _write() -> Tuple[EnforcementState, bool]:
            state = self._fresh(ref, limit_key, window)
            if state is not None and state.exceeded:
                return state, False

            data = dict(state.data) if state else {}
            data.update(_window_data(window))
            data["grace_period"] = int(grace.total_seconds())
            state_id = state.id if state else self._insert_or_get(ref, limit_key, _window_data(window), now)

            with get_db_session() as session:
                result = session.execute(
                    update(enforcement_states)
                    .where((enforcement_states.c.id == state_id) & enforcement_states.c.exceeded_at.is_(None))
                    .values(exceeded_at=now, data=data, updated_at=now)
                )
                won = result.rowcount == 1
            return self._reload(state_id, limit_key, "mark_exceeded"), won

        state, won = self._retry("mark_exceeded", _write)
        if won:
            logger.info(
                "[grace] GRACE_START",
                extra={
                    "owner_type": ref.owner_type,
                    "owner_id": ref.owner_id,
                    "limit_key": limit_key,
                    "grace_ends_at": state.grace_ends_at.isoformat(),
                },
            )
            self.events.emit(
                LimitEvent(type=GRACE_START, limit_key=limit_key, owner=ref, grace_ends_at=state.grace_ends_at, occurred_at=now)
            )
        return state

    def mark_blocked(self, owner, limit_key: str, now: Optional[datetime] = None) -> EnforcementState:
        """Set blocked_at once and emit Block exactly once. exceeded_at is backfilled if unset."""
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        window = self.current_window(ref, self._config(ref, limit_key), now)

        def _write() -> Tuple[EnforcementState, bool]:
            state = self._fresh(ref, limit_key, window)
            if state is not None and state.blocked:
                return state, False
            state_id = state.id if state else self._insert_or_get(ref, limit_key, _window_data(window), now)

            with get_db_session() as session:
                result = session.execute(
                    update(enforcement_states)
                    .where((enforcement_states.c.id == state_id) & enforcement_states.c.blocked_at.is_(None))
                    .values(
                        blocked_at=now,
                        exceeded_at=func.coalesce(enforcement_states.c.exceeded_at, now),
                        updated_at=now,
                    )
                )
                won = result.rowcount == 1
            return self._reload(state_id, limit_key, "mark_blocked"), won

        state, won = self._retry("mark_blocked", _write)
        if won:
            logger.warning(
                "[grace] BLOCKED",
                extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id, "limit_key": limit_key},
            )
            self.events.emit(LimitEvent(type=BLOCK, limit_key=limit_key, owner=ref, occurred_at=now))
        return state

    def maybe_emit_warning(self, owner, limit_key: str, threshold: float, now: Optional[datetime] = None) -> bool:
        """
        Announce `threshold` if it is above the last announced one.

        Returns:
            True if this call emitted the warning
        """
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
            raise ConfigurationError(f"Warning threshold must be in (0, 1], got {threshold!r}")
        threshold = float(threshold)
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        window = self.current_window(ref, self._config(ref, limit_key), now)

        def _write() -> bool:
            state = self._fresh(ref, limit_key, window)
            if state is not None and state.last_warning_threshold is not None and state.last_warning_threshold >= threshold:
                return False
            state_id = state.id if state else self._insert_or_get(ref, limit_key, _window_data(window), now)

            with get_db_session() as session:
                result = session.execute(
                    update(enforcement_states)
                    .where(
                        (enforcement_states.c.id == state_id)
                        & or_(
                            enforcement_states.c.last_warning_threshold.is_(None),
                            enforcement_states.c.last_warning_threshold < threshold,
                        )
                    )
                    .values(last_warning_threshold=threshold, last_warning_at=now, updated_at=now)
                )
                return result.rowcount == 1

        emitted = self._retry("maybe_emit_warning", _write)
        if emitted:
            self.events.emit(LimitEvent(type=WARNING, limit_key=limit_key, owner=ref, threshold=threshold, occurred_at=now))
        return emitted

    def reset(self, owner, limit_key: str) -> bool:
        """Delete the state row unconditionally. Returns True if one existed."""
        ref = as_owner_ref(owner)

        def _write() -> bool:
            with get_db_session() as session:
                result = session.execute(delete(enforcement_states).where(_owner_key_filter(ref, limit_key)))
                return result.rowcount > 0

        removed = self._retry("state_reset", _write)
        logger.info(
            "[grace] RESET",
            extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id, "limit_key": limit_key, "removed": removed},
        )
        return removed
