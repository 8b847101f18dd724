"""
plan_limits/features/limits/service.py

Limit checker: usage, remaining capacity, severity and guard decisions.

Handles:
- Usage dispatch (live counts for persistent caps, windowed counters for periodic allowances)
- Remaining / percent used / warning thresholds
- Severity classification and aggregation
- Guard decisions (check) and post-action hooks (record_usage, after_usage_changed)

Unconfigured keys are secure by default: zero allowance, blocked.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple, Union
import logging

from plan_limits.core import cache
from plan_limits.core.clock import Clock, resolve_now
from plan_limits.core.logging import log_event
from plan_limits.core.metrics import limit_decisions_total
from plan_limits.features.enforcement.service import GraceManager
from plan_limits.features.limits.messages import MessageBuilder, build_message
from plan_limits.features.periods.service import PeriodCalculator
from plan_limits.features.plans.catalog import PlanCatalog
from plan_limits.features.plans.service import PlanResolver
from plan_limits.features.usage.counters import CounterRegistry
from plan_limits.features.usage.service import UsageStore
from plan_limits.models.owner import OwnerRef, as_owner_ref
from plan_limits.models.plan import UNLIMITED, AfterLimit, LimitConfig
from plan_limits.models.status import LimitResult, LimitStatus, Severity

logger = logging.getLogger("plan_limits.limits")

Window = Tuple[datetime, datetime]


class LimitChecker:
    """Query facade over plans, usage and enforcement state."""

    def __init__(
        self,
        catalog: PlanCatalog,
        resolver: PlanResolver,
        periods: PeriodCalculator,
        usage: UsageStore,
        counters: CounterRegistry,
        grace: GraceManager,
        message_builder: Optional[MessageBuilder] = None,
        clock: Optional[Clock] = None,
    ):
        self.catalog = catalog
        self.resolver = resolver
        self.periods = periods
        self.usage = usage
        self.counters = counters
        self.grace = grace
        self.message_builder = message_builder
        self.clock = clock

    # ---------- configuration ----------

    def limit_config(self, owner, limit_key: str) -> Optional[LimitConfig]:
        return self.resolver.limit_config_for(owner, limit_key)

    def is_configured(self, owner, limit_key: str) -> bool:
        return self.limit_config(owner, limit_key) is not None

    def allows_feature(self, owner, feature_key: str) -> bool:
        """Undefined features are denied."""
        return self.resolver.effective_plan_for(owner).allows_feature(feature_key)

    def warning_thresholds(self, owner, limit_key: str) -> List[float]:
        config = self.limit_config(owner, limit_key)
        return list(config.warn_at) if config else []

    def window_for(self, owner, limit_key: str, now: Optional[datetime] = None) -> Optional[Window]:
        """Active window for a periodic limit; None for persistent or unconfigured keys."""
        config = self.limit_config(owner, limit_key)
        if config is None or not config.is_periodic:
            return None
        return self.periods.window_for(as_owner_ref(owner), config.per, resolve_now(self.clock, now))

    # ---------- usage arithmetic ----------

    def current_usage(self, owner, limit_key: str, now: Optional[datetime] = None) -> int:
        ref = as_owner_ref(owner)
        # Periodic usage is memoized per window
        window = self.window_for(ref, limit_key, now)
        key = ("usage", ref, limit_key, window[0] if window else None)
        return cache.memoize(key, lambda: self._compute_usage(ref, limit_key, window))

    def _compute_usage(self, owner: OwnerRef, limit_key: str, window: Optional[Window]) -> int:
        config = self.limit_config(owner, limit_key)
        if config is None:
            return 0
        if window is not None:
            return self.usage.get_usage(owner, limit_key, window)
        return self.counters.count(owner, limit_key, config.count_scope)

    def invalidate(self, owner, limit_key: Optional[str] = None) -> None:
        """Drop memoized usage after the caller changed owned rows mid-evaluation."""
        ref = as_owner_ref(owner)
        if limit_key is None:
            cache.clear()
        else:
            cache.evict_prefix(("usage", ref, limit_key))

    def limit_amount(self, owner, limit_key: str) -> Union[int, str]:
        config = self.limit_config(owner, limit_key)
        return config.amount if config else 0

    def remaining(self, owner, limit_key: str) -> Union[int, str]:
        amount = self.limit_amount(owner, limit_key)
        if amount == UNLIMITED:
            return UNLIMITED
        return remaining_for(amount, self.current_usage(owner, limit_key))

    def percent_used(self, owner, limit_key: str) -> float:
        return percent_for(self.limit_amount(owner, limit_key), self.current_usage(owner, limit_key))

    def within_limit(self, owner, limit_key: str, by: int = 1) -> bool:
        if not self.is_configured(owner, limit_key):
            return False
        remaining = self.remaining(owner, limit_key)
        return remaining == UNLIMITED or remaining >= by

    def should_warn(self, owner, limit_key: str, now: Optional[datetime] = None) -> Optional[float]:
        """Highest reached threshold that has not been announced yet, else None."""
        thresholds = self.warning_thresholds(owner, limit_key)
        if not thresholds:
            return None
        crossed = highest_crossed(thresholds, self.percent_used(owner, limit_key))
        if crossed is None:
            return None
        state = self.grace.get_state(owner, limit_key, now)
        last = state.last_warning_threshold if state else None
        if last is None or crossed > last:
            return crossed
        return None

    # ---------- severity ----------

    def severity(self, owner, limit_key: str, now: Optional[datetime] = None) -> Severity:
        """
        Blocked > Grace > AtLimit > Warning > Ok. Unlimited is always Ok.

        Blocked requires live usage at or over the amount; an expired grace
        state alone does not block. The state row is left as is, so the next
        over-limit check still blocks.
        """
        config = self.limit_config(owner, limit_key)
        if config is None:
            return Severity.BLOCKED
        if config.is_unlimited:
            return Severity.OK

        now = resolve_now(self.clock, now)
        used = self.current_usage(owner, limit_key, now)
        if used >= config.amount and self.grace.should_block(owner, limit_key, usage=used, by=0, now=now):
            return Severity.BLOCKED

        state = self.grace.get_state(owner, limit_key, now)
        if state is not None and state.grace_active(now):
            return Severity.GRACE
        if used >= config.amount:
            return Severity.AT_LIMIT
        if config.warn_at and percent_for(config.amount, used) >= threshold_percent(max(config.warn_at)):
            return Severity.WARNING
        return Severity.OK

    def highest_severity(self, owner, limit_keys: Iterable[str], now: Optional[datetime] = None) -> Severity:
        return max_severity(self.severity(owner, key, now) for key in limit_keys)

    # ---------- decisions ----------

    def check(
        self,
        owner,
        limit_key: str,
        by: int = 1,
        allow_system_override: bool = False,
        now: Optional[datetime] = None,
    ) -> LimitResult:
        """
        Decide whether an action adding `by` units may proceed.

        Over-limit handling by policy:
        - just_warn: allowed, warning result
        - block_usage: marks blocked, blocked result
        - grace_then_block: starts grace (allowed) or, once grace expired, marks blocked

        With allow_system_override the over-limit result is flagged
        system_override=True and no state is written.
        """
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        config = self.limit_config(ref, limit_key)

        if config is None:
            return self._decided(ref, LimitResult(
                limit_key=limit_key,
                state="blocked",
                allowed=False,
                by=by,
                system_override=allow_system_override,
                message=self._message("over_limit", limit_key, 0, 0, None, now),
            ))

        if config.is_unlimited:
            return self._decided(ref, LimitResult(
                limit_key=limit_key,
                state="within",
                allowed=True,
                by=by,
                amount=UNLIMITED,
                message=self._message("within", limit_key, None, UNLIMITED, None, now),
            ))

        used = self.current_usage(ref, limit_key, now)
        amount = config.amount
        common = {"limit_key": limit_key, "by": by, "amount": amount, "usage": used}

        if used + by > amount:
            over_message = self._message("over_limit", limit_key, used, amount, None, now)
            if allow_system_override:
                return self._decided(ref, LimitResult(
                    state="blocked", allowed=False, system_override=True,
                    percent_used=percent_for(amount, used), message=over_message, **common,
                ))

            if config.after_limit == AfterLimit.JUST_WARN:
                return self._decided(ref, LimitResult(
                    state="warning", allowed=True, percent_used=percent_for(amount, used), message=over_message, **common,
                ))

            if config.after_limit == AfterLimit.BLOCK_USAGE or self.grace.should_block(ref, limit_key, usage=used, by=by, now=now):
                self.grace.mark_blocked(ref, limit_key, now=now)
                return self._decided(ref, LimitResult(
                    state="blocked", allowed=False, percent_used=percent_for(amount, used), message=over_message, **common,
                ))

            state = self.grace.mark_exceeded(ref, limit_key, grace_period=config.grace_period, now=now)
            ends_at = state.grace_ends_at
            return self._decided(ref, LimitResult(
                state="grace",
                allowed=True,
                percent_used=percent_for(amount, used),
                grace_ends_at=ends_at,
                message=self._message("grace", limit_key, used, amount, ends_at, now),
                **common,
            ))

        after = used + by
        remaining = amount - after
        crossed = newly_crossed(config.warn_at, percent_for(amount, used), percent_for(amount, after))
        if crossed is not None:
            self.grace.maybe_emit_warning(ref, limit_key, crossed, now=now)
            return self._decided(ref, LimitResult(
                state="warning",
                allowed=True,
                percent_used=percent_for(amount, after),
                message=self._message("warning", limit_key, after, amount, None, now, remaining=remaining),
                **common,
            ))

        return self._decided(ref, LimitResult(
            state="within",
            allowed=True,
            percent_used=percent_for(amount, after),
            message=self._message("within", limit_key, after, amount, None, now, remaining=remaining),
            **common,
        ))

    def _decided(self, owner: OwnerRef, result: LimitResult) -> LimitResult:
        limit_decisions_total.inc({"state": result.state})
        if not result.allowed:
            log_event(
                "info",
                "[limits] BLOCKED",
                owner_type=owner.owner_type,
                owner_id=owner.owner_id,
                limit_key=result.limit_key,
                event_type="limit_blocked",
                extra={"usage": result.usage, "amount": result.amount, "by": result.by, "system_override": result.system_override},
            )
        return result

    def _message(self, context, limit_key, usage, amount, grace_ends_at, now, remaining=None) -> str:
        highlighted = self.catalog.highlighted_plan
        return build_message(
            context,
            limit_key,
            usage,
            amount,
            grace_ends_at,
            now=now,
            builder=self.message_builder,
            upgrade_plan=highlighted.display_name if highlighted else None,
            remaining=remaining,
        )

    # ---------- post-action hooks ----------

    def record_usage(self, owner, limit_key: str, amount: int = 1, now: Optional[datetime] = None) -> int:
        """
        Record consumed units, then run post-action checks.

        Periodic keys increment the window counter. Persistent caps count live
        rows, so only the post-action checks run.

        Returns:
            Usage after recording
        """
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        config = self.limit_config(ref, limit_key)
        if config is None:
            logger.warning(
                "[limits] UNCONFIGURED_USAGE",
                extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id, "limit_key": limit_key},
            )
            return 0

        if config.is_periodic:
            window = self.periods.window_for(ref, config.per, now)
            self.usage.increment(ref, limit_key, window, amount, now=now)
        cache.evict_prefix(("usage", ref, limit_key))

        self.after_usage_changed(ref, limit_key, now=now)
        return self.current_usage(ref, limit_key, now)

    def after_usage_changed(self, owner, limit_key: str, now: Optional[datetime] = None) -> Optional[float]:
        """
        Announce newly crossed warning thresholds and start grace once over the cap.

        just_warn only warns; block_usage never blocks here; grace_then_block
        starts grace when usage is strictly over the amount.

        Returns:
            The threshold announced by this call, if any
        """
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        config = self.limit_config(ref, limit_key)
        if config is None or config.is_unlimited:
            return None

        used = self.current_usage(ref, limit_key, now)
        announced = None
        crossed = highest_crossed(config.warn_at, percent_for(config.amount, used))
        if crossed is not None and self.grace.maybe_emit_warning(ref, limit_key, crossed, now=now):
            announced = crossed

        if config.after_limit == AfterLimit.GRACE_THEN_BLOCK and used > config.amount:
            self.grace.mark_exceeded(ref, limit_key, grace_period=config.grace_period, now=now)
        return announced

    # ---------- status ----------

    def limit_status(self, owner, limit_key: str, now: Optional[datetime] = None) -> LimitStatus:
        ref = as_owner_ref(owner)
        now = resolve_now(self.clock, now)
        config = self.limit_config(ref, limit_key)
        if config is None:
            return LimitStatus(limit_key=limit_key, configured=False, severity=Severity.BLOCKED, blocked=True)

        used = self.current_usage(ref, limit_key, now)
        severity = self.severity(ref, limit_key, now)
        state = self.grace.get_state(ref, limit_key, now)
        window = self.periods.window_for(ref, config.per, now) if config.is_periodic else None
        grace_ends_at = state.grace_ends_at if state else None

        message = None
        if severity != Severity.OK:
            context = {
                Severity.BLOCKED: "over_limit",
                Severity.GRACE: "grace",
                Severity.AT_LIMIT: "at_limit",
            }.get(severity, "warning")
            message = self._message(context, limit_key, used, config.amount, grace_ends_at, now)

        return LimitStatus(
            limit_key=limit_key,
            configured=True,
            unlimited=config.is_unlimited,
            amount=config.amount,
            usage=used,
            remaining=UNLIMITED if config.is_unlimited else remaining_for(config.amount, used),
            percent_used=percent_for(config.amount, used),
            severity=severity,
            grace_active=bool(state and state.grace_active(now)),
            grace_ends_at=grace_ends_at,
            blocked=severity == Severity.BLOCKED,
            window_start=window[0] if window else None,
            window_end=window[1] if window else None,
            message=message,
        )


def remaining_for(amount: Union[int, str], used: int) -> Union[int, str]:
    if amount == UNLIMITED:
        return UNLIMITED
    return max(0, amount - used)


def percent_for(amount: Union[int, str], used: int) -> float:
    if amount == UNLIMITED or not amount:
        return 0.0
    return min(100.0, 100.0 * used / amount)


def threshold_percent(threshold: float) -> float:
    return round(threshold * 100, 6)


def highest_crossed(thresholds: Iterable[float], percent: float) -> Optional[float]:
    crossed = [t for t in thresholds if percent >= threshold_percent(t)]
    return max(crossed) if crossed else None


def newly_crossed(thresholds: Iterable[float], before: float, after: float) -> Optional[float]:
    """Highest threshold the action moves usage across (below before, reached after)."""
    crossed = [t for t in thresholds if before < threshold_percent(t) <= after]
    return max(crossed) if crossed else None


def max_severity(severities: Iterable[Severity]) -> Severity:
    highest = Severity.OK
    for severity in severities:
        if severity.rank > highest.rank:
            highest = severity
    return highest
