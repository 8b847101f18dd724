"""
plan_limits/features/periods/service.py

Allowance window calculation.

Every window is half-open [start, end) in UTC. Supported period specs:
- billing_cycle: subscription anchors, else a monthly window rolled from the
  subscription's creation date, else the calendar month
- calendar_month / calendar_week (Monday start) / calendar_day
- timedelta: from the start of the current day, `duration` forward
- callable: fn(owner) -> (start, end), validated
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple
import logging

from dateutil.relativedelta import relativedelta

from plan_limits.core.clock import Clock, normalize_dt, resolve_now
from plan_limits.core.config import settings
from plan_limits.core.errors import ConfigurationError
from plan_limits.features.billing.provider import SubscriptionProvider
from plan_limits.models.owner import OwnerRef, as_owner_ref
from plan_limits.models.plan import PeriodUnit, parse_period

logger = logging.getLogger("plan_limits.periods")

Window = Tuple[datetime, datetime]


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


def calendar_day_window(now: datetime) -> Window:
    start = _start_of_day(now)
    return start, start + timedelta(days=1)


def calendar_week_window(now: datetime) -> Window:
    start = _start_of_day(now) - timedelta(days=now.weekday())
    return start, start + timedelta(days=7)


def calendar_month_window(now: datetime) -> Window:
    start = _start_of_day(now).replace(day=1)
    return start, start + relativedelta(months=1)


def duration_window(now: datetime, duration: timedelta) -> Window:
    if duration <= timedelta(0):
        raise ConfigurationError(f"Period duration must be positive, got {duration}")
    start = _start_of_day(now)
    return start, start + duration


def monthly_window_from(anchor: datetime, now: datetime) -> Window:
    """
    Monthly window containing `now`, rolled from `anchor`.

    Each boundary is computed from the anchor itself so a day-31 anchor lands on
    the last day of shorter months without drifting afterwards.
    """
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = anchor + relativedelta(months=months)
    if start > now:
        months -= 1
        start = anchor + relativedelta(months=months)
    end = anchor + relativedelta(months=months + 1)
    if now >= end:
        months += 1
        start, end = end, anchor + relativedelta(months=months + 1)
    return start, end


def _coerce_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return normalize_dt(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ConfigurationError("Custom period window bounds must be datetimes")


def validate_custom_window(result: Any) -> Window:
    if not isinstance(result, (tuple, list)) or len(result) != 2:
        raise ConfigurationError("Custom period callable must return (start, end)")
    start, end = (_coerce_timestamp(value) for value in result)
    if end <= start:
        raise ConfigurationError("Custom period end must be after start")
    return start, end


class PeriodCalculator:
    """Maps a period and the current time to an allowance window."""

    def __init__(
        self,
        subscription_provider: Optional[SubscriptionProvider] = None,
        clock: Optional[Clock] = None,
        default_period: Optional[Any] = None,
    ):
        self.subscription_provider = subscription_provider
        self.clock = clock
        self.default_period = default_period or settings.PERIOD_CYCLE

    def window_for(self, owner, period: Any, now: Optional[datetime] = None) -> Window:
        """
        Compute the window for `period` at `now`.

        Args:
            owner: Billable owner (needed for billing-cycle and custom windows)
            period: Period alias, duration or callable; None means the configured default period
            now: Evaluation time (defaults to the clock)

        Returns:
            (start, end) with end exclusive

        Raises:
            ConfigurationError: Unknown period or invalid custom window
        """
        now = resolve_now(self.clock, now)
        kind = parse_period(period if period is not None else self.default_period)

        if kind == PeriodUnit.BILLING_CYCLE:
            return self.billing_cycle_window(as_owner_ref(owner), now)
        if kind == PeriodUnit.CALENDAR_MONTH:
            return calendar_month_window(now)
        if kind == PeriodUnit.CALENDAR_WEEK:
            return calendar_week_window(now)
        if kind == PeriodUnit.CALENDAR_DAY:
            return calendar_day_window(now)
        if isinstance(kind, timedelta):
            return duration_window(now, kind)
        if callable(kind):
            return validate_custom_window(kind(owner))

        raise ConfigurationError(f"Unknown period type: {period!r}")

    def billing_cycle_window(self, owner: OwnerRef, now: datetime) -> Window:
        if self.subscription_provider is None:
            return calendar_month_window(now)

        subscription = self.subscription_provider.current_subscription(owner)
        if subscription is None or not subscription.is_active:
            return calendar_month_window(now)

        if subscription.has_period_anchors:
            return normalize_dt(subscription.current_period_start), normalize_dt(subscription.current_period_end)
        if subscription.created_at is not None:
            return monthly_window_from(normalize_dt(subscription.created_at), now)

        logger.debug(
            "[periods] NO_ANCHORS",
            extra={"owner_type": owner.owner_type, "owner_id": owner.owner_id, "status": subscription.status},
        )
        return calendar_month_window(now)
