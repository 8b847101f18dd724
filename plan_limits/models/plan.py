"""
plan_limits/models/plan.py

Plan and limit configuration models.

Plans are immutable and loaded once at startup. A plan grants boolean features
and numeric limits:
- Persistent caps (no `per`): live count of owned rows
- Periodic allowances (`per` set): count of units consumed in a time window
"""

import re
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from plan_limits.core.config import settings
from plan_limits.core.errors import ConfigurationError


UNLIMITED = "unlimited"
Amount = Union[int, Literal["unlimited"]]


class AfterLimit(str, Enum):
    """What happens once usage passes the configured amount."""
    JUST_WARN = "just_warn"
    BLOCK_USAGE = "block_usage"
    GRACE_THEN_BLOCK = "grace_then_block"


class PeriodUnit(str, Enum):
    BILLING_CYCLE = "billing_cycle"
    CALENDAR_MONTH = "calendar_month"
    CALENDAR_WEEK = "calendar_week"
    CALENDAR_DAY = "calendar_day"


PERIOD_ALIASES = {
    "billing_cycle": PeriodUnit.BILLING_CYCLE,
    "calendar_month": PeriodUnit.CALENDAR_MONTH,
    "month": PeriodUnit.CALENDAR_MONTH,
    "calendar_week": PeriodUnit.CALENDAR_WEEK,
    "week": PeriodUnit.CALENDAR_WEEK,
    "calendar_day": PeriodUnit.CALENDAR_DAY,
    "day": PeriodUnit.CALENDAR_DAY,
}

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(minute|hour|day|week)s?\s*$", re.IGNORECASE)


def parse_period(value: Any) -> Any:
    """
    Normalize a period value.

    Known aliases become PeriodUnit, duration strings ("14 days", "2 weeks")
    become timedelta. Anything else is returned untouched and rejected by the
    period calculator when it is evaluated. `True` means the configured
    PERIOD_CYCLE.
    """
    if value is True:
        value = settings.PERIOD_CYCLE
    if value is None or isinstance(value, (PeriodUnit, timedelta)) or callable(value):
        return value
    if isinstance(value, str):
        alias = PERIOD_ALIASES.get(value.strip().lower())
        if alias:
            return alias
        match = _DURATION_RE.match(value)
        if match:
            amount, unit = int(match.group(1)), match.group(2).lower()
            return timedelta(**{f"{unit}s": amount})
    return value


def _default_warn_at() -> Tuple[float, ...]:
    return tuple(settings.warn_thresholds())


class LimitConfig(BaseModel):
    """
    Configuration of one limit key inside a plan.

    amount: non-negative int or "unlimited"
    after_limit: just_warn | block_usage | grace_then_block
    grace: grace period (blocking policies only); defaults to DEFAULT_GRACE_DAYS
    warn_at: ascending fractions in (0, 1]
    per: period for periodic allowances (None for persistent caps)
    count_scope: filter narrowing which owned rows count (persistent caps only)
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    amount: Amount
    after_limit: AfterLimit = AfterLimit.GRACE_THEN_BLOCK
    grace: Optional[timedelta] = None
    warn_at: Tuple[float, ...] = Field(default_factory=_default_warn_at)
    per: Optional[Any] = None
    count_scope: Optional[Any] = None

    @model_validator(mode="before")
    @classmethod
    def _check_options(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        values = dict(data)
        key = values.get("key")
        if "to" in values and "amount" not in values:
            values["amount"] = values.pop("to")

        amount = values.get("amount")
        if amount != UNLIMITED and (isinstance(amount, bool) or not isinstance(amount, int) or amount < 0):
            raise ConfigurationError(f"Limit {key} amount must be 'unlimited' or a non-negative integer")

        after_limit = values.get("after_limit", AfterLimit.GRACE_THEN_BLOCK)
        try:
            after_limit = AfterLimit(after_limit)
        except ValueError:
            allowed = ", ".join(a.value for a in AfterLimit)
            raise ConfigurationError(f"Limit {key} after_limit must be one of {allowed}")
        values["after_limit"] = after_limit

        grace = values.get("grace")
        if grace is not None:
            if after_limit == AfterLimit.JUST_WARN:
                raise ConfigurationError(f"Limit {key} cannot have grace with just_warn after_limit")
            if isinstance(grace, (int, float)) and not isinstance(grace, bool):
                grace = timedelta(seconds=grace)
            if not isinstance(grace, timedelta) or grace < timedelta(0):
                raise ConfigurationError(f"Limit {key} grace must be a non-negative duration")
            values["grace"] = grace

        if values.get("warn_at") is not None:
            thresholds = list(values["warn_at"])
            if not all(isinstance(t, (int, float)) and not isinstance(t, bool) and 0 < t <= 1 for t in thresholds):
                raise ConfigurationError(f"Limit {key} warn_at thresholds must be numbers in (0, 1]")
            values["warn_at"] = tuple(sorted(float(t) for t in thresholds))
        else:
            values.pop("warn_at", None)

        values["per"] = parse_period(values.get("per"))
        if values["per"] is not None and values.get("count_scope") is not None:
            raise ConfigurationError(f"Limit {key} cannot combine count_scope with a per-period allowance")

        return values

    @property
    def is_unlimited(self) -> bool:
        return self.amount == UNLIMITED

    @property
    def is_periodic(self) -> bool:
        return self.per is not None

    @property
    def grace_period(self) -> timedelta:
        if self.grace is not None:
            return self.grace
        return timedelta(days=settings.DEFAULT_GRACE_DAYS)


def unconfigured_limit(key: str) -> LimitConfig:
    """Secure default for keys a plan never mentions: zero allowance, blocking."""
    return LimitConfig(key=key, amount=0, after_limit=AfterLimit.BLOCK_USAGE, warn_at=())


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Features not listed are denied. Limits not listed are treated as zero.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    name: Optional[str] = None
    description: Optional[str] = None
    features: Dict[str, bool] = Field(default_factory=dict)
    limits: Dict[str, LimitConfig] = Field(default_factory=dict)
    price_ids: Tuple[str, ...] = ()
    default: bool = False
    highlighted: bool = False

    @model_validator(mode="after")
    def _check_keys(self) -> "Plan":
        overlap = sorted(set(self.features) & set(self.limits))
        if overlap:
            raise ConfigurationError(
                f"Plan {self.key} configures {', '.join(overlap)} as both a feature and a limit"
            )
        for limit_key, config in self.limits.items():
            if config.key != limit_key:
                raise ConfigurationError(f"Plan {self.key} limit {limit_key} is registered under {config.key}")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.key.replace("_", " ").title()

    def allows_feature(self, feature_key: str) -> bool:
        return bool(self.features.get(feature_key, False))

    def limit_for(self, limit_key: str) -> Optional[LimitConfig]:
        return self.limits.get(limit_key)
