"""
plan_limits/engine.py

LimitEngine wires the plan catalog, resolver, period calculator, usage store,
grace manager and limit checker together. Construct one per process and pass
it to whatever needs to enforce limits.

    engine = LimitEngine(catalog, subscription_provider=provider)
    engine.counters.register("projects", TableCounter(projects, owner_id_column="org_id"))
    engine.events.on_grace_start(notify_owner)

    with engine.evaluation():
        result = engine.check(org, "projects")
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from plan_limits.core import cache
from plan_limits.core.clock import Clock
from plan_limits.core.config import Settings, settings as default_settings
from plan_limits.features.billing.provider import SubscriptionProvider
from plan_limits.features.enforcement.service import GraceManager
from plan_limits.features.events.service import EventDispatcher
from plan_limits.features.limits.messages import MessageBuilder
from plan_limits.features.limits.overage import OverageReporter
from plan_limits.features.limits.service import LimitChecker
from plan_limits.features.limits.status import StatusContext
from plan_limits.features.periods.service import PeriodCalculator
from plan_limits.features.plans import service as plans_service
from plan_limits.features.plans.catalog import PlanCatalog
from plan_limits.features.plans.service import PlanResolver
from plan_limits.features.usage.counters import CounterRegistry
from plan_limits.features.usage.service import UsageStore
from plan_limits.models.plan import Plan
from plan_limits.models.plan_assignment import PlanAssignment
from plan_limits.models.status import LimitResult, LimitStatus, OverageItem, OverageReport, Severity


class LimitEngine:
    def __init__(
        self,
        catalog: PlanCatalog,
        *,
        subscription_provider: Optional[SubscriptionProvider] = None,
        counters: Optional[CounterRegistry] = None,
        events: Optional[EventDispatcher] = None,
        message_builder: Optional[MessageBuilder] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        cfg = settings or default_settings
        self.catalog = catalog
        self.clock = clock
        self.counters = counters or CounterRegistry()
        self.events = events or EventDispatcher()
        self.resolver = PlanResolver(catalog, subscription_provider, order=cfg.resolution_order())
        self.periods = PeriodCalculator(subscription_provider, clock=clock, default_period=cfg.PERIOD_CYCLE)
        self.usage = UsageStore(clock=clock)
        self.grace = GraceManager(
            self.resolver,
            self.periods,
            self.events,
            clock=clock,
            max_attempts=cfg.STATE_WRITE_MAX_ATTEMPTS,
            backoff_seconds=cfg.STATE_WRITE_BACKOFF_SECONDS,
        )
        self.checker = LimitChecker(
            catalog,
            self.resolver,
            self.periods,
            self.usage,
            self.counters,
            self.grace,
            message_builder=message_builder,
            clock=clock,
        )
        self.overage = OverageReporter(self.checker)

    @contextmanager
    def evaluation(self, evaluation_id: Optional[str] = None) -> Iterator[str]:
        """Scope one logical evaluation (request, job run) for memoization and log correlation."""
        with cache.evaluation_scope(evaluation_id) as eid:
            yield eid

    # ---------- plans ----------

    def effective_plan_for(self, owner) -> Plan:
        return self.resolver.effective_plan_for(owner)

    def assign_plan(self, owner, plan_key: str, source: str = "manual") -> PlanAssignment:
        return plans_service.assign_plan(owner, plan_key, self.catalog, source=source, now=self.clock() if self.clock else None)

    def remove_assignment(self, owner) -> bool:
        return plans_service.remove_assignment(owner)

    def allows_feature(self, owner, feature_key: str) -> bool:
        return self.checker.allows_feature(owner, feature_key)

    # ---------- limits ----------
    # Each call runs in one evaluation scope, joining the caller's when one is open

    def check(self, owner, limit_key: str, by: int = 1, allow_system_override: bool = False) -> LimitResult:
        with cache.evaluation_scope():
            return self.checker.check(owner, limit_key, by=by, allow_system_override=allow_system_override)

    def record_usage(self, owner, limit_key: str, amount: int = 1) -> int:
        with cache.evaluation_scope():
            return self.checker.record_usage(owner, limit_key, amount)

    def current_usage(self, owner, limit_key: str) -> int:
        with cache.evaluation_scope():
            return self.checker.current_usage(owner, limit_key)

    def remaining(self, owner, limit_key: str):
        with cache.evaluation_scope():
            return self.checker.remaining(owner, limit_key)

    def percent_used(self, owner, limit_key: str) -> float:
        with cache.evaluation_scope():
            return self.checker.percent_used(owner, limit_key)

    def within_limit(self, owner, limit_key: str, by: int = 1) -> bool:
        with cache.evaluation_scope():
            return self.checker.within_limit(owner, limit_key, by=by)

    def severity(self, owner, limit_key: str) -> Severity:
        with cache.evaluation_scope():
            return self.checker.severity(owner, limit_key)

    def highest_severity(self, owner, limit_keys: Iterable[str]) -> Severity:
        with cache.evaluation_scope():
            return self.checker.highest_severity(owner, limit_keys)

    def limit_status(self, owner, limit_key: str) -> LimitStatus:
        with cache.evaluation_scope():
            return self.checker.limit_status(owner, limit_key)

    def status(self, owner, now: Optional[datetime] = None) -> StatusContext:
        return StatusContext(self.checker, owner, now=now)

    def reset(self, owner, limit_key: str) -> bool:
        return self.grace.reset(owner, limit_key)

    # ---------- reports ----------

    def overage_report(self, owner, target_plan) -> List[OverageItem]:
        return self.overage.report(owner, target_plan)

    def overage_report_with_message(self, owner, target_plan) -> OverageReport:
        return self.overage.report_with_message(owner, target_plan)
