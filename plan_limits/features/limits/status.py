"""
Status context: one owner's standing across many limit keys.

Each context caches its computed LimitStatus per key, and runs every
computation inside an evaluation scope so plan resolution, limit config and
usage are fetched once per key no matter how many helpers touch it.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from plan_limits.core import cache
from plan_limits.core.clock import resolve_now
from plan_limits.features.limits.service import LimitChecker, max_severity
from plan_limits.models.owner import as_owner_ref
from plan_limits.models.plan import Plan
from plan_limits.models.status import LimitStatus, Severity


class StatusContext:
    def __init__(self, checker: LimitChecker, owner, now: Optional[datetime] = None):
        self.checker = checker
        self.owner = as_owner_ref(owner)
        self.now = resolve_now(checker.clock, now)
        self._plan: Optional[Plan] = None
        self._statuses: Dict[str, LimitStatus] = {}

    @property
    def effective_plan(self) -> Plan:
        if self._plan is None:
            with cache.evaluation_scope():
                self._plan = self.checker.resolver.effective_plan_for(self.owner)
        return self._plan

    def limit_status(self, limit_key: str) -> LimitStatus:
        if limit_key not in self._statuses:
            with cache.evaluation_scope():
                self._statuses[limit_key] = self.checker.limit_status(self.owner, limit_key, now=self.now)
        return self._statuses[limit_key]

    def limits(self, limit_keys: Optional[Iterable[str]] = None) -> Dict[str, LimitStatus]:
        """Statuses for `limit_keys`, or every limit on the effective plan."""
        keys = list(limit_keys) if limit_keys is not None else list(self.effective_plan.limits)
        with cache.evaluation_scope():
            return {key: self.limit_status(key) for key in keys}

    def severity_for(self, limit_key: str) -> Severity:
        return self.limit_status(limit_key).severity

    def highest_severity_for(self, *limit_keys: str) -> Severity:
        keys: List[str] = []
        for key in limit_keys:
            if isinstance(key, (list, tuple)):
                keys.extend(key)
            else:
                keys.append(key)
        with cache.evaluation_scope():
            return max_severity(self.severity_for(key) for key in keys)

    def message_for(self, limit_key: str) -> Optional[str]:
        status = self.limit_status(limit_key)
        if not status.configured:
            return None
        return status.message

    def overage_for(self, limit_key: str) -> int:
        status = self.limit_status(limit_key)
        if not status.configured or status.unlimited:
            return 0
        return max(0, status.usage - int(status.amount))

    def grace_active(self, limit_key: str) -> bool:
        return self.limit_status(limit_key).grace_active

    def grace_ends_at(self, limit_key: str) -> Optional[datetime]:
        return self.limit_status(limit_key).grace_ends_at

    def allows_feature(self, feature_key: str) -> bool:
        return self.effective_plan.allows_feature(feature_key)

    def summary(self, limit_keys: Optional[Iterable[str]] = None) -> dict:
        statuses = self.limits(limit_keys)
        return {
            "owner": {"owner_type": self.owner.owner_type, "owner_id": self.owner.owner_id},
            "plan": self.effective_plan.key,
            "highest_severity": max_severity(s.severity for s in statuses.values()).value,
            "limits": {key: status.model_dump(mode="json") for key, status in statuses.items()},
        }
