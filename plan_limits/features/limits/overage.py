"""
Overage report for plan changes.

Lists every limit on which current usage exceeds what a target plan allows,
e.g. to warn an owner before a downgrade.
"""

from datetime import datetime
from typing import List, Optional

from plan_limits.core import cache
from plan_limits.core.clock import resolve_now
from plan_limits.features.limits.messages import build_overage_message
from plan_limits.features.limits.service import LimitChecker
from plan_limits.models.owner import as_owner_ref
from plan_limits.models.plan import Plan
from plan_limits.models.status import OverageItem, OverageReport


class OverageReporter:
    def __init__(self, checker: LimitChecker):
        self.checker = checker

    def report(self, owner, target_plan, now: Optional[datetime] = None) -> List[OverageItem]:
        """
        Args:
            owner: Billable owner
            target_plan: Plan or plan key to compare against

        Returns:
            OverageItem per limit that is over the target plan's amount
        """
        ref = as_owner_ref(owner)
        now = resolve_now(self.checker.clock, now)
        plan = target_plan if isinstance(target_plan, Plan) else self.checker.catalog.get(target_plan)

        items: List[OverageItem] = []
        with cache.evaluation_scope():
            for limit_key, config in plan.limits.items():
                if config.is_unlimited:
                    continue
                usage = self._usage_against(ref, limit_key, config, now)
                over_by = max(0, usage - config.amount)
                if over_by <= 0:
                    continue
                state = self.checker.grace.get_state(ref, limit_key, now)
                items.append(OverageItem(
                    limit_key=limit_key,
                    kind="per_period" if config.is_periodic else "persistent",
                    usage=usage,
                    allowed=config.amount,
                    overage=over_by,
                    grace_active=bool(state and state.grace_active(now)),
                    grace_ends_at=state.grace_ends_at if state else None,
                ))
        return items

    def _usage_against(self, owner, limit_key, config, now) -> int:
        # Usage is counted under the target plan's config (scope, period), not the current plan's
        if config.is_periodic:
            window = self.checker.periods.window_for(owner, config.per, now)
            return self.checker.usage.get_usage(owner, limit_key, window)
        return self.checker.counters.count(owner, limit_key, config.count_scope)

    def report_with_message(self, owner, target_plan, now: Optional[datetime] = None) -> OverageReport:
        items = self.report(owner, target_plan, now=now)
        plan_key = target_plan.key if isinstance(target_plan, Plan) else target_plan
        return OverageReport(
            target_plan=plan_key,
            items=items,
            message=build_overage_message(items, builder=self.checker.message_builder),
        )
