"""Plan limit enforcement: quotas, allowances, grace periods and feature gates."""
from plan_limits.engine import LimitEngine
from plan_limits.features.plans.catalog import PlanCatalog
from plan_limits.models.owner import OwnerRef
from plan_limits.models.plan import UNLIMITED, AfterLimit, LimitConfig, Plan
from plan_limits.models.status import LimitResult, LimitStatus, Severity

__all__ = [
    "LimitEngine",
    "PlanCatalog",
    "OwnerRef",
    "UNLIMITED",
    "AfterLimit",
    "LimitConfig",
    "Plan",
    "LimitResult",
    "LimitStatus",
    "Severity",
]
