"""
plan_limits/features/plans/service.py

Plan assignment and resolution.

Handles:
- Manual plan assignment (create, update, remove)
- Effective plan resolution across assignment, subscription and default plan
"""

from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError

from plan_limits.core import cache
from plan_limits.core.clock import normalize_dt, utcnow
from plan_limits.core.config import RESOLUTION_SOURCES, settings
from plan_limits.core.database import get_db_session, plan_assignments
from plan_limits.core.errors import ConfigurationError
from plan_limits.features.billing.provider import SubscriptionProvider
from plan_limits.features.plans.catalog import PlanCatalog
from plan_limits.models.owner import OwnerRef, as_owner_ref
from plan_limits.models.plan import LimitConfig, Plan
from plan_limits.models.plan_assignment import PlanAssignment

logger = logging.getLogger("plan_limits.plans")


def _row_to_assignment(row) -> PlanAssignment:
    return PlanAssignment(
        owner_type=row.owner_type,
        owner_id=row.owner_id,
        plan_key=row.plan_key,
        source=row.source,
        assigned_at=normalize_dt(row.assigned_at),
    )


def assign_plan(
    owner,
    plan_key: str,
    catalog: PlanCatalog,
    source: str = "manual",
    now: Optional[datetime] = None,
) -> PlanAssignment:
    """
    Assign plan to owner (creates or updates).

    Args:
        owner: Billable owner
        plan_key: Plan to assign
        catalog: Plan catalog used to verify the plan exists
        source: Free-form origin tag (manual, migration, support, ...)

    Returns:
        PlanAssignment instance

    Raises:
        PlanNotFoundError: If plan_key doesn't exist
    """
    ref = as_owner_ref(owner)
    catalog.get(plan_key)
    assigned_at = normalize_dt(now) or utcnow()

    owner_filter = (
        (plan_assignments.c.owner_type == ref.owner_type)
        & (plan_assignments.c.owner_id == ref.owner_id)
    )
    values = {"plan_key": plan_key, "source": source, "assigned_at": assigned_at}

    try:
        with get_db_session() as session:
            session.execute(
                insert(plan_assignments).values(owner_type=ref.owner_type, owner_id=ref.owner_id, **values)
            )
    except IntegrityError:
        with get_db_session() as session:
            session.execute(update(plan_assignments).where(owner_filter).values(**values))

    cache.evict(("plan", ref))
    logger.info(
        "[plans] ASSIGNED",
        extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id, "plan_key": plan_key, "source": source},
    )
    return PlanAssignment(owner_type=ref.owner_type, owner_id=ref.owner_id, **values)


def remove_assignment(owner) -> bool:
    """Remove the owner's manual assignment. Returns True if one existed."""
    ref = as_owner_ref(owner)
    with get_db_session() as session:
        result = session.execute(
            delete(plan_assignments).where(
                (plan_assignments.c.owner_type == ref.owner_type)
                & (plan_assignments.c.owner_id == ref.owner_id)
            )
        )
        removed = result.rowcount > 0

    cache.evict(("plan", ref))
    if removed:
        logger.info("[plans] UNASSIGNED", extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id})
    return removed


def get_assignment(owner) -> Optional[PlanAssignment]:
    """Get owner's manual assignment, if any."""
    ref = as_owner_ref(owner)
    with get_db_session() as session:
        row = session.execute(
            select(plan_assignments).where(
                (plan_assignments.c.owner_type == ref.owner_type)
                & (plan_assignments.c.owner_id == ref.owner_id)
            )
        ).first()

        if not row:
            return None
        return _row_to_assignment(row)


def list_assignments(plan_key: Optional[str] = None) -> List[PlanAssignment]:
    with get_db_session() as session:
        query = select(plan_assignments)
        if plan_key:
            query = query.where(plan_assignments.c.plan_key == plan_key)
        rows = session.execute(query.order_by(plan_assignments.c.assigned_at)).all()
        return [_row_to_assignment(row) for row in rows]


class PlanResolver:
    """
    Resolves the effective plan for an owner.

    Sources are tried in priority order (PLAN_RESOLUTION_ORDER by default):
    - assignment: manual row in plan_limit_assignments
    - subscription: active subscription mapped by plan key or price id
    - default: the catalog's default plan
    The default plan always terminates the chain.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        subscription_provider: Optional[SubscriptionProvider] = None,
        order: Optional[List[str]] = None,
    ):
        self.catalog = catalog
        self.subscription_provider = subscription_provider
        self.order = list(order or settings.resolution_order())
        unknown = [source for source in self.order if source not in RESOLUTION_SOURCES]
        if unknown:
            raise ConfigurationError(f"Unknown plan resolution sources: {', '.join(unknown)}")

    def effective_plan_for(self, owner) -> Plan:
        ref = as_owner_ref(owner)
        plan, _ = cache.memoize(("plan", ref), lambda: self.resolve(ref))
        return plan

    def limit_config_for(self, owner, limit_key: str) -> Optional[LimitConfig]:
        """Limit configuration on the owner's effective plan; None when not configured."""
        return self.effective_plan_for(owner).limit_for(limit_key)

    def resolve(self, owner) -> Tuple[Plan, str]:
        """Return (plan, source) without consulting the evaluation cache."""
        ref = as_owner_ref(owner)
        for source in self.order:
            plan = self._from_source(source, ref)
            if plan is not None:
                return plan, source
        return self.catalog.default_plan, "default"

    def _from_source(self, source: str, ref: OwnerRef) -> Optional[Plan]:
        if source == "assignment":
            assignment = get_assignment(ref)
            if assignment is None:
                return None
            plan = self.catalog.find(assignment.plan_key)
            if plan is None:
                # Plan removed from configuration after it was assigned
                logger.warning(
                    "[plans] STALE_ASSIGNMENT",
                    extra={"owner_type": ref.owner_type, "owner_id": ref.owner_id, "plan_key": assignment.plan_key},
                )
            return plan

        if source == "subscription":
            if self.subscription_provider is None:
                return None
            subscription = self.subscription_provider.current_subscription(ref)
            if subscription is None or not subscription.is_active:
                return None
            return self.catalog.find(subscription.plan_key) or self.catalog.plan_for_price_id(subscription.price_id)

        return self.catalog.default_plan
