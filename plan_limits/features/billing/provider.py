"""
Subscription provider protocol.

Read-only view of an external billing system. The engine only consumes what a
provider reports about an owner's current subscription; it never writes back.
"""
from typing import Optional, Protocol
from dataclasses import dataclass
from datetime import datetime

from plan_limits.models.owner import OwnerRef

ACTIVE_STATUSES = frozenset({"active", "trialing", "grace_period"})


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription as reported by the billing provider."""
    status: str  # active, trialing, grace_period, canceled, ...
    plan_key: Optional[str] = None
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_period_anchors(self) -> bool:
        return self.current_period_start is not None and self.current_period_end is not None


class SubscriptionProvider(Protocol):
    """
    Protocol for subscription providers.

    Implementations return None when the owner has no subscription at all.
    """

    def current_subscription(self, owner: OwnerRef) -> Optional[SubscriptionSnapshot]:
        """
        Fetch the owner's current subscription.

        Args:
            owner: Billable owner

        Returns:
            SubscriptionSnapshot or None
        """
        ...


class StaticSubscriptionProvider:
    """In-memory provider keyed by owner (tests, local development)."""

    def __init__(self, subscriptions: Optional[dict] = None):
        self._subscriptions = dict(subscriptions or {})

    def set(self, owner: OwnerRef, snapshot: Optional[SubscriptionSnapshot]) -> None:
        if snapshot is None:
            self._subscriptions.pop(owner, None)
        else:
            self._subscriptions[owner] = snapshot

    def current_subscription(self, owner: OwnerRef) -> Optional[SubscriptionSnapshot]:
        return self._subscriptions.get(owner)
