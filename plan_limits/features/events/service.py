"""
plan_limits/features/events/service.py

Limit event dispatch.

Three channels:
- warning: owner crossed a warning threshold (at most once per threshold per window)
- grace_start: owner exceeded a cap, grace ends at grace_ends_at
- block: owner is now blocked

Handlers are registered per limit key or for "*" (all keys). Delivery is
best effort: handler errors are logged and counted, never raised back into the
evaluation that triggered them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging

from plan_limits.core.clock import utcnow
from plan_limits.core.metrics import callback_errors_total, limit_events_total
from plan_limits.models.owner import OwnerRef

logger = logging.getLogger("plan_limits.events")

WARNING = "warning"
GRACE_START = "grace_start"
BLOCK = "block"
EVENT_TYPES = (WARNING, GRACE_START, BLOCK)
ANY_KEY = "*"


@dataclass(frozen=True)
class LimitEvent:
    """Event payload handed to handlers."""
    type: str
    limit_key: str
    owner: OwnerRef
    threshold: Optional[float] = None
    grace_ends_at: Optional[datetime] = None
    occurred_at: datetime = field(default_factory=utcnow)


Handler = Callable[[LimitEvent], None]


class EventDispatcher:
    """In-process event sink with per-key and wildcard handlers."""

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], List[Handler]] = {}

    def subscribe(self, event_type: str, handler: Handler, limit_key: str = ANY_KEY) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type {event_type}; expected one of {', '.join(EVENT_TYPES)}")
        self._handlers.setdefault((event_type, limit_key), []).append(handler)

    def on_warning(self, handler: Handler, limit_key: str = ANY_KEY) -> Handler:
        self.subscribe(WARNING, handler, limit_key)
        return handler

    def on_grace_start(self, handler: Handler, limit_key: str = ANY_KEY) -> Handler:
        self.subscribe(GRACE_START, handler, limit_key)
        return handler

    def on_block(self, handler: Handler, limit_key: str = ANY_KEY) -> Handler:
        self.subscribe(BLOCK, handler, limit_key)
        return handler

    def clear(self) -> None:
        self._handlers.clear()

    def handlers_for(self, event_type: str, limit_key: str) -> List[Handler]:
        specific = self._handlers.get((event_type, limit_key), [])
        wildcard = self._handlers.get((event_type, ANY_KEY), []) if limit_key != ANY_KEY else []
        return list(specific) + list(wildcard)

    def emit(self, event: LimitEvent) -> None:
        limit_events_total.inc({"event": event.type, "limit_key": event.limit_key})
        logger.info(
            f"[events] {event.type.upper()}",
            extra={
                "owner_type": event.owner.owner_type,
                "owner_id": event.owner.owner_id,
                "limit_key": event.limit_key,
                "event_type": event.type,
                "threshold": event.threshold,
                "grace_ends_at": event.grace_ends_at.isoformat() if event.grace_ends_at else None,
            },
        )

        for handler in self.handlers_for(event.type, event.limit_key):
            try:
                handler(event)
            except Exception as exc:
                callback_errors_total.inc({"event": event.type})
                logger.error(
                    "[events] HANDLER_FAILED",
                    exc_info=True,
                    extra={
                        "owner_type": event.owner.owner_type,
                        "owner_id": event.owner.owner_id,
                        "limit_key": event.limit_key,
                        "event_type": event.type,
                        "error": str(exc),
                    },
                )
