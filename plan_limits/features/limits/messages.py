"""
Human-facing limit messages.

Contexts: over_limit, grace, at_limit, warning, within, overage_report.
An optional message_builder(context=..., **kwargs) may override any of them;
returning None, or raising, falls back to the defaults below.
"""

from datetime import datetime
from typing import Any, Callable, Optional
import logging

logger = logging.getLogger("plan_limits.messages")

MessageBuilder = Callable[..., Optional[str]]


def humanize_key(limit_key: str) -> str:
    return limit_key.replace("_", " ").replace(".", " ").strip().lower()


def time_until(moment: Optional[datetime], now: datetime) -> str:
    if moment is None or moment <= now:
        return "no time"
    seconds = (moment - now).total_seconds()
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{round(seconds / 3600)} hours"
    return f"{round(seconds / 86400)} days"


def _default_message(
    context: str,
    limit_key: str,
    usage: Any,
    amount: Any,
    grace_ends_at: Optional[datetime],
    now: datetime,
    upgrade_plan: Optional[str],
    remaining: Any,
) -> str:
    resource = humanize_key(limit_key)
    numeric = isinstance(amount, int)
    counts = f" ({usage}/{amount})" if numeric else ""

    if context == "over_limit":
        base = f"You've gone over your limit for {resource}{counts}"
        return f"{base}. Upgrade to {upgrade_plan} for higher limits." if upgrade_plan else f"{base}. Please upgrade your plan."
    if context == "grace":
        deadline = f" You have {time_until(grace_ends_at, now)} remaining in your grace period." if grace_ends_at else ""
        base = f"You've exceeded your limit for {resource}{counts}.{deadline}"
        return f"{base} Upgrade to {upgrade_plan} to avoid service interruption." if upgrade_plan else base
    if context == "at_limit":
        return f"You've reached your limit for {resource}{counts}. Upgrade your plan to unlock more."
    if context == "warning":
        if remaining is not None and numeric:
            return f"You have {remaining} {resource} remaining out of {amount}."
        return f"You're getting close to your limit for {resource}{counts}."
    if context == "within":
        if remaining is not None and numeric:
            return f"{remaining} {resource} remaining"
        return f"Unlimited {resource}"
    return f"{resource}: {context}"


def build_message(
    context: str,
    limit_key: str,
    usage: Any = None,
    amount: Any = None,
    grace_ends_at: Optional[datetime] = None,
    *,
    now: datetime,
    builder: Optional[MessageBuilder] = None,
    upgrade_plan: Optional[str] = None,
    remaining: Any = None,
) -> str:
    if builder is not None:
        try:
            custom = builder(
                context=context,
                limit_key=limit_key,
                current_usage=usage,
                limit_amount=amount,
                grace_ends_at=grace_ends_at,
            )
            if custom:
                return custom
        except Exception:
            logger.warning(
                "[messages] BUILDER_FAILED",
                exc_info=True,
                extra={"limit_key": limit_key, "context": context},
            )
    return _default_message(context, limit_key, usage, amount, grace_ends_at, now, upgrade_plan, remaining)


def build_overage_message(items, builder: Optional[MessageBuilder] = None) -> str:
    if not items:
        return "No overages on target plan"

    message = None
    if builder is not None:
        try:
            message = builder(context="overage_report", items=items)
        except Exception:
            logger.warning("[messages] BUILDER_FAILED", exc_info=True, extra={"context": "overage_report"})

    if not message:
        parts = [f"{i.limit_key}: {i.usage} > {i.allowed} (reduce by {i.overage})" for i in items]
        message = f"Over target plan on: {', '.join(parts)}."

    grace_info = [
        f"{i.limit_key} grace ends at {i.grace_ends_at.isoformat()}"
        for i in items
        if i.grace_active and i.grace_ends_at
    ]
    if grace_info:
        message += f" Grace active: {', '.join(grace_info)}."
    return message
