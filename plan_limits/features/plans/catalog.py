"""
plan_limits/features/plans/catalog.py

Immutable plan catalog.

Built once from a plain mapping and handed to the engine. Example:

    PlanCatalog.from_mapping({
        "free": {
            "name": "Free Plan",
            "default": True,
            "features": {"api_access": False},
            "limits": {
                "projects": {"to": 1, "after_limit": "grace_then_block", "grace": timedelta(days=7)},
                "api_calls": {"to": 100, "per": "month", "after_limit": "block_usage"},
            },
        },
        "pro": {
            "name": "Pro Plan",
            "price_ids": ["price_pro_monthly"],
            "features": {"api_access": True},
            "limits": {"projects": 10, "api_calls": {"to": 10_000, "per": "month"}},
            "unlimited": ["seats"],
        },
    })
"""

from typing import Any, Dict, Iterator, List, Mapping, Optional

from plan_limits.core.errors import ConfigurationError, PlanNotFoundError
from plan_limits.models.plan import UNLIMITED, LimitConfig, Plan


def _build_limit(plan_key: str, limit_key: str, raw: Any) -> LimitConfig:
    if isinstance(raw, LimitConfig):
        if raw.key != limit_key:
            raise ConfigurationError(f"Plan {plan_key} limit {limit_key} is registered under {raw.key}")
        return raw
    if isinstance(raw, Mapping):
        options = dict(raw)
    else:
        options = {"amount": raw}
    options["key"] = limit_key
    return LimitConfig(**options)


def _build_plan(plan_key: str, raw: Mapping[str, Any]) -> Plan:
    features = dict(raw.get("features") or {})
    for feature_key, allowed in features.items():
        if not isinstance(allowed, bool):
            raise ConfigurationError(
                f"Plan {plan_key} feature {feature_key} must be true or false; configure amounts under limits"
            )

    limits: Dict[str, LimitConfig] = {}
    for limit_key, limit_raw in (raw.get("limits") or {}).items():
        limits[limit_key] = _build_limit(plan_key, limit_key, limit_raw)
    for limit_key in raw.get("unlimited") or ():
        if limit_key in limits:
            raise ConfigurationError(f"Plan {plan_key} limit {limit_key} is configured twice")
        limits[limit_key] = LimitConfig(key=limit_key, amount=UNLIMITED)

    return Plan(
        key=plan_key,
        name=raw.get("name"),
        description=raw.get("description"),
        features=features,
        limits=limits,
        price_ids=tuple(raw.get("price_ids") or ()),
        default=bool(raw.get("default", False)),
        highlighted=bool(raw.get("highlighted", False)),
    )


class PlanCatalog:
    """Validated, read-only set of plans."""

    def __init__(self, plans: List[Plan], default_plan: Optional[str] = None):
        by_key: Dict[str, Plan] = {}
        for plan in plans:
            if plan.key in by_key:
                raise ConfigurationError(f"Plan {plan.key} is defined more than once")
            by_key[plan.key] = plan
        if not by_key:
            raise ConfigurationError("At least one plan must be defined")

        self._plans = by_key
        self._default_key = self._resolve_default(default_plan)
        self._by_price_id = self._index_price_ids()
        self._check_periods()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Mapping[str, Any]], default_plan: Optional[str] = None) -> "PlanCatalog":
        plans = [_build_plan(key, raw) for key, raw in mapping.items()]
        return cls(plans, default_plan=default_plan)

    def _resolve_default(self, default_plan: Optional[str]) -> str:
        if default_plan is not None:
            if default_plan not in self._plans:
                raise ConfigurationError(f"Default plan {default_plan} is not defined")
            return default_plan

        flagged = [plan.key for plan in self._plans.values() if plan.default]
        if len(flagged) > 1:
            raise ConfigurationError(f"Only one default plan allowed, got {', '.join(flagged)}")
        if not flagged:
            raise ConfigurationError("No default plan configured")
        return flagged[0]

    def _index_price_ids(self) -> Dict[str, str]:
        index: Dict[str, str] = {}
        for plan in self._plans.values():
            for price_id in plan.price_ids:
                if price_id in index:
                    raise ConfigurationError(
                        f"Price id {price_id} is used by both {index[price_id]} and {plan.key}"
                    )
                index[price_id] = plan.key
        return index

    def _check_periods(self) -> None:
        # A key is either persistent everywhere or periodic with one period everywhere
        seen: Dict[str, Any] = {}
        for plan in self._plans.values():
            for limit_key, config in plan.limits.items():
                if config.is_unlimited:
                    continue
                if limit_key not in seen:
                    seen[limit_key] = config.per
                elif seen[limit_key] != config.per:
                    raise ConfigurationError(
                        f"Limit {limit_key} uses inconsistent periods across plans: {seen[limit_key]!r} vs {config.per!r}"
                    )

    @property
    def default_plan(self) -> Plan:
        return self._plans[self._default_key]

    @property
    def highlighted_plan(self) -> Optional[Plan]:
        for plan in self._plans.values():
            if plan.highlighted:
                return plan
        return None

    def get(self, plan_key: str) -> Plan:
        plan = self._plans.get(plan_key)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_key} not found")
        return plan

    def find(self, plan_key: Optional[str]) -> Optional[Plan]:
        if plan_key is None:
            return None
        return self._plans.get(plan_key)

    def plan_for_price_id(self, price_id: Optional[str]) -> Optional[Plan]:
        if price_id is None:
            return None
        plan_key = self._by_price_id.get(price_id)
        return self._plans[plan_key] if plan_key else None

    def limit_keys(self) -> List[str]:
        keys: List[str] = []
        for plan in self._plans.values():
            for limit_key in plan.limits:
                if limit_key not in keys:
                    keys.append(limit_key)
        return keys

    def __contains__(self, plan_key: object) -> bool:
        return plan_key in self._plans

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)
