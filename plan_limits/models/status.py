"""
plan_limits/models/status.py

Caller-facing decision and status models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    OK = "ok"
    WARNING = "warning"
    AT_LIMIT = "at_limit"
    GRACE = "grace"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.OK: 0,
    Severity.WARNING: 1,
    Severity.AT_LIMIT: 2,
    Severity.GRACE: 3,
    Severity.BLOCKED: 4,
}


class LimitResult(BaseModel):
    """
    Guard decision for one prospective action.

    state:
    - within: allowed, nothing to report
    - warning: allowed, caller should surface a warning
    - grace: allowed, owner is over the cap inside the grace window
    - blocked: not allowed
    """
    model_config = ConfigDict(frozen=True)

    limit_key: str
    state: Literal["within", "warning", "grace", "blocked"]
    allowed: bool
    by: int = 1
    amount: Union[int, str] = 0
    usage: int = 0
    percent_used: float = 0.0
    grace_ends_at: Optional[datetime] = None
    system_override: bool = False
    message: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return not self.allowed


class LimitStatus(BaseModel):
    """Full standing of one owner against one limit key."""
    model_config = ConfigDict(frozen=True)

    limit_key: str
    configured: bool
    unlimited: bool = False
    amount: Union[int, str] = 0
    usage: int = 0
    remaining: Union[int, str] = 0
    percent_used: float = 0.0
    severity: Severity = Severity.OK
    grace_active: bool = False
    grace_ends_at: Optional[datetime] = None
    blocked: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    message: Optional[str] = None


class OverageItem(BaseModel):
    """One limit on which usage exceeds what a target plan allows."""
    model_config = ConfigDict(frozen=True)

    limit_key: str
    kind: Literal["persistent", "per_period"]
    usage: int
    allowed: int
    overage: int
    grace_active: bool = False
    grace_ends_at: Optional[datetime] = None


class OverageReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_plan: str
    items: List[OverageItem] = Field(default_factory=list)
    message: Optional[str] = None

    @property
    def has_overage(self) -> bool:
        return bool(self.items)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
