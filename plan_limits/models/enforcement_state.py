"""
plan_limits/models/enforcement_state.py

Enforcement state per (owner, limit key).

States:
- within: no row
- grace: exceeded_at set, blocked_at null
- blocked: blocked_at set
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class EnforcementState(BaseModel):
    """Persisted enforcement record (immutable snapshot of one row)."""
    model_config = ConfigDict(frozen=True)

    id: int
    owner_type: str
    owner_id: str
    limit_key: str
    exceeded_at: Optional[datetime] = None
    blocked_at: Optional[datetime] = None
    last_warning_threshold: Optional[float] = None
    last_warning_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def exceeded(self) -> bool:
        return self.exceeded_at is not None

    @property
    def blocked(self) -> bool:
        return self.blocked_at is not None

    @property
    def grace_period(self) -> Optional[timedelta]:
        seconds = self.data.get("grace_period")
        if seconds is None:
            return None
        return timedelta(seconds=float(seconds))

    @property
    def window_start_epoch(self) -> Optional[int]:
        value = self.data.get("window_start_epoch")
        return int(value) if value is not None else None

    @property
    def grace_ends_at(self) -> Optional[datetime]:
        if self.exceeded_at is None:
            return None
        return self.exceeded_at + (self.grace_period or timedelta(0))

    def grace_active(self, now: datetime) -> bool:
        if not self.exceeded or self.blocked:
            return False
        return now < self.grace_ends_at

    def grace_expired(self, now: datetime) -> bool:
        if not self.exceeded:
            return False
        return self.blocked or now >= self.grace_ends_at
