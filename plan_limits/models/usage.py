"""
plan_limits/models/usage.py

Windowed usage counter row for periodic allowances.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageRecord(BaseModel):
    """
    Units consumed by one owner for one limit key inside one window.

    Append-only: `used` never decreases, and rows for past windows are
    never touched again.
    """
    model_config = ConfigDict(frozen=True)

    owner_type: str
    owner_id: str
    limit_key: str
    window_start: datetime
    window_end: datetime
    used: int = 0
    last_used_at: Optional[datetime] = None
