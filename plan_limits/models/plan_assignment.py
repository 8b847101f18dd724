"""
plan_limits/models/plan_assignment.py

Manual plan assignment (admin override, comped accounts, migrations).
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict


class PlanAssignment(BaseModel):
    """
    PlanAssignment pins an owner to a plan regardless of billing state.

    Constraint: Each owner has at most one assignment.
    """
    model_config = ConfigDict(frozen=True)

    owner_type: str
    owner_id: str
    plan_key: str
    source: str = "manual"
    assigned_at: datetime
