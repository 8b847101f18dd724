"""
Limit API routes.

Read-mostly surface over the engine:
- GET    /limits/{owner_type}/{owner_id}: status for many keys + highest severity
- GET    /limits/{owner_type}/{owner_id}/{limit_key}: single key status
- POST   /limits/{owner_type}/{owner_id}/{limit_key}/check: guard decision
- POST   /limits/{owner_type}/{owner_id}/{limit_key}/usage: record consumed units
- DELETE /limits/{owner_type}/{owner_id}/{limit_key}/state: admin reset
- GET    /limits/{owner_type}/{owner_id}/overage/{target_plan}: downgrade overage
- PUT    /limits/{owner_type}/{owner_id}/plan: manual plan assignment
- DELETE /limits/{owner_type}/{owner_id}/plan: remove manual assignment
"""
from typing import List, Optional
from fastapi import APIRouter, Query, Request, Response
from pydantic import BaseModel, Field

from plan_limits.core.metrics import METRICS
from plan_limits.engine import LimitEngine
from plan_limits.models.owner import OwnerRef
from plan_limits.models.plan_assignment import PlanAssignment
from plan_limits.models.status import LimitResult, LimitStatus, OverageReport


router = APIRouter(prefix="/limits", tags=["limits"])
metrics_router = APIRouter(tags=["metrics"])


class CheckRequest(BaseModel):
    """Prospective action to evaluate."""
    by: int = Field(default=1, ge=0)
    allow_system_override: bool = False


class UsageRequest(BaseModel):
    amount: int = Field(default=1, ge=0)


class UsageResponse(BaseModel):
    limit_key: str
    usage: int
    status: LimitStatus


class AssignPlanRequest(BaseModel):
    plan_key: str
    source: str = "manual"


class ResetResponse(BaseModel):
    limit_key: str
    reset: bool


def _engine(request: Request) -> LimitEngine:
    return request.app.state.limit_engine


def _owner(owner_type: str, owner_id: str) -> OwnerRef:
    return OwnerRef(owner_type=owner_type, owner_id=owner_id)


@router.get("/{owner_type}/{owner_id}")
def get_owner_status(owner_type: str, owner_id: str, request: Request, keys: Optional[List[str]] = Query(default=None)):
    """
    Owner standing across limits.

    Without `keys`, every limit on the owner's effective plan is reported.
    """
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return engine.status(_owner(owner_type, owner_id)).summary(keys)


@router.get("/{owner_type}/{owner_id}/overage/{target_plan}", response_model=OverageReport)
def get_overage(owner_type: str, owner_id: str, target_plan: str, request: Request):
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return engine.overage_report_with_message(_owner(owner_type, owner_id), target_plan)


@router.put("/{owner_type}/{owner_id}/plan", response_model=PlanAssignment)
def put_plan(owner_type: str, owner_id: str, body: AssignPlanRequest, request: Request):
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return engine.assign_plan(_owner(owner_type, owner_id), body.plan_key, source=body.source)


@router.delete("/{owner_type}/{owner_id}/plan")
def delete_plan(owner_type: str, owner_id: str, request: Request):
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return {"removed": engine.remove_assignment(_owner(owner_type, owner_id))}


@router.get("/{owner_type}/{owner_id}/{limit_key}", response_model=LimitStatus)
def get_limit_status(owner_type: str, owner_id: str, limit_key: str, request: Request):
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return engine.limit_status(_owner(owner_type, owner_id), limit_key)


@router.post("/{owner_type}/{owner_id}/{limit_key}/check", response_model=LimitResult)
def post_check(owner_type: str, owner_id: str, limit_key: str, body: CheckRequest, request: Request):
    """
    Guard decision for adding `by` units.

    A blocked decision is a normal 200 response with allowed=false; only
    storage or configuration failures produce error responses.
    """
    engine = _engine(request)
    with engine.evaluation(request.state.evaluation_id):
        return engine.check(
            _owner(owner_type, owner_id),
            limit_key,
            by=body.by,
            allow_system_override=body.allow_system_override,
        )


@router.post("/{owner_type}/{owner_id}/{limit_key}/usage", response_model=UsageResponse)
def post_usage(owner_type: str, owner_id: str, limit_key: str, body: UsageRequest, request: Request):
    engine = _engine(request)
    owner = _owner(owner_type, owner_id)
    with engine.evaluation(request.state.evaluation_id):
        usage = engine.record_usage(owner, limit_key, body.amount)
        return UsageResponse(limit_key=limit_key, usage=usage, status=engine.limit_status(owner, limit_key))


@router.delete("/{owner_type}/{owner_id}/{limit_key}/state", response_model=ResetResponse)
def delete_state(owner_type: str, owner_id: str, limit_key: str, request: Request):
    engine = _engine(request)
    return ResetResponse(limit_key=limit_key, reset=engine.reset(_owner(owner_type, owner_id), limit_key))


@metrics_router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
