"""
Error taxonomy and HTTP error handlers.

Blocked decisions are results, never exceptions. Exceptions are reserved for
setup defects (ConfigurationError), missing plans, and storage that could not
be written within the retry budget (StorageConflictError).
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from plan_limits.core.logging import get_evaluation_id

logger = logging.getLogger("plan_limits")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, evaluation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.evaluation_id = evaluation_id


class ConfigurationError(AppError):
    """Setup defect: unknown period, invalid limit options, disallowed combination."""
    code = "configuration_error"
    status_code = 500


class PlanNotFoundError(AppError, LookupError):
    code = "plan_not_found"
    status_code = 404


class StorageConflictError(AppError):
    """Write conflicts on enforcement state or usage rows outlasted the retry budget.

    Never a business outcome: callers must not read this as "blocked".
    """
    code = "storage_conflict"
    status_code = 503

    def __init__(self, message: str, *, operation: Optional[str] = None, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.attempts = attempts


def _evaluation_id_for(request: Request) -> str:
    return getattr(request.state, "evaluation_id", None) or get_evaluation_id() or uuid4().hex


def error_response(status_code: int, code: str, message: str, evaluation_id: str) -> JSONResponse:
    """JSON error envelope shared by every handler."""
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "evaluation_id": evaluation_id},
            "detail": message,
        },
    )
    response.headers["x-evaluation-id"] = evaluation_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    eid = exc.evaluation_id or _evaluation_id_for(request)
    fields = {"evaluation_id": eid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code}
    if isinstance(exc, StorageConflictError):
        fields.update(operation=exc.operation, attempts=exc.attempts)
    logger.log(logging.ERROR if exc.status_code >= 500 else logging.WARNING, "app.error", extra=fields)
    return error_response(exc.status_code, exc.code, exc.message, eid)


async def http_error_handler(request: Request, exc: HTTPException):
    eid = _evaluation_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"evaluation_id": eid, "error_code": code, "status": exc.status_code})
    return error_response(exc.status_code, code, str(exc.detail or "HTTP error"), eid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    eid = _evaluation_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"evaluation_id": eid, "error_code": "internal_error"})
    return error_response(500, "internal_error", "Unexpected error", eid)
