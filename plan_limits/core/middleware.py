import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from plan_limits.core.logging import evaluation_id_ctx_var


class EvaluationIdMiddleware(BaseHTTPMiddleware):
    """Attach an evaluation_id to each request and log completion."""

    def __init__(self, app, header_name: str = "x-evaluation-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = request.headers.get(self.header_name)
        eid = incoming or uuid4().hex
        request.state.evaluation_id = eid
        token = evaluation_id_ctx_var.set(eid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            evaluation_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = eid

        logger = logging.getLogger("plan_limits")
        logger.info(
            "request.complete",
            extra={
                "evaluation_id": eid,
                "path": request.url.path,
                "method": request.method,
                "status": getattr(response, "status_code", None),
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
