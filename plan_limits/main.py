import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from plan_limits.api import limits
from plan_limits.core.config import settings, validate_config
from plan_limits.core.database import create_all_tables, init_engine
from plan_limits.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from plan_limits.core.logging import configure_logging
from plan_limits.core.middleware import EvaluationIdMiddleware
from plan_limits.engine import LimitEngine


def create_app(engine: LimitEngine, database_url: Optional[str] = None, create_tables: bool = True) -> FastAPI:
    """
    Build the HTTP app around a configured LimitEngine.

    Args:
        engine: Engine holding the plan catalog and collaborators
        database_url: Optional override for DATABASE_URL
        create_tables: Create engine tables on startup (idempotent)
    """
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config(strict=settings.CONFIG_STRICT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("plan_limits")
        logger.info("Starting plan limits service...")
        if database_url:
            init_engine(database_url)
        if create_tables:
            create_all_tables()
        try:
            yield
        finally:
            logger.info("Stopping plan limits service...")

    app = FastAPI(title="Plan Limits", lifespan=lifespan)
    app.state.limit_engine = engine

    app.add_middleware(EvaluationIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(limits.router, prefix="/api")
    app.include_router(limits.metrics_router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    return app
