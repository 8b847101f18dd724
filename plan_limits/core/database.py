"""
Persistence for plan limits.

Three tables, all keyed on the composite (owner_type, owner_id) owner reference:
- plan_limit_assignments: manual plan overrides, one per owner
- plan_limit_enforcement_states: warning / grace / block state, one per (owner, limit key)
- plan_limit_usages: windowed counters, one per (owner, limit key, window start)

The uniqueness constraints are what make concurrent writers safe: creation
races end in IntegrityError for the loser, who then works on the winner's row.

PostgreSQL in production; SQLite (file or in-memory) in tests and local runs.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    BigInteger,
    Float,
    String,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
    CheckConstraint,
    select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from plan_limits.core.config import settings


logger = logging.getLogger("plan_limits.database")

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600
SQLITE_BUSY_TIMEOUT = 15  # seconds a writer waits on a locked SQLite file

_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL so test runs never touch real data."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return {
            "poolclass": QueuePool,
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE,
            "pool_pre_ping": True,
        }

    options = {
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
    }
    if not parsed.database or parsed.database == ":memory:":
        # One shared connection, otherwise every checkout sees an empty database
        options["poolclass"] = StaticPool
    return options


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    (Re)create the process-wide engine and session factory.

    Raises:
        ValueError: No URL passed and none configured
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    logger.info("[database] ENGINE_READY", extra={"backend": _engine.url.get_backend_name()})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    One short transaction:

        with get_db_session() as session:
            session.execute(update(enforcement_states)...)

    Commits on success, rolls back and re-raises on error. Callers keep these
    blocks small so row locks are never held across event delivery.
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Create the engine's tables if missing (idempotent)."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Drop the engine's tables. Tests and local development only."""
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning("[database] CONNECTION_FAILED", extra={"error": str(e)})
        return False


# Manual plan assignments (override external subscriptions / default plan)
plan_assignments = Table(
    'plan_limit_assignments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('plan_key', String(100), nullable=False),
    Column('source', String(50), nullable=False, server_default='manual'),
    Column('assigned_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', name='uq_plan_limit_assignments_owner'),
    Index('idx_plan_limit_assignments_plan', 'plan_key'),
)

# One row per (owner, limit_key) once a threshold has been announced or crossed
enforcement_states = Table(
    'plan_limit_enforcement_states',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('limit_key', String(100), nullable=False),
    Column('exceeded_at', DateTime(timezone=True), nullable=True),
    Column('blocked_at', DateTime(timezone=True), nullable=True),
    Column('last_warning_threshold', Float, nullable=True),
    Column('last_warning_at', DateTime(timezone=True), nullable=True),
    Column('data', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', 'limit_key', name='uq_plan_limit_enforcement_states_owner_key'),
    Index('idx_plan_limit_enforcement_states_exceeded', 'exceeded_at'),
    Index('idx_plan_limit_enforcement_states_blocked', 'blocked_at'),
)

# Windowed counters for periodic allowances
usage_windows = Table(
    'plan_limit_usages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('limit_key', String(100), nullable=False),
    Column('window_start', DateTime(timezone=True), nullable=False),
    Column('window_end', DateTime(timezone=True), nullable=False),
    Column('used', BigInteger, nullable=False, server_default='0'),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('owner_type', 'owner_id', 'limit_key', 'window_start', name='uq_plan_limit_usages_owner_key_window'),
    CheckConstraint('window_end > window_start', name='ck_plan_limit_usages_window'),
    CheckConstraint('used >= 0', name='ck_plan_limit_usages_used'),
    Index('idx_plan_limit_usages_window_end', 'window_end'),
)
