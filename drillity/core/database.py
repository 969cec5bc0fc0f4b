"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- SQLite support for tests (writers serialized with BEGIN IMMEDIATE)
- Translation of connectivity failures into StoreUnavailableError
- Table definitions
"""
from typing import Iterator, Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import (
    create_engine, event, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float,
    Index, ForeignKey, UniqueConstraint, text,
)
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from drillity.core.config import settings
from drillity.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT_S = 30

# Failures that mean "the store is not reachable right now"
STORE_FAILURES = (OperationalError, InterfaceError, PoolTimeoutError)

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _create_sqlite_engine(url: str):
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_S},
        echo=False,
    )

    # pysqlite defers BEGIN until the first write, which lets two writers
    # deadlock on lock promotion. Take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        _engine = _create_sqlite_engine(url)
    else:
        connect_args = {}
        if url.startswith("postgresql") and settings.DB_STATEMENT_TIMEOUT_MS > 0:
            # Bound every statement by the request deadline
            connect_args["options"] = f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}"
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            connect_args=connect_args,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back on error. Connectivity failures
    surface as StoreUnavailableError so callers never see driver details.
    Never open a second session while one is held in the same thread.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except STORE_FAILURES as exc:
        session.rollback()
        logger.error("[store] unavailable", extra={"error_type": type(exc).__name__})
        raise StoreUnavailableError() from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", type(e).__name__)
        return False


# Plan catalog (seeded, never written by the engine)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(50), nullable=False),
    Column('audience', String(20), nullable=False),  # 'talent' | 'company'
    Column('is_default', Boolean, nullable=False, server_default='0'),
    Column('price_cents', Integer, nullable=False, server_default='0'),
    Column('stripe_price_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('audience', 'name', name='uq_plans_audience_name'),
    Index('idx_plans_audience_default', 'audience', 'is_default'),
)

# Plan limits (int) and feature flags (bool)
plan_entitlements = Table(
    'plan_entitlements',
    metadata,
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('entitlement_key', String(100), nullable=False),
    Column('value', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('plan_id', 'entitlement_key', name='uq_plan_entitlements_plan_key'),
    Index('idx_plan_entitlements_plan_id', 'plan_id'),
)

# Subscriptions: at most one active row per actor; history is never deleted
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(100), nullable=False),
    Column('actor_type', String(20), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False),  # active, expired, canceled, superseded
    Column('is_active', Boolean, nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('period_started_at', DateTime(timezone=True), nullable=False),
    # First period start as confirmed by the payment; lazy resets never move it
    Column('period_anchor', DateTime(timezone=True), nullable=False),
    Column('period_reset_date', DateTime(timezone=True), nullable=False),
    Column('is_trial', Boolean, nullable=False, server_default='0'),
    Column('trial_end_date', DateTime(timezone=True), nullable=True),
    Column('ai_matching_enabled', Boolean, nullable=False, server_default='0'),
    Column('external_ref', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_actor_created', 'actor_id', 'created_at'),
    Index(
        'uq_subscriptions_one_active_per_actor',
        'actor_id',
        unique=True,
        postgresql_where=text('is_active'),
        sqlite_where=text('is_active'),
    ),
)

# Per-period usage counters. ledger_key is "sub:<id>" for explicit
# subscriptions and "free:<actor_id>" for the implicit FREE plan.
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ledger_key', String(120), nullable=False),
    Column('actor_id', String(100), nullable=False, index=True),
    Column('counter_key', String(50), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('used', Integer, nullable=False, server_default='0'),
    UniqueConstraint('ledger_key', 'counter_key', 'period_start', name='uq_usage_counters_ledger_counter_period'),
)

# Immutable usage events (reporting / ROI)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(100), nullable=False),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=True),
    Column('counter_key', String(50), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('cost_estimate', Float, nullable=False, server_default='0'),
    Column('was_free', Boolean, nullable=False, server_default='0'),
    Column('metadata', JSON, nullable=True),
    Index('idx_usage_events_actor_key_occurred', 'actor_id', 'counter_key', 'occurred_at'),
    Index('idx_usage_events_occurred_at', 'occurred_at'),
)

# Billing customers (payment provider customer per actor)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
)
