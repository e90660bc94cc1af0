"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory via a static pool)
- Table definitions for the metering, tier and billing stores
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
    Boolean,
    JSON,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import logging
import os

from tierline.core.config import settings
from tierline.core.errors import TransientStoreError
from tierline.models.tier import ACTIVE_STATUSES


logger = logging.getLogger("tierline.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


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

    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
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
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on error. Connectivity failures surface
    as TransientStoreError so callers can retry the whole operation.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        logger.error("database.unavailable", extra={"error_code": TransientStoreError.code})
        raise TransientStoreError(f"Store unavailable: {exc.orig}") from exc
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


# Meter registry
usage_meters = Table(
    'usage_meters',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('event_name', String(200), nullable=False),
    Column('display_name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('aggregation_type', String(20), nullable=False),
    Column('unit_name', String(50), nullable=False),
    Column('billing_model', String(20), nullable=False),
    Column('unique_property', String(100), nullable=False),
    Column('active', Boolean, nullable=False, default=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # eventName is unique per creator, soft-deleted meters included
    UniqueConstraint('creator_id', 'event_name', name='uq_usage_meters_creator_event'),
)

meter_plan_limits = Table(
    'meter_plan_limits',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('meter_id', String(64), nullable=False, index=True),
    Column('plan_name', String(200), nullable=False),
    Column('position', Integer, nullable=False),
    Column('limit_value', BigInteger, nullable=True),  # NULL = unlimited
    Column('overage_price', BigInteger, nullable=False, default=0),  # minor units per unit
    Column('soft_limit_threshold', Float, nullable=False),
    Column('hard_cap', Boolean, nullable=False, default=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('meter_id', 'plan_name', name='uq_meter_plan_limits_meter_plan'),
)

# Usage ledger (append-only)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('meter_id', String(64), nullable=False),
    Column('subscriber_id', String(100), nullable=False),
    Column('event_value', BigInteger, nullable=False),
    Column('properties', JSON, nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Aggregation scan pattern: (meter_id, subscriber_id, occurred_at)
    Index('idx_usage_events_meter_subscriber_occurred', 'meter_id', 'subscriber_id', 'occurred_at'),
    # Creator-wide rollups scan by meter and time
    Index('idx_usage_events_meter_occurred', 'meter_id', 'occurred_at'),
)

# Tier & limit model
subscription_tiers = Table(
    'subscription_tiers',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', BigInteger, nullable=False),  # minor units
    Column('currency', String(3), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('feature_entitlements', JSON, nullable=False),
    Column('usage_caps', JSON, nullable=False),
    Column('is_default', Boolean, nullable=False, default=False),
    Column('active', Boolean, nullable=False, default=True),
    Column('trial_period_days', Integer, nullable=False, default=0),
    Column('sort_order', Integer, nullable=False, default=0),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('creator_id', 'name', name='uq_subscription_tiers_creator_name'),
    Index('idx_subscription_tiers_creator_default', 'creator_id', 'is_default'),
)

customer_tier_assignments = Table(
    'customer_tier_assignments',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('customer_id', String(100), nullable=False),
    Column('creator_id', String(100), nullable=False),
    Column('tier_id', String(64), nullable=False, index=True),
    Column('status', String(20), nullable=False, index=True),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_customer_tier_assignments_customer_creator', 'customer_id', 'creator_id', 'status'),
    Index('idx_customer_tier_assignments_creator_status', 'creator_id', 'status'),
)

# At most one live assignment per (customer, creator)
Index(
    'uq_customer_tier_assignments_live',
    customer_tier_assignments.c.customer_id,
    customer_tier_assignments.c.creator_id,
    unique=True,
    sqlite_where=customer_tier_assignments.c.status.in_(ACTIVE_STATUSES),
    postgresql_where=customer_tier_assignments.c.status.in_(ACTIVE_STATUSES),
)

# Billing cycle processor
billing_cycle_results = Table(
    'billing_cycle_results',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False),
    Column('billing_period', String(7), nullable=False),  # YYYY-MM
    Column('status', String(20), nullable=False),  # in_progress | partial | finalized
    Column('per_meter_usage', JSON, nullable=True),
    Column('total_overage_amount', BigInteger, nullable=False, default=0),
    Column('attempts', Integer, nullable=False, default=0),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('finalized_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('creator_id', 'billing_period', name='uq_billing_cycle_results_creator_period'),
)

billing_line_items = Table(
    'billing_line_items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False),
    Column('billing_period', String(7), nullable=False),
    Column('customer_id', String(100), nullable=False),
    Column('tier_id', String(64), nullable=False),
    Column('meter_id', String(64), nullable=False),
    Column('event_name', String(200), nullable=False),
    Column('usage_quantity', BigInteger, nullable=False),
    Column('limit_value', BigInteger, nullable=True),
    Column('overage_quantity', BigInteger, nullable=False),
    Column('overage_price', BigInteger, nullable=False),
    Column('overage_amount', BigInteger, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # One line per customer x meter x period: reprocessing cannot duplicate charges
    UniqueConstraint('creator_id', 'billing_period', 'customer_id', 'meter_id', name='uq_billing_line_items_key'),
    Index('idx_billing_line_items_creator_period', 'creator_id', 'billing_period'),
)

billing_customer_checkpoints = Table(
    'billing_customer_checkpoints',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False),
    Column('billing_period', String(7), nullable=False),
    Column('customer_id', String(100), nullable=False),
    Column('status', String(20), nullable=False),  # finalized | failed
    Column('error', Text, nullable=True),
    Column('attempts', Integer, nullable=False, default=1),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('creator_id', 'billing_period', 'customer_id', name='uq_billing_customer_checkpoints_key'),
)

usage_warnings = Table(
    'usage_warnings',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('customer_id', String(100), nullable=False),
    Column('meter_id', String(64), nullable=False),
    Column('period_key', String(40), nullable=False),
    Column('usage_fraction', Float, nullable=False),
    Column('current_usage', BigInteger, nullable=False),
    Column('limit_value', BigInteger, nullable=False),
    Column('warned_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('customer_id', 'meter_id', 'period_key', name='uq_usage_warnings_customer_meter_period'),
)

# Analytics aggregator
tier_analytics_snapshots = Table(
    'tier_analytics_snapshots',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('granularity', String(10), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('computed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('creator_id', 'period_start', 'period_end', 'granularity', name='uq_tier_analytics_snapshots_key'),
)

# Single-writer locks (billing runs)
run_locks = Table(
    'run_locks',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('scope', String(100), nullable=True, index=True),
    Column('owner', String(100), nullable=False),
    Column('acquired_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
)
