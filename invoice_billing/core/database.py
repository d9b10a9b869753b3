"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (SQLite gets its own pool rules)
- Table definitions for accounts, plan history, credit balances, payment failures
  and job runs
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Numeric, Text, Index, ForeignKey, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from invoice_billing.core.config import settings

logger = logging.getLogger("invoice_billing.database")


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
    test_url = os.getenv("TEST_DATABASE_URL")
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
        # Threads share the file; in-memory databases must share one connection
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine (tests switch databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
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
        logger.warning("Database connection check failed: %s", e)
        return False


# Billing accounts (one active plan each)
accounts = Table(
    'billing_accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('plan_assigned_at', DateTime(timezone=True), nullable=False),
    Column('payment_failure_count', Integer, nullable=False, server_default='0'),
    Column('last_payment_failure_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_accounts_plan_id', 'plan_id'),
)

# Monthly credit counters (one row per account, rolled forward on reset)
credit_balances = Table(
    'credit_balances',
    metadata,
    Column('account_id', String(100), ForeignKey('billing_accounts.account_id'), primary_key=True),
    Column('email_used', Integer, nullable=False, server_default='0'),
    Column('sms_used', Integer, nullable=False, server_default='0'),
    Column('invoices_used', Integer, nullable=False, server_default='0'),
    Column('cycle_start', DateTime(timezone=True), nullable=False),
    Column('cycle_end', DateTime(timezone=True), nullable=False),
    Column('anchor_day', Integer, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Payment failures and their retry state
payment_failures = Table(
    'payment_failures',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('billing_accounts.account_id'), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('failure_reason', Text, nullable=True),
    Column('retry_count', Integer, nullable=False, server_default='0'),
    Column('max_retries', Integer, nullable=False),
    Column('next_retry_at', DateTime(timezone=True), nullable=True),
    Column('last_retry_at', DateTime(timezone=True), nullable=True),
    Column('grace_until', DateTime(timezone=True), nullable=False),
    Column('grace_warning_sent_at', DateTime(timezone=True), nullable=True),
    Column('status', String(32), nullable=False, server_default='pending'),
    Column('claimed_by', String(100), nullable=True),  # in-flight attempt owner
    Column('claimed_at', DateTime(timezone=True), nullable=True),
    Column('resolution_note', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    Index('idx_payment_failures_account_id', 'account_id'),
    Index('idx_payment_failures_status_next_retry', 'status', 'next_retry_at'),
    # At most one active failure per account
    Index(
        'uq_payment_failures_active_account',
        'account_id',
        unique=True,
        sqlite_where=text("status IN ('pending', 'retrying')"),
        postgresql_where=text("status IN ('pending', 'retrying')"),
    ),
)

# Sweep job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_job_name', 'job_name'),
)

# Plan history (one active row per account, closed on every plan change)
plan_history = Table(
    'plan_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('billing_accounts.account_id'), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(32), nullable=False, server_default='active'),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('ended_at', DateTime(timezone=True), nullable=True),
    Index('idx_plan_history_account_id', 'account_id'),
)
