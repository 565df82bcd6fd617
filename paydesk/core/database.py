"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy engine and session management
- The plan catalogue and subscription tables
- Test database support (in-memory SQLite)
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import os

from paydesk.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 5
MAX_OVERFLOW = 10
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def create_store_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create the SQLAlchemy engine backing the subscription store.

    SQLite URLs get a StaticPool so an in-memory database survives across
    the worker threads the store runs its queries on.
    """
    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker):
    """
    Context manager for database sessions.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine, tables: Optional[list] = None) -> None:
    """
    Create tables defined in metadata (all of them unless ``tables`` is given).

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine, tables=tables)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


# Plan catalogue, mirrored from the payment provider
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Integer, nullable=False),  # minor currency units
    Column('currency', String(3), nullable=False),
    Column('interval', String(10), nullable=False),  # day, week, month, year
    Column('interval_count', Integer, nullable=False, server_default='1'),
    Column('trial_period_days', Integer, nullable=True),
    Column('features', JSON, nullable=True),
    Column('popular', Boolean, nullable=False, server_default='false'),
    Column('stripe_price_id', String(100), nullable=True),
    Column('stripe_product_id', String(100), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('active', Boolean, nullable=False, server_default='true', index=True),
    Column('tier', Integer, nullable=False, server_default='0'),
    Index('idx_subscription_plans_tier', 'tier'),
)

# User subscriptions; written only by the orchestration service
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('stripe_subscription_id', String(100), nullable=True, index=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('plan_id', String(100), nullable=False),
    Column('status', String(30), nullable=False, index=True),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)
