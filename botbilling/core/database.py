"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Billing table definitions (plans, subscriptions, transactions, ledger)
"""
import logging
from typing import Optional
from contextlib import contextmanager
from uuid import uuid4
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Numeric,
    Index,
    ForeignKey,
    CheckConstraint,
    text,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from botbilling.core.config import settings


logger = logging.getLogger("botbilling.database")

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


def _uuid() -> str:
    return str(uuid4())


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings.

    For testing, TEST_DATABASE_URL wins if available.
    """
    return settings.TEST_DATABASE_URL or settings.DATABASE_URL


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
        # Local development and tests; SQLite manages its own pooling
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
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

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests switch databases between sessions)."""
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

    Everything executed inside one block is a single unit of work:
    committed on exit, rolled back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# Admin users: backs the super-admin capability lookup
admin_users = Table(
    'admin_users',
    metadata,
    Column('id', String(36), primary_key=True, default=_uuid),
    Column('user_id', String(100), nullable=False, unique=True, index=True),
    Column('role', String(50), nullable=False, server_default='super_admin'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("role = 'super_admin'", name='ck_admin_users_role'),
)

# Subscription plans (catalog + entitlement bundle)
plans = Table(
    'subscription_plans',
    metadata,
    Column('id', String(36), primary_key=True, default=_uuid),
    Column('name', String(100), nullable=False),
    Column('description', Text, nullable=True),
    Column('price_monthly', Numeric(12, 2), nullable=False, server_default='0'),
    Column('price_yearly', Numeric(12, 2), nullable=False, server_default='0'),
    Column('features', JSON, nullable=False, default=list),
    Column('allowed_models', JSON, nullable=False, default=list),
    # NULL limit means unlimited
    Column('max_bots', Integer, nullable=True),
    Column('max_integrations', Integer, nullable=True),
    Column('max_messages', Integer, nullable=True),
    Column('max_knowledge_chars', Integer, nullable=True),
    Column('max_storage_mb', Integer, nullable=True),
    Column('allow_actions', Boolean, nullable=False, server_default=text('false')),
    Column('allow_lead_collection', Boolean, nullable=False, server_default=text('false')),
    Column('allow_ecommerce', Boolean, nullable=False, server_default=text('false')),
    Column('allow_departmental_bots', Boolean, nullable=False, server_default=text('false')),
    Column('is_active', Boolean, nullable=False, server_default=text('true')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscription_plans_is_active', 'is_active'),
)

# User subscriptions (never deleted; cancellation/expiry are status changes)
subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True, default=_uuid),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(36), ForeignKey('subscription_plans.id', ondelete='RESTRICT'), nullable=False),
    Column('status', String(20), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('external_subscription_code', String(100), nullable=True),
    Column('external_customer_code', String(100), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=text('false')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint(
        "status IN ('active', 'past_due', 'cancelled', 'expired')",
        name='ck_user_subscriptions_status',
    ),
    CheckConstraint(
        "billing_cycle IN ('monthly', 'yearly')",
        name='ck_user_subscriptions_billing_cycle',
    ),
    Index('idx_user_subscriptions_plan_id', 'plan_id'),
    Index('idx_user_subscriptions_status', 'status'),
    Index('idx_user_subscriptions_external_code', 'external_subscription_code'),
    # At most one active subscription per user
    Index(
        'uq_user_subscriptions_one_active_per_user',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Payment transactions: one row per payment attempt, reference is the idempotency key
transactions = Table(
    'payment_transactions',
    metadata,
    Column('id', String(36), primary_key=True, default=_uuid),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(36), ForeignKey('subscription_plans.id', ondelete='RESTRICT'), nullable=False),
    Column('subscription_id', String(36), ForeignKey('user_subscriptions.id', ondelete='SET NULL'), nullable=True),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(10), nullable=False),
    Column('reference', String(100), nullable=False, unique=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('authorization_code', String(100), nullable=True),
    Column('payment_method', String(50), nullable=True),
    Column('metadata', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint(
        "status IN ('pending', 'success', 'failed', 'reversed')",
        name='ck_payment_transactions_status',
    ),
    Index('idx_payment_transactions_subscription_id', 'subscription_id'),
    Index('idx_payment_transactions_status', 'status'),
)

# Subscription ledger: append-only audit trail of every state transition
subscription_ledger = Table(
    'subscription_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('subscription_id', String(36), ForeignKey('user_subscriptions.id'), nullable=False),
    Column('transaction_reference', String(100), nullable=True),
    Column('action', String(50), nullable=False),
    Column('from_status', String(20), nullable=True),
    Column('to_status', String(20), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=text('false')),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_ledger_user_id', 'user_id', 'id'),
    Index('idx_subscription_ledger_subscription_id', 'subscription_id'),
)

# Webhook deliveries: keyed idempotency table for inbound processor events
webhook_deliveries = Table(
    'webhook_deliveries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('idempotency_key', String(128), nullable=False, unique=True),
    Column('event_kind', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=text('false'), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('error', Text, nullable=True),
    Index('idx_webhook_deliveries_received_at', 'received_at'),
)

