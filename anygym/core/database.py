"""
Engine, sessions and the relational schema.

Everything is SQLAlchemy Core: tables below are plain `Table` objects and
services issue explicit SELECT/UPDATE statements against them. Counter
changes are single conditional UPDATEs, so correctness never depends on
in-process locks.
"""
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Float,
    Numeric,
    Date,
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
    false,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from anygym.core.config import settings

logger = logging.getLogger("anygym.database")

metadata = MetaData()

# Postgres pool sizing
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE_SECONDS = 3600
# Seconds a SQLite writer waits on the file lock
SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL."""
    return (
        os.getenv("TEST_DATABASE_URL")
        or settings.TEST_DATABASE_URL
        or os.getenv("DATABASE_URL")
        or settings.DATABASE_URL
    )


def _engine_options(url: str) -> dict:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return {
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE_SECONDS,
            "pool_pre_ping": True,
        }
    # Handlers run on worker threads
    options = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
    if parsed.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return options


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the process-wide engine, disposing any previous one."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured (set it in the environment or .env)")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.info("database.engine_ready backend=%s", make_url(url).get_backend_name())
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    One unit of work: commit on clean exit, roll back and re-raise otherwise.

        with get_db_session() as session:
            session.execute(update(subscriptions)...)
    """
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local resets only."""
    metadata.drop_all(bind=get_engine())


# Users: keyed by the identity provider's immutable subject
users = Table(
    'app_users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('external_id', String(255), nullable=False, unique=True),
    Column('email', String(320), nullable=True),
    Column('full_name', Text, nullable=True),
    Column('address_postcode', String(20), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_app_users_created_at', 'created_at'),
)


# Gyms (reference data, read-only here)
gyms = Table(
    'gyms',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(200), nullable=False),
    Column('address', Text, nullable=True),
    Column('city', String(120), nullable=True),
    Column('postcode', String(20), nullable=True),
    Column('phone', String(50), nullable=True),
    Column('latitude', Float, nullable=True),
    Column('longitude', Float, nullable=True),
    Column('gym_chain_id', Integer, nullable=True),
    Column('required_tier', String(20), nullable=False, server_default='standard'),
    Column('status', String(20), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_gyms_name', 'name'),
    Index('idx_gyms_chain', 'gym_chain_id'),
)


# Subscriptions: the quota ledger
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('app_users.id'), nullable=False, index=True),
    Column('tier', String(20), nullable=False),
    Column('monthly_limit', Integer, nullable=False),
    Column('guest_passes_limit', Integer, nullable=False, server_default='0'),
    Column('visits_used', Integer, nullable=False, server_default='0'),
    Column('guest_passes_used', Integer, nullable=False, server_default='0'),
    Column('price', Numeric(10, 2, asdecimal=False), nullable=False, server_default='0'),
    Column('start_date', Date, nullable=True),
    Column('next_billing_date', Date, nullable=True),
    Column('status', String(50), nullable=False, index=True),  # active, cancelled, canceled, past_due, ...
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('stripe_customer_id', String(100), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # At most one active subscription per user
    Index(
        'uq_subscriptions_one_active_per_user',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)


# Issued passes
gym_passes = Table(
    'gym_passes',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('app_users.id'), nullable=False, index=True),
    Column('gym_id', Integer, ForeignKey('gyms.id'), nullable=False, index=True),
    Column('pass_code', String(64), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),  # active, used, expired
    Column('valid_until', DateTime(timezone=True), nullable=False),
    Column('used_at', DateTime(timezone=True), nullable=True),
    Column('subscription_tier', String(20), nullable=True),
    Column('pass_cost', Numeric(10, 2, asdecimal=False), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('pass_code', name='uq_gym_passes_pass_code'),
    Index('idx_gym_passes_user_created', 'user_id', 'created_at'),
    Index('idx_gym_passes_status_valid_until', 'status', 'valid_until'),
)


# Catalog price of one visit per tier
pass_pricing = Table(
    'pass_pricing',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tier', String(20), nullable=False),
    Column('price', Numeric(10, 2, asdecimal=False), nullable=False),
    Column('effective_from', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_pass_pricing_tier_effective', 'tier', 'effective_from'),
)


# Billing events (webhook idempotency ledger)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('payload', Text, nullable=True),  # raw body, kept for replay
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    # Lease of the worker currently applying the event; stale leases can be re-claimed
    Column('locked_at', DateTime(timezone=True), nullable=True),
    Column('lock_owner', String(100), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
