"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management behind an injectable Database
- Connection pooling with sane defaults
- Table definitions for the entitlement engine
- Idempotent insert (upsert-do-nothing) across dialects
"""
from typing import Any, Dict, Iterable, Optional
from contextlib import contextmanager
from datetime import timezone
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
    insert,
    select,
    text,
    true,
    false,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.types import TypeDecorator
import logging
import os

from cardhub.core.clock import ensure_utc
from cardhub.core.config import settings
from cardhub.core.errors import StorageError


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every dialect.

    SQLite has no timezone support, so values are stored as naive UTC and
    re-attached to UTC when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def create_db_engine(url: str):
    """Create an engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:") or url.endswith("pysqlite://"):
            # A single shared connection keeps the in-memory database alive
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


class Database:
    """Engine + session factory handed explicitly to every service."""

    def __init__(self, url: Optional[str] = None, *, engine=None):
        if engine is None:
            url = url or get_database_url()
            if not url:
                raise ValueError(
                    "DATABASE_URL is not configured. "
                    "Set DATABASE_URL in environment or .env file."
                )
            engine = create_db_engine(url)
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self):
        """
        Transactional scope around a series of operations.

        Usage:
            with database.session() as session:
                session.execute(...)

        Commits on success. Domain errors roll back and propagate as-is;
        any other SQLAlchemy failure rolls back and surfaces as StorageError.
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "[database] storage failure",
                extra={"error_code": "storage_error", "error": exc.__class__.__name__},
            )
            raise StorageError(f"Storage operation failed: {exc.__class__.__name__}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """
        Create all tables defined in metadata.

        This is idempotent - tables that already exist will not be recreated.
        """
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """
        Drop all tables defined in metadata.

        WARNING: This is destructive! Only use in tests or development.
        """
        metadata.drop_all(bind=self.engine)

    def reset(self) -> None:
        self.drop_all()
        self.create_all()

    def check_connection(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Database connection check failed: %s", e)
            return False

    def insert_ignore(
        self,
        session: Session,
        table: Table,
        values: Dict[str, Any],
        conflict_columns: Iterable[str],
    ) -> bool:
        """Insert a row unless it conflicts on ``conflict_columns``.

        Returns True when a row was inserted, False when one already existed.
        Uses native ON CONFLICT DO NOTHING where the dialect supports it.
        """
        columns = list(conflict_columns)
        dialect = self.dialect_name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert
            stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=columns)
            return bool(session.execute(stmt).rowcount)
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert
            stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=columns)
            return bool(session.execute(stmt).rowcount)

        # Generic fallback: savepoint-protected insert
        try:
            with session.begin_nested():
                session.execute(insert(table).values(**values))
            return True
        except IntegrityError:
            return False


# Plans (catalog)
plans = Table(
    'plans',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('tier', String(20), nullable=False),
    Column('price', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('interval', String(10), nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('features', JSON, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('scheduled_activate_at', UTCDateTime(), nullable=True),
    Column('scheduled_deactivate_at', UTCDateTime(), nullable=True),
    Column('created_at', UTCDateTime(), nullable=False),
    Column('updated_at', UTCDateTime(), nullable=False),
    Index('idx_plans_active_price', 'is_active', 'price'),
    Index('idx_plans_tier', 'tier'),
)

# Subscriptions. plan_id carries no FK: a plan may be deleted once it has
# no active subscribers while historical rows still reference it.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('subscriber_id', String(100), nullable=False),
    Column('plan_id', String(36), nullable=False),
    Column('status', String(20), nullable=False),  # inactive, active, cancelled, expired
    Column('current_period_start', UTCDateTime(), nullable=False),
    Column('current_period_end', UTCDateTime(), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('payment_method_id', String(100), nullable=True),
    Column('cancellation_reason', Text, nullable=True),
    Column('created_at', UTCDateTime(), nullable=False),
    Column('updated_at', UTCDateTime(), nullable=False),
    # At most one active subscription per subscriber
    Index(
        'uq_subscriptions_active_subscriber',
        'subscriber_id',
        unique=True,
        sqlite_where=text("status = 'active'"),
        postgresql_where=text("status = 'active'"),
    ),
    Index('idx_subscriptions_subscriber_status', 'subscriber_id', 'status'),
    Index('idx_subscriptions_plan_status', 'plan_id', 'status'),
    # Range scans for the renewal sweep
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
)

# Usage periods: exactly one row per subscriber
usage_periods = Table(
    'usage_periods',
    metadata,
    Column('subscriber_id', String(100), primary_key=True),
    Column('plan_id', String(36), nullable=False),
    Column('listings_created', Integer, nullable=False, server_default='0'),
    Column('boosts_used', Integer, nullable=False, server_default='0'),
    Column('period_start', UTCDateTime(), nullable=False),
    Column('period_end', UTCDateTime(), nullable=False),
    Column('created_at', UTCDateTime(), nullable=False),
    Column('updated_at', UTCDateTime(), nullable=False),
)

# Boosts
boosts = Table(
    'boosts',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('listing_id', String(100), nullable=False),
    Column('subscriber_id', String(100), nullable=False),
    Column('duration_days', Integer, nullable=False),
    Column('start_date', UTCDateTime(), nullable=False),
    Column('end_date', UTCDateTime(), nullable=False),
    Column('status', String(20), nullable=False),  # active, expired
    Column('impressions', Integer, nullable=False, server_default='0'),
    Column('clicks', Integer, nullable=False, server_default='0'),
    Column('created_at', UTCDateTime(), nullable=False),
    # At most one active boost per listing
    Index(
        'uq_boosts_active_listing',
        'listing_id',
        unique=True,
        sqlite_where=text("status = 'active'"),
        postgresql_where=text("status = 'active'"),
    ),
    Index('idx_boosts_subscriber_status', 'subscriber_id', 'status'),
    # Range scans for the expiry sweep
    Index('idx_boosts_status_end_date', 'status', 'end_date'),
)

# Sweep runs (one row per reconciliation tick)
sweep_runs = Table(
    'sweep_runs',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', UTCDateTime(), nullable=False),
    Column('finished_at', UTCDateTime(), nullable=True),
    Column('status', String(20), nullable=False),  # success, failed, skipped
    Column('stats', JSON, nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_sweep_runs_job_started', 'job_name', 'started_at'),
)


def fetch_one(session: Session, table: Table, *criteria):
    """Select a single row matching all criteria, or None."""
    stmt = select(table)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    return session.execute(stmt).first()
