"""
Durable activity store.

An append-only ``activity_events`` table written through SQLAlchemy Core.
PostgreSQL in deployments (``POSTGRES_URL``), SQLite in tests. All methods
are synchronous; the bus calls them through ``asyncio.to_thread``.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    cast,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from mcp_compose.core.exceptions import ConfigError
from mcp_compose.core.models import ActivityEvent
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

metadata = MetaData()

activity_events = Table(
    "activity_events",
    metadata,
    Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("activity_id", String(255), nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("level", String(50), nullable=False),
    Column("type", String(100), nullable=False),
    Column("server", String(255)),
    Column("client", String(255)),
    Column("message", Text, nullable=False),
    Column("details", JSON),
    Column("created_at", DateTime, nullable=False),
    Index("idx_activity_events_timestamp", "timestamp"),
    Index("idx_activity_events_level", "level"),
    Index("idx_activity_events_type", "type"),
    Index("idx_activity_events_server", "server"),
    Index("idx_activity_events_created_at", "created_at"),
)


def _naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC so SQLite and PostgreSQL agree."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ActivityStore:
    """Relational store for activity events."""

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy database URL (``postgresql://...`` or ``sqlite://``)
            echo: Log emitted SQL
        """
        try:
            self.url = make_url(url)
        except ArgumentError as e:
            raise ConfigError(f"Invalid activity store URL: {e}")
        self.engine: Engine = self._create_engine(echo)
        self._initialized = False

    def _create_engine(self, echo: bool) -> Engine:
        if self.url.get_backend_name() == "sqlite":
            return create_engine(
                self.url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                future=True,
            )
        return create_engine(
            self.url,
            echo=echo,
            pool_pre_ping=True,
            pool_recycle=300,
            future=True,
        )

    def _ensure_database(self) -> None:
        """Create the target PostgreSQL database if it is missing."""
        if self.url.get_backend_name() != "postgresql" or not self.url.database:
            return

        system_url = self.url.set(database="postgres")
        system_engine = create_engine(system_url, isolation_level="AUTOCOMMIT", future=True)
        try:
            with system_engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": self.url.database},
                ).scalar()
                if not exists:
                    logger.info(f"Creating activity database '{self.url.database}'")
                    conn.execute(text(f'CREATE DATABASE "{self.url.database}"'))
        finally:
            system_engine.dispose()

    def initialize(self) -> None:
        """Create the database, table and indexes if needed."""
        if self._initialized:
            return
        self._ensure_database()
        metadata.create_all(self.engine)
        self._initialized = True
        logger.info("Activity store initialized", extra={"backend": self.url.get_backend_name()})

    def record(self, event: ActivityEvent) -> None:
        """Persist one event."""
        self.initialize()
        with self.engine.begin() as conn:
            conn.execute(
                insert(activity_events).values(
                    activity_id=event.id,
                    timestamp=_naive_utc(event.timestamp),
                    level=event.level,
                    type=event.type,
                    server=event.server,
                    client=event.client,
                    message=event.message,
                    details=event.details or {},
                    created_at=_naive_utc(datetime.now(timezone.utc)),
                )
            )

    def recent(self, limit: int = 100, since: Optional[datetime] = None) -> List[ActivityEvent]:
        """
        Most recent events first.

        Args:
            limit: Maximum rows, 0 or less for no limit
            since: Only events at or after this wall timestamp
        """
        self.initialize()
        query = select(activity_events)
        if since is not None:
            query = query.where(activity_events.c.timestamp >= _naive_utc(since))
        query = query.order_by(activity_events.c.timestamp.desc(), activity_events.c.id.desc())
        if limit and limit > 0:
            query = query.limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()

        return [
            ActivityEvent(
                id=row["activity_id"],
                timestamp=_aware(row["timestamp"]),
                level=row["level"],
                type=row["type"],
                server=row["server"],
                client=row["client"],
                message=row["message"],
                details=row["details"] or {},
            )
            for row in rows
        ]

    def stats(self) -> Dict[str, Any]:
        """Counters for today's activity, in the shape the dashboard expects."""
        self.initialize()
        now = datetime.now(timezone.utc)
        today = _naive_utc(now.replace(hour=0, minute=0, second=0, microsecond=0))
        day_ago = _naive_utc(now - timedelta(hours=24))
        hour_ago = _naive_utc(now - timedelta(hours=1))
        t = activity_events.c

        def count_when(condition):
            return func.count(case((condition, 1)))

        tool_condition = or_(
            t.type.ilike("%tool%"),
            t.message.ilike("%tool%"),
            cast(t.details, Text).ilike("%tool%"),
        )

        query = select(
            func.count().label("total"),
            count_when(t.level == "ERROR").label("errors"),
            count_when(t.level == "WARN").label("warnings"),
            count_when(t.level == "INFO").label("info"),
            count_when(t.type == "request").label("requests"),
            count_when(tool_condition).label("tool_calls"),
            count_when(t.created_at >= day_ago).label("last_24h"),
            count_when(t.created_at >= hour_ago).label("last_1h"),
        ).where(t.created_at >= today)

        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().one()

        return {
            "totalToday": row["total"],
            "requestsToday": row["requests"],
            "errorsToday": row["errors"],
            "toolCallsToday": row["tool_calls"],
            "warningsToday": row["warnings"],
            "infoToday": row["info"],
            "last24h": row["last_24h"],
            "last1h": row["last_1h"],
            "total": row["total"],
            "errors": row["errors"],
            "warnings": row["warnings"],
            "info": row["info"],
        }

    def cleanup(self, older_than: timedelta) -> int:
        """Delete rows inserted before ``now - older_than``; returns the count."""
        if older_than.total_seconds() <= 0:
            raise ConfigError("Retention must be a positive duration")
        self.initialize()
        cutoff = _naive_utc(datetime.now(timezone.utc) - older_than)
        with self.engine.begin() as conn:
            result = conn.execute(delete(activity_events).where(activity_events.c.created_at < cutoff))
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Cleaned up {removed} old activity records")
        return removed

    def close(self) -> None:
        self.engine.dispose()


def open_store(url: Optional[str]) -> Optional[ActivityStore]:
    """Open and initialize a store, or return None when unconfigured or unreachable."""
    if not url:
        return None
    try:
        store = ActivityStore(url)
        store.initialize()
        return store
    except (SQLAlchemyError, ConfigError) as e:
        logger.warning(f"Activity store unavailable, continuing without persistence: {e}")
        return None
