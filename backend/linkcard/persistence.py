from __future__ import annotations

from pathlib import Path

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
AutoId = BigInteger().with_variant(Integer(), "sqlite")


def _is_sqlite_memory(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"}


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if _is_sqlite_memory(value):
        return value
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path:
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Relational schema for profiles, links, events, webhooks and delivery attempts.
    Works against SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        is_sqlite = self.database_url.startswith("sqlite")
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        if is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        if _is_sqlite_memory(self.database_url):
            engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(self.database_url, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.metadata = MetaData()
        self.profiles = Table(
            "profiles",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("username", String(30), nullable=False, unique=True),
            Column("display_name", String(120), nullable=True),
            Column("title", String(120), nullable=True),
            Column("bio", Text, nullable=True),
            Column("photo_url", String(2048), nullable=True),
            Column("email", String(254), nullable=True),
            Column("phone", String(40), nullable=True),
            Column("address", Text, nullable=True),
            Column("website", String(2048), nullable=True),
            Column("theme", JSON, nullable=False, default=dict),
            Column("socials", JSON, nullable=False, default=dict),
            Column("seo", JSON, nullable=False, default=dict),
            Column("is_public", Boolean, nullable=False, default=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.links = Table(
            "links",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column(
                "profile_id",
                String(120),
                ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            Column("title", String(120), nullable=False),
            Column("url", String(2048), nullable=False),
            Column("description", Text, nullable=True),
            Column("position", Integer, nullable=False, default=0),
            Column("enabled", Boolean, nullable=False, default=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            Index("ix_links_profile_position", "profile_id", "position"),
        )
        self.events = Table(
            "events",
            self.metadata,
            Column("id", AutoId, primary_key=True, autoincrement=True),
            Column(
                "profile_id",
                String(120),
                ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            Column("event_type", String(40), nullable=False),
            # Not a foreign key: clicks outlive the link they point at.
            Column("link_id", String(40), nullable=True),
            Column("utm", JSON, nullable=True),
            Column("referrer", String(2048), nullable=True),
            Column("ip", String(64), nullable=True),
            Column("user_agent", String(512), nullable=True),
            Column("country", String(64), nullable=True),
            Column("device", String(32), nullable=True),
            Column("metadata", JSON, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Index("ix_events_profile_created", "profile_id", "created_at"),
            Index("ix_events_profile_type_created", "profile_id", "event_type", "created_at"),
        )
        self.webhooks = Table(
            "webhooks",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column(
                "profile_id",
                String(120),
                ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            Column("name", String(120), nullable=False),
            Column("url", String(2048), nullable=False),
            Column("secret", String(128), nullable=False),
            Column("events", JSON, nullable=False, default=list),
            Column("enabled", Boolean, nullable=False, default=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            Index("ix_webhooks_profile", "profile_id"),
        )
        self.webhook_deliveries = Table(
            "webhook_deliveries",
            self.metadata,
            Column("id", AutoId, primary_key=True, autoincrement=True),
            Column(
                "webhook_id",
                String(40),
                ForeignKey("webhooks.id", ondelete="CASCADE"),
                nullable=False,
            ),
            Column(
                "event_id",
                AutoId,
                ForeignKey("events.id", ondelete="CASCADE"),
                nullable=True,
            ),
            Column("status_code", Integer, nullable=True),
            Column("attempt", Integer, nullable=False, default=1),
            Column("response_ms", Integer, nullable=True),
            Column("error", Text, nullable=True),
            Column("state", String(20), nullable=False),
            Column("created_at", DateTime, nullable=False),
            Index("ix_webhook_deliveries_webhook_created", "webhook_id", "created_at"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
