"""SQLAlchemy + SQLite persistence for chat sessions, messages and spending.

Users and agents are owned by the CMS; this service only reads the columns
it needs from them.
"""

import os
from datetime import datetime, timezone

import structlog
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserRow(Base):
    """Subset of the CMS user record used for quota resolution."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    account_class = Column(String, nullable=False, default="free")
    daily_token_limit = Column(Integer, nullable=True)  # manual override
    customer_inventory = Column(Text, nullable=True)  # JSON string, Stripe inventory shape


class AgentRow(Base):
    """Selectable chat persona."""
    __tablename__ = "agents"

    slug = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    system_prompt = Column(Text, nullable=False, default="")
    k_results = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ChatSessionRow(Base):
    """One conversation and its lifecycle state."""
    __tablename__ = "chat_sessions"

    conversation_id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    agent_slug = Column(String, nullable=True)
    title = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # "active" or "closed"
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_activity = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class MessageRow(Base):
    """Persistent chat message row."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, index=True, nullable=False)
    role = Column(String, nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    sources = Column(Text, nullable=True)  # JSON string
    timestamp = Column(DateTime, nullable=False, default=utcnow)


class SpendingRow(Base):
    """Append-only ledger row; never updated or deleted."""
    __tablename__ = "spending_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, index=True, nullable=False)
    service = Column(String, nullable=False)  # "embedding" or "llm"
    model = Column(String, nullable=False)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=False)
    cost_usd = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)


_engine = None
_SessionLocal = None


def init_db(database_url: str | None = None) -> None:
    """Create engine + tables. Call once at startup.

    Args:
        database_url: SQLAlchemy connection string. Defaults to DATABASE_URL env var.
    """
    global _engine, _SessionLocal

    url = database_url or os.environ.get("DATABASE_URL", "sqlite:///data/lectern.sqlite")
    if url.endswith(":memory:"):
        # Request handlers run in a threadpool; share the single in-memory connection
        _engine = create_engine(
            url, echo=False, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        _engine = create_engine(url, echo=False)
    _SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False)

    Base.metadata.create_all(_engine)
    logger.info("db.initialized", url=url.split("///")[0] + "///***")


def get_session() -> Session:
    """Get a new database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()
