"""
Database schema and initialization.

Creates the relational tables on startup and seeds the default admin
user plus any AI connections listed in the optional YAML seed file.
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import bcrypt
import yaml
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from mcpchat.config import settings

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "ollama", "anthropic", "custom")
MESSAGE_ROLES = ("user", "assistant", "system")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    password: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AIConnection(Base):
    __tablename__ = "ai_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="custom")
    description: Mapped[str] = mapped_column(Text, default="")
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(32), default="disconnected")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Tool(Base):
    """Registered tool definition. Stored and managed only; nothing executes it."""

    __tablename__ = "tools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="mcp")
    description: Mapped[str] = mapped_column(Text, default="")
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), default="New conversation")
    ai_connection_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("ai_connections.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine; in-memory SQLite shares a single connection."""
    url = database_url or settings.database_url
    if ":memory:" in url:
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def load_connection_seeds(path: Path) -> list[dict[str, Any]]:
    """Read AI connection definitions from a YAML file."""
    if not path.exists():
        logger.warning("Connections file not found: %s", path)
        return []

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    seeds = []
    for entry in data.get("connections", []):
        provider = entry.get("provider", "custom")
        if provider not in PROVIDERS:
            logger.error("Skipping connection %s: unknown provider %s", entry.get("name"), provider)
            continue
        seeds.append(
            {
                "name": entry["name"],
                "provider": provider,
                "description": entry.get("description", ""),
                "config": entry.get("config", {}),
                "is_active": entry.get("is_active", True),
            }
        )
    return seeds


async def init_db(
    engine: AsyncEngine,
    admin_password: Optional[str] = None,
    connections_file: Optional[str] = None,
) -> None:
    """
    Create tables and seed default data.

    - Admin user (username "admin") if missing
    - AI connections from the YAML seed file if the table is empty
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    session_factory = create_session_factory(engine)
    async with session_factory() as session:
        admin = await session.scalar(select(User).where(User.username == "admin"))
        if admin is None:
            session.add(
                User(
                    username="admin",
                    password=hash_password(admin_password or settings.default_admin_password),
                    role="admin",
                )
            )
            logger.info("Created default admin user")

        seed_path = connections_file or settings.connections_file
        if seed_path:
            existing = await session.scalar(select(func.count(AIConnection.id)))
            if not existing:
                seeds = load_connection_seeds(Path(seed_path))
                for seed in seeds:
                    session.add(AIConnection(**seed))
                logger.info("Seeded %d AI connections from %s", len(seeds), seed_path)

        await session.commit()
