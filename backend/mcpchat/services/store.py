import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from mcpchat.services.database import (
    AIConnection,
    Conversation,
    Message,
    Tool,
    User,
    create_engine,
    create_session_factory,
    utcnow,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Custom exception for persistence errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


@dataclass
class UserData:
    id: int
    username: str
    role: str
    password_hash: str = field(default="", repr=False)


@dataclass
class ConversationData:
    id: int
    user_id: int
    title: str
    ai_connection_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message_count: int = 0


@dataclass
class MessageData:
    id: int
    conversation_id: int
    role: str
    content: str
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class ConnectionData:
    """AI connection record. Read-only configuration for the streaming core."""

    id: int
    name: str
    provider: str
    config: dict = field(default_factory=dict)
    description: str = ""
    is_active: bool = True
    status: str = "disconnected"
    created_at: Optional[datetime] = None
    conversation_count: int = 0


@dataclass
class ToolData:
    id: int
    name: str
    type: str
    config: dict = field(default_factory=dict)
    description: str = ""
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _conversation(row: Conversation, message_count: int = 0) -> ConversationData:
    return ConversationData(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        ai_connection_id=row.ai_connection_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        message_count=message_count,
    )


def _message(row: Message) -> MessageData:
    return MessageData(
        id=row.id,
        conversation_id=row.conversation_id,
        role=row.role,
        content=row.content,
        metadata=row.meta or {},
        created_at=row.created_at,
    )


def _connection(row: AIConnection, conversation_count: int = 0) -> ConnectionData:
    return ConnectionData(
        id=row.id,
        name=row.name,
        provider=row.provider,
        config=dict(row.config or {}),
        description=row.description or "",
        is_active=bool(row.is_active),
        status=row.status,
        created_at=row.created_at,
        conversation_count=conversation_count,
    )


def _tool(row: Tool) -> ToolData:
    return ToolData(
        id=row.id,
        name=row.name,
        type=row.type,
        config=dict(row.config or {}),
        description=row.description or "",
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ChatStore:
    """Async persistence for users, conversations, messages, AI connections and tools."""

    def __init__(self, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_engine()
        self._sessions: async_sessionmaker = create_session_factory(self.engine)

    async def _run(self, operation: str, fn):
        """Run fn(session) in its own transaction, mapping driver errors to StoreError."""
        try:
            async with self._sessions() as session:
                result = await fn(session)
                await session.commit()
                return result
        except SQLAlchemyError as e:
            logger.error("Store operation %s failed: %s", operation, e)
            raise StoreError(f"Database error during {operation}: {e}", 500) from e

    # ==================== Users ====================

    async def get_user_by_name(self, username: str) -> Optional[UserData]:
        async def op(session):
            row = await session.scalar(select(User).where(User.username == username))
            if row is None:
                return None
            return UserData(id=row.id, username=row.username, role=row.role, password_hash=row.password)

        return await self._run("get_user_by_name", op)

    async def create_user(self, username: str, password_hash: str, role: str = "user") -> UserData:
        async def op(session):
            row = User(username=username, password=password_hash, role=role)
            session.add(row)
            await session.flush()
            return UserData(id=row.id, username=row.username, role=row.role, password_hash=row.password)

        return await self._run("create_user", op)

    # ==================== Conversations ====================

    async def list_conversations(self, user_id: int, limit: int = 20) -> list[ConversationData]:
        async def op(session):
            stmt = (
                select(Conversation, func.count(Message.id))
                .outerjoin(Message, Message.conversation_id == Conversation.id)
                .where(Conversation.user_id == user_id)
                .group_by(Conversation.id)
                .order_by(Conversation.created_at.desc(), Conversation.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_conversation(row, count) for row, count in result.all()]

        return await self._run("list_conversations", op)

    async def create_conversation(
        self,
        user_id: int,
        title: Optional[str] = None,
        ai_connection_id: Optional[int] = None,
    ) -> ConversationData:
        async def op(session):
            row = Conversation(
                user_id=user_id,
                title=title or "New conversation",
                ai_connection_id=ai_connection_id,
            )
            session.add(row)
            await session.flush()
            return _conversation(row)

        return await self._run("create_conversation", op)

    async def get_conversation(self, conversation_id: int, user_id: Optional[int] = None) -> Optional[ConversationData]:
        """Get a conversation, optionally restricted to its owner."""

        async def op(session):
            stmt = select(Conversation).where(Conversation.id == conversation_id)
            if user_id is not None:
                stmt = stmt.where(Conversation.user_id == user_id)
            row = await session.scalar(stmt)
            return _conversation(row) if row else None

        return await self._run("get_conversation", op)

    async def touch_conversation(self, conversation_id: int) -> None:
        async def op(session):
            row = await session.get(Conversation, conversation_id)
            if row is not None:
                row.updated_at = utcnow()

        await self._run("touch_conversation", op)

    async def delete_conversation(self, conversation_id: int, user_id: int) -> bool:
        async def op(session):
            row = await session.scalar(
                select(Conversation).where(
                    Conversation.id == conversation_id,
                    Conversation.user_id == user_id,
                )
            )
            if row is None:
                return False
            await session.execute(delete(Message).where(Message.conversation_id == conversation_id))
            await session.delete(row)
            return True

        return await self._run("delete_conversation", op)

    # ==================== Messages ====================

    async def add_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> MessageData:
        """Append a message. Messages are never modified after creation."""

        async def op(session):
            row = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                meta=metadata,
            )
            session.add(row)
            await session.flush()
            return _message(row)

        return await self._run("add_message", op)

    async def list_messages(self, conversation_id: int) -> list[MessageData]:
        async def op(session):
            result = await session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
            )
            return [_message(row) for row in result.all()]

        return await self._run("list_messages", op)

    # ==================== AI connections ====================

    async def list_connections(self) -> list[ConnectionData]:
        async def op(session):
            stmt = (
                select(AIConnection, func.count(Conversation.id))
                .outerjoin(Conversation, Conversation.ai_connection_id == AIConnection.id)
                .group_by(AIConnection.id)
                .order_by(AIConnection.created_at.desc(), AIConnection.id.desc())
            )
            result = await session.execute(stmt)
            return [_connection(row, count) for row, count in result.all()]

        return await self._run("list_connections", op)

    async def get_connection(self, connection_id: int, active_only: bool = False) -> Optional[ConnectionData]:
        async def op(session):
            stmt = select(AIConnection).where(AIConnection.id == connection_id)
            if active_only:
                stmt = stmt.where(AIConnection.is_active.is_(True))
            row = await session.scalar(stmt)
            return _connection(row) if row else None

        return await self._run("get_connection", op)

    async def get_latest_active_connection(self) -> Optional[ConnectionData]:
        """Most recently created active connection."""

        async def op(session):
            row = await session.scalar(
                select(AIConnection)
                .where(AIConnection.is_active.is_(True))
                .order_by(AIConnection.created_at.desc(), AIConnection.id.desc())
                .limit(1)
            )
            return _connection(row) if row else None

        return await self._run("get_latest_active_connection", op)

    async def create_connection(
        self,
        name: str,
        provider: str,
        config: dict,
        description: str = "",
        is_active: bool = True,
    ) -> ConnectionData:
        async def op(session):
            row = AIConnection(
                name=name,
                provider=provider,
                config=config,
                description=description,
                is_active=is_active,
            )
            session.add(row)
            await session.flush()
            return _connection(row)

        return await self._run("create_connection", op)

    async def update_connection(self, connection_id: int, updates: dict[str, Any]) -> Optional[ConnectionData]:
        """Apply a partial update. Returns None when the connection does not exist."""
        allowed = {"name", "provider", "description", "config", "is_active"}

        async def op(session):
            row = await session.get(AIConnection, connection_id)
            if row is None:
                return None
            for key, value in updates.items():
                if key in allowed:
                    setattr(row, key, value)
            row.updated_at = utcnow()
            await session.flush()
            return _connection(row)

        return await self._run("update_connection", op)

    async def set_connection_status(self, connection_id: int, status: str) -> None:
        async def op(session):
            row = await session.get(AIConnection, connection_id)
            if row is not None:
                row.status = status

        await self._run("set_connection_status", op)

    async def delete_connection(self, connection_id: int) -> bool:
        async def op(session):
            row = await session.get(AIConnection, connection_id)
            if row is None:
                return False
            await session.delete(row)
            return True

        return await self._run("delete_connection", op)

    # ==================== Tools ====================

    async def list_tools(self) -> list[ToolData]:
        async def op(session):
            result = await session.scalars(select(Tool).order_by(Tool.created_at.desc(), Tool.id.desc()))
            return [_tool(row) for row in result.all()]

        return await self._run("list_tools", op)

    async def get_tool(self, tool_id: int) -> Optional[ToolData]:
        async def op(session):
            row = await session.get(Tool, tool_id)
            return _tool(row) if row else None

        return await self._run("get_tool", op)

    async def create_tool(self, name: str, type: str, config: dict, description: str = "") -> ToolData:
        async def op(session):
            row = Tool(name=name, type=type, config=config, description=description, is_active=True)
            session.add(row)
            await session.flush()
            return _tool(row)

        return await self._run("create_tool", op)

    async def update_tool(self, tool_id: int, updates: dict[str, Any]) -> Optional[ToolData]:
        """Apply a partial update. Returns None when the tool does not exist."""
        allowed = {"name", "type", "description", "config", "is_active"}

        async def op(session):
            row = await session.get(Tool, tool_id)
            if row is None:
                return None
            for key, value in updates.items():
                if key in allowed:
                    setattr(row, key, value)
            row.updated_at = utcnow()
            await session.flush()
            return _tool(row)

        return await self._run("update_tool", op)

    async def delete_tool(self, tool_id: int) -> bool:
        async def op(session):
            row = await session.get(Tool, tool_id)
            if row is None:
                return False
            await session.delete(row)
            return True

        return await self._run("delete_tool", op)

    async def close(self) -> None:
        await self.engine.dispose()


# Singleton instance
store = ChatStore()
