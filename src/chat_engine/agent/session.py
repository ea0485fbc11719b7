"""
Message stores - where finalized conversation messages are persisted.
"""

from datetime import timezone
from typing import Protocol, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..llm.base import Message, MessageStatus, Role
from ..models import Conversation, MessageRecord, ToolCallRecord
from ..tools.base import ToolCallRequest, ToolCallStatus

logger = structlog.get_logger()


class MessageStore(Protocol):
    """Persistence collaborator for finalized messages."""

    async def append(self, message: Message) -> None:
        ...

    async def load(self, conversation_id: str) -> list[Message]:
        ...

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        """Overwrite a conversation's history, e.g. after compression."""
        ...

    async def save_tool_calls(self, conversation_id: str, requests: Sequence[ToolCallRequest]) -> None:
        """Insert or update tool call requests."""
        ...

    async def load_tool_calls(self, conversation_id: str) -> list[ToolCallRequest]:
        ...


class InMemoryMessageStore:
    """Process-local store, the default when no database is configured."""

    def __init__(self):
        self._messages: dict[str, list[Message]] = {}
        self._tool_calls: dict[str, dict[str, ToolCallRequest]] = {}

    async def append(self, message: Message) -> None:
        if not message.is_final:
            raise ValueError(f"Message {message.id} is still streaming")
        self._messages.setdefault(message.conversation_id, []).append(message)

    async def load(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        self._messages[conversation_id] = list(messages)

    async def save_tool_calls(self, conversation_id: str, requests: Sequence[ToolCallRequest]) -> None:
        calls = self._tool_calls.setdefault(conversation_id, {})
        for request in requests:
            calls[request.id] = request

    async def load_tool_calls(self, conversation_id: str) -> list[ToolCallRequest]:
        return list(self._tool_calls.get(conversation_id, {}).values())


def _to_record(message: Message, position: int) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        conversation_id=message.conversation_id,
        position=position,
        role=message.role.value,
        content=message.content,
        status=message.status.value,
        tool_call_id=message.tool_call_id,
        is_summary=message.is_summary,
        created_at=message.created_at,
    )


def _from_record(record: MessageRecord) -> Message:
    created_at = record.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Message(
        id=record.id,
        conversation_id=record.conversation_id,
        role=Role(record.role),
        content=record.content,
        tool_call_id=record.tool_call_id,
        created_at=created_at,
        status=MessageStatus(record.status),
        is_summary=record.is_summary,
    )


def _to_tool_record(conversation_id: str, request: ToolCallRequest) -> ToolCallRecord:
    return ToolCallRecord(
        id=request.id,
        conversation_id=conversation_id,
        message_id=request.message_id,
        server_id=request.server_id,
        tool_name=request.tool_name,
        parameters=request.parameters,
        status=request.status.value,
        error=request.error,
        parse_error=request.parse_error,
    )


def _from_tool_record(record: ToolCallRecord) -> ToolCallRequest:
    return ToolCallRequest(
        id=record.id,
        server_id=record.server_id,
        tool_name=record.tool_name,
        parameters=dict(record.parameters or {}),
        status=ToolCallStatus(record.status),
        error=record.error,
        parse_error=record.parse_error,
        message_id=record.message_id,
    )


class SqlMessageStore:
    """SQLAlchemy-backed store."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def _ensure_conversation(self, db: AsyncSession, conversation_id: str) -> None:
        if await db.get(Conversation, conversation_id) is None:
            db.add(Conversation(id=conversation_id))
            await db.flush()
            logger.info("Created conversation", conversation_id=conversation_id)

    async def append(self, message: Message) -> None:
        if not message.is_final:
            raise ValueError(f"Message {message.id} is still streaming")

        async with self.session_maker() as db:
            await self._ensure_conversation(db, message.conversation_id)
            result = await db.execute(
                select(func.count(MessageRecord.id))
                .where(MessageRecord.conversation_id == message.conversation_id)
            )
            position = result.scalar_one()
            db.add(_to_record(message, position))
            await db.commit()

    async def load(self, conversation_id: str) -> list[Message]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.position)
            )
            return [_from_record(record) for record in result.scalars().all()]

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        async with self.session_maker() as db:
            await self._ensure_conversation(db, conversation_id)
            await db.execute(
                delete(MessageRecord).where(MessageRecord.conversation_id == conversation_id)
            )
            for position, message in enumerate(messages):
                db.add(_to_record(message, position))
            await db.commit()
        logger.info("Conversation history replaced", conversation_id=conversation_id, count=len(messages))

    async def save_tool_calls(self, conversation_id: str, requests: Sequence[ToolCallRequest]) -> None:
        async with self.session_maker() as db:
            await self._ensure_conversation(db, conversation_id)
            for request in requests:
                await db.merge(_to_tool_record(conversation_id, request))
            await db.commit()

    async def load_tool_calls(self, conversation_id: str) -> list[ToolCallRequest]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ToolCallRecord)
                .where(ToolCallRecord.conversation_id == conversation_id)
                .order_by(ToolCallRecord.created_at)
            )
            return [_from_tool_record(record) for record in result.scalars().all()]
