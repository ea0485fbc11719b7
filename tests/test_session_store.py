"""
Tests for message stores.
"""

from datetime import timezone

import pytest
import pytest_asyncio

from chat_engine.agent import InMemoryMessageStore, SqlMessageStore
from chat_engine.llm.base import Message, MessageStatus, Role
from chat_engine.models import init_database
from chat_engine.tools import ToolCallRequest, ToolCallStatus


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    session_maker = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'db' / 'chat.db'}")
    return SqlMessageStore(session_maker)


def _messages() -> list[Message]:
    return [
        Message(conversation_id="c1", role=Role.USER, content="What is 2+2?"),
        Message(conversation_id="c1", role=Role.ASSISTANT, content="4", status=MessageStatus.CANCELLED),
        Message(conversation_id="c1", role=Role.TOOL, content="echo: hi", tool_call_id="call-1"),
    ]


@pytest.mark.asyncio
async def test_in_memory_store_rejects_streaming_messages():
    """Test only final messages are persisted."""
    store = InMemoryMessageStore()

    with pytest.raises(ValueError):
        await store.append(Message.streaming("c1"))
    assert await store.load("c1") == []


@pytest.mark.asyncio
async def test_in_memory_store_replace():
    """Test replacing a conversation's history."""
    store = InMemoryMessageStore()
    first, second, third = _messages()
    for message in (first, second, third):
        await store.append(message)

    await store.replace("c1", [third])

    assert await store.load("c1") == [third]
    assert await store.load("other") == []


@pytest.mark.asyncio
async def test_sql_store_round_trip(sql_store):
    """Test messages come back in order with every field intact."""
    originals = _messages()
    for message in originals:
        await sql_store.append(message)

    loaded = await sql_store.load("c1")

    assert [m.id for m in loaded] == [m.id for m in originals]
    assert [m.role for m in loaded] == [Role.USER, Role.ASSISTANT, Role.TOOL]
    assert loaded[1].status is MessageStatus.CANCELLED
    assert loaded[2].tool_call_id == "call-1"
    assert all(m.is_final for m in loaded)
    assert loaded[0].created_at.tzinfo is not None
    assert loaded[0].created_at.astimezone(timezone.utc) == originals[0].created_at


@pytest.mark.asyncio
async def test_sql_store_replace(sql_store):
    """Test compression output overwrites the stored history."""
    originals = _messages()
    for message in originals:
        await sql_store.append(message)

    summary = Message(
        conversation_id="c1",
        role=Role.ASSISTANT,
        content="[Previous conversation summary]: arithmetic",
        is_summary=True,
    )
    await sql_store.replace("c1", [summary, originals[2]])

    loaded = await sql_store.load("c1")
    assert [m.id for m in loaded] == [summary.id, originals[2].id]
    assert loaded[0].is_summary is True

    # Appends continue after the replaced history
    extra = Message(conversation_id="c1", role=Role.USER, content="And 3+3?")
    await sql_store.append(extra)
    assert (await sql_store.load("c1"))[-1].id == extra.id


@pytest.mark.asyncio
async def test_sql_store_keeps_conversations_apart(sql_store):
    """Test loads are scoped to one conversation."""
    await sql_store.append(Message(conversation_id="a", role=Role.USER, content="in a"))
    await sql_store.append(Message(conversation_id="b", role=Role.USER, content="in b"))

    assert [m.content for m in await sql_store.load("a")] == ["in a"]
    assert await sql_store.load("missing") == []


@pytest.mark.asyncio
async def test_sql_store_tool_calls_round_trip(sql_store):
    """Test tool call requests are saved, updated and loaded per conversation."""
    assistant = Message(conversation_id="c1", role=Role.ASSISTANT, content="Checking")
    await sql_store.append(assistant)
    request = ToolCallRequest(
        server_id="math",
        tool_name="add",
        parameters={"a": 1, "b": 2},
        message_id=assistant.id,
    )
    await sql_store.save_tool_calls("c1", [request])

    request.status = ToolCallStatus.FAILED
    request.error = "Tool 'add' failed: overflow"
    await sql_store.save_tool_calls("c1", [request])

    loaded = await sql_store.load_tool_calls("c1")
    assert len(loaded) == 1
    call = loaded[0]
    assert call.id == request.id
    assert call.message_id == assistant.id
    assert (call.server_id, call.tool_name) == ("math", "add")
    assert call.parameters == {"a": 1, "b": 2}
    assert call.status is ToolCallStatus.FAILED
    assert call.error == "Tool 'add' failed: overflow"
    assert await sql_store.load_tool_calls("other") == []


@pytest.mark.asyncio
async def test_in_memory_store_tool_calls():
    """Test the in-memory store keeps tool calls keyed by id."""
    store = InMemoryMessageStore()
    request = ToolCallRequest(server_id="local", tool_name="echo", parameters={"text": "hi"})

    await store.save_tool_calls("c1", [request])
    await store.save_tool_calls("c1", [request])

    assert await store.load_tool_calls("c1") == [request]
    assert await store.load_tool_calls("c2") == []
