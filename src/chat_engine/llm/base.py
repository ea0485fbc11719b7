"""
Base types shared by the transports and the session engine.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import FrozenInstanceError, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator


class Role(str, Enum):
    """Message roles for conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MessageStatus(str, Enum):
    """Lifecycle of a message. Anything but STREAMING is final."""
    STREAMING = "streaming"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Message:
    """A message in a conversation.

    Mutable only while STREAMING. finalize() freezes the instance; any later
    attribute assignment raises FrozenInstanceError.
    """

    conversation_id: str
    role: Role
    content: str = ""
    tool_call_id: str | None = None
    id: str = field(default_factory=_new_message_id)
    created_at: datetime = field(default_factory=_utcnow)
    status: MessageStatus = MessageStatus.COMPLETE
    is_summary: bool = False
    _frozen: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        self.status = MessageStatus(self.status)
        if self.status is not MessageStatus.STREAMING:
            self._frozen = True

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen"):
            raise FrozenInstanceError(f"Message {self.id} is final; cannot assign '{name}'")
        super().__setattr__(name, value)

    @property
    def is_final(self) -> bool:
        return self._frozen

    def append(self, delta: str) -> None:
        """Append streamed content to an in-flight message."""
        self.content = self.content + delta

    def finalize(self, status: MessageStatus) -> None:
        """Mark the message final with the given status and freeze it."""
        if status is MessageStatus.STREAMING:
            raise ValueError("Cannot finalize a message as streaming")
        self.status = status
        self._frozen = True

    @classmethod
    def streaming(cls, conversation_id: str, role: Role = Role.ASSISTANT) -> "Message":
        """Create an empty in-flight message."""
        return cls(conversation_id=conversation_id, role=role, status=MessageStatus.STREAMING)

    def to_wire(self, tool_calls: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        """OpenAI-compatible message dict.

        tool_calls are the entries an assistant message announces; each needs a
        matching tool message later in the request.
        """
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.role is Role.ASSISTANT and tool_calls:
            payload["tool_calls"] = tool_calls
        if self.role is Role.TOOL and self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass(frozen=True)
class ConnectionDescriptor:
    """An inference endpoint configured in settings. Immutable snapshot."""

    id: str
    url: str
    api_key: str | None = None
    enabled: bool = True
    priority: int = 0
    name: str = ""
    model: str | None = None

    @property
    def is_usable(self) -> bool:
        return self.enabled and bool(self.url and self.url.strip())


class ModeKind(str, Enum):
    """Which path serves a send."""
    DIRECT = "direct"
    OFFLINE = "offline"
    BACKEND = "backend"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Mode:
    """Tagged union of the resolved connection mode.

    Only DIRECT carries a connection.
    """

    kind: ModeKind
    connection: ConnectionDescriptor | None = None

    @classmethod
    def direct(cls, connection: ConnectionDescriptor) -> "Mode":
        return cls(ModeKind.DIRECT, connection)

    @classmethod
    def offline(cls) -> "Mode":
        return cls(ModeKind.OFFLINE)

    @classmethod
    def backend(cls) -> "Mode":
        return cls(ModeKind.BACKEND)

    @classmethod
    def unavailable(cls) -> "Mode":
        return cls(ModeKind.UNAVAILABLE)

    def __str__(self) -> str:
        if self.connection is not None:
            return f"{self.kind.value}({self.connection.id})"
        return self.kind.value


@dataclass
class ChatRequest:
    """An outbound chat completion request."""

    model: str
    messages: list[dict[str, Any]]
    stream: bool = True
    temperature: float = 0.7
    max_tokens: int = 4096

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.messages,
            "stream": self.stream,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


class CancelToken:
    """Per-conversation abort handle."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class Transport(ABC):
    """Opens streams to whatever serves a given mode."""

    @abstractmethod
    def open(
        self,
        mode: Mode,
        request: ChatRequest,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        """Open a streaming request and yield raw SSE bytes.

        Implementations are async generators; callers close them with aclose().
        """

    @abstractmethod
    async def complete(self, mode: Mode, request: ChatRequest) -> str:
        """Non-streaming request returning the assistant text."""

    async def aclose(self) -> None:
        """Release pooled resources."""
