"""
LLM module: message types and transports for OpenAI-compatible inference.

Transports:
- OpenAICompatibleTransport (direct LM servers and the backend, streaming SSE)
- OfflineTransport (canned replies, no network)
"""

from .base import (
    CancelToken,
    ChatRequest,
    ConnectionDescriptor,
    Message,
    MessageStatus,
    Mode,
    ModeKind,
    Role,
    Transport,
)
from .factory import ModeRoutingTransport, create_transport
from .limits import get_context_limit
from .offline import OfflineTransport
from .openai import OpenAICompatibleTransport

__all__ = [
    "CancelToken",
    "ChatRequest",
    "ConnectionDescriptor",
    "Message",
    "MessageStatus",
    "Mode",
    "ModeKind",
    "Role",
    "Transport",
    "ModeRoutingTransport",
    "create_transport",
    "get_context_limit",
    "OfflineTransport",
    "OpenAICompatibleTransport",
]
