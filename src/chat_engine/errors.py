"""
Error taxonomy for the chat session engine.

Only ConnectionUnavailable, ConversationBusy and TransportError abort a send.
The rest are recorded in conversation history (tool errors) or surfaced as
warnings on the turn result.
"""

from typing import Any


class ChatEngineError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)


class ConnectionUnavailable(ChatEngineError):
    """No mode could be resolved for a send. Raised before any network I/O."""

    def __init__(self, message: str = "No inference endpoint is available", **extra: Any):
        super().__init__(message, **extra)


class ConversationBusy(ChatEngineError):
    """A send was attempted while the conversation already has an active stream."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"Conversation '{conversation_id}' already has an active stream",
            conversation_id=conversation_id,
        )


class TransportError(ChatEngineError):
    """Unrecoverable transport failure (connect error, HTTP error status)."""

    def __init__(self, message: str, status_code: int | None = None, **extra: Any):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **extra)


class DecodeError(ChatEngineError):
    """The stream ended with buffered content that never parsed."""

    def __init__(self, message: str, buffered: list[str] | None = None):
        self.buffered = buffered or []
        super().__init__(message, buffered=self.buffered)


class ToolValidationError(ChatEngineError):
    """A tool call failed validation against the tool's parameter schema."""

    def __init__(self, request_id: str, tool_name: str, errors: list[str]):
        self.request_id = request_id
        self.tool_name = tool_name
        self.errors = errors
        super().__init__(
            f"Invalid call to '{tool_name}': {'; '.join(errors)}",
            request_id=request_id,
        )


class ToolExecutionError(ChatEngineError):
    """A tool ran and failed, either with an error result or an exception."""

    def __init__(self, request_id: str, tool_name: str, detail: str):
        self.request_id = request_id
        self.tool_name = tool_name
        self.detail = detail
        super().__init__(
            f"Tool '{tool_name}' failed: {detail}",
            request_id=request_id,
        )


class MaxIterationsExceeded(ChatEngineError):
    """The tool continuation loop hit its iteration bound."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"Tool loop stopped after {max_iterations} model turns",
            max_iterations=max_iterations,
        )


class CompressionInvariantViolation(AssertionError):
    """Compression removed or altered content it must never touch.

    This is a programming error, not a user-facing condition.
    """
