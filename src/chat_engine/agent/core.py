"""
Session orchestrator - the chat session engine.

For every send it:
1. Snapshots the connections and resolves the mode
2. Compresses the history when the token budget crosses its threshold
3. Streams the assistant turn through the mode's transport and decoder
4. Hands the finished turn to the tool interpreter, looping while the model
   keeps calling tools

Conversations are keyed by id. Each owns its messages, mode, cancel token,
tool call requests and budget tracker; at most one stream per conversation is
active at a time.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

import structlog

from ..config import DEFAULT_SYSTEM_PROMPT, Settings, get_settings
from ..errors import (
    ConnectionUnavailable,
    ConversationBusy,
    DecodeError,
    MaxIterationsExceeded,
    TransportError,
)
from ..llm.base import (
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
from ..llm.factory import create_transport
from ..llm.limits import get_context_limit
from ..streaming import decode_stream
from ..tokenizer import EstimatingTokenizer, Tokenizer, create_tokenizer
from ..tools import InterpreterState, ToolCallInterpreter, ToolCallRequest, ToolExecutor, ToolRegistry
from .budget import ContextBudget, TokenBudgetTracker
from .compaction import CompressionConfig, ContextCompressor, compression_target
from .resolver import ConnectionResolver, http_backend_probe
from .session import InMemoryMessageStore, MessageStore

logger = structlog.get_logger()

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer. Create concise, fact-preserving summaries."

ConnectionSource = Callable[[], Iterable[ConnectionDescriptor]]
DeltaCallback = Callable[[str], Any]


@dataclass
class EngineConfig:
    """Orchestrator configuration."""

    model: str = "gpt-4o"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    context_limit: int = 0
    temperature: float = 0.7
    max_tokens: int = 4096
    offline_mode: bool = False
    max_tool_iterations: int = 10
    compression: CompressionConfig = field(default_factory=CompressionConfig)

    @property
    def limit_tokens(self) -> int:
        return self.context_limit or get_context_limit(self.model)


@dataclass
class ConversationState:
    """Everything the orchestrator owns for one conversation."""

    conversation_id: str
    budget: TokenBudgetTracker
    messages: list[Message] = field(default_factory=list)
    mode: Mode | None = None
    cancel_token: CancelToken | None = None
    tool_calls: dict[str, ToolCallRequest] = field(default_factory=dict)
    memory_context: str = ""
    active: bool = False
    loaded: bool = False


@dataclass
class TurnResult:
    """Outcome of one send."""

    conversation_id: str
    message: Message | None
    mode: Mode
    state: InterpreterState
    iterations: int
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    compressed: bool = False

    @property
    def content(self) -> str:
        return self.message.content if self.message else ""

    @property
    def cancelled(self) -> bool:
        return self.message is not None and self.message.status is MessageStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message": message_to_dict(self.message) if self.message else None,
            "mode": str(self.mode),
            "state": self.state.value,
            "iterations": self.iterations,
            "tool_calls": [
                {
                    "id": r.id,
                    "server_id": r.server_id,
                    "tool_name": r.tool_name,
                    "parameters": r.parameters,
                    "status": r.status.value,
                    "error": r.error,
                }
                for r in self.tool_calls
            ],
            "warnings": self.warnings,
            "compressed": self.compressed,
        }


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "role": message.role.value,
        "content": message.content,
        "tool_call_id": message.tool_call_id,
        "status": message.status.value,
        "is_summary": message.is_summary,
        "created_at": message.created_at.isoformat(),
    }


class SessionOrchestrator:
    """Runs sends for many conversations against one transport."""

    def __init__(
        self,
        transport: Transport,
        connections: ConnectionSource | Sequence[ConnectionDescriptor] = (),
        config: EngineConfig | None = None,
        tool_executor: ToolExecutor | None = None,
        tokenizer: Tokenizer | None = None,
        store: MessageStore | None = None,
        resolver: ConnectionResolver | None = None,
    ):
        self.transport = transport
        self.config = config or EngineConfig()
        self.tool_executor = tool_executor if tool_executor is not None else ToolRegistry()
        self.tokenizer = tokenizer or EstimatingTokenizer()
        self.store = store if store is not None else InMemoryMessageStore()
        self.resolver = resolver or ConnectionResolver()

        if callable(connections):
            self._connections = connections
        else:
            self._connections = lambda: connections

        self._conversations: dict[str, ConversationState] = {}
        self._active_conversation: str | None = None

    # -- conversation state ------------------------------------------------

    @property
    def system_prompt(self) -> str:
        """Base prompt plus the tool catalog."""
        catalog = self.tool_executor.describe()
        if not catalog:
            return self.config.system_prompt
        return f"{self.config.system_prompt}\n\n{catalog}"

    def _state(self, conversation_id: str) -> ConversationState:
        state = self._conversations.get(conversation_id)
        if state is None:
            budget = TokenBudgetTracker(self.tokenizer, self.config.limit_tokens)
            budget.set_system_prompt(self.system_prompt)
            state = ConversationState(conversation_id=conversation_id, budget=budget)
            self._conversations[conversation_id] = state
        return state

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Copy of the conversation's messages, including any in-flight one."""
        state = self._conversations.get(conversation_id)
        return list(state.messages) if state else []

    def get_tool_calls(self, conversation_id: str) -> list[ToolCallRequest]:
        state = self._conversations.get(conversation_id)
        return list(state.tool_calls.values()) if state else []

    def budget(self, conversation_id: str) -> ContextBudget:
        return self._state(conversation_id).budget.budget

    def is_active(self, conversation_id: str) -> bool:
        state = self._conversations.get(conversation_id)
        return state is not None and state.active

    def set_memory_context(self, conversation_id: str, memory: str) -> None:
        """Attach a memory block sent alongside the system prompt."""
        state = self._state(conversation_id)
        state.memory_context = memory
        state.budget.set_memory(memory)

    async def load_history(self, conversation_id: str) -> list[Message]:
        """Hydrate a conversation from the message store."""
        state = self._state(conversation_id)
        if state.active:
            raise ConversationBusy(conversation_id)
        await self._hydrate(state)
        return list(state.messages)

    async def _hydrate(self, state: ConversationState) -> None:
        state.messages = await self.store.load(state.conversation_id)
        state.tool_calls = {
            request.id: request
            for request in await self.store.load_tool_calls(state.conversation_id)
        }
        state.budget.set_history(state.messages)
        state.loaded = True
        logger.info(
            "History loaded",
            conversation_id=state.conversation_id,
            count=len(state.messages),
            tool_calls=len(state.tool_calls),
        )

    # -- cancellation ------------------------------------------------------

    def cancel(self, conversation_id: str) -> bool:
        """Abort the conversation's active stream. Returns True if one was running."""
        state = self._conversations.get(conversation_id)
        if state is None or not state.active or state.cancel_token is None:
            return False
        state.cancel_token.cancel()
        logger.info("Conversation cancelled", conversation_id=conversation_id)
        return True

    def switch_to(self, conversation_id: str) -> None:
        """Make another conversation current, cancelling the previous one's stream."""
        previous = self._active_conversation
        if previous is not None and previous != conversation_id:
            self.cancel(previous)
        self._active_conversation = conversation_id
        self._state(conversation_id)

    # -- send --------------------------------------------------------------

    async def _resolve(self, conversation_id: str) -> Mode:
        connections = tuple(self._connections())
        mode = await self.resolver.resolve(connections, self.config.offline_mode)
        if mode.kind is ModeKind.UNAVAILABLE:
            raise ConnectionUnavailable(conversation_id=conversation_id)
        return mode

    async def _append(self, state: ConversationState, message: Message) -> None:
        state.messages.append(message)
        state.budget.append_message(message)
        await self.store.append(message)

    async def send(
        self,
        conversation_id: str,
        content: str,
        on_delta: DeltaCallback | None = None,
    ) -> TurnResult:
        """Send a user message and run the turn, including any tool continuations."""
        state = self._state(conversation_id)
        if state.active:
            raise ConversationBusy(conversation_id)

        state.active = True
        try:
            if not state.loaded:
                await self._hydrate(state)
            state.budget.set_system_prompt(self.system_prompt)

            mode = await self._resolve(conversation_id)
            state.mode = mode
            state.cancel_token = CancelToken()
            self._active_conversation = conversation_id

            logger.info("Send started", conversation_id=conversation_id, mode=str(mode))
            await self._append(state, Message(conversation_id=conversation_id, role=Role.USER, content=content))

            interpreter = ToolCallInterpreter(
                self.tool_executor,
                conversation_id,
                max_iterations=self.config.max_tool_iterations,
            )
            warnings: list[str] = []
            requests: list[ToolCallRequest] = []
            compressed = False
            message = None

            while True:
                compressed = await self._maybe_compress(state, mode) or compressed

                message, markup, decode_error = await self._stream_turn(state, mode, on_delta)
                if message.status is MessageStatus.CANCELLED:
                    break
                if decode_error is not None:
                    warnings.append(decode_error.message)
                    break

                outcome = await interpreter.process_turn(message, markup, known_ids=state.tool_calls.keys())
                for request in outcome.requests:
                    state.tool_calls[request.id] = request
                if outcome.requests:
                    await self.store.save_tool_calls(conversation_id, outcome.requests)
                requests.extend(outcome.requests)
                for tool_message in outcome.tool_messages:
                    await self._append(state, tool_message)
                warnings.extend(e.message for e in outcome.errors if isinstance(e, MaxIterationsExceeded))

                if not outcome.should_continue or state.cancel_token.cancelled:
                    break

                mode = await self._resolve(conversation_id)
                state.mode = mode

            logger.info(
                "Send finished",
                conversation_id=conversation_id,
                state=interpreter.state.value,
                iterations=interpreter.iteration,
                tool_calls=len(requests),
                warnings=len(warnings),
            )
            return TurnResult(
                conversation_id=conversation_id,
                message=message,
                mode=mode,
                state=interpreter.state,
                iterations=interpreter.iteration,
                tool_calls=requests,
                warnings=warnings,
                compressed=compressed,
            )
        finally:
            state.active = False

    def _build_request(self, state: ConversationState) -> ChatRequest:
        wire = [{"role": Role.SYSTEM.value, "content": self.system_prompt}]
        if state.memory_context:
            wire.append({"role": Role.SYSTEM.value, "content": f"## Memory\n{state.memory_context}"})
        wire.extend(self._history_wire(state))
        return ChatRequest(
            model=self.config.model,
            messages=wire,
            stream=True,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

    def _history_wire(self, state: ConversationState) -> list[dict[str, Any]]:
        """History as wire messages with every tool result paired to its call.

        An assistant message lists the calls it made that have a result in the
        request. A tool result whose call is not announced that way is sent as
        a user message instead.
        """
        history = [
            m for m in state.messages
            if m.status is MessageStatus.COMPLETE or m.content
        ]
        answered = {m.tool_call_id for m in history if m.role is Role.TOOL and m.tool_call_id}
        calls_by_message: dict[str, list[ToolCallRequest]] = {}
        for request in state.tool_calls.values():
            if request.message_id and request.id in answered:
                calls_by_message.setdefault(request.message_id, []).append(request)

        wire = []
        announced: set[str] = set()
        for message in history:
            if message.role is Role.ASSISTANT:
                calls = calls_by_message.get(message.id, [])
                announced.update(request.id for request in calls)
                wire.append(message.to_wire([request.to_wire() for request in calls]))
            elif message.role is Role.TOOL and message.tool_call_id not in announced:
                wire.append({
                    "role": Role.USER.value,
                    "content": f"Tool result (call {message.tool_call_id}):\n{message.content}",
                })
            else:
                wire.append(message.to_wire())
        return wire

    async def _stream_turn(
        self,
        state: ConversationState,
        mode: Mode,
        on_delta: DeltaCallback | None,
    ) -> tuple[Message, str, DecodeError | None]:
        """Stream one assistant turn. Returns the final message, tool markup and any decode error."""
        request = self._build_request(state)
        token = state.cancel_token
        message = Message.streaming(state.conversation_id)
        state.messages.append(message)
        state.budget.append_message(message)

        fragments: list[str] = []
        decode_error = None
        status = MessageStatus.COMPLETE
        try:
            async with aclosing(self.transport.open(mode, request, token)) as chunks:
                async for event in decode_stream(chunks, token):
                    if event.delta_content:
                        message.append(event.delta_content)
                        state.budget.update_message(message)
                        if on_delta is not None:
                            on_delta(event.delta_content)
                    if event.tool_call_fragment:
                        fragments.append(event.tool_call_fragment)
            if token is not None and token.cancelled:
                status = MessageStatus.CANCELLED
        except DecodeError as e:
            if token is not None and token.cancelled:
                status = MessageStatus.CANCELLED
            else:
                logger.warning(
                    "Stream ended with undecodable content",
                    conversation_id=state.conversation_id,
                    buffered=len(e.buffered),
                )
                decode_error = e
                status = MessageStatus.FAILED
        except TransportError as e:
            logger.error("Transport error", conversation_id=state.conversation_id, error=e.message, status_code=e.status_code)
            await self._finalize(state, message, MessageStatus.FAILED)
            raise
        except Exception as e:
            logger.error("Stream failed", conversation_id=state.conversation_id, error=str(e))
            await self._finalize(state, message, MessageStatus.FAILED)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._finalize(state, message, MessageStatus.CANCELLED))
            raise

        await self._finalize(state, message, status)
        return message, "".join(fragments), decode_error

    async def _finalize(self, state: ConversationState, message: Message, status: MessageStatus) -> None:
        message.finalize(status)
        state.budget.update_message(message)
        await self.store.append(message)
        if status is not MessageStatus.COMPLETE:
            logger.info(
                "Assistant message finalized",
                conversation_id=state.conversation_id,
                status=status.value,
                length=len(message.content),
            )

    # -- compression -------------------------------------------------------

    def _summarizer(self, mode: Mode):
        async def summarize(prompt: str) -> str:
            request = ChatRequest(
                model=self.config.model,
                messages=[
                    {"role": Role.SYSTEM.value, "content": SUMMARIZER_SYSTEM_PROMPT},
                    {"role": Role.USER.value, "content": prompt},
                ],
                stream=False,
                temperature=0.3,
                max_tokens=1024,
            )
            return await self.transport.complete(mode, request)

        return summarize

    async def _maybe_compress(self, state: ConversationState, mode: Mode) -> bool:
        """Compress the history if the budget is over threshold. Returns True if it changed."""
        settings = self.config.compression
        if not settings.enabled or not state.budget.over_threshold(settings.threshold):
            return False

        budget = state.budget.budget
        target = compression_target(
            budget.limit_tokens,
            budget.breakdown.system_prompt,
            budget.breakdown.memory,
            settings.threshold,
        )
        logger.info(
            "Context approaching limit, running compression",
            conversation_id=state.conversation_id,
            used_fraction=round(budget.used_fraction, 3),
            target_tokens=target,
        )

        compressor = ContextCompressor(self.tokenizer, settings, summarizer=self._summarizer(mode))
        result = await compressor.compress(
            state.messages,
            target,
            system_prompt=self.system_prompt,
            memory=state.memory_context,
        )
        if not result.applied:
            return False

        state.messages = result.messages
        state.budget.set_history(state.messages)
        await self.store.replace(state.conversation_id, state.messages)
        return True


async def _backend_unconfigured() -> bool:
    return False


def create_orchestrator(
    settings: Settings | None = None,
    transport: Transport | None = None,
    store: MessageStore | None = None,
    tool_executor: ToolExecutor | None = None,
) -> SessionOrchestrator:
    """Build an orchestrator from settings."""
    settings = settings or get_settings()

    if not settings.backend_url:
        resolver = ConnectionResolver(_backend_unconfigured)
    elif settings.backend_health_check:
        resolver = ConnectionResolver(
            http_backend_probe(settings.backend_url, settings.backend_api_key or None)
        )
    else:
        resolver = ConnectionResolver()

    return SessionOrchestrator(
        transport=transport or create_transport(settings),
        connections=lambda: settings.connection_descriptors,
        config=settings.to_engine_config(),
        tool_executor=tool_executor,
        tokenizer=create_tokenizer(settings.tokenizer),
        store=store,
        resolver=resolver,
    )
