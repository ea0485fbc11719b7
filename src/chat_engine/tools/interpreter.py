"""
Tool call interpreter: the parse/execute/continue state machine.

    AWAITING_MODEL -> PARSING -> RESOLVED                       (no calls)
    AWAITING_MODEL -> PARSING -> EXECUTING -> CONTINUING -> AWAITING_MODEL
    AWAITING_MODEL -> PARSING -> FAILED                         (iteration bound hit)

One iteration is one model turn. When the turn numbered max_iterations still
asks for tools, those calls are not executed and the loop fails with
MaxIterationsExceeded, so a tool result always precedes another model turn.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

import structlog

from ..errors import ChatEngineError, MaxIterationsExceeded, ToolExecutionError, ToolValidationError
from ..llm.base import Message, Role
from .base import ToolCallRequest, ToolCallStatus, ToolExecutor, _new_call_id, validate_parameters
from .parser import parse_tool_calls

logger = structlog.get_logger()


class InterpreterState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    PARSING = "parsing"
    EXECUTING = "executing"
    CONTINUING = "continuing"
    RESOLVED = "resolved"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[InterpreterState, set[InterpreterState]] = {
    InterpreterState.AWAITING_MODEL: {InterpreterState.PARSING},
    InterpreterState.PARSING: {
        InterpreterState.RESOLVED,
        InterpreterState.EXECUTING,
        InterpreterState.FAILED,
    },
    InterpreterState.EXECUTING: {InterpreterState.CONTINUING},
    InterpreterState.CONTINUING: {InterpreterState.AWAITING_MODEL},
    InterpreterState.RESOLVED: set(),
    InterpreterState.FAILED: set(),
}


@dataclass
class TurnOutcome:
    """What the interpreter decided about one finished model turn."""

    state: InterpreterState
    iteration: int
    requests: list[ToolCallRequest] = field(default_factory=list)
    tool_messages: list[Message] = field(default_factory=list)
    errors: list[ChatEngineError] = field(default_factory=list)

    @property
    def should_continue(self) -> bool:
        return self.state is InterpreterState.CONTINUING


class ToolCallInterpreter:
    """Drives the tool loop for one send. Call reset() before reuse."""

    def __init__(self, executor: ToolExecutor, conversation_id: str, max_iterations: int = 10):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.executor = executor
        self.conversation_id = conversation_id
        self.max_iterations = max_iterations
        self.state = InterpreterState.AWAITING_MODEL
        self.iteration = 0
        self.transitions: list[InterpreterState] = [self.state]

    def reset(self) -> None:
        self.state = InterpreterState.AWAITING_MODEL
        self.iteration = 0
        self.transitions = [self.state]

    def _transition(self, target: InterpreterState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal tool loop transition {self.state.value} -> {target.value}")
        self.state = target
        self.transitions.append(target)

    def parse(self, text: str, known_ids: Iterable[str] = ()) -> list[ToolCallRequest]:
        """Parse tool calls, giving each a conversation-unique id."""
        requests = parse_tool_calls(text, self.executor.find_servers)
        taken = set(known_ids)
        for request in requests:
            if request.id in taken:
                request.id = _new_call_id()
            taken.add(request.id)
        return requests

    def validate(self, request: ToolCallRequest) -> ToolValidationError | None:
        """Check a request against the tool's declared parameter schema."""
        errors: list[str] = []
        if request.parse_error:
            errors.append(request.parse_error)
        if not request.tool_name:
            errors.append("Tool call has no name")
        else:
            tool = self.executor.get_tool(request.server_id, request.tool_name)
            if tool is None:
                if request.server_id:
                    errors.append(f"Tool '{request.tool_name}' not found on server '{request.server_id}'")
                else:
                    errors.append(f"Tool '{request.tool_name}' needs a server attribute")
            elif not request.parse_error:
                errors.extend(validate_parameters(tool.get_parameters_schema(), request.parameters))

        if errors:
            return ToolValidationError(request.id, request.tool_name or "?", errors)
        return None

    async def process_turn(self, turn: Message, extra_markup: str = "", known_ids: Iterable[str] = ()) -> TurnOutcome:
        """Interpret a finished assistant turn.

        Returns CONTINUING with tool result messages when the model must be
        called again, RESOLVED when the turn had no calls, FAILED when the
        iteration bound is hit.
        """
        if self.state is not InterpreterState.AWAITING_MODEL:
            raise RuntimeError(f"Interpreter is {self.state.value}, expected awaiting_model")

        self.iteration += 1
        self._transition(InterpreterState.PARSING)

        text = turn.content if not extra_markup else f"{turn.content}\n{extra_markup}"
        requests = self.parse(text, known_ids)
        for request in requests:
            request.message_id = turn.id

        if not requests:
            self._transition(InterpreterState.RESOLVED)
            return TurnOutcome(state=self.state, iteration=self.iteration)

        if self.iteration >= self.max_iterations:
            error = MaxIterationsExceeded(self.max_iterations)
            for request in requests:
                request.status = ToolCallStatus.FAILED
                request.error = error.message
            self._transition(InterpreterState.FAILED)
            logger.warning(
                "Tool loop iteration bound reached",
                conversation_id=self.conversation_id,
                max_iterations=self.max_iterations,
                unexecuted_calls=len(requests),
            )
            return TurnOutcome(
                state=self.state,
                iteration=self.iteration,
                requests=requests,
                errors=[error],
            )

        self._transition(InterpreterState.EXECUTING)
        outcome = TurnOutcome(state=self.state, iteration=self.iteration, requests=requests)

        for request in requests:
            content, error = await self._run(request)
            if error is not None:
                outcome.errors.append(error)
            outcome.tool_messages.append(Message(
                conversation_id=self.conversation_id,
                role=Role.TOOL,
                content=content,
                tool_call_id=request.id,
            ))

        self._transition(InterpreterState.CONTINUING)
        outcome.state = self.state
        self._transition(InterpreterState.AWAITING_MODEL)
        return outcome

    async def _run(self, request: ToolCallRequest) -> tuple[str, ChatEngineError | None]:
        """Validate and execute one request. Returns the tool message text and any error."""
        invalid = self.validate(request)
        if invalid is not None:
            request.status = ToolCallStatus.FAILED
            request.error = invalid.message
            logger.info("Tool call rejected", tool_name=request.tool_name, errors=invalid.errors)
            return f"Error: {invalid.message}", invalid

        request.status = ToolCallStatus.EXECUTING
        try:
            result = await self.executor.execute(request.server_id, request.tool_name, request.parameters)
        except Exception as e:
            logger.error("Tool executor raised", tool_name=request.tool_name, error=str(e))
            failure = ToolExecutionError(request.id, request.tool_name, str(e) or type(e).__name__)
            request.status = ToolCallStatus.FAILED
            request.error = failure.detail
            return f"Error: {failure.message}", failure

        request.result = result
        if not result.success:
            failure = ToolExecutionError(request.id, request.tool_name, result.error or "unknown error")
            request.status = ToolCallStatus.FAILED
            request.error = failure.detail
            return f"Error: {failure.message}", failure

        request.status = ToolCallStatus.SUCCEEDED
        return result.output or "(no output)", None
