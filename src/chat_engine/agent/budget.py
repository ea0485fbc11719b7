"""
Token budget tracking for one conversation.
"""

from dataclasses import dataclass, field
from typing import Iterable

from ..llm.base import Message
from ..tokenizer import MESSAGE_OVERHEAD, Tokenizer


@dataclass(frozen=True)
class BudgetBreakdown:
    """Token usage per prompt component."""

    system_prompt: int = 0
    memory: int = 0
    history: int = 0

    @property
    def total(self) -> int:
        return self.system_prompt + self.memory + self.history


@dataclass(frozen=True)
class ContextBudget:
    """Snapshot of the context window usage."""

    limit_tokens: int
    breakdown: BudgetBreakdown = field(default_factory=BudgetBreakdown)

    @property
    def used_tokens(self) -> int:
        return self.breakdown.total

    @property
    def used_fraction(self) -> float:
        if self.limit_tokens <= 0:
            return 0.0
        return self.used_tokens / self.limit_tokens

    def to_dict(self) -> dict:
        return {
            "limit_tokens": self.limit_tokens,
            "used_tokens": self.used_tokens,
            "used_fraction": round(self.used_fraction, 4),
            "breakdown": {
                "system_prompt": self.breakdown.system_prompt,
                "memory": self.breakdown.memory,
                "history": self.breakdown.history,
            },
        }


class TokenBudgetTracker:
    """Keeps a ContextBudget current as the conversation changes.

    History messages are counted once and cached by id; an in-flight message
    is recounted through update_message() as deltas arrive.
    """

    def __init__(self, tokenizer: Tokenizer, limit_tokens: int):
        self.tokenizer = tokenizer
        self.limit_tokens = limit_tokens
        self._system_prompt_tokens = 0
        self._memory_tokens = 0
        self._message_tokens: dict[str, int] = {}
        self._history_tokens = 0

    def _count_message(self, message: Message) -> int:
        return self.tokenizer.count_tokens(message.content) + MESSAGE_OVERHEAD

    @property
    def budget(self) -> ContextBudget:
        return ContextBudget(
            limit_tokens=self.limit_tokens,
            breakdown=BudgetBreakdown(
                system_prompt=self._system_prompt_tokens,
                memory=self._memory_tokens,
                history=self._history_tokens,
            ),
        )

    @property
    def used_fraction(self) -> float:
        return self.budget.used_fraction

    def over_threshold(self, fraction: float) -> bool:
        """True when the used fraction has reached the given threshold."""
        if self.limit_tokens <= 0:
            return False
        return self.used_fraction >= fraction

    def set_system_prompt(self, text: str) -> None:
        self._system_prompt_tokens = self.tokenizer.count_tokens(text) if text else 0

    def set_memory(self, text: str) -> None:
        self._memory_tokens = self.tokenizer.count_tokens(text) if text else 0

    def set_history(self, messages: Iterable[Message]) -> None:
        """Replace the tracked history, reusing cached counts where ids match."""
        counts: dict[str, int] = {}
        for message in messages:
            cached = self._message_tokens.get(message.id)
            counts[message.id] = cached if cached is not None and message.is_final else self._count_message(message)
        self._message_tokens = counts
        self._history_tokens = sum(counts.values())

    def append_message(self, message: Message) -> None:
        if message.id in self._message_tokens:
            self.update_message(message)
            return
        tokens = self._count_message(message)
        self._message_tokens[message.id] = tokens
        self._history_tokens += tokens

    def update_message(self, message: Message) -> None:
        """Recount a message whose content changed."""
        previous = self._message_tokens.get(message.id, 0)
        tokens = self._count_message(message)
        self._message_tokens[message.id] = tokens
        self._history_tokens += tokens - previous
