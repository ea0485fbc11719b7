"""
Context compression - keeps conversation history inside the token budget.

When the budget crosses its threshold, older messages are dropped, summarized
or both, while pinned content stays verbatim:
- every system-role message in the history
- the most recent preserve_last_n messages
- earlier summary messages (folded into the next summary, never truncated)

An assistant message and the tool results after it are kept or dropped together.

The system prompt and memory block live outside the history and are never
touched.

Strategies:
- truncate: drop the oldest droppable messages until the history fits
- summarize: replace all droppable messages before the tail with one summary
- hybrid: truncate, but summarize what was dropped instead of discarding it

Summaries come from the inference backend; if that fails a deterministic
local summary is used instead.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import structlog

from ..errors import CompressionInvariantViolation
from ..llm.base import Message, Role
from ..tokenizer import Tokenizer, count_message_tokens

logger = structlog.get_logger()

DEFAULT_COMPRESSION_THRESHOLD = 0.8
DEFAULT_PRESERVE_LAST_N = 6

SUMMARY_PREFIX = "[Previous conversation summary]: "
MAX_SUMMARY_CHARS = 2000

# Short acknowledgments that carry no context
LOW_VALUE_PATTERNS = [
    re.compile(r"^(ok|okay|sure|thanks|thank you|got it|understood|right|yes|no|yep|nope|k|kk)\.?$", re.IGNORECASE),
    re.compile(r"^(sounds good|perfect|great|awesome|cool|nice|good|fine|alright)\.?$", re.IGNORECASE),
    re.compile(r"^(i see|ah|oh|hmm|hm|mhm|uh huh)\.?$", re.IGNORECASE),
    re.compile(r"^(\U0001F44D|\U0001F44C|✅|\U0001F64F|\U0001F60A|\U0001F914|\U0001F4AF)$"),
]

# Prompt text in, summary text out
Summarizer = Callable[[str], Awaitable[str]]


class CompressionStrategy(str, Enum):
    TRUNCATE = "truncate"
    SUMMARIZE = "summarize"
    HYBRID = "hybrid"


@dataclass
class CompressionConfig:
    """Configuration for context compression."""

    enabled: bool = True
    threshold: float = DEFAULT_COMPRESSION_THRESHOLD
    strategy: CompressionStrategy = CompressionStrategy.HYBRID
    preserve_last_n: int = DEFAULT_PRESERVE_LAST_N
    drop_low_value: bool = False

    def __post_init__(self) -> None:
        self.strategy = CompressionStrategy(self.strategy)


@dataclass
class CompressionPlan:
    """What a compression run decided to do."""

    strategy: CompressionStrategy
    preserve_last_n: int
    summary_message: Message | None = None


@dataclass
class CompressionResult:
    """Result of a compression run."""

    messages: list[Message]
    plan: CompressionPlan
    tokens_before: int
    tokens_after: int
    target_tokens: int
    dropped_ids: list[str] = field(default_factory=list)
    used_fallback: bool = False
    system_prompt: str = ""
    memory: str = ""

    @property
    def applied(self) -> bool:
        return bool(self.dropped_ids)

    @property
    def tokens_saved(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)


def compression_target(limit_tokens: int, system_prompt_tokens: int, memory_tokens: int, threshold: float) -> int:
    """History size the compressor aims for."""
    return max(0, int((limit_tokens - system_prompt_tokens - memory_tokens) * threshold))


def is_low_value(message: Message) -> bool:
    """A short user acknowledgment such as "ok" or "thanks"."""
    if message.role is not Role.USER:
        return False
    trimmed = message.content.strip()
    if len(trimmed) > 50:
        return False
    return any(pattern.match(trimmed) for pattern in LOW_VALUE_PATTERNS)


def _turn_units(messages: list[Message]) -> list[list[Message]]:
    """Group an assistant message with the tool results that follow it."""
    units: list[list[Message]] = []
    for msg in messages:
        if msg.role is Role.TOOL and units and units[-1][0].role is Role.ASSISTANT and not units[-1][0].is_summary:
            units[-1].append(msg)
        else:
            units.append([msg])
    return units


def _extract_key_facts(messages: list[Message]) -> list[str]:
    """Extract key facts and information from messages for the summary."""
    facts = []

    for msg in messages:
        content = msg.content

        # Tool results often contain important data
        if msg.role is Role.TOOL and content.strip():
            facts.append(f"[Tool result]: {content[:200]}")

        # Messages where the user states facts
        if msg.role is Role.USER:
            content_lower = content.lower()
            if any(phrase in content_lower for phrase in [
                "my name is", "i work", "i live", "i prefer",
                "remember that", "don't forget", "important:",
            ]):
                facts.append(f"[User stated]: {content[:200]}")

    return facts[:10]


def _build_summary_prompt(messages: list[Message], key_facts: list[str]) -> str:
    """Prompt asking the backend to summarize a stretch of conversation."""
    transcript_parts = []
    for msg in messages:
        if msg.is_summary:
            transcript_parts.append(f"EARLIER SUMMARY: {msg.content.removeprefix(SUMMARY_PREFIX)}")
            continue
        transcript_parts.append(f"{msg.role.value.upper()}: {msg.content[:300]}")

    transcript = "\n".join(transcript_parts)

    facts_section = ""
    if key_facts:
        facts_section = "\n\nKey facts to preserve:\n" + "\n".join(f"- {f}" for f in key_facts)

    return f"""Summarize the following conversation into a concise context block.
Preserve:
- Any specific facts, names, dates, or numbers mentioned
- The user's requests and what was accomplished
- Any preferences or important information the user shared
- Tool results and their outcomes

Keep it under 300 words.{facts_section}

Conversation:
{transcript}

Summary:"""


def _fallback_summary(messages: list[Message], key_facts: list[str]) -> str:
    """Create a basic summary without the backend."""
    parts = ["Earlier in this conversation:"]

    earlier = [m for m in messages if m.is_summary]
    for summary in earlier:
        parts.append(summary.content.removeprefix(SUMMARY_PREFIX))

    if key_facts:
        parts.append("\nKey information:")
        for fact in key_facts:
            parts.append(f"  - {fact}")

    plain = [m for m in messages if not m.is_summary]
    user_count = sum(1 for m in plain if m.role is Role.USER)
    assistant_count = sum(1 for m in plain if m.role is Role.ASSISTANT)
    tool_count = sum(1 for m in plain if m.role is Role.TOOL)

    parts.append(f"\n[{user_count} user messages, {assistant_count} assistant responses, {tool_count} tool results summarized]")

    user_messages = [m for m in plain if m.role is Role.USER]
    if user_messages:
        parts.append(f"\nFirst topic: {user_messages[0].content[:150]}")
        if len(user_messages) > 1:
            parts.append(f"Last topic before this: {user_messages[-1].content[:150]}")

    return "\n".join(parts)


class ContextCompressor:
    """Reduces a message history to fit a token target."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        config: CompressionConfig | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.tokenizer = tokenizer
        self.config = config or CompressionConfig()
        self.summarizer = summarizer

    def _tokens(self, messages: list[Message]) -> int:
        return count_message_tokens(self.tokenizer, (m.content for m in messages))

    def _measured(self, messages: list[Message]) -> int:
        # Summary messages are bounded by MAX_SUMMARY_CHARS and not counted against the target
        return self._tokens([m for m in messages if not m.is_summary])

    async def compress(
        self,
        messages: list[Message],
        target_tokens: int,
        system_prompt: str = "",
        memory: str = "",
        strategy: CompressionStrategy | str | None = None,
    ) -> CompressionResult:
        """Compress a history toward target_tokens.

        Running this again on its own output is a no-op.
        """
        strategy = CompressionStrategy(strategy or self.config.strategy)
        preserve = self.config.preserve_last_n
        plan = CompressionPlan(strategy=strategy, preserve_last_n=preserve)

        tail_start = max(0, len(messages) - preserve)
        # Tool results stay with the assistant message that called them
        while 0 < tail_start < len(messages) and messages[tail_start].role is Role.TOOL:
            tail_start -= 1
        head = messages[:tail_start]

        removed: set[str] = set()
        dropped: list[Message] = []

        if self.config.drop_low_value and strategy is not CompressionStrategy.SUMMARIZE:
            for msg in head:
                if not msg.is_summary and is_low_value(msg):
                    removed.add(msg.id)

        droppable = [
            unit for unit in _turn_units(head)
            if unit[0].role is not Role.SYSTEM and not unit[0].is_summary and unit[0].id not in removed
        ]

        if strategy is CompressionStrategy.SUMMARIZE:
            dropped = [m for unit in droppable for m in unit]
        else:
            remaining = self._measured([m for m in messages if m.id not in removed])
            for unit in droppable:
                if remaining <= target_tokens:
                    break
                dropped.extend(unit)
                remaining -= self._tokens(unit)

        removed.update(m.id for m in dropped)

        used_fallback = False
        summary_message = None
        if dropped and strategy is not CompressionStrategy.TRUNCATE:
            # Earlier summaries in the head fold into the new one
            folded = [m for m in head if m.is_summary]
            dropped_ids = {m.id for m in dropped}
            to_summarize = [m for m in head if m.is_summary or m.id in dropped_ids]
            summary_text, used_fallback = await self._summarize(to_summarize)
            summary_message = Message(
                conversation_id=dropped[0].conversation_id,
                role=Role.ASSISTANT,
                content=f"{SUMMARY_PREFIX}{summary_text}",
                is_summary=True,
            )
            removed.update(m.id for m in folded)
            plan.summary_message = summary_message

        if not removed:
            tokens = self._tokens(messages)
            return CompressionResult(
                messages=list(messages),
                plan=plan,
                tokens_before=tokens,
                tokens_after=tokens,
                target_tokens=target_tokens,
                system_prompt=system_prompt,
                memory=memory,
            )

        output: list[Message] = []
        for msg in messages:
            if msg.id in removed:
                if summary_message is not None and summary_message not in output:
                    output.append(summary_message)
                continue
            output.append(msg)

        result = CompressionResult(
            messages=output,
            plan=plan,
            tokens_before=self._tokens(messages),
            tokens_after=self._tokens(output),
            target_tokens=target_tokens,
            dropped_ids=[m.id for m in messages if m.id in removed],
            used_fallback=used_fallback,
            system_prompt=system_prompt,
            memory=memory,
        )
        self._verify(messages, result, preserve, system_prompt, memory)

        logger.info(
            "Context compressed",
            strategy=strategy.value,
            original=len(messages),
            compressed=len(output),
            tokens_saved=result.tokens_saved,
            used_fallback=used_fallback,
        )
        return result

    async def _summarize(self, messages: list[Message]) -> tuple[str, bool]:
        """Summary text for the given messages, and whether the fallback was used."""
        key_facts = _extract_key_facts(messages)

        if self.summarizer is not None:
            try:
                summary = (await self.summarizer(_build_summary_prompt(messages, key_facts))).strip()
            except Exception as e:
                logger.error("Compression summarization failed, using fallback", error=str(e))
            else:
                if summary:
                    return summary[:MAX_SUMMARY_CHARS], False
                logger.warning("Summarizer returned empty text, using fallback")

        return _fallback_summary(messages, key_facts)[:MAX_SUMMARY_CHARS], True

    @staticmethod
    def _verify(
        before: list[Message],
        result: CompressionResult,
        preserve: int,
        system_prompt: str,
        memory: str,
    ) -> None:
        after = result.messages
        after_ids = {m.id for m in after}

        for msg in before:
            if msg.role is Role.SYSTEM and msg.id not in after_ids:
                raise CompressionInvariantViolation(f"System message {msg.id} was removed")

        tail = before[max(0, len(before) - preserve):]
        if tail and (len(after) < len(tail) or any(a is not b for a, b in zip(after[-len(tail):], tail))):
            raise CompressionInvariantViolation("Preserved tail was altered")

        if result.system_prompt != system_prompt or result.memory != memory:
            raise CompressionInvariantViolation("System prompt or memory was altered")
