"""
Tests for token budget tracking and tokenizers.
"""

import pytest

from chat_engine.agent.budget import ContextBudget, TokenBudgetTracker
from chat_engine.llm.base import Message, MessageStatus, Role
from chat_engine.llm.limits import DEFAULT_CONTEXT_LIMIT, get_context_limit
from chat_engine.tokenizer import MESSAGE_OVERHEAD, EstimatingTokenizer, count_message_tokens, create_tokenizer


def _assert_consistent(budget: ContextBudget) -> None:
    breakdown = budget.breakdown
    assert breakdown.system_prompt + breakdown.memory + breakdown.history == budget.used_tokens


def test_estimating_tokenizer_rounds_up():
    """Test the four-characters-per-token estimate."""
    tokenizer = EstimatingTokenizer()

    assert tokenizer.count_tokens("") == 0
    assert tokenizer.count_tokens("abc") == 1
    assert tokenizer.count_tokens("abcd") == 1
    assert tokenizer.count_tokens("abcde") == 2


def test_count_message_tokens_adds_overhead():
    """Test per-message overhead."""
    tokenizer = EstimatingTokenizer()
    assert count_message_tokens(tokenizer, ["abcd", ""]) == 1 + 2 * MESSAGE_OVERHEAD


def test_create_tokenizer_unknown():
    """Test that unknown tokenizer names are rejected."""
    with pytest.raises(ValueError):
        create_tokenizer("words")


def test_context_limits_lookup():
    """Test exact, partial and default context limit lookups."""
    assert get_context_limit("gpt-4o") == 128000
    assert get_context_limit("gpt-4") == 8192
    assert get_context_limit("openai/gpt-4o-mini-2024-07-18") == 128000
    assert get_context_limit("totally-unknown-model") == DEFAULT_CONTEXT_LIMIT
    assert get_context_limit("") == DEFAULT_CONTEXT_LIMIT


def test_breakdown_sums_to_used_tokens():
    """Test the breakdown invariant across every kind of update."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=1000)
    _assert_consistent(tracker.budget)

    tracker.set_system_prompt("You are helpful." * 4)
    _assert_consistent(tracker.budget)

    tracker.set_memory("User likes tea.")
    _assert_consistent(tracker.budget)

    user = Message(conversation_id="c1", role=Role.USER, content="Hello there")
    tracker.append_message(user)
    _assert_consistent(tracker.budget)

    reply = Message.streaming("c1")
    tracker.append_message(reply)
    for delta in ["Hi", " there", ", how can I help?"]:
        reply.append(delta)
        tracker.update_message(reply)
        _assert_consistent(tracker.budget)
    reply.finalize(MessageStatus.COMPLETE)

    tracker.set_history([reply])
    _assert_consistent(tracker.budget)

    tracker.set_history([])
    _assert_consistent(tracker.budget)
    assert tracker.budget.breakdown.history == 0


def test_history_counts_include_overhead():
    """Test each history message costs content tokens plus overhead."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=100)
    tracker.append_message(Message(conversation_id="c1", role=Role.USER, content="abcdefgh"))

    assert tracker.budget.breakdown.history == 2 + MESSAGE_OVERHEAD


def test_streaming_update_tracks_growth():
    """Test that an in-flight message is recounted as it grows."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=100)
    reply = Message.streaming("c1")
    tracker.append_message(reply)
    assert tracker.budget.used_tokens == MESSAGE_OVERHEAD

    reply.append("x" * 40)
    tracker.update_message(reply)
    assert tracker.budget.used_tokens == 10 + MESSAGE_OVERHEAD


def test_used_fraction_and_threshold():
    """Test fraction computation and the inclusive threshold."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=10)
    tracker.set_system_prompt("x" * 32)  # 8 tokens

    assert tracker.used_fraction == pytest.approx(0.8)
    assert tracker.over_threshold(0.8) is True
    assert tracker.over_threshold(0.81) is False


def test_zero_limit_never_over_threshold():
    """Test that an unknown limit reports zero usage."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=0)
    tracker.set_system_prompt("x" * 400)

    assert tracker.used_fraction == 0.0
    assert tracker.over_threshold(0.0) is False


def test_budget_to_dict():
    """Test serialized budget shape."""
    tracker = TokenBudgetTracker(EstimatingTokenizer(), limit_tokens=200)
    tracker.set_system_prompt("abcd")
    data = tracker.budget.to_dict()

    assert data["limit_tokens"] == 200
    assert data["used_tokens"] == 1
    assert data["breakdown"] == {"system_prompt": 1, "memory": 0, "history": 0}
