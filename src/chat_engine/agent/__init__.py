"""
Agent module - the chat session engine.

Includes:
- SessionOrchestrator: per-conversation send loop with streaming and tools
- ConnectionResolver: picks the mode that serves a send
- TokenBudgetTracker: context window accounting
- ContextCompressor: truncation and summarization of history
- Message stores: in-memory and SQL persistence
"""

from .budget import BudgetBreakdown, ContextBudget, TokenBudgetTracker
from .compaction import (
    CompressionConfig,
    CompressionPlan,
    CompressionResult,
    CompressionStrategy,
    ContextCompressor,
)
from .core import ConversationState, EngineConfig, SessionOrchestrator, TurnResult, create_orchestrator
from .resolver import ConnectionResolver, http_backend_probe, resolve_mode
from .session import InMemoryMessageStore, MessageStore, SqlMessageStore

__all__ = [
    "BudgetBreakdown",
    "ContextBudget",
    "TokenBudgetTracker",
    "CompressionConfig",
    "CompressionPlan",
    "CompressionResult",
    "CompressionStrategy",
    "ContextCompressor",
    "ConversationState",
    "EngineConfig",
    "SessionOrchestrator",
    "TurnResult",
    "create_orchestrator",
    "ConnectionResolver",
    "http_backend_probe",
    "resolve_mode",
    "InMemoryMessageStore",
    "MessageStore",
    "SqlMessageStore",
]
