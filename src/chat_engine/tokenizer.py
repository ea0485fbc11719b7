"""
Token counting collaborators.

The engine only depends on the Tokenizer protocol. Two implementations ship:
a character-based estimator (no dependencies) and a tiktoken-backed counter.
"""

from typing import Iterable, Protocol

# Approximate characters per token (conservative estimate)
CHARS_PER_TOKEN = 4

# Tokens for role markers and delimiters around each message
MESSAGE_OVERHEAD = 4


class Tokenizer(Protocol):
    """Counts tokens for arbitrary text."""

    def count_tokens(self, text: str) -> int:
        ...


class EstimatingTokenizer:
    """Rough estimate: one token per four characters, rounded up."""

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return -(-len(text) // CHARS_PER_TOKEN)


class TiktokenTokenizer:
    """Exact counts for OpenAI-style BPE encodings."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        import tiktoken

        self.encoding_name = encoding_name
        self.encoder = tiktoken.get_encoding(encoding_name)

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoder.encode(text, disallowed_special=()))


def count_message_tokens(tokenizer: Tokenizer, contents: Iterable[str]) -> int:
    """Count tokens for a sequence of message bodies, including per-message overhead."""
    total = 0
    for content in contents:
        total += tokenizer.count_tokens(content) + MESSAGE_OVERHEAD
    return total


def create_tokenizer(kind: str = "estimate") -> Tokenizer:
    """Build a tokenizer by name ("estimate" or "tiktoken")."""
    if kind == "tiktoken":
        return TiktokenTokenizer()
    if kind == "estimate":
        return EstimatingTokenizer()
    raise ValueError(f"Unknown tokenizer: {kind}")
