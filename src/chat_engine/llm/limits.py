"""
Known context window sizes by model id.
"""

DEFAULT_CONTEXT_LIMIT = 8192

MODEL_CONTEXT_LIMITS: dict[str, int] = {
    # OpenAI
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-3.5-turbo": 16385,
    "o1": 200000,
    "o1-mini": 128000,
    # Anthropic
    "claude-3-opus": 200000,
    "claude-3-sonnet": 200000,
    "claude-3-haiku": 200000,
    "claude-3.5-sonnet": 200000,
    "claude-3.5-haiku": 200000,
    "claude-sonnet-4": 200000,
    "claude-2": 100000,
    # Google
    "gemini-pro": 32768,
    "gemini-1.5-pro": 1000000,
    "gemini-1.5-flash": 1000000,
    # Meta Llama
    "llama-3": 8192,
    "llama-3.1": 128000,
    "llama-3.2": 128000,
    "llama-2": 4096,
    # Mistral
    "mistral": 32768,
    "mistral-large": 128000,
    "mixtral": 32768,
    # Local/other
    "qwen": 32768,
    "phi": 4096,
    "deepseek": 32768,
}

# Longest keys first so "gpt-4o-mini" wins over "gpt-4o" and "gpt-4"
_KEYS_BY_LENGTH = sorted(MODEL_CONTEXT_LIMITS, key=len, reverse=True)


def get_context_limit(model: str | None) -> int:
    """Get the context limit for a model.

    Exact match first, then the longest known key contained in the id
    (so "gpt-4-turbo-2024-04-09" resolves to "gpt-4-turbo").
    """
    if not model:
        return DEFAULT_CONTEXT_LIMIT

    normalized = model.lower()
    if normalized in MODEL_CONTEXT_LIMITS:
        return MODEL_CONTEXT_LIMITS[normalized]

    for key in _KEYS_BY_LENGTH:
        if key in normalized:
            return MODEL_CONTEXT_LIMITS[key]

    return DEFAULT_CONTEXT_LIMIT
