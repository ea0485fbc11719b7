"""
Configuration management for the chat engine.

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .llm.base import ConnectionDescriptor

if TYPE_CHECKING:
    from .agent.core import EngineConfig

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant.

Guidelines:
1. Be helpful, accurate, and concise
2. Use tools when you need current information or to perform actions
3. If you're unsure, say so
4. Format responses clearly using Markdown"""


class ConnectionConfig(BaseModel):
    """A configured LM server connection."""

    id: str
    url: str = ""
    name: str = ""
    api_key: str | None = None
    enabled: bool = True
    priority: int = 0
    model: str | None = None

    def to_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            id=self.id,
            url=self.url,
            api_key=self.api_key,
            enabled=self.enabled,
            priority=self.priority,
            name=self.name or self.id,
            model=self.model,
        )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Chat-Engine"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Inference routing
    backend_url: str = Field(default="", description="OpenAI-compatible backend base URL")
    backend_api_key: str = Field(default="", description="API key for the backend")
    offline_mode: bool = Field(default=False, description="Serve canned replies when no connection is enabled")
    connections: list[ConnectionConfig] = Field(
        default_factory=list,
        description="LM server connections as a JSON list",
    )
    request_timeout: float = Field(default=60.0, description="HTTP timeout in seconds")
    backend_health_check: bool = Field(default=False, description="Probe the backend before routing a send to it")

    # Model
    default_model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 4096
    context_limit: int = Field(default=0, description="Context window override; 0 derives it from the model")
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Context management
    tokenizer: Literal["estimate", "tiktoken"] = "estimate"
    compression_enabled: bool = True
    compression_threshold: float = Field(default=0.8, description="Fraction of the window that triggers compression")
    compression_strategy: Literal["truncate", "summarize", "hybrid"] = "hybrid"
    preserve_last_n: int = Field(default=6, description="Most recent messages never compressed")
    drop_low_value_messages: bool = False

    # Tools
    max_tool_iterations: int = Field(default=10, description="Model turns allowed per send")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chat.db",
        description="Database connection URL",
    )

    @field_validator("compression_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("compression_threshold must be in (0, 1]")
        return v

    @field_validator("preserve_last_n", "max_tool_iterations")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def connection_descriptors(self) -> list[ConnectionDescriptor]:
        """Connections as immutable descriptors."""
        return [c.to_descriptor() for c in self.connections]

    def to_engine_config(self) -> "EngineConfig":
        """Build the orchestrator config from settings."""
        from .agent.compaction import CompressionConfig
        from .agent.core import EngineConfig

        return EngineConfig(
            model=self.default_model,
            system_prompt=self.system_prompt,
            context_limit=self.context_limit,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            offline_mode=self.offline_mode,
            max_tool_iterations=self.max_tool_iterations,
            compression=CompressionConfig(
                enabled=self.compression_enabled,
                threshold=self.compression_threshold,
                strategy=self.compression_strategy,
                preserve_last_n=self.preserve_last_n,
                drop_low_value=self.drop_low_value_messages,
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
