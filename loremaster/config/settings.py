"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """WebSocket server configuration."""

    host: str = Field(default="localhost", description="Interface to bind the server to")
    port: int = Field(default=3001, description="Port for WebSocket and /health requests")
    max_frame_bytes: int = Field(
        default=64 * 1024 * 1024,
        description="Largest inbound WebSocket frame accepted from a game client",
    )

    model_config = SettingsConfigDict(env_prefix="SERVER_")


class LLMSettings(BaseSettings):
    """LLM API configuration.

    The API key is not configured here: every world authenticates with its
    own key, which is kept in the credentials store.
    """

    model: str = Field(
        default="anthropic/claude-sonnet-4-20250514",
        description="LiteLLM model string, e.g. 'anthropic/claude-sonnet-4-20250514', "
                    "'openai/gpt-4o'. The provider prefix tells LiteLLM which API "
                    "to route the request to.",
    )
    max_tokens: int = Field(default=2048, description="Maximum tokens in response")
    temperature: float = Field(default=0.7, description="Sampling temperature")
    max_tool_rounds: int = Field(
        default=10,
        description="Tool-use rounds allowed before tools are withheld to force a text answer",
    )

    model_config = SettingsConfigDict(env_prefix="LLM_")


class StorageSettings(BaseSettings):
    """Persistence configuration."""

    db_path: str = Field(
        default="data/loremaster.db",
        description="Path to the SQLite database holding conversations, batches and canon",
    )

    model_config = SettingsConfigDict(env_prefix="STORAGE_")


class ContextSettings(BaseSettings):
    """Token budgets for conversation and canon history."""

    max_history_tokens: int = Field(
        default=50000, description="Token budget for conversation history sent to the LLM"
    )
    max_canon_tokens: int = Field(
        default=15000, description="Token budget for published canon included in prompts"
    )
    recent_message_count: int = Field(
        default=20,
        description="Messages always kept verbatim when a summary replaces older history",
    )
    summarize_enabled: bool = Field(
        default=False,
        description="Summarize old history with the LLM instead of dropping it",
    )

    model_config = SettingsConfigDict(env_prefix="CONTEXT_")


class ToolSettings(BaseSettings):
    """Client-executed tool configuration."""

    timeout_seconds: float = Field(
        default=30.0, description="Seconds to wait for a game client to return a tool result"
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    server: ServerSettings = Field(default_factory=ServerSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
