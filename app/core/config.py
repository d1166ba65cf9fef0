"""Application configuration settings.

This module defines the application-wide settings using Pydantic's BaseSettings.
It allows for loading configurations from environment variables and .env files,
providing type validation and default values.
"""

from functools import lru_cache

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Default list of CORS allowed origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "https://localhost:3000",
    "https://localhost:8000",
    "http://0.0.0.0:8000",
]


class Settings(BaseSettings):
    """Manages application settings, loading them from environment variables or an .env file.

    Attributes:
        upstream_base_url: Base URL shared by both upstream generation services.
        upstream_api_key: Value sent in the Authorization header to the message-list service.
        conversation_path: Path of the conversation-completion endpoint (protocol A).
        messages_path: Path of the message-list endpoint (protocol B).
        default_model: Model used when a request names none, and whose capabilities
            are used for unknown model identifiers.
        strict_model_lookup: Reject unknown model identifiers instead of falling back.
        temperature: Default sampling temperature.
        score_threshold: Retrieval score threshold forwarded to the conversation service.
        max_tokens: Generation limit forwarded to the conversation service.
        llm_connect_timeout: Upstream connect timeout in seconds.
        llm_read_timeout: Upstream read timeout in seconds (None means unbounded).
        stream_generation: Stream upstream output; when False stages call the upstream
            in one shot and replay the text progressively.
        replay_chunk_size: Characters per window when replaying static text.
        replay_chunk_delay: Seconds to wait between replayed windows.
        max_file_size: Maximum accepted upload size in bytes.
        max_prompt_chars: Maximum document characters passed to the prompts.
        ws_path: Path the side-channel websocket is served on.
        ws_public_url: Address advertised to clients for the side channel.
        log_level: Level of the application loggers.
        cors_allowed_origins: List of allowed origins for CORS.
    """

    upstream_base_url: str = Field(default="http://localhost:7861")
    upstream_api_key: str | None = Field(default=None)
    conversation_path: str = Field(default="/open-api/langchain-chat/chat/chat")
    messages_path: str = Field(default="/open-api/oneapi/v1/chat/completions")

    default_model: str = Field(default="qwen2.5-32b")
    strict_model_lookup: bool = Field(default=False)
    temperature: float = Field(default=0.0)
    score_threshold: float = Field(default=0.0)
    max_tokens: int = Field(default=20_000)

    llm_connect_timeout: float = Field(default=10.0, description="LLM client connect timeout in seconds.")
    llm_read_timeout: float | None = Field(default=None, description="LLM client read timeout in seconds.")

    stream_generation: bool = Field(default=True)
    replay_chunk_size: int = Field(default=10, gt=0)
    replay_chunk_delay: float = Field(default=0.05, ge=0.0)

    max_file_size: int = Field(default=10 * 1024 * 1024)
    max_prompt_chars: int = Field(default=400_000)

    ws_path: str = Field(default="/ws")
    ws_public_url: str = Field(default="ws://localhost:8000/ws")

    log_level: str = Field(default="INFO")

    cors_allowed_origins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CORS_ORIGINS),  # Use a copy of the default list
    )

    model_config = {
        "env_file": ".env",
        "protected_namespaces": ("settings_",),
        "env_prefix": "",  # No prefix for environment variables
        "extra": "ignore",  # Ignore extra fields
    }

    @field_validator("cors_allowed_origins", mode="before")  # type: ignore
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str] | None) -> list[str]:
        """Assembles the list of CORS allowed origins.

        If 'v' is a string, it splits it by commas. If 'v' is already a list,
        it's used directly. Otherwise, returns the default list of origins.
        """
        if isinstance(v, str) and v:
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return list(DEFAULT_CORS_ORIGINS)

    @field_validator("upstream_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Build the process settings once; callers pass the instance on explicitly."""
    return Settings()
