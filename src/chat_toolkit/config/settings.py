"""
Runtime settings for chat strategies.

Values come from environment variables prefixed with 'CHAT_TOOLKIT_' (or a
'.env' file in the working directory) and fall back to the defaults below.
'get_settings' caches a single instance; strategies take an explicit
'settings' argument so tests can pass their own.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant running on the {model} model. "
    "Answer clearly and concisely, use Markdown for structure when it helps, "
    "and say so when you are not sure about something."
)


class ChatSettings(BaseSettings):
    """Environment-backed configuration for the chat toolkit."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_TOOLKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Minimum level for the loguru stderr sink")
    default_system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        description="System prompt prepended to every local request; '{model}' is replaced by the model id",
    )
    stopped_finish_reason: str = Field(default="stop", description="Finish reason recorded on user-stopped messages")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def system_prompt_for(self, model_id: str) -> str:
        return self.default_system_prompt.replace("{model}", model_id)


@lru_cache
def get_settings() -> ChatSettings:
    return ChatSettings()
