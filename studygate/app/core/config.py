import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma separated values.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "studygate"
    db_password: str = "studygate"
    db_name: str = "studygate"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 30.0

    # SQLite pool settings (local development and tests)
    db_sqlite_pool_size: int = 5
    db_sqlite_max_overflow: int = 5

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Redis settings (only needed for the redis window store)
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "studygate:window:"
    redis_lock_timeout: float = 5.0

    # Window store backend: memory | database | redis
    window_store_backend: str = "database"

    # Rate limit policies per action
    rate_limit_parse_limit: int = 1
    rate_limit_parse_window_seconds: int = 24 * 60 * 60
    rate_limit_chat_limit: int = 20
    rate_limit_chat_window_seconds: int = 5 * 60

    # Admission event pruning (0 disables the background pruner)
    rate_limit_prune_interval_seconds: int = 3600

    # Inference provider settings
    llm_provider: str = "anthropic"  # anthropic | openai | mock
    llm_model: str = "claude-sonnet-4-20250514"
    llm_chat_max_tokens: int = 2048
    llm_parse_max_tokens: int = 4096
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 120.0  # Gap allowed between two stream events
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Stream relay settings
    relay_buffer_size: int = 16
    stream_max_duration_seconds: float = 0.0  # 0 disables the overall deadline

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Admin token for /metrics and /stats
    admin_token: str = ""

    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("window_store_backend")
    @classmethod
    def validate_window_store_backend(cls, v: str) -> str:
        """Validate the window store backend name."""
        v = v.strip().lower()
        if v not in ("memory", "database", "redis"):
            raise ValueError("window_store_backend must be memory, database or redis")
        return v

    @field_validator("llm_provider")
    @classmethod
    def validate_llm_provider(cls, v: str) -> str:
        """Validate the provider name."""
        v = v.strip().lower()
        if v not in ("anthropic", "openai", "mock"):
            raise ValueError("llm_provider must be anthropic, openai or mock")
        return v

    @field_validator("rate_limit_parse_limit", "rate_limit_chat_limit")
    @classmethod
    def validate_rate_limit_non_negative(cls, v: int) -> int:
        """A limit of 0 is allowed and rejects every call."""
        if v < 0:
            raise ValueError("Rate limit values must not be negative")
        return v

    @field_validator(
        "rate_limit_parse_window_seconds",
        "rate_limit_chat_window_seconds",
        "relay_buffer_size",
        "db_pool_size",
        "db_sqlite_pool_size",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate windows, buffer and pool sizes are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("stream_max_duration_seconds", "rate_limit_prune_interval_seconds")
    @classmethod
    def validate_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @property
    def longest_window_seconds(self) -> int:
        """Longest configured window, used for pruning and key expiry."""
        return max(
            self.rate_limit_parse_window_seconds, self.rate_limit_chat_window_seconds
        )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
