"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Coordination layer settings driven entirely by environment variables."""

    # Store Connection (REDIS_URL wins over host/port/password/db)
    redis_url: Optional[str] = Field(default=None)
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_enabled: bool = Field(default=True)

    # Transport Policy (bounded retries, capped exponential backoff)
    redis_max_retries: int = Field(default=3, ge=0, le=10)
    redis_retry_base_ms: int = Field(default=50, ge=1)
    redis_retry_cap_ms: int = Field(default=2000, ge=1)
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    redis_connect_timeout: float = Field(default=5.0, gt=0)
    redis_health_check_interval: int = Field(default=30, ge=0)

    # Cache Defaults
    cache_ttl: int = Field(default=3600, ge=1)
    memo_ttl: int = Field(default=3600, ge=1)
    session_ttl: int = Field(default=3600, ge=1)
    scan_batch_size: int = Field(default=100, ge=1, le=10000)

    # Streams & Analytics
    activity_stream_maxlen: int = Field(default=1000, ge=1)
    chat_history_count: int = Field(default=50, ge=1)
    analytics_retention_days: int = Field(default=7, ge=1)

    # Rate Limiting
    rate_limit_requests: int = Field(default=100, ge=1)
    rate_limit_window: int = Field(default=60, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v):
        """Only redis://, rediss:// and unix:// URLs are accepted."""
        if v and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must start with redis://, rediss:// or unix://")
        return v or None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def retry_base_seconds(self) -> float:
        return self.redis_retry_base_ms / 1000

    @property
    def retry_cap_seconds(self) -> float:
        return max(self.redis_retry_cap_ms, self.redis_retry_base_ms) / 1000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="none",
    )
