from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Redis settings (shared counter store)
    redis_enabled: bool = True  # False = per-process in-memory store
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0
    redis_socket_timeout: float = 2.0  # Per-command timeout in seconds

    # Explicit REDIS_URL (takes priority over redis_* settings)
    redis_url_override: str = Field(default="", validation_alias="REDIS_URL")

    @property
    def redis_url(self) -> str:
        """Build Redis connection URL.

        Priority:
        1. redis_url_override (from REDIS_URL env var or .env file)
        2. Built from redis_* settings
        """
        if self.redis_url_override:
            return self.redis_url_override
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Rate limiting settings
    rate_limit_key_prefix: str = "rl"
    rate_limit_algorithm: Literal["fixed_window", "sliding_log"] = "fixed_window"
    rate_limit_mount_path: str = "/api"

    # Demo application settings
    api_key: str = "secret-api-key"  # Expected X-API-Key value
    override_user: str = "jaycar"  # X-User value granted the launch override
    override_days: int = 7

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("redis_port")
    @classmethod
    def validate_redis_port(cls, v: int) -> int:
        """Validate the Redis port is in range."""
        if not 0 < v < 65536:
            raise ValueError("redis_port must be between 1 and 65535")
        return v

    @field_validator("redis_socket_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("rate_limit_mount_path")
    @classmethod
    def validate_mount_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("rate_limit_mount_path must start with '/'")
        return v

    @field_validator("override_days")
    @classmethod
    def validate_override_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("override_days must be at least 1")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
