"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/dagflow.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=3600, ge=1)

    # Queue
    queue_backend: Literal["memory", "redis"] = Field(default="memory")
    queue_name: str = Field(default="dagflow:steps")
    queue_poll_interval: float = Field(default=0.5, gt=0, le=10.0)
    queue_visibility_timeout: int = Field(default=300, ge=1)
    keep_failed_jobs: int = Field(default=100, ge=0)
    worker_concurrency: int = Field(default=5, ge=1, le=64)

    # Retry defaults (system level, used when neither node nor workflow override)
    default_max_attempts: int = Field(default=3, ge=1, le=20)
    default_backoff_ms: int = Field(default=1000, ge=0)
    default_backoff_multiplier: float = Field(default=2.0, ge=1.0)

    # Plugins
    api_proxy_cache_ttl: int = Field(default=60, ge=1)
    api_proxy_timeout: float = Field(default=30.0, gt=0, le=300)
    plugin_timeout_ms: int = Field(default=30000, ge=100)
    delay_inline_threshold_ms: int = Field(default=5000, ge=0)
    delay_max_ms: int = Field(default=3600000, ge=1)

    # Execution Engine
    dlq_enabled: bool = Field(default=False)
    heartbeat_timeout: int = Field(default=300, ge=10)
    sweep_interval: int = Field(default=60, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
    }
