"""Environment-driven configuration with Pydantic v2."""

import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from tieredstore.core.errors import ConfigurationError


class Settings(BaseSettings):
    """Store settings driven entirely by environment variables."""

    # Durable store
    database_url: str = Field(default="sqlite+aiosqlite:///./data/tieredstore.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # Cache tier
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    cache_key_prefix: str = Field(default="")
    serializer: Literal["json", "gzip+json"] = Field(default="json")

    # Transactions
    transaction_attempts: int = Field(default=3, ge=1, le=20)

    # Expiring KV sweep
    kv_sweep_budget: float = Field(default=50.0, ge=0)        # seconds per sweep
    kv_sweep_leeway: float = Field(default=86400.0, ge=0)     # 24 hours
    kv_sweep_batch_size: int = Field(default=400, ge=1, le=1000)
    kv_sweep_interval: int = Field(default=3600, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def check_redis_url(self):
        if self.redis_enabled and not self.redis_url:
            raise ValueError("REDIS_URL is required when REDIS_ENABLED is true")
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }


def load_settings(**overrides) -> Settings:
    """Build settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid store configuration: {e}") from e
