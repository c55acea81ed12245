"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Database settings driven entirely by environment variables."""

    # Storage
    database_url: str = Field(default="sqlite://heliactyl.db")
    namespace: str = Field(default="heliactyl", min_length=1)
    ttl_support: bool = Field(default=False)

    # Operation queue
    max_queue_size: int = Field(default=10000, ge=1)
    operation_timeout: float = Field(default=30.0, gt=0)  # seconds

    # Background maintenance
    cleanup_interval: float = Field(default=60.0, gt=0)  # seconds
    stats_interval: float = Field(default=5.0, ge=0)  # seconds, 0 disables

    # Read cache
    cache_max_entries: int = Field(default=500, ge=1)
    cache_ttl: int = Field(default=300000, ge=1)  # milliseconds

    # PostgreSQL pool
    database_pool_size: int = Field(default=20, ge=1, le=100)
    database_pool_recycle: int = Field(default=30, ge=1)  # seconds
    database_connect_timeout: float = Field(default=2.0, gt=0)  # seconds
    database_echo: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    log_file: Optional[str] = Field(default="logs/db.log")  # JSON lines; empty disables

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Reject blank connection descriptors early."""
        v = v.strip()
        if not v:
            raise ValueError("database_url must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        return v.upper()

    model_config = {
        "env_prefix": "HELIACTYL_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
