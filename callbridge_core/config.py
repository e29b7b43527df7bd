"""Configuration for the call pairing service.

All thresholds are read from the environment with the ``CALLBRIDGE_`` prefix,
or from a local ``.env`` file.
"""

import os
import socket
from functools import lru_cache
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_production() -> bool:
    """Check if running in production environment."""
    env = os.getenv("CALLBRIDGE_ENVIRONMENT", "development").lower()
    return env in ("production", "prod", "staging")


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Service settings.

    Durations are expressed in seconds; the stores convert to milliseconds
    where Redis expects them.
    """

    model_config = SettingsConfigDict(
        env_prefix="CALLBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    service_name: str = "callbridge"
    instance_id: str = Field(
        default_factory=_default_instance_id,
        description="Identity of this worker process in the cluster",
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = Field(
        default_factory=lambda: "json" if _is_production() else "pretty",
        description="Log output format: json, pretty, simple",
    )

    # Infrastructure
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./callbridge.db",
        description="Durable storage for ended calls",
    )
    key_prefix: str = "callbridge"

    # Queue
    queue_timeout_seconds: int = 30 * 60
    queue_capacity: int = Field(
        default=1000,
        description="Maximum number of waiting requests, 0 for unbounded",
    )
    priority_weight_ms: int = 1000
    queue_cleanup_interval_seconds: float = 60.0
    queue_claim_timeout_seconds: float = 30.0

    # Matching
    matching_interval_seconds: float = 1.0
    recent_match_cooldown_seconds: int = 24 * 60 * 60
    max_age_difference_seconds: int = 5 * 60
    age_grace_period_seconds: int = 10 * 60

    # Coordination
    lease_ttl_seconds: float = 30.0
    lease_renew_interval_seconds: float = 10.0

    # Call state
    max_call_duration_seconds: int = 4 * 60 * 60
    ended_call_ttl_seconds: int = 30 * 60
    reviewed_call_ttl_seconds: int = 48 * 60 * 60
    state_cleanup_interval_seconds: float = 5 * 60

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator(
        "queue_timeout_seconds",
        "priority_weight_ms",
        "queue_cleanup_interval_seconds",
        "queue_claim_timeout_seconds",
        "matching_interval_seconds",
        "lease_ttl_seconds",
        "lease_renew_interval_seconds",
        "max_call_duration_seconds",
        "ended_call_ttl_seconds",
        "reviewed_call_ttl_seconds",
        "state_cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("queue_capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 0:
            raise ValueError("queue_capacity cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_lease_timing(self) -> "Settings":
        if self.lease_renew_interval_seconds >= self.lease_ttl_seconds:
            raise ValueError(
                "lease_renew_interval_seconds must be shorter than lease_ttl_seconds"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
