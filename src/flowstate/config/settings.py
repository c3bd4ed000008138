"""
Engine configuration with Pydantic Settings.

Every field can be overridden from the environment using the ``FLOW_`` prefix
and ``__`` as the nested delimiter, e.g. ``FLOW_STORE__BACKEND=sqlite``.
"""

import hashlib
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseModel):
    """Orchestration core behaviour."""

    max_commit_retries: int = Field(5, gt=0, description="Attempts before a conflict escalates")
    commit_retry_backoff: float = Field(0.01, ge=0.0, description="Base backoff in seconds")
    max_chained_events: int = Field(8, gt=0, description="Bound on handler follow-up events")
    failure_event: str = Field("FAILURE", min_length=1)
    retry_event: str = Field("RETRY", min_length=1)
    internal_retry_after: float = Field(2.0, ge=0.0)
    intent_confidence_floor: float = Field(0.6, ge=0.0, le=1.0)
    capability_modules: list[str] = Field(
        default_factory=lambda: ["flowstate.capabilities.orders"],
        description="Modules exposing register_capabilities(registry)",
    )


class StoreConfig(BaseModel):
    """Instance store backend."""

    backend: str = Field("memory")
    sqlite_path: Path = Field(Path("./data/flowstate.db"))
    message_retention: int = Field(200, gt=0, description="Recent messages kept per instance")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = {"memory", "sqlite"}
        if v not in allowed:
            raise ValueError(f"backend must be one of {allowed}")
        return v


class SessionConfig(BaseModel):
    """Session bookkeeping, deduplication and expiry policy."""

    idempotency_ttl_seconds: float = Field(600.0, gt=0)
    idempotency_max_entries: int = Field(10_000, gt=0)
    sync_replay_threshold: int = Field(50, gt=0, description="Larger gaps get a snapshot")
    idle_timeout_seconds: float = Field(3600.0, gt=0)


class ObservabilityConfig(BaseModel):
    """Logging and tracing."""

    log_level: str = Field("INFO")
    enable_tracing: bool = Field(False)
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("flowstate")
    service_version: str = Field("1.0.0")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


class APIConfig(BaseModel):
    """HTTP transport adapter."""

    host: str = Field("0.0.0.0")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    workers: int = Field(1, gt=0)
    enable_docs: bool = Field(True)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="FLOW_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"

    def config_hash(self) -> str:
        """SHA256 of the effective configuration, reported by /health for audit."""
        blob = self.model_dump_json(exclude={"api"}).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
