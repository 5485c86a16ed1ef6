"""
Settings Management

Provides centralized, type-safe configuration using Pydantic.
Supports environment variables, .env files, and hierarchical config.

Design decisions:
- Using pydantic-settings for validation and type coercion
- Immutable settings after initialization (frozen model)
- Separate concerns: infra settings vs. budget limits vs. worker tuning
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """Redis connection configuration."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    enabled: bool = Field(default=False, description="Enable Redis (false uses in-memory)")
    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = Field(default=0, ge=0, le=15)
    password: SecretStr | None = Field(default=None)
    ssl: bool = Field(default=False)
    key_prefix: str = Field(default="tasktree:")

    @property
    def url(self) -> str:
        """Construct Redis URL for connection."""
        protocol = "rediss" if self.ssl else "redis"
        auth = f":{self.password.get_secret_value()}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"


class StoreSettings(BaseSettings):
    """Durable storage for sessions, jobs and the audit trail."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    backend: Literal["sql", "memory"] = "memory"
    database_url: str = Field(default="sqlite:///./tasktree.db")
    echo_sql: bool = Field(default=False)

    # Sessions
    session_cache_ttl_seconds: int = Field(default=86400, ge=1)


class BudgetSettings(BaseSettings):
    """Spend and time limits."""

    model_config = SettingsConfigDict(env_prefix="BUDGET_")

    run_ceiling_usd: float = Field(default=2.00, gt=0)
    session_ceiling_usd: float = Field(default=2.00, gt=0)
    child_ceiling_usd: float = Field(default=0.50, gt=0)
    run_timeout_seconds: float = Field(default=300.0, gt=0)

    # Independent circuit breaker on observed cost (hook bus)
    cost_guard_usd: float = Field(default=2.50, gt=0)

    # Spend-rate anomaly monitor
    anomaly_enabled: bool = Field(default=True)
    anomaly_window_seconds: float = Field(default=86400.0, gt=0)
    anomaly_threshold_usd: float = Field(default=10.00, gt=0)
    single_run_alert_usd: float = Field(default=1.00, gt=0)

    # Credits
    credits_enabled: bool = Field(default=False)
    default_credit_balance: int = Field(default=0, ge=0)


class EngineSettings(BaseSettings):
    """Reasoning loop limits."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    turn_limit: int = Field(default=50, ge=1)
    child_turn_limit: int = Field(default=15, ge=1)
    max_delegation_depth: int = Field(default=2, ge=1)
    parallel_calls: bool = Field(default=False)
    event_buffer_size: int = Field(default=256, ge=1)
    provider_turn_estimate_usd: float = Field(default=0.02, ge=0)
    workflow_profiles_path: str | None = Field(default=None)
    default_workflow: str = Field(default="brand_wizard")
    capability_modules: list[str] = Field(
        default_factory=list,
        description="Modules exposing register(registry), imported at start-up",
    )
    capability_timeout_seconds: float = Field(default=30.0, gt=0)


class WorkerSettings(BaseSettings):
    """Job queue and worker pool tuning."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    name: str = Field(default="tasktree-worker")
    concurrency: int = Field(default=2, ge=1)
    poll_interval: float = Field(default=0.5, gt=0)
    job_timeout_seconds: float = Field(default=300.0, gt=0)
    max_attempts: int = Field(default=2, ge=1)
    backoff_base_seconds: float = Field(default=5.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)
    rate_limit_max: int | None = Field(default=None, description="Jobs per window; defaults to concurrency")
    rate_limit_window_seconds: float = Field(default=1.0, gt=0)
    completed_retention_seconds: float = Field(default=86400.0, gt=0)
    failed_retention_seconds: float = Field(default=604800.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, gt=0)
    embedded: bool = Field(default=True, description="Run a worker pool inside the API process")
    queue_name: str = Field(default="tasktree")


class ProviderSettings(BaseSettings):
    """Reasoning provider configuration."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    kind: Literal["http", "scripted"] = "scripted"
    base_url: str = Field(default="http://localhost:8080")
    api_key: SecretStr | None = Field(default=None)
    model: str = Field(default="claude-sonnet-4-6")
    request_timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(env_prefix="OBS_")

    enable_metrics: bool = Field(default=True)
    enable_audit: bool = Field(default=True)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: str | None = Field(default=None)


class Settings(BaseSettings):
    """
    Master settings aggregator.

    This is the single source of truth for all configuration.
    Sub-settings are composed here to maintain clear boundaries.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,  # Immutable after creation
    )

    # Application metadata
    app_name: str = Field(default="tasktree")
    app_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=False)

    # API settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/v1")

    # Component settings (composed)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Safe to share because settings are frozen.
    """
    return Settings()
