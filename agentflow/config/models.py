"""Configuration models for AgentFlow."""

from __future__ import annotations

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """PostgreSQL connection settings."""

    url: str = Field(default="", description="postgresql+asyncpg:// URL; empty selects in-memory stores.")
    pool_size: int = Field(default=20, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    echo: bool = Field(default=False)


class WorkerConfig(BaseModel):
    """Worker pool configuration."""

    count: int = Field(default=1, ge=1, le=64)
    capacity: int = Field(default=5, ge=1, le=1000)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    stale_after_seconds: float = Field(default=60.0, gt=0)
    reclaim_grace_seconds: float = Field(default=60.0, ge=0)
    capabilities: list[str] | None = Field(default=None, description="Providers this worker can serve; null disables filtering.")

    @model_validator(mode="after")
    def _heartbeat_within_staleness(self) -> WorkerConfig:
        if self.heartbeat_interval_seconds >= self.stale_after_seconds:
            raise ValueError("heartbeat_interval_seconds must be less than stale_after_seconds")
        return self


class RetryConfig(BaseModel):
    """Retry and backoff policy."""

    base_delay_seconds: float = Field(default=60.0, ge=0)
    max_delay_seconds: float = Field(default=1800.0, ge=0)
    default_max_retries: int = Field(default=3, ge=0)

    @field_validator("max_delay_seconds")
    @classmethod
    def _cap_not_below_base(cls, value: float, info: ValidationInfo) -> float:
        base = info.data.get("base_delay_seconds", 0.0)
        if value < base:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return value


class DispatcherConfig(BaseModel):
    """Outbound webhook call settings."""

    default_timeout_seconds: float = Field(default=30.0, gt=0, le=3600)
    max_timeout_seconds: float = Field(default=900.0, gt=0, le=3600, description="Upper bound for per-agent timeouts.")
    user_agent: str = Field(default="AgentFlow/1.0")

    @model_validator(mode="after")
    def _default_within_cap(self) -> DispatcherConfig:
        if self.default_timeout_seconds > self.max_timeout_seconds:
            raise ValueError("default_timeout_seconds must not exceed max_timeout_seconds")
        return self


class RateLimitConfig(BaseModel):
    """Per (user, agent) enqueue rate limit."""

    enabled: bool = Field(default=True)
    window_seconds: float = Field(default=60.0, gt=0)
    max_requests: int = Field(default=100, ge=1)


class FeedbackConfig(BaseModel):
    """Feedback-driven auto-disable."""

    window: int = Field(default=5, ge=1)
    threshold: int = Field(default=3, ge=1)
    auto_disable: bool = Field(default=True)

    @model_validator(mode="after")
    def _threshold_within_window(self) -> FeedbackConfig:
        if self.threshold > self.window:
            raise ValueError("threshold must not exceed window")
        return self


class VaultConfig(BaseModel):
    """Credential vault settings."""

    encryption_key: str = Field(default="", description="Fernet key; generate with `agentflow keygen`.")


class SchedulerConfig(BaseModel):
    """Poller settings."""

    poll_interval_seconds: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=100, ge=1)


class HttpConfig(BaseModel):
    """HTTP API bind settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)


class AgentFlowConfig(BaseSettings):
    """Root configuration model for AgentFlow."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)

    model_config = SettingsConfigDict(
        env_prefix="AGENTFLOW_",
        env_nested_delimiter="__",
        extra="ignore",
    )
