"""Configuration settings for the scrape scheduler."""

from enum import Enum
from functools import lru_cache
from typing import Literal, Self

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DomainPreset(str, Enum):
    """Scraping domains with tuned pacing defaults."""

    GENERAL = "general"
    ECOMMERCE = "ecommerce"
    NEWS = "news"
    JOBS = "jobs"
    LEADS = "leads"


class SchedulerConfig(BaseModel):
    """Configuration for concurrency, pacing, retries and batching.

    All durations are in milliseconds. Invalid values raise
    ``pydantic.ValidationError`` at construction time.
    """

    # Concurrency
    max_concurrent: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Maximum simultaneously in-flight units of work",
    )
    delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Initial delay applied before each task starts",
    )

    # Burst limiting
    burst_limit: int = Field(
        default=10,
        ge=1,
        description="Maximum admissions inside one rolling time window",
    )
    time_window_ms: int = Field(
        default=60000,
        ge=1,
        description="Length of the rolling rate-limit window",
    )

    # Retries
    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries after the first attempt for retryable errors",
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Backoff before the first retry",
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor applied to the backoff per attempt",
    )
    retry_delay_cap_ms: int = Field(
        default=10000,
        ge=0,
        description="Upper bound of the backoff before jitter",
    )
    retry_jitter_ms: int = Field(
        default=500,
        ge=0,
        description="Random jitter in [0, retry_jitter_ms) added to each backoff",
    )

    # Batching
    batch_size: int | None = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum tasks per chunk (None = concurrency ceiling only)",
    )
    delay_between_batches_ms: int = Field(
        default=5000,
        ge=0,
        description="Pause between consecutive chunks",
    )

    # Timeouts
    acquire_timeout_ms: int | None = Field(
        default=300000,
        ge=1,
        description="Maximum wait for a concurrency slot (None = unbounded)",
    )
    task_timeout_ms: int | None = Field(
        default=30000,
        ge=1,
        description="Default per-attempt timeout for a unit of work (None = unbounded)",
    )

    # Per-domain spacing
    domain_interval_multiplier: float = Field(
        default=2.0,
        ge=0.0,
        description="Minimum start-to-start spacing per host as a multiple of the current delay",
    )

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> Self:
        if self.retry_delay_cap_ms < self.retry_base_delay_ms:
            raise ValueError("retry_delay_cap_ms must be >= retry_base_delay_ms")
        return self

    @classmethod
    def for_domain(cls, preset: DomainPreset | str, **overrides: object) -> "SchedulerConfig":
        """Build a config tuned for a scraping domain.

        Args:
            preset: Domain to tune for (enum member or its value)
            **overrides: Field values that replace the preset values

        Returns:
            Validated SchedulerConfig
        """
        values: dict[str, object] = {**_DOMAIN_PRESETS[DomainPreset(preset)], **overrides}
        return cls.model_validate(values)


_DOMAIN_PRESETS: dict[DomainPreset, dict[str, object]] = {
    DomainPreset.GENERAL: {"max_concurrent": 2, "delay_ms": 1000, "burst_limit": 10},
    DomainPreset.ECOMMERCE: {"max_concurrent": 2, "delay_ms": 2000, "burst_limit": 5},
    DomainPreset.NEWS: {"max_concurrent": 3, "delay_ms": 1000, "burst_limit": 10},
    DomainPreset.JOBS: {"max_concurrent": 4, "delay_ms": 1500, "burst_limit": 8},
    DomainPreset.LEADS: {"max_concurrent": 1, "delay_ms": 3000, "burst_limit": 3},
}


class ThrottleConfig(BaseModel):
    """Configuration for adaptive throttling.

    Two watermarks give hysteresis: the ceiling drops as soon as one
    evaluation window is unhealthy but only recovers after several calm
    windows in a row.
    """

    evaluation_window: int = Field(
        default=20,
        ge=1,
        description="Completed tasks per evaluation (K)",
    )
    high_watermark: float = Field(
        default=0.30,
        gt=0.0,
        le=1.0,
        description="Failure ratio above which the scheduler backs off",
    )
    low_watermark: float = Field(
        default=0.05,
        ge=0.0,
        lt=1.0,
        description="Failure ratio below which a window counts as calm",
    )
    recovery_windows: int = Field(
        default=3,
        ge=1,
        description="Consecutive calm windows before recovering (M)",
    )
    backoff_factor: float = Field(
        default=1.5,
        gt=1.0,
        description="Delay multiplier on back-off (divisor on recovery)",
    )
    concurrency_step: int = Field(
        default=1,
        ge=1,
        description="Ceiling change per adjustment",
    )
    min_delay_ms: int = Field(
        default=0,
        ge=0,
        description="Floor of the inter-task delay",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Ceiling of the inter-task delay",
    )
    initial_backoff_delay_ms: int = Field(
        default=250,
        ge=1,
        description="Delay used as the back-off seed when the current delay is zero",
    )

    # Response-time pacing
    min_response_samples: int = Field(
        default=10,
        ge=1,
        description="Response times required before they influence the delay",
    )
    slow_response_ms: int = Field(
        default=5000,
        ge=0,
        description="Average response time above which the delay grows",
    )
    fast_response_ms: int = Field(
        default=1000,
        ge=0,
        description="Average response time below which the delay shrinks",
    )
    slow_response_step_ms: int = Field(
        default=200,
        ge=0,
        description="Delay increase per evaluation while responses are slow",
    )
    fast_response_step_ms: int = Field(
        default=100,
        ge=0,
        description="Delay decrease per evaluation while responses are fast",
    )
    response_delay_cap_ms: int = Field(
        default=3000,
        ge=0,
        description="Slow responses never raise the delay above this value",
    )
    response_delay_floor_ms: int = Field(
        default=500,
        ge=0,
        description="Fast responses never lower the delay below this value",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.low_watermark >= self.high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        if self.min_delay_ms > self.max_delay_ms:
            raise ValueError("min_delay_ms must be <= max_delay_ms")
        if self.fast_response_ms > self.slow_response_ms:
            raise ValueError("fast_response_ms must be <= slow_response_ms")
        return self


class LoggingConfig(BaseModel):
    """Configuration for logging behavior.

    Controls file logging, rotation, and output format.
    """

    log_file: str | None = Field(
        default=None,
        description="Optional path for file logging (enables rotation)",
    )
    rotation: str = Field(
        default="10 MB",
        description="When to rotate log file (e.g., '10 MB', '1 day')",
    )
    retention: str = Field(
        default="7 days",
        description="How long to keep rotated logs",
    )
    serialize: bool = Field(
        default=False,
        description="If True, output JSON format to file",
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # --------------------------------------------------------------------------
    # Application
    # --------------------------------------------------------------------------
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # --------------------------------------------------------------------------
    # HTTP
    # --------------------------------------------------------------------------
    user_agent: str = Field(
        default="scrape-scheduler/0.1",
        description="User-Agent header sent by the HTTP fetcher",
    )

    # --------------------------------------------------------------------------
    # Scheduling
    # --------------------------------------------------------------------------
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Concurrency, pacing and retry configuration",
    )
    throttle: ThrottleConfig = Field(
        default_factory=ThrottleConfig,
        description="Adaptive throttle configuration",
    )

    # --------------------------------------------------------------------------
    # Logging Configuration
    # --------------------------------------------------------------------------
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration (file output, rotation)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
