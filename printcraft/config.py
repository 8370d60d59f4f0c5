"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
that loads from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class PipelineSettings:
    """
    Tunables for the generation job pipeline.

    Passed explicitly into the Scheduler, Worker Pool and finalize path so
    none of them read global configuration.
    """
    concurrency_limit: int = 4
    max_attempts: int = 3
    base_backoff: float = 2.0
    max_backoff: float = 60.0
    backoff_jitter: float = 0.25
    lease_duration: float = 30.0
    max_processing_duration: float = 600.0
    poll_interval: float = 2.0
    dequeue_interval: float = 1.0
    storage_retry_budget: int = 3
    storage_retry_delay: float = 1.0
    recovery_sweep_interval: int = 60
    creation_rate_limit: int = 10
    creation_rate_period: float = 60.0

    def __post_init__(self):
        # The first retry must always wait less than the cap
        if self.max_backoff <= self.base_backoff * (1 + self.backoff_jitter):
            raise ValueError("max_backoff must exceed base_backoff * (1 + backoff_jitter)")


class AppConfig(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True
    )

    # ===== Pipeline Tuning =====
    CONCURRENCY_LIMIT: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Maximum number of jobs leased at once across the worker pool"
    )

    MAX_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum processing attempts per job before it is failed and dead-lettered"
    )

    BASE_BACKOFF_SECONDS: float = Field(
        default=2.0,
        gt=0,
        description="Delay before the first retry; doubles on every further attempt"
    )

    MAX_BACKOFF_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound for the retry delay"
    )

    BACKOFF_JITTER: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Random jitter added on top of the exponential delay, as a ratio of it"
    )

    LEASE_DURATION_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="How long a worker owns a job without renewing its lease"
    )

    MAX_PROCESSING_SECONDS: float = Field(
        default=600.0,
        gt=0,
        description="Maximum duration of a single processing attempt"
    )

    POLL_INTERVAL_SECONDS: float = Field(
        default=2.0,
        gt=0,
        description="Interval between provider status polls (also bounds cancellation latency)"
    )

    DEQUEUE_INTERVAL_SECONDS: float = Field(
        default=1.0,
        gt=0,
        description="Idle wait between empty dequeue attempts"
    )

    STORAGE_RETRY_BUDGET: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Upload attempts per artifact (does not consume job attempts)"
    )

    STORAGE_RETRY_DELAY_SECONDS: float = Field(
        default=1.0,
        ge=0,
        description="Pause between artifact upload attempts"
    )

    RECOVERY_SWEEP_INTERVAL_SECONDS: int = Field(
        default=60,
        ge=1,
        description="How often orphaned jobs are re-enqueued"
    )

    GENERATION_RATE_LIMIT_PER_MINUTE: int = Field(
        default=10,
        ge=1,
        le=10000,
        description="Max generation jobs one caller may submit per minute"
    )

    RUN_WORKERS_IN_WEB: bool = Field(
        default=True,
        description="Run the worker pool inside the web process (disable when running run_worker separately)"
    )

    # ===== Generation Provider =====
    PROVIDER_BACKEND: Literal["fake", "replicate"] = Field(
        default="fake",
        description="Generation provider implementation"
    )

    REPLICATE_API_TOKEN: str | None = Field(
        default=None,
        description="Replicate API token for image generation"
    )

    REPLICATE_MODEL: str = Field(
        default="stability-ai/sdxl:39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b",
        description="Replicate model version used for predictions"
    )

    REPLICATE_WEBHOOK_SECRET: str | None = Field(
        default=None,
        description="Signing secret for Replicate completion webhooks (whsec_...)"
    )

    PROVIDER_WEBHOOK_URL: str | None = Field(
        default=None,
        description="Public URL of the provider callback endpoint; polling only if unset"
    )

    PROVIDER_RATE_LIMIT_PER_MINUTE: int = Field(
        default=60,
        ge=1,
        le=10000,
        description="Max outbound provider calls per minute"
    )

    PROVIDER_RATE_LIMIT_MAX_WAIT_SECONDS: float = Field(
        default=10.0,
        ge=0,
        description="How long a provider call may queue for a rate limit slot before it is rejected"
    )

    # ===== Object Storage =====
    STORAGE_BACKEND: Literal["local", "supabase"] = Field(
        default="local",
        description="Artifact storage implementation"
    )

    LOCAL_STORAGE_DIR: str = Field(
        default="./generated_images",
        description="Directory for artifacts when STORAGE_BACKEND=local"
    )

    PUBLIC_BASE_URL: str = Field(
        default="http://localhost:8000/images",
        description="Base URL under which local artifacts are served"
    )

    SUPABASE_URL: str | None = Field(
        default=None,
        description="Supabase project URL"
    )

    SUPABASE_SERVICE_KEY: str | None = Field(
        default=None,
        description="Supabase service role key (for server-side storage uploads)"
    )

    STORAGE_BUCKET: str = Field(
        default="printcraft-images",
        description="Storage bucket for generated artifacts"
    )

    # ===== Notifications =====
    NOTIFIER_BACKEND: Literal["memory", "redis"] = Field(
        default="memory",
        description="Event fan-out implementation (redis for multi-process deployments)"
    )

    REDIS_URL: str | None = Field(
        default=None,
        description="Redis URL for the redis notifier"
    )

    # ===== Database Configuration =====
    JOB_DB_PATH: str = Field(
        default="./generation_jobs.db",
        description="Path to the SQLite database holding jobs and the work queue"
    )

    Storage_Path: str | None = Field(
        default=None,
        alias="STORAGE_PATH",
        description="Persistent volume mount path. If set, the job database lives there"
    )

    @property
    def job_db_path(self) -> str:
        """Get job DB path, using persistent storage if available."""
        if self.Storage_Path:
            return os.path.join(self.Storage_Path, "generation_jobs.db")
        return self.JOB_DB_PATH

    # ===== Application Settings =====
    DEV_MODE: bool = Field(
        default=True,
        description="Enable dev mode: trusts a default caller id when none is supplied"
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    API_HOST: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    API_PORT: int = Field(
        default=8000,
        ge=1024,
        le=65535,
        description="API server port"
    )

    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins. Use '*' for all (dev only)."
    )

    @field_validator("DEV_MODE", "RUN_WORKERS_IN_WEB", mode="before")
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (platform env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    @model_validator(mode="after")
    def check_backoff_bounds(self):
        first_retry_ceiling = self.BASE_BACKOFF_SECONDS * (1 + self.BACKOFF_JITTER)
        if self.MAX_BACKOFF_SECONDS <= first_retry_ceiling:
            raise ValueError(
                "MAX_BACKOFF_SECONDS must be greater than "
                "BASE_BACKOFF_SECONDS * (1 + BACKOFF_JITTER)"
            )
        return self

    # ===== Computed Properties =====

    @property
    def pipeline_settings(self) -> PipelineSettings:
        """Snapshot of the pipeline tunables for constructor injection."""
        return PipelineSettings(
            concurrency_limit=self.CONCURRENCY_LIMIT,
            max_attempts=self.MAX_ATTEMPTS,
            base_backoff=self.BASE_BACKOFF_SECONDS,
            max_backoff=self.MAX_BACKOFF_SECONDS,
            backoff_jitter=self.BACKOFF_JITTER,
            lease_duration=self.LEASE_DURATION_SECONDS,
            max_processing_duration=self.MAX_PROCESSING_SECONDS,
            poll_interval=self.POLL_INTERVAL_SECONDS,
            dequeue_interval=self.DEQUEUE_INTERVAL_SECONDS,
            storage_retry_budget=self.STORAGE_RETRY_BUDGET,
            storage_retry_delay=self.STORAGE_RETRY_DELAY_SECONDS,
            recovery_sweep_interval=self.RECOVERY_SWEEP_INTERVAL_SECONDS,
            creation_rate_limit=self.GENERATION_RATE_LIMIT_PER_MINUTE,
        )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def replicate_configured(self) -> bool:
        """Check if the Replicate provider can be used."""
        return self.REPLICATE_API_TOKEN is not None

    @property
    def supabase_configured(self) -> bool:
        """Check if Supabase storage is properly configured."""
        return (
            self.SUPABASE_URL is not None
            and self.SUPABASE_SERVICE_KEY is not None
        )

    @property
    def webhooks_enabled(self) -> bool:
        """Check if provider completion callbacks can be received and verified."""
        return (
            self.PROVIDER_WEBHOOK_URL is not None
            and self.REPLICATE_WEBHOOK_SECRET is not None
        )


# Global configuration instance
# Import this in entry points only: from printcraft.config import config
config = AppConfig()


# Validation on startup
if __name__ == "__main__":
    print("Configuration loaded successfully!")
    print(f"Provider: {config.PROVIDER_BACKEND}")
    print(f"Storage: {config.STORAGE_BACKEND}")
    print(f"Notifier: {config.NOTIFIER_BACKEND}")
    print(f"Job DB: {config.job_db_path}")
    print(f"Concurrency: {config.CONCURRENCY_LIMIT} (max attempts {config.MAX_ATTEMPTS})")
    print(f"Replicate: {'✓' if config.replicate_configured else '✗'}")
    print(f"Supabase: {'✓' if config.supabase_configured else '✗'}")
    print(f"Webhooks: {'✓' if config.webhooks_enabled else '✗'}")
