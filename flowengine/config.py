"""Engine configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="flowengine", description="Application name")
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: Optional[bool] = Field(
        default=None, description="Force JSON log output (defaults to production only)"
    )

    # Scheduling
    max_parallel_nodes: int = Field(
        default=10, ge=1, description="Max nodes running concurrently per execution"
    )
    shared_pool_size: Optional[int] = Field(
        default=None, ge=1, description="Engine-wide cap on concurrently running nodes"
    )

    # Timeouts (seconds)
    execution_timeout: Optional[float] = Field(
        default=3600, gt=0, description="Default execution-wide timeout in seconds"
    )
    default_node_timeout: Optional[float] = Field(
        default=None, gt=0, description="Default per-node timeout in seconds"
    )
    node_hard_stop_grace: float = Field(
        default=5.0, ge=0, description="Seconds to wait for a cancelled node to unwind"
    )
    abort_grace_period: float = Field(
        default=5.0, ge=0, description="Seconds to wait for running nodes on abort"
    )

    # Retries
    retry_backoff_factor: float = Field(
        default=2.0, ge=1.0, description="Multiplier applied to retry delay per attempt"
    )
    max_retry_delay: float = Field(
        default=60.0, ge=0, description="Ceiling for a single retry delay in seconds"
    )
    max_execution_retries: int = Field(
        default=3, ge=0, description="Max times a failed execution may be retried"
    )

    # Bookkeeping
    execution_history_size: int = Field(
        default=1000, ge=1, description="Finished executions kept for status queries"
    )
    event_queue_size: int = Field(
        default=10000, ge=1, description="Max pending execution events"
    )
    metrics_histogram_size: int = Field(
        default=1000, ge=1, description="Most recent samples kept per histogram"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() in ("production", "prod")

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment.lower() in ("testing", "test")


@lru_cache()
def get_settings() -> Settings:
    """Get engine settings (cached)."""
    return Settings()
