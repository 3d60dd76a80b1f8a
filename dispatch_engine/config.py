"""Configuration settings for the dispatch engine."""

from pydantic_settings import BaseSettings

# Agents included in the operator dispatch snapshot
DEFAULT_BUSINESS_AGENTS = ["Maven", "Chase", "Morgan", "Harper", "Forge", "Charlie"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "dispatch"
    db_user: str = "agent"
    db_password: str = "agent"
    database_url_override: str | None = None  # e.g. sqlite+aiosqlite:///dispatch.db

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    webhook_stream: str = "stream:webhooks:events"
    webhook_stream_max_depth: int = 1000
    webhook_worker_group: str = "webhook-workers"
    webhook_dlq_stream: str = "stream:dlq:webhooks"
    webhook_max_attempts: int = 3

    # Webhook delivery
    webhook_timeout_seconds: float = 10.0
    webhook_max_failures: int = 10

    # Logging
    log_level: str = "INFO"

    # Dispatch summary
    business_agents: list[str] = DEFAULT_BUSINESS_AGENTS
    stall_threshold_hours: float = 4.0

    # Risk heuristics
    failure_window_hours: float = 24.0
    failure_threshold: int = 3
    stale_high_hours: float = 4.0
    stale_critical_hours: float = 8.0
    autonomy_window_hours: float = 6.0
    autonomy_done_threshold: int = 10
    budget_spike_multiplier: float = 2.0
    budget_critical_multiplier: float = 3.0
    budget_baseline_hours: int = 23
    active_signal_limit: int = 50

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "DISPATCH_"
        env_file = ".env"


# Global settings instance
settings = Settings()
