"""Configuration settings for the codeforge engine."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "codeforge"
    db_user: str = "agent"
    db_password: str = "agent"
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = True

    # Completion gateway (OpenAI-compatible chat completions)
    completion_base_url: str = "https://ai-gateway.vercel.sh/v1"
    completion_api_key: str | None = None
    completion_timeout: float = 300.0
    default_model: str = "anthropic/claude-sonnet-4"
    max_tool_iterations: int = 25

    # Sandbox provider
    e2b_api_key: str | None = None
    sandbox_template: str = "code-interpreter-v1"
    sandbox_timeout: int = 900  # 15 minutes
    sandbox_cache_ttl: int = 300
    release_on_complete: bool = False

    # Rate limiting
    rate_limit_backend: str = "sql"  # "sql" or "redis"
    rate_limit_window_seconds: int = 3600
    rate_limit_prune_batch: int = 100
    rate_limit_warning_ratio: float = 0.8
    rate_limits: dict[str, int] = {
        "sandbox_create": 100,
        "sandbox_connect": 300,
        "ai_completion": 1000,
    }
    rate_limit_fail_closed_operations: list[str] = ["sandbox_create", "sandbox_connect"]

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_timeout: float = 60.0

    # Pipeline caps
    max_review_cycles: int = 2
    max_fix_cycles: int = 2

    # Step retry policy
    step_max_attempts: int = 4
    step_base_delay: float = 1.0
    step_backoff_factor: float = 2.0
    step_max_delay: float = 60.0

    # Commands (seconds)
    command_timeout: float = 120.0
    lint_command: str = "npm run lint"
    lint_timeout: float = 60.0
    build_command: str = "npm run build"
    build_timeout: float = 120.0

    # Task queue
    task_max_retries: int = 3
    sweep_batch_size: int = 10
    task_cleanup_days: int = 7
    task_cleanup_batch: int = 100

    # Worker intervals (seconds)
    sweep_interval: float = 30.0
    cleanup_interval: float = 3600.0
    health_interval: float = 300.0
    health_alert_ratio: float = 0.9

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def limit_for(self, operation: str) -> int:
        return self.rate_limits.get(operation, 100)

    class Config:
        env_prefix = "CODEFORGE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
