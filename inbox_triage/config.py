from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Supabase settings (JWT verification + Postgres)
    SUPABASE_URL: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    SUPABASE_DB_URL: str | None = None

    # OpenAI settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_MAX_TOKENS: int = 300
    OPENAI_TEMPERATURE: float = 0.2
    OPENAI_TIMEOUT_SECONDS: int = 30
    OPENAI_MAX_RETRIES: int = 3
    OPENAI_RETRY_DELAY_SECONDS: float = 1.0

    # =================================================================
    # JOB QUEUE SETTINGS
    # =================================================================
    QUEUE_MAX_CONCURRENCY: int = 5
    QUEUE_RATE_LIMIT_PER_MINUTE: int = 60
    QUEUE_MAX_RETRIES: int = 3
    QUEUE_RETRY_DELAY_MS: int = 1000
    QUEUE_TIMEOUT_MS: int = 30000
    QUEUE_DEAD_LETTER_ENABLED: bool = True
    QUEUE_TICK_INTERVAL_MS: int = 100
    QUEUE_RATE_LIMIT_DEFER_MS: int = 1000
    QUEUE_RETENTION_HOURS: int = 24
    QUEUE_MAINTENANCE_INTERVAL_SECONDS: int = 1800  # 30 minutes
    QUEUE_HEALTH_MAX_AVG_PROCESSING_MS: int = 60000

    # =================================================================
    # TRIAGE DEFAULTS (per-subject overrides live in the store)
    # =================================================================
    TRIAGE_MAX_BATCH_SIZE: int = 10
    TRIAGE_MAX_WAIT_TIME_MS: int = 30000
    TRIAGE_AI_THRESHOLD: int = 60
    TRIAGE_COST_BUDGET_CENTS: int = 100  # $1 daily budget
    TRIAGE_MAX_COST_PER_EMAIL: int = 10
    TRIAGE_ESTIMATED_COST_PER_CALL: int = 5
    TRIAGE_RULES_CACHE_TTL_SECONDS: int = 60

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # derive sensible defaults if not provided
    def jwks_url(self) -> str | None:
        if self.SUPABASE_JWKS_URL:
            return self.SUPABASE_JWKS_URL
        if not self.SUPABASE_URL:
            return None
        base = self.SUPABASE_URL.rstrip("/")
        return f"{base}/auth/v1/.well-known/jwks.json"

    def get_queue_options(self) -> dict:
        """Queue options in the shape QueueOptions expects."""
        return {
            "max_concurrency": self.QUEUE_MAX_CONCURRENCY,
            "rate_limit_per_minute": self.QUEUE_RATE_LIMIT_PER_MINUTE,
            "max_retries": self.QUEUE_MAX_RETRIES,
            "retry_delay_ms": self.QUEUE_RETRY_DELAY_MS,
            "processing_timeout_ms": self.QUEUE_TIMEOUT_MS,
            "dead_letter_enabled": self.QUEUE_DEAD_LETTER_ENABLED,
            "tick_interval_ms": self.QUEUE_TICK_INTERVAL_MS,
            "rate_limit_defer_ms": self.QUEUE_RATE_LIMIT_DEFER_MS,
        }

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": min(self.DB_POOL_MIN_SIZE, 2),
                    "max_size": min(self.DB_POOL_MAX_SIZE, 6),
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
