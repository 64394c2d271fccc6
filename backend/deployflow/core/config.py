"""
Pydantic Settings — centralized configuration loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ──────────────────────────────
    POSTGRES_USER: str = "deployflow"
    POSTGRES_PASSWORD: str = "deployflow"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "deployflow"

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for app runtime (asyncpg)."""
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # ── Redis / Celery ────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # ── Logging ───────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ── Step retry / timeouts (seconds) ───────
    STEP_RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    STEP_RETRY_BACKOFF_MAX_SECONDS: float = 300.0
    DEFAULT_STEP_TIMEOUT_SECONDS: float = 1800.0
    DEFAULT_STAGE_TIMEOUT_SECONDS: float = 3600.0
    DEFAULT_EXECUTION_TIMEOUT_SECONDS: float = 7200.0
    DEFAULT_APPROVAL_TIMEOUT_SECONDS: float = 86400.0

    # ── Rollback ──────────────────────────────
    ROLLBACK_STEP_RETRY_ATTEMPTS: int = 1
    ROLLBACK_STEP_TIMEOUT_SECONDS: float = 600.0
    ROLLBACK_ON_TIMEOUT: bool = True

    # ── Environment health monitor ────────────
    HEALTH_MONITOR_ENABLED: bool = False
    HEALTH_MONITOR_INTERVAL_SECONDS: float = 60.0

    # ── Persistence ───────────────────────────
    PERSIST_EXECUTIONS: bool = False

    # ── Application ───────────────────────────
    APP_ENV: str = "development"

    model_config = {"env_file": ["../.env", ".env"], "extra": "ignore"}


settings = Settings()
