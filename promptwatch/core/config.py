from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "pw_user"
    postgres_password: str = "changeme"
    postgres_db: str = "promptwatch"

    # Full SQLAlchemy URL override (e.g. sqlite+aiosqlite:///./promptwatch.db)
    database_url: str = ""

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption for provider credentials
    fernet_key: str = ""

    # Execution engine
    execution_concurrency: int = 5  # in-flight jobs per run_all / run_single call
    execution_global_concurrency: int | None = None  # process-wide ceiling, unset = per-run only
    provider_timeout_seconds: float = 60.0
    provider_temperature: float = 0.7
    analysis_timeout_seconds: float = 60.0
    analysis_temperature: float = 0.2
    analysis_max_retries: int = 2
    analysis_max_chars: int = 6000
    # Title, description and h1 of cited pages, fed to the analysis prompt
    page_metadata_enabled: bool = True
    page_metadata_timeout_seconds: float = 5.0
    page_metadata_concurrency: int = 5
    stale_execution_minutes: int = 10
    scheduler_interval_minutes: int = 5
    timezone: str = "UTC"  # refresh_date is the calendar day in this zone

    # Trigger rate limits (slowapi syntax)
    rate_limit_enabled: bool = True
    run_rate_limit: str = "10/minute"
    reanalyze_rate_limit: str = "5/minute"

    # Live updates
    sse_ping_seconds: float = 30.0
    sse_queue_size: int = 100

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if not settings.fernet_key:
        errors.append(
            "FERNET_KEY must be set (generate with: python -c "
            '"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
        )

    if settings.execution_concurrency < 1:
        errors.append("EXECUTION_CONCURRENCY must be at least 1")

    if settings.execution_global_concurrency is not None and settings.execution_global_concurrency < 1:
        errors.append("EXECUTION_GLOBAL_CONCURRENCY must be at least 1 when set")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
