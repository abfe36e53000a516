from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_USER: str = "outreach"
    POSTGRES_PASSWORD: str = "outreach"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "outreach"

    # Full SQLAlchemy URL, takes precedence over the POSTGRES_* parts
    DATABASE_URL: Optional[str] = None
    SQL_ECHO: bool = False
    # Creates missing tables on API startup, for local runs without migrations
    CREATE_SCHEMA_ON_STARTUP: bool = False

    # Empty means idempotency is served from process memory only
    REDIS_URL: Optional[str] = None
    IDEMPOTENCY_TTL_SECONDS: int = 86400

    ACTION_TIMEOUT_SECONDS: float = 10.0

    SCHEDULER_INTERVAL_SECONDS: float = 60.0
    SCHEDULER_BATCH_SIZE: int = 100

    WAIT_D2_DAYS: int = 2
    WAIT_D1_DAYS: int = 1

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """Constructs PostgreSQL connection URL for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        user = self.POSTGRES_USER
        password = self.POSTGRES_PASSWORD
        host = self.POSTGRES_HOST
        port = self.POSTGRES_PORT
        db = self.POSTGRES_DB
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db}"


settings = Settings()
