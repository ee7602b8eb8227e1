from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Strongly-typed settings model loaded from env / .env.

    Notes:
        - Secrets (JWT key) must be provided via environment variables in production.
        - An empty `KAFKA_BOOTSTRAP` keeps the event bus in log-only mode.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        protected_namespaces=()
    )

    ENV: str = Field(default="dev", description="Deployment environment, e.g. dev/staging/prod")
    SERVICE_NAME: str = Field(default="quizcore-assessment", description="Service name")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    DATABASE_DSN: str = Field(
        default="sqlite+aiosqlite:///./assessment.db",
        description="SQLAlchemy async DSN, e.g. postgresql+asyncpg://user:pw@host/db",
    )
    KAFKA_BOOTSTRAP: str = Field(default="", description="Kafka bootstrap servers; empty disables Kafka")
    EVENTS_TOPIC: str = Field(default="assessment.attempt_graded", description="Topic for graded attempts")

    JWT_PUBLIC_KEY: str = Field(default="", description="JWT public key (must be provided outside dev)")
    OIDC_AUDIENCE: str = Field(default="quizcore", description="OIDC audience")

    ASSESSMENT_MAX_RETRIES: int = Field(default=3, ge=1, description="Attempts per command on version conflict")
    ASSESSMENT_EXPIRY_INTERVAL_SEC: float = Field(
        default=0.0, ge=0, description="Expiry sweep interval; 0 disables the background sweeper"
    )


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton `Settings` instance."""
    return Settings()
