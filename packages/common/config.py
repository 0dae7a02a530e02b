from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Strongly-typed settings model loaded from env / .env.

    Notes:
        - Every field has a development default so the service and its tests import
          cleanly; production deployments override them through the environment.
        - The JWT key has no usable default: bearer-authenticated routes reject every
          request until it is provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        protected_namespaces=()
    )

    ENV: str = Field(default="dev", description="Deployment environment, e.g. dev/staging/prod")
    SERVICE_NAME: str = Field(default="assessment", description="Service name")

    DATABASE_URL: str = Field(default="sqlite:///./assessment.db", description="SQLAlchemy database URL")
    KAFKA_BOOTSTRAP: str | None = Field(default=None, description="Kafka bootstrap servers; unset = log-only events")
    EVENT_TOPIC_PREFIX: str = Field(default="assessment", description="Prefix for published event topics")

    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_JSON: bool = Field(default=True, description="Emit single-line JSON logs")

    GRADING_WORKERS: int = Field(default=4, ge=1, description="Background grading pool size")
    GRADING_RETRIES: int = Field(default=3, ge=1, description="Attempts per background grading task")
    SWEEP_INTERVAL_SEC: float = Field(default=30.0, gt=0, description="Timeout sweeper period")
    START_CONFLICT_RETRIES: int = Field(default=3, ge=1, description="Retries when two starts race")
    MAX_EXTENSION_MINUTES: int = Field(default=240, ge=1, description="Upper bound for one time extension")

    JWT_PUBLIC_KEY: str = Field(default="", description="JWT public key (RS256)")
    OIDC_AUDIENCE: str | None = Field(default=None, description="Expected JWT audience")


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton `Settings` instance."""
    return Settings()
