from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    ADMIN_EMAIL: str = "admin@admin.com"
    SERVICE_NAME: str = "registration"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    DB_ECHO: bool = False

    # Redis (arq job queue + distributed rate limiting)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Auth
    # Placeholder secret keeps local/test runs working; real deployments
    # must override via env.
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Payment gateway
    GATEWAY_WEBHOOK_SECRET: str = "test-webhook-secret"
    GATEWAY_EVENT_MAX_ATTEMPTS: int = 8
    GATEWAY_EVENT_RETRY_BASE_SECONDS: int = 30
    GATEWAY_EVENT_RETRY_MAX_SECONDS: int = 3600

    # Registration engine
    REGISTRATION_HOLD_MINUTES: int = 15
    WAITLIST_OFFER_HOURS: int = 24
    DEFAULT_CURRENCY: str = "SAR"
    SWEEP_BATCH_SIZE: int = 200

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URL: Optional[str] = None
    REGISTRATION_RATE_LIMIT: str = "10/minute"

    # Collaborator services
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"
    AUDIT_SERVICE_URL: str = "http://audit-service:8010"
    LMS_SERVICE_URL: str = "http://lms-service:8011"
    CERTIFICATE_SERVICE_URL: str = "http://certificate-service:8012"
    ALERTS_SERVICE_URL: str = "http://communications-service:8004"
    COLLABORATOR_TIMEOUT_SECONDS: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
