from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIGRATION_FAILURE_POLICIES = ("continue", "refuse_writes")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/fieldops"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600
    SLOW_QUERY_THRESHOLD_MS: int = 500
    SQL_ECHO: bool = False

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: Optional[str] = None

    # Project namespaces
    NAMESPACE_PREFIX: str = "project"
    NAMESPACE_MAX_LENGTH: int = 50

    # Audit notes are rendered in this timezone
    DEFAULT_TIMEZONE: str = "America/Denver"

    # "continue" keeps serving a namespace whose migration failed,
    # "refuse_writes" rejects mutations until the schema is fixed.
    MIGRATION_FAILURE_POLICY: str = "continue"

    @field_validator("DEFAULT_TIMEZONE")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("MIGRATION_FAILURE_POLICY")
    @classmethod
    def validate_migration_policy(cls, v: str) -> str:
        if v not in MIGRATION_FAILURE_POLICIES:
            raise ValueError(
                f"MIGRATION_FAILURE_POLICY must be one of: {', '.join(MIGRATION_FAILURE_POLICIES)}"
            )
        return v

    @field_validator("NAMESPACE_MAX_LENGTH")
    @classmethod
    def validate_namespace_length(cls, v: int) -> int:
        # PostgreSQL truncates identifiers at 63 bytes
        if v < 1 or v > 50:
            raise ValueError("NAMESPACE_MAX_LENGTH must be between 1 and 50")
        return v

    @model_validator(mode="after")
    def force_production_defaults(self) -> "Settings":
        if self.is_production:
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        """Statement echo is never enabled in production (parameters may hold PII)."""
        return self.SQL_ECHO and not self.is_production

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "DEBUG" if self.DEBUG else "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
