"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "ciphertrail"
    postgres_password: str = "ciphertrail_dev_password"
    postgres_db: str = "ciphertrail"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Connection pool
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_pre_ping: bool = True
    db_statement_timeout_ms: Optional[int] = 30000

    # Audit target
    audit_schema: str = "public"  # PostgreSQL schema
    audit_database: Optional[str] = None  # MySQL database, defaults to the URL database

    # Batch setup pacing
    audit_batch_size: int = 3
    audit_batch_max_workers: int = 3
    audit_batch_delay_seconds: float = 1.5

    # Reader paging
    page_size_default: int = 100
    page_size_max: int = 1000

    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    system_log_path: Optional[str] = None  # Rotating file for operational events
    system_log_max_bytes: int = 10 * 1024 * 1024
    system_log_backup_count: int = 5

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    def validate_production_settings(self):
        """Validate settings for production environment."""
        env = self.environment.lower()
        if env not in ("development", "test", "dev"):
            if not self.database_url:
                raise ValueError(
                    "DATABASE_URL is required outside development. "
                    "Do not rely on the default local credentials."
                )
            if self.audit_batch_size < 1 or self.audit_batch_max_workers < 1:
                raise ValueError("AUDIT_BATCH_SIZE and AUDIT_BATCH_MAX_WORKERS must be positive")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
