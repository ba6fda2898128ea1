"""Application settings, configurable via environment variables or a .env file."""
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Treasury service settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "IEEE Treasury"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # SQLite locally, PostgreSQL in production
    DATABASE_URL: str = "sqlite:///./treasury.db"

    # Blob storage
    STORAGE_ROOT: str = "./storage"
    STORAGE_BASE_URL: str = "http://localhost:8000/files"

    # Outbound email notifications (empty disables them)
    NOTIFY_URL: str = ""
    NOTIFY_TIMEOUT: float = 5.0

    @field_validator("DATABASE_URL")
    @classmethod
    def fix_postgres_scheme(cls, v: str) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
