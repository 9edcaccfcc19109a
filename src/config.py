"""
config.py

Runtime settings for the MentorMatch API, read from the environment or a
local `.env` file.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Service
    APP_NAME: str = "MentorMatch API"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]
    MCP_ENABLED: bool = True

    # Document store
    TRANSACTION_MAX_ATTEMPTS: int = 5
    BATCH_WRITE_LIMIT: int = 500

    # Business limits
    MAX_SUPERVISOR_CAPACITY: int = 50

    # Notifications
    EMAIL_FROM: str = "noreply@mentormatch.local"
    EVENT_WORKERS: int = 4

    # Admin account seeded at startup
    SYSTEM_ADMIN_ID: str = "system-admin"
    SYSTEM_ADMIN_EMAIL: str = "admin@mentormatch.local"


@lru_cache
def get_settings() -> Settings:
    return Settings()
