"""
Application configuration using Pydantic Settings
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Database
    database_url: str = "sqlite:///./bloodchain.db"

    # Security
    secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Attachments
    attachment_dir: str = "./attachments"
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_attachments_per_message: int = 5
    allowed_attachment_types: List[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/webp",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]

    # Ledger
    append_max_attempts: int = 2
    append_retry_backoff: float = 0.05

    # Realtime
    realtime_send_timeout: float = 5.0

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
