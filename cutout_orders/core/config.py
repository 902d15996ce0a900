"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Cutout Orders"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Document Store
    # ==========================================================================
    # "memory" keeps orders in process, "sql" uses DATABASE_URL
    ORDER_STORE_BACKEND: str = "sql"
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/orders.db"

    # ==========================================================================
    # Storage Settings (The Bridge Pattern)
    # ==========================================================================
    STORAGE_BACKEND: str = "local"  # local, gcs
    LOCAL_STORAGE_PATH: str = "./data/storage"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    URL_SIGNING_SECRET: str = "change-me"

    # Google Cloud Storage (production)
    GCS_BUCKET: Optional[str] = None

    # Signed URLs are read-only; 7 days is the V4 maximum on GCS
    SIGNED_URL_TTL_SECONDS: int = 7 * 24 * 3600

    # Artifact paths use the order id instead of a random suffix, so a
    # redelivered event overwrites the previous attempt's objects
    DETERMINISTIC_ARTIFACT_PATHS: bool = False
    # Sign each derivative only after its own upload has completed
    SIGN_AFTER_UPLOAD: bool = True

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    # remove.bg API
    REMOVEBG_API_URL: str = "https://api.remove.bg/v1.0/removebg"
    REMOVEBG_API_KEY: Optional[str] = None
    REMOVEBG_SIZE: str = "auto"

    # Watermark tile fetched once per derivation
    OVERLAY_URL: str = "https://storage.googleapis.com/cutout-assets/watermark.png"

    THUMBNAIL_WIDTH: int = 96
    THUMBNAIL_HEIGHT: int = 96

    HTTP_TIMEOUT_SECONDS: float = 60.0

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
