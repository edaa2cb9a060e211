"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Chunked Image Upscaler"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    # Encoded artifacts are written here
    LOCAL_STORAGE_PATH: str = "./data/storage"

    # ==========================================================================
    # Input Limits
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 52428800  # 50MB
    MAX_IMAGE_PIXELS: int = 64_000_000
    ALLOWED_CONTENT_TYPES: str = "image/jpeg,image/jpg,image/png,image/webp"

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    TILE_SIZE: int = 512
    TILE_OVERLAP: int = 16  # source pixels shared by neighbouring tiles
    DEFAULT_SCALE_FACTOR: int = 4

    # 1 = sequential dispatch; >1 = bounded thread pool
    MAX_TILE_WORKERS: int = 1

    # Isolated per-tile retry, off by default (whole job fails on first error)
    TILE_MAX_RETRIES: int = 0

    # Test hook: artificial pause per tile. Never influences pixel output.
    SIMULATED_TILE_DELAY_SECONDS: float = 0.0

    # Map sharpness / noise_reduction onto the enhancement filter.
    # When off, the filter uses its fixed threshold and kernel weights.
    FILTER_USE_TUNING: bool = False

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development
    LOG_FILE: Optional[str] = None

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def allowed_content_types(self) -> list:
        return [t.strip() for t in self.ALLOWED_CONTENT_TYPES.split(",") if t.strip()]


# Global settings instance
settings = Settings()

# Ensure storage directory exists
Path(settings.LOCAL_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
