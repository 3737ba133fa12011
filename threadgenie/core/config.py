"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Tuple


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Thread Genie Patch Studio"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Pixel Engine Settings
    # ==========================================================================
    MAX_DIMENSION: int = 1024  # Longer side after upload normalization
    JPEG_QUALITY: int = 90
    CHROMA_KEY_COLOR: Tuple[int, int, int] = (255, 255, 255)
    CHROMA_KEY_TOLERANCE: float = 30.0  # Absolute RGB distance, 0 - 441.7
    MAX_UPLOAD_BYTES: int = 10485760  # 10MB

    # ==========================================================================
    # Generative Model Settings (Gemini)
    # ==========================================================================
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_API_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_STANDARD_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_PRO_MODEL: str = "gemini-3-pro-image-preview"
    UPSCALE_IMAGE_SIZE: str = "4K"
    GENERATION_TIMEOUT_SECONDS: float = 120.0

    # Offline client for development
    SIMULATE_GENERATION: bool = False
    SIMULATED_LATENCY_SECONDS: float = 0.0
    SIMULATED_UPSCALE_FACTOR: int = 2

    # ==========================================================================
    # Credential Gate
    # ==========================================================================
    # 0 means "do not wait for a key to be provided"
    CREDENTIAL_REQUEST_TIMEOUT_SECONDS: float = 0.0

    # ==========================================================================
    # Edit Sessions (memory-resident only)
    # ==========================================================================
    SESSION_TTL_SECONDS: int = 3600
    MAX_SESSIONS: int = 100
    SESSION_REAP_INTERVAL_SECONDS: int = 60
    MAX_PROMPT_LENGTH: int = 2000

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"


# Global settings instance
settings = Settings()
