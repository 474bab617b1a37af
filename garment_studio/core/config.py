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
    APP_NAME: str = "Garment Studio Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    REDIS_URL: str = "redis://localhost:6379/1"

    # ==========================================================================
    # External Service Credentials (read-only, process-wide)
    # ==========================================================================
    GEMINI_API_KEY: Optional[str] = None
    FAL_KEY: Optional[str] = None
    REPLICATE_API_TOKEN: Optional[str] = None

    # ==========================================================================
    # External Service Endpoints
    # ==========================================================================
    FAL_BASE_URL: str = "https://fal.run"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image-preview"
    REPLICATE_BASE_URL: str = "https://api.replicate.com/v1"
    REPLICATE_UPSCALE_VERSION: str = (
        "nightmareai/real-esrgan:"
        "42fed1c4974146d4d2414e2be2c5277c7fcf05fcc3a73abf41610695738c1d7b"
    )

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    # Per-stage wall-clock budgets (seconds), including any internal polling
    CUTOUT_TIMEOUT_SECONDS: float = 60.0
    EDIT_TIMEOUT_SECONDS: float = 120.0
    HARMONIZE_TIMEOUT_SECONDS: float = 60.0
    UPSCALE_TIMEOUT_SECONDS: float = 90.0

    # Network-level timeouts on individual requests
    HTTP_TIMEOUT_SECONDS: float = 60.0
    POLL_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Upscale poll loop: 30 x 2s = 60s ceiling
    UPSCALE_POLL_INTERVAL_SECONDS: float = 2.0
    UPSCALE_POLL_MAX_ATTEMPTS: int = 30
    UPSCALE_FACTOR: int = 2

    MAX_INSTRUCTION_LENGTH: int = 4000
    MAX_IMAGE_SIZE_BYTES: int = 20 * 1024 * 1024  # 20MB

    # Secondary edit provider (FAL Nano Banana) when Gemini returns no image
    EDIT_FALLBACK_ENABLED: bool = False

    DEFAULT_BATCH_PROMPT: str = "Ghost mannequin on neutral background"

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    def stage_timeout(self, stage: str) -> float:
        """Wall-clock budget for a pipeline stage by name."""
        return {
            "cutout": self.CUTOUT_TIMEOUT_SECONDS,
            "edit": self.EDIT_TIMEOUT_SECONDS,
            "harmonize": self.HARMONIZE_TIMEOUT_SECONDS,
            "upscale": self.UPSCALE_TIMEOUT_SECONDS,
        }[stage]

    def secrets(self) -> list:
        """Configured credentials, used to scrub error text."""
        return [
            value for value in (self.GEMINI_API_KEY, self.FAL_KEY, self.REPLICATE_API_TOKEN)
            if value
        ]


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return settings
