import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings configuration."""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    # API settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Puzzle Forge API"
    LOG_LEVEL: str = "INFO"

    # Storage settings
    STORAGE_DIR: Path = Path("storage")
    USE_AZURE_STORAGE: bool = False
    AZURE_STORAGE_CONNECTION_STRING: str = ""
    AZURE_CONTAINER_NAME: str = "puzzle-images"

    # Upload and image limits
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    MAX_IMAGE_BYTES: int = 50 * 1024 * 1024  # 50MB
    MAX_IMAGE_DIMENSION: int = 4096
    ALLOWED_CONTENT_TYPES: list[str] = ["image/jpeg", "image/png", "image/webp"]

    # Puzzle generation
    MIN_PIECES: int = 2
    MAX_PIECES: int = 250
    DEFAULT_PIECE_COUNT: int = 225  # 15x15
    TAB_RATIO: float = 0.2
    THUMBNAIL_SIZE: int = 300
    THUMBNAIL_QUALITY: int = 80
    MASK_ANTIALIAS_SCALE: int = 4
    PIECE_WORKERS: int = 1

    # Job execution
    JOB_WORKERS: int = 2
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY: float = 0.1  # seconds
    STORE_RETRY_MAX_DELAY: float = 2.0  # seconds
    FAILURE_WRITE_ATTEMPTS: int = 3
    LOCK_TTL_SECONDS: int = 60

    # CORS settings
    BACKEND_CORS_ORIGINS: list[str] = ["*"]

    @field_validator("TAB_RATIO")
    @classmethod
    def validate_tab_ratio(cls, v: float) -> float:
        """Tabs must fit inside half a piece on either side."""
        if not 0.0 < v < 0.5:
            raise ValueError(f"TAB_RATIO must be between 0 and 0.5, got {v}")
        return v

    @model_validator(mode="after")
    def validate_piece_limits(self) -> "Settings":
        """Ensure the piece count bounds are consistent."""
        if self.MIN_PIECES < 1 or self.MIN_PIECES > self.MAX_PIECES:
            raise ValueError(
                f"MIN_PIECES ({self.MIN_PIECES}) must be between 1 and MAX_PIECES ({self.MAX_PIECES})"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Create instance
settings = get_settings()
