"""
Configuration settings for the AgriTrace workflow service
"""
from pathlib import Path
from typing import List, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings

# Resolve to the project root (one level up from agritrace/)
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "AgriTrace360 Workflow API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = f"sqlite:///{(BASE_DIR / 'agritrace.db').as_posix()}"

    # Storage and listing windows, in days
    STORAGE_WINDOW_DAYS: int = 30
    LISTING_WINDOW_DAYS: int = 25

    # Warehouse weighing tolerance (kg, inclusive)
    WEIGHT_VARIANCE_TOLERANCE: float = 5.0

    # Parties fanned out to on marketplace events
    REGISTERED_EXPORTERS: List[str] = []
    INTERESTED_BUYERS: List[str] = []

    NOTIFICATION_BACKEND: Literal["log", "database"] = "log"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @model_validator(mode="after")
    def _listing_fits_storage(self):
        # a listing must never outlive the storage slot it advertises
        if self.LISTING_WINDOW_DAYS > self.STORAGE_WINDOW_DAYS:
            raise ValueError(
                f"LISTING_WINDOW_DAYS ({self.LISTING_WINDOW_DAYS}) must not exceed "
                f"STORAGE_WINDOW_DAYS ({self.STORAGE_WINDOW_DAYS})"
            )
        return self


settings = Settings()
