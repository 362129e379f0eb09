"""
Fleet Correlation Engine - Configuration

Loads settings from environment variables with sensible defaults.
"""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = Field(
        default=f"sqlite:///{PROJECT_ROOT}/data/fleet_correlation.db"
    )

    @property
    def project_root(self) -> Path:
        """Return project root directory."""
        return PROJECT_ROOT

    # Application
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_TO_FILE: bool = Field(default=True)

    # Trip-delivery blend weights (redistributed over applicable matchers)
    TEXT_WEIGHT: float = Field(default=0.4)
    GEO_WEIGHT: float = Field(default=0.4)
    TEMPORAL_WEIGHT: float = Field(default=0.2)

    # Text similarity ratio (0-1) required for a fuzzy match
    FUZZY_MATCH_THRESHOLD: float = Field(default=0.65)

    # Review rules
    REVIEW_CONFIDENCE_THRESHOLD: int = Field(default=60)
    REVIEW_MAX_DATE_GAP_DAYS: int = Field(default=3)
    REVIEW_MAX_DISTANCE_KM: float = Field(default=100.0)
    HIGH_CONFIDENCE_THRESHOLD: int = Field(default=80)

    # Candidate windows
    TEMPORAL_MAX_DAYS: int = Field(default=30)
    GEO_SEARCH_RADIUS_KM: float = Field(default=100.0)
    MAX_CANDIDATES_PER_SOURCE: int = Field(default=50)

    # Score buckets as JSON lists of [upper bound, confidence]
    TIGHT_WINDOW_BUCKETS: list[tuple[float, int]] = Field(default=[(30, 80), (60, 70)])
    LOOSE_WINDOW_BUCKETS: list[tuple[float, int]] = Field(default=[(120, 55), (240, 50), (1440, 45)])
    TEMPORAL_BUCKETS: list[tuple[float, int]] = Field(default=[(1, 80), (2, 60), (3, 40)])
    TEMPORAL_FLOOR_CONFIDENCE: int = Field(default=20)
    GEO_BUCKETS: list[tuple[float, int]] = Field(default=[(5, 95), (10, 85), (20, 70), (50, 55)])
    GEO_FLOOR_CONFIDENCE: int = Field(default=30)

    # Driver attribution cascade
    ASSIGNMENT_DEFAULT_CONFIDENCE: int = Field(default=80)
    TRIP_CONTAINMENT_CONFIDENCE: int = Field(default=70)
    TIGHT_WINDOW_MINUTES: int = Field(default=60)
    LOOSE_WINDOW_HOURS: int = Field(default=24)

    # Optional data sources, resolved once when the engine is built
    ENABLE_VEHICLE_ASSIGNMENTS: bool = Field(default=True)
    ENABLE_TEXT_MATCHING: bool = Field(default=True)
    ENABLE_GEO_MATCHING: bool = Field(default=True)
    ENABLE_TEMPORAL_MATCHING: bool = Field(default=True)

    # Batch runs
    WORKER_COUNT: int = Field(default=4)
    RUN_TIMEOUT_SECONDS: float = Field(default=3600.0)
    UPSERT_MAX_RETRIES: int = Field(default=3)
    UPSERT_RETRY_BASE_DELAY: float = Field(default=0.05)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
