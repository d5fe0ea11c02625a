"""
Deal Registry - Configuration

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
        default=f"sqlite:///{PROJECT_ROOT}/data/deal_registry.db"
    )

    @property
    def project_root(self) -> Path:
        """Return project root directory."""
        return PROJECT_ROOT

    # Application
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_DIR: str = Field(default=str(PROJECT_ROOT / "logs"))

    # Matching thresholds (0-1 confidence scale)
    MINIMUM_MATCH_THRESHOLD: float = Field(default=0.3)
    DUPLICATE_THRESHOLD: float = Field(default=0.8)
    AUTO_MERGE_THRESHOLD: float = Field(default=0.95)
    CLUSTER_EDGE_THRESHOLD: float = Field(default=0.3)
    ALIAS_DEFAULT_CONFIDENCE: float = Field(default=0.95)

    # Fuzzy fallback for product keywords (0-100 for rapidfuzz)
    FUZZY_MATCH_THRESHOLD: int = Field(default=85)

    # Deal comparison tolerances
    VALUE_TOLERANCE_PERCENT: float = Field(default=10.0)
    DATE_TOLERANCE_DAYS: int = Field(default=7)

    # Merge engine (0 disables the unmerge window)
    UNMERGE_WINDOW_HOURS: int = Field(default=24)
    # Scalar conflicts go to the most confident member at or above this
    MERGE_CONFIDENCE_THRESHOLD: float = Field(default=0.85)

    # Bulk passes commit every BATCH_SIZE rows
    BATCH_SIZE: int = Field(default=100)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
