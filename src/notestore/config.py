"""Configuration module for the note store."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default database
_USER_ENV = Path.home() / ".notestore" / ".env"
load_dotenv(_USER_ENV)


MEMORY_LOCATION = ":memory:"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class NoteStoreConfig(BaseModel):
    """Configuration for the note store."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESTORE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESTORE_DATABASE_PATH", "data/db/notestore.db")
        )
    )
    # How long a connection waits on a locked database before failing
    busy_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_BUSY_TIMEOUT_MS", "5000"))
    )
    # BM25 column weights for ranked search
    title_weight: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_TITLE_WEIGHT", "10.0"))
    )
    body_weight: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_BODY_WEIGHT", "1.0"))
    )
    # Upper bound on results returned by a single search
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_SEARCH_LIMIT", "200"))
    )
    # Suggestion list sizes
    suggestion_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_SUGGESTION_LIMIT", "5"))
    )
    history_suggestion_limit: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTESTORE_HISTORY_SUGGESTION_LIMIT", "3")
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_LOG_LEVEL", "INFO").upper()
    )
    # Operation metrics file; unset keeps metrics in memory only
    metrics_file: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.environ["NOTESTORE_METRICS_FILE"])
            if os.getenv("NOTESTORE_METRICS_FILE")
            else None
        )
    )
    # Write the metrics file every N operations (0: only on close)
    metrics_save_interval: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_METRICS_SAVE_INTERVAL", "25"))
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteStoreConfig":
        """Reject weights and limits that would make search meaningless."""
        if self.title_weight <= 0 or self.body_weight <= 0:
            raise ValueError("title_weight and body_weight must be > 0")
        if self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        if self.suggestion_limit < 1 or self.history_suggestion_limit < 1:
            raise ValueError("suggestion limits must be >= 1")
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if self.metrics_save_interval < 0:
            raise ValueError("metrics_save_interval must be >= 0")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level}")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, location: "Path | str | None" = None) -> str:
        """Get the SQLite database URL for a location.

        ``None`` means the configured ``database_path``. The in-memory
        location is passed through untouched.
        """
        if location is not None and str(location) == MEMORY_LOCATION:
            return "sqlite://"
        db_path = self.get_absolute_path(
            Path(location) if location is not None else self.database_path
        )
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Default configuration, used when a service is opened without one
config = NoteStoreConfig()
