"""Data models for the note store."""

import datetime
import re
from datetime import timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware UTC, treating naive datetimes as UTC.

    SQLite stores timestamps without an offset, so values read back from
    the database come in naive and are normalized here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def to_storage_timestamp(dt_value: datetime.datetime) -> datetime.datetime:
    """Convert a datetime to the naive UTC form it is stored in."""
    return ensure_timezone_aware(dt_value).replace(tzinfo=None)


def body_size(body: str) -> int:
    """Byte length of a body as stored (UTF-8)."""
    return len(body.encode("utf-8"))


_SLUG_STRIP = re.compile(r"[^\w\s-]", re.UNICODE)
_SLUG_SPACES = re.compile(r"[\s_-]+", re.UNICODE)


def slugify(value: str) -> str:
    """Normalize text to a slug for duplicate detection.

    Examples:
        "Hello, World!" -> "hello-world"
        "  Notes  on   notes " -> "notes-on-notes"
    """
    value = _SLUG_STRIP.sub("", value.lower())
    return _SLUG_SPACES.sub("-", value).strip("-")


class Entry(BaseModel):
    """A note record, identified by its path."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Stable identity of the note")
    title: str = Field(default="", description="Title, denormalized from the body")
    body: str = Field(..., description="Full note content")
    modified: datetime.datetime = Field(
        default_factory=utc_now, description="Time of the last write"
    )
    size: int = Field(..., ge=0, description="Byte length of the body")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Reject blank paths."""
        if not v or not v.strip():
            raise ValueError("Entry path cannot be empty")
        return v

    @field_validator("modified")
    @classmethod
    def validate_modified(cls, v: datetime.datetime) -> datetime.datetime:
        """Normalize to timezone-aware UTC."""
        return ensure_timezone_aware(v)

    @classmethod
    def from_content(
        cls,
        path: str,
        title: str,
        body: str,
        modified: Optional[datetime.datetime] = None,
    ) -> "Entry":
        """Build an entry for a write, stamping modified time and size."""
        return cls(
            path=path,
            title=title,
            body=body,
            modified=modified or utc_now(),
            size=body_size(body),
        )


class SearchResult(BaseModel):
    """An entry matched by a search, with its relevance (higher is better)."""

    model_config = ConfigDict(frozen=True)

    entry: Entry
    score: float


def parse_version(version: str) -> datetime.datetime:
    """Parse an ISO-8601 migration version into a comparable naive UTC datetime."""
    parsed = datetime.datetime.fromisoformat(version)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class Migration(BaseModel):
    """An immutable, versioned unit of schema change.

    The version is an ISO-8601 timestamp string. Statements are executed
    in order, together with the applied-version record, as one transaction.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    statements: Tuple[str, ...]
    description: str = ""

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Versions must be ISO-8601 timestamps."""
        try:
            parse_version(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Migration version '{v}' is not ISO-8601") from e
        return v

    @field_validator("statements")
    @classmethod
    def validate_statements(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """A migration needs at least one non-blank statement."""
        statements = tuple(s for s in v if s.strip())
        if not statements:
            raise ValueError("Migration must contain at least one statement")
        return statements

    @property
    def sort_key(self) -> datetime.datetime:
        return parse_version(self.version)


class MigrationSuccess(BaseModel):
    """Outcome of bringing a store up to date."""

    model_config = ConfigDict(frozen=True)

    from_version: Optional[str] = None
    to_version: Optional[str] = None
    applied: Tuple[str, ...] = ()

    @property
    def applied_count(self) -> int:
        return len(self.applied)


class SearchHistoryItem(BaseModel):
    """A recorded search query and how many entries it matched."""

    model_config = ConfigDict(frozen=True)

    id: str
    query: str
    hits: int = 0
    created: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("created")
    @classmethod
    def validate_created(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


class SuggestionKind(str, Enum):
    """What accepting a suggestion does."""
    ENTRY = "entry"    # open the entry with this title
    SEARCH = "search"  # run this text as a search


class Suggestion(BaseModel):
    """A search-box suggestion."""

    model_config = ConfigDict(frozen=True)

    kind: SuggestionKind
    text: str
