"""Reconcile a directory of note files with the entry table.

The directory leads and the store follows. Each side is reduced to
fingerprints (relative path, modified time in whole seconds, size in
bytes), the two sets are zipped by path, and every difference is resolved
in favour of the files: a file that is new, newer, older or conflicting is
written to the store, and an entry whose file is gone is deleted. Every
change goes through ``EntryRepository``, so the search index follows along.

Fingerprints are a cheap heuristic, the same one rsync uses without
checksums: an edit that keeps both the size and the second of the
modification time goes unnoticed.
"""

import datetime
import logging
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from notestore.exceptions import StoreError, ValidationError
from notestore.models.schema import Entry
from notestore.storage.entry_repository import EntryRepository

logger = logging.getLogger(__name__)

DEFAULT_SUFFIXES = (".subtext", ".md", ".txt")


class FileFingerprint(BaseModel):
    """Path, modified second and byte size of a note file or entry."""

    model_config = ConfigDict(frozen=True)

    path: str
    modified: int = Field(..., description="Unix time, whole seconds")
    size: int = Field(..., ge=0)

    @classmethod
    def of_file(cls, root: Path, file: Path) -> "FileFingerprint":
        stat = file.stat()
        return cls(
            path=file.relative_to(root).as_posix(),
            modified=int(stat.st_mtime),
            size=stat.st_size,
        )

    @classmethod
    def of_entry(
        cls, path: str, modified: datetime.datetime, size: int
    ) -> "FileFingerprint":
        return cls(path=path, modified=int(modified.timestamp()), size=size)

    @property
    def modified_at(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.modified, timezone.utc)


class SyncStatus(str, Enum):
    """How one path differs between the files (left) and the store (right)."""
    LEFT_ONLY = "left_only"      # new file
    RIGHT_ONLY = "right_only"    # file deleted
    LEFT_NEWER = "left_newer"    # file edited
    RIGHT_NEWER = "right_newer"  # store ahead of the file
    SAME = "same"
    CONFLICT = "conflict"        # same second, different size


class SyncChange(BaseModel):
    """The left and right fingerprints of one path; either may be missing."""

    model_config = ConfigDict(frozen=True)

    left: Optional[FileFingerprint] = None
    right: Optional[FileFingerprint] = None

    @model_validator(mode="after")
    def _check_sides(self) -> "SyncChange":
        if self.left is None and self.right is None:
            raise ValueError("A change needs at least one fingerprint")
        if self.left and self.right and self.left.path != self.right.path:
            raise ValueError(
                f"Fingerprints for different paths: "
                f"{self.left.path!r} and {self.right.path!r}"
            )
        return self

    @property
    def path(self) -> str:
        return (self.left or self.right).path

    @property
    def status(self) -> SyncStatus:
        if self.left is None:
            return SyncStatus.RIGHT_ONLY
        if self.right is None:
            return SyncStatus.LEFT_ONLY
        if self.left == self.right:
            return SyncStatus.SAME
        if self.left.modified > self.right.modified:
            return SyncStatus.LEFT_NEWER
        if self.left.modified < self.right.modified:
            return SyncStatus.RIGHT_NEWER
        return SyncStatus.CONFLICT


def calc_changes(
    left: Iterable[FileFingerprint], right: Iterable[FileFingerprint]
) -> List[SyncChange]:
    """Zip two fingerprint sets by path, one change per path, sorted by path.

    When a side lists a path twice the last fingerprint wins.
    """
    left_index: Dict[str, FileFingerprint] = {fp.path: fp for fp in left}
    right_index: Dict[str, FileFingerprint] = {fp.path: fp for fp in right}
    return [
        SyncChange(left=left_index.get(path), right=right_index.get(path))
        for path in sorted(left_index.keys() | right_index.keys())
    ]


class FileSync:
    """Brings the entry table in line with the note files under ``root``.

    Args:
        root: Directory holding the note files (searched recursively;
            hidden files and directories are skipped).
        entries: Repository the changes are written through.
        suffixes: File suffixes that count as notes.
    """

    def __init__(
        self,
        root: Path,
        entries: EntryRepository,
        suffixes: Sequence[str] = DEFAULT_SUFFIXES,
    ):
        self.root = Path(root)
        self._entries = entries
        self._suffixes = tuple(s.lower() for s in suffixes)

    def note_files(self) -> List[Path]:
        files = []
        for file in sorted(self.root.rglob("*")):
            relative = file.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            if file.suffix.lower() in self._suffixes and file.is_file():
                files.append(file)
        return files

    def file_fingerprints(self) -> List[FileFingerprint]:
        try:
            return [FileFingerprint.of_file(self.root, f) for f in self.note_files()]
        except OSError as e:
            raise StoreError.io_failure("read note files", e, path=str(self.root)) from e

    def entry_fingerprints(self) -> List[FileFingerprint]:
        return [
            FileFingerprint.of_entry(path, modified, size)
            for path, modified, size in self._entries.fingerprints()
        ]

    def read_entry(self, fingerprint: FileFingerprint) -> Entry:
        """Build the entry for a note file; the title is the file name."""
        file = self.root / fingerprint.path
        try:
            body = file.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StoreError.io_failure("read note file", e, path=fingerprint.path) from e
        return Entry.from_content(
            fingerprint.path,
            title=file.stem,
            body=body,
            modified=fingerprint.modified_at,
        )

    def sync(self) -> List[SyncChange]:
        """Apply every difference between the files and the store.

        Each change is written in its own transaction, so a failure part way
        leaves the changes before it applied and a later sync picks up the
        rest.

        Returns:
            The changes that were applied (paths with status SAME excluded).

        Raises:
            ValidationError: ``root`` is not a directory.
            StoreError: a file or the store could not be read or written.
        """
        if not self.root.is_dir():
            raise ValidationError(
                "Sync root is not a directory", field="root", value=str(self.root)
            )

        changes = [
            change
            for change in calc_changes(self.file_fingerprints(), self.entry_fingerprints())
            if change.status is not SyncStatus.SAME
        ]
        for change in changes:
            if change.status is SyncStatus.RIGHT_ONLY:
                self._entries.delete(change.path)
            else:
                # The files lead: new, newer, older and conflicting all win
                self._entries.upsert(self.read_entry(change.left))
            logger.debug(f"Synced {change.path}: {change.status.value}")

        if changes:
            logger.info(f"Synced {len(changes)} changes from {self.root}")
        return changes
