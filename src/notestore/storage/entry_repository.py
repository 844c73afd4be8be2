"""Repository for entry storage and retrieval."""

import datetime
import logging
import threading
from contextlib import nullcontext
from typing import Callable, ContextManager, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import StoreError
from notestore.models.db_models import DBEntry
from notestore.models.schema import Entry, ensure_timezone_aware, to_storage_timestamp
from notestore.storage.fts_index import SearchIndex

logger = logging.getLogger(__name__)


def _rowid_for(connection: Connection, path: str) -> Optional[int]:
    return connection.execute(
        text("SELECT rowid FROM entry WHERE path = :path"), {"path": path}
    ).scalar_one_or_none()


class EntryRepository:
    """Repository for entries and their search index rows.

    Every write runs in one transaction under the writer lock, with the
    search index updated before and after the entry row changes (see
    ``SearchIndex``). Reads run in their own transaction without the writer
    lock, so they see the state before or after a write, never in between.

    Args:
        session_factory: Callable returning a context-manager session.
        search_index: Index kept in sync with the entry table.
        write_lock: Lock shared by every writer of the database.
        read_guard: Context manager held around reads (see ``SearchIndex``).
    """

    def __init__(
        self,
        session_factory: Callable,
        search_index: SearchIndex,
        write_lock: Optional[threading.RLock] = None,
        read_guard: Optional[ContextManager] = None,
    ):
        self.session_factory = session_factory
        self._index = search_index
        self._write_lock = write_lock or threading.RLock()
        self._read_guard = read_guard or nullcontext()

    def upsert(self, entry: Entry) -> Entry:
        """Insert an entry, or replace the entry stored at its path.

        The entry row and its index row change together or not at all.

        Raises:
            StoreError: the database could not be written.
        """
        row = {
            "path": entry.path,
            "title": entry.title,
            "body": entry.body,
            "modified": to_storage_timestamp(entry.modified),
            "size": entry.size,
        }
        stmt = sqlite_insert(DBEntry.__table__).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["path"],
            set_={
                "title": stmt.excluded.title,
                "body": stmt.excluded.body,
                "modified": stmt.excluded.modified,
                "size": stmt.excluded.size,
            },
        )

        with self._write_lock:
            try:
                with self.session_factory.begin() as session:
                    connection = session.connection()
                    rowid = _rowid_for(connection, entry.path)
                    if rowid is not None:
                        self._index.remove(connection, rowid)
                    connection.execute(stmt)
                    rowid = _rowid_for(connection, entry.path)
                    self._index.insert(connection, rowid, entry)
            except SQLAlchemyError as e:
                raise StoreError.io_failure("upsert", e, path=entry.path) from e

        logger.debug(f"Upserted entry {entry.path} ({entry.size} bytes)")
        return entry

    def delete(self, path: str) -> bool:
        """Delete the entry at a path together with its index row.

        Returns:
            True if an entry was deleted, False if there was none.

        Raises:
            StoreError: the database could not be written.
        """
        with self._write_lock:
            try:
                with self.session_factory.begin() as session:
                    connection = session.connection()
                    rowid = _rowid_for(connection, path)
                    if rowid is None:
                        return False
                    self._index.remove(connection, rowid)
                    connection.execute(
                        delete(DBEntry.__table__).where(DBEntry.path == path)
                    )
            except SQLAlchemyError as e:
                raise StoreError.io_failure("delete", e, path=path) from e

        logger.debug(f"Deleted entry {path}")
        return True

    def get(self, path: str) -> Optional[Entry]:
        """Get an entry by path."""
        try:
            with self._read_guard, self.session_factory() as session:
                db_entry = session.get(DBEntry, path)
                return db_entry.to_model() if db_entry else None
        except SQLAlchemyError as e:
            raise StoreError.io_failure("get", e, path=path) from e

    def find_by_title(self, title: str) -> Optional[Entry]:
        """Get the most recently modified entry with a title (case-insensitive)."""
        try:
            with self._read_guard, self.session_factory() as session:
                db_entry = session.scalars(
                    select(DBEntry)
                    .where(func.lower(DBEntry.title) == title.lower())
                    .order_by(DBEntry.modified.desc())
                    .limit(1)
                ).first()
                return db_entry.to_model() if db_entry else None
        except SQLAlchemyError as e:
            raise StoreError.io_failure("find by title", e) from e

    def list(self) -> Iterator[Entry]:
        """Iterate over all entries.

        Nothing is read until iteration starts; then all entries are read
        in one transaction, so the sequence is a consistent snapshot. Each
        call starts a new snapshot.
        """
        try:
            with self._read_guard, self.session_factory() as session:
                db_entries = session.scalars(
                    select(DBEntry).order_by(DBEntry.path)
                ).all()
                entries = [db_entry.to_model() for db_entry in db_entries]
        except SQLAlchemyError as e:
            raise StoreError.io_failure("list", e) from e
        yield from entries

    def count(self) -> int:
        """Number of entries."""
        try:
            with self._read_guard, self.session_factory() as session:
                return session.scalar(select(func.count()).select_from(DBEntry))
        except SQLAlchemyError as e:
            raise StoreError.io_failure("count", e) from e

    def recent_titles(self, limit: int = 5) -> List[str]:
        """Distinct non-empty titles, most recently modified first."""
        try:
            with self._read_guard, self.session_factory() as session:
                titles = session.scalars(
                    select(DBEntry.title)
                    .where(DBEntry.title != "")
                    .order_by(DBEntry.modified.desc())
                    .limit(limit * 4)
                ).all()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("recent titles", e) from e
        return list(dict.fromkeys(titles))[:limit]

    def fingerprints(self) -> List[Tuple[str, datetime.datetime, int]]:
        """``(path, modified, size)`` of every entry, without the bodies."""
        try:
            with self._read_guard, self.session_factory() as session:
                rows = session.execute(
                    select(DBEntry.path, DBEntry.modified, DBEntry.size)
                ).all()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("read fingerprints", e) from e
        return [
            (path, ensure_timezone_aware(modified), size)
            for path, modified, size in rows
        ]
