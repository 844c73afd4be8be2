"""Database service: the single entry point to a note store.

A service owns one SQLite database. Opening it brings the schema up to date
with the migration list; only then are entry, search and history operations
available. The host constructs and owns the instance, and closes it.
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from notestore.config import MEMORY_LOCATION, NoteStoreConfig
from notestore.config import config as default_config
from notestore.exceptions import ConfigurationError, StoreError, ValidationError
from notestore.models.db_models import (
    SEARCH_TABLE,
    create_store_engine,
    get_session_factory,
)
from notestore.models.schema import (
    Entry,
    Migration,
    MigrationSuccess,
    SearchHistoryItem,
    SearchResult,
    Suggestion,
)
from notestore.observability import MetricsCollector, timed_operation
from notestore.storage.app_migrations import APP_MIGRATIONS
from notestore.storage.entry_repository import EntryRepository
from notestore.storage.file_sync import DEFAULT_SUFFIXES, FileSync, SyncChange
from notestore.storage.fts_index import SearchIndex
from notestore.storage.migrations import Migrations
from notestore.storage.search_history import SearchHistoryRepository
from notestore.utils import is_blank

logger = logging.getLogger(__name__)

# Files SQLite keeps next to a database
_SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


class ServiceState(Enum):
    """Lifecycle of a database service."""
    UNINITIALIZED = "uninitialized"
    MIGRATIONS_PENDING = "migrations_pending"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class DatabaseService:
    """Owns the database and serializes writes to it.

    Every write (entry upsert and delete, recording a search, rebuilding
    the index, applying migrations) runs under one re-entrant lock. Reads
    run in their own transaction without the lock, except on an in-memory
    database, whose single shared connection is guarded by the lock too.

    Args:
        location: Database file path, or ":memory:". Defaults to the
            configured ``database_path``.
        migrations: Migrations to apply on start, as a ``Migrations`` list or
            a plain sequence of ``Migration`` (validated here).
        config: Store configuration. Defaults to the environment-derived one.

    Raises:
        MigrationError: the migration list is invalid.
        ConfigurationError: the location is empty.
    """

    def __init__(
        self,
        location: Union[str, Path, None] = None,
        migrations: Union[Migrations, Sequence[Migration]] = APP_MIGRATIONS,
        config: Optional[NoteStoreConfig] = None,
    ):
        self.config = config or default_config
        if location is not None and not str(location).strip():
            raise ConfigurationError(
                "Database location cannot be empty", config_key="location"
            )
        if location is None:
            location = self.config.database_path

        self.location = location
        self.in_memory = str(location) == MEMORY_LOCATION
        self.db_path: Optional[Path] = (
            None if self.in_memory else self.config.get_absolute_path(Path(location))
        )
        self.migrations = (
            migrations if isinstance(migrations, Migrations) else Migrations(migrations)
        )
        metrics_file = self.config.metrics_file
        self.metrics = MetricsCollector(
            metrics_file=(
                self.config.get_absolute_path(metrics_file) if metrics_file else None
            ),
            save_interval=self.config.metrics_save_interval,
        )

        self.state = ServiceState.UNINITIALIZED
        self._lock = threading.RLock()
        self._engine = None
        self._session_factory = None
        self._index: Optional[SearchIndex] = None
        self._entries: Optional[EntryRepository] = None
        self._history: Optional[SearchHistoryRepository] = None
        self._migration_success: Optional[MigrationSuccess] = None

    @classmethod
    def open(
        cls,
        location: Union[str, Path, None] = None,
        migrations: Union[Migrations, Sequence[Migration]] = APP_MIGRATIONS,
        config: Optional[NoteStoreConfig] = None,
    ) -> "DatabaseService":
        """Create a service and start it; the result is ready to use."""
        service = cls(location, migrations, config)
        service.start()
        return service

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> MigrationSuccess:
        """Open the database and apply outstanding migrations.

        Starting a ready service returns the result of the first start. When
        migration fails the service moves to FAILED and stays unusable.

        Raises:
            MigrationError: a migration failed, or the database has applied
                migrations this list does not know.
            StoreError: the database could not be opened, or the service was
                closed or has failed.
        """
        with self._lock:
            if self.state is ServiceState.READY:
                return self._migration_success
            if self.state is ServiceState.CLOSED:
                raise StoreError.closed("start")
            if self.state is not ServiceState.UNINITIALIZED:
                raise StoreError.not_ready("start", self.state.value)

            location = MEMORY_LOCATION if self.in_memory else self.db_path
            try:
                db_url = self.config.get_db_url(location)
            except OSError as e:
                self.state = ServiceState.FAILED
                raise StoreError.io_failure("open", e, path=str(location)) from e

            self._engine = create_store_engine(db_url, self.config.busy_timeout_ms)
            self.state = ServiceState.MIGRATIONS_PENDING
            try:
                with timed_operation(
                    "migrate", self.metrics, location=location
                ) as op:
                    success = self.migrations.apply_all(self._engine)
                    op["applied"] = success.applied_count
            except Exception:
                self.state = ServiceState.FAILED
                self._engine.dispose()
                self._engine = None
                logger.error(f"Database at {location} failed to migrate")
                raise

            self._session_factory = get_session_factory(self._engine)
            read_guard = self._lock if self.in_memory else None
            self._index = SearchIndex(
                self._session_factory,
                title_weight=self.config.title_weight,
                body_weight=self.config.body_weight,
                read_guard=read_guard,
            )
            self._entries = EntryRepository(
                self._session_factory,
                self._index,
                write_lock=self._lock,
                read_guard=read_guard,
            )
            self._history = SearchHistoryRepository(
                self._session_factory,
                self._entries,
                self._index,
                write_lock=self._lock,
                read_guard=read_guard,
                suggestion_limit=self.config.suggestion_limit,
                history_suggestion_limit=self.config.history_suggestion_limit,
            )
            self._migration_success = success
            self.state = ServiceState.READY

        if success.applied:
            logger.info(
                f"Database at {location} migrated from {success.from_version} "
                f"to {success.to_version} ({success.applied_count} applied)"
            )
        else:
            logger.info(f"Database at {location} opened at {success.to_version}")
        return success

    def close(self) -> None:
        """Release the database and save metrics. Closing twice is a no-op."""
        with self._lock:
            if self.state is ServiceState.CLOSED:
                return
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
            self.state = ServiceState.CLOSED
        self.metrics.save()
        logger.info(f"Database at {self.location} closed")

    def delete_database(self) -> bool:
        """Close the service and delete the database file with its side files.

        Returns:
            True if the database file existed and was removed. Always False
            for an in-memory database.

        Raises:
            StoreError: a file could not be removed.
        """
        self.close()
        if self.db_path is None:
            return False

        existed = self.db_path.exists()
        candidates = [self.db_path] + [
            self.db_path.with_name(self.db_path.name + suffix)
            for suffix in _SIDE_FILE_SUFFIXES
        ]
        for candidate in candidates:
            try:
                candidate.unlink(missing_ok=True)
            except OSError as e:
                raise StoreError.io_failure(
                    "delete database", e, path=str(candidate)
                ) from e
        logger.info(f"Deleted database {self.db_path}")
        return existed

    @property
    def migration_success(self) -> Optional[MigrationSuccess]:
        """Result of the migration run of the last successful start."""
        return self._migration_success

    @property
    def is_ready(self) -> bool:
        return self.state is ServiceState.READY

    def __enter__(self) -> "DatabaseService":
        if self.state is ServiceState.UNINITIALIZED:
            self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    def _require_ready(self, operation: str) -> None:
        if self.state is ServiceState.READY:
            return
        if self.state is ServiceState.CLOSED:
            raise StoreError.closed(operation)
        raise StoreError.not_ready(operation, self.state.value)

    def _iterate(
        self, operation: str, produce: Callable[[], Iterator], **context: Any
    ) -> Iterator:
        # Checked again when iteration starts: the service may have closed
        # between the call and the first next().
        self._require_ready(operation)
        with timed_operation(operation, self.metrics, **context) as op:
            items = tuple(produce())
            op["result_count"] = len(items)
        yield from items

    # =========================================================================
    # Entries
    # =========================================================================

    def upsert(self, path: str, title: str, body: str) -> Entry:
        """Create or replace the entry at ``path``.

        The entry is stamped with the current time and the UTF-8 size of its
        body, and is searchable as soon as this returns.

        Raises:
            ValidationError: the path is blank.
            StoreError: the service is not ready, or the write failed.
        """
        self._require_ready("upsert")
        if is_blank(path):
            raise ValidationError("Entry path cannot be empty", field="path", value=path)
        entry = Entry.from_content(path, title, body)
        with timed_operation("upsert", self.metrics, path=path):
            return self._entries.upsert(entry)

    def delete(self, path: str) -> bool:
        """Delete the entry at ``path``. Returns False if there was none."""
        self._require_ready("delete")
        with timed_operation("delete", self.metrics, path=path) as op:
            deleted = self._entries.delete(path)
            op["deleted"] = deleted
        return deleted

    def get(self, path: str) -> Optional[Entry]:
        self._require_ready("get")
        return self._entries.get(path)

    def find_by_title(self, title: str) -> Optional[Entry]:
        """The most recently modified entry with this title, ignoring case."""
        self._require_ready("find by title")
        return self._entries.find_by_title(title)

    def list(self) -> Iterator[Entry]:
        """All entries, read as one snapshot when iteration starts."""
        self._require_ready("list")
        return self._iterate("list", self._entries.list)

    def count(self) -> int:
        self._require_ready("count")
        return self._entries.count()

    # =========================================================================
    # Search
    # =========================================================================

    def search(self, query: str, limit: Optional[int] = None) -> Iterator[SearchResult]:
        """Ranked full-text search, best match first.

        Ties in relevance go to the most recently modified entry. The
        iterator has no side effects and can be requested again at will.

        Args:
            query: Free text; entries matching any word are returned.
            limit: Maximum results (default: configured ``search_limit``).

        Raises:
            ValidationError: ``limit`` is not positive.
            StoreError: the service is not ready, or the index could not be
                read.
        """
        self._require_ready("search")
        if limit is None:
            limit = self.config.search_limit
        if limit < 1:
            raise ValidationError("Search limit must be positive", field="limit", value=limit)
        return self._iterate(
            "search", lambda: self._index.search(query, limit), query=query
        )

    def record_search(self, query: str) -> Optional[SearchHistoryItem]:
        """Remember a search for later suggestions. Blank queries are ignored."""
        self._require_ready("record search")
        with timed_operation("record_search", self.metrics, query=query):
            return self._history.record(query)

    def recent_searches(self, limit: int = 5) -> List[SearchHistoryItem]:
        self._require_ready("read search history")
        return self._history.recent(limit)

    def suggest(self, query: str) -> List[Suggestion]:
        """Suggestions for partially typed search text."""
        self._require_ready("suggest")
        with timed_operation("suggest", self.metrics, query=query) as op:
            suggestions = self._history.suggest(query)
            op["result_count"] = len(suggestions)
        return suggestions

    # =========================================================================
    # File sync
    # =========================================================================

    def sync_directory(
        self,
        path: Union[str, Path],
        suffixes: Sequence[str] = DEFAULT_SUFFIXES,
    ) -> List[SyncChange]:
        """Make the entries mirror the note files under ``path``.

        The files win every difference: new and changed files are written,
        and entries without a file are deleted. Writes are held off for the
        whole sync so the comparison stays valid.

        Returns:
            The applied changes, sorted by path.

        Raises:
            ValidationError: ``path`` is not a directory.
            StoreError: the service is not ready, or a file or the store
                could not be read or written.
        """
        self._require_ready("sync directory")
        with self._lock, timed_operation(
            "sync_directory", self.metrics, path=path
        ) as op:
            sync = FileSync(Path(path).expanduser(), self._entries, suffixes)
            changes = sync.sync()
            op["changes"] = len(changes)
        return changes

    # =========================================================================
    # Maintenance
    # =========================================================================

    def check_health(self) -> Dict[str, Any]:
        """Check SQLite integrity and that the search index matches entries.

        Returns:
            Dict with keys:
                - healthy: no critical issue and the index is consistent
                - sqlite_ok: result of ``PRAGMA integrity_check``
                - fts_ok: result of the FTS5 integrity check
                - index_consistent: every entry has exactly one matching
                  index row, and there are no others
                - entry_count / index_count: row counts
                - issues: index problems (repairable by a rebuild)
                - critical_issues: database corruption
        """
        self._require_ready("check health")
        issues: List[str] = []
        critical_issues: List[str] = []

        with self._lock:
            try:
                with self._session_factory() as session:
                    result = session.execute(text("PRAGMA integrity_check")).fetchone()
                    sqlite_ok = result[0] == "ok"
                    if not sqlite_ok:
                        critical_issues.append(
                            f"SQLite integrity check failed: {result[0]}"
                        )
            except SQLAlchemyError as e:
                raise StoreError.io_failure("check health", e) from e

            # FTS5 reports a damaged index as an error on this command
            try:
                with self._session_factory.begin() as session:
                    session.execute(text(
                        f"INSERT INTO {SEARCH_TABLE}({SEARCH_TABLE}) "
                        f"VALUES('integrity-check')"
                    ))
                fts_ok = True
            except SQLAlchemyError as e:
                fts_ok = False
                issues.append(f"FTS5 integrity check failed: {e}")

            consistency = self._index.check_consistency()

        for label in ("missing", "orphaned", "stale"):
            if consistency[label]:
                issues.append(
                    f"{len(consistency[label])} {label} index rows: "
                    f"{', '.join(consistency[label][:5])}"
                )

        healthy = sqlite_ok and fts_ok and consistency["consistent"]
        if not healthy:
            logger.warning(
                f"Health check found problems: {critical_issues + issues}"
            )
        return {
            "healthy": healthy,
            "sqlite_ok": sqlite_ok,
            "fts_ok": fts_ok,
            "index_consistent": consistency["consistent"],
            "entry_count": consistency["entry_count"],
            "index_count": consistency["index_count"],
            "issues": issues,
            "critical_issues": critical_issues,
        }

    def rebuild_search_index(self) -> int:
        """Rebuild the search index from the entries. Returns entries indexed."""
        self._require_ready("rebuild search index")
        with self._lock, timed_operation("rebuild_search_index", self.metrics):
            return self._index.rebuild()

    def metrics_summary(self) -> Dict[str, Any]:
        """Operation metrics of this service, available in any state.

        Returns:
            Dict with keys:
                - summary: totals across operations (see ``MetricsCollector``)
                - operations: per-operation counts, durations and last error
                - metrics_file: where the metrics are saved, or None
        """
        metrics_file = self.metrics.metrics_file
        return {
            "summary": self.metrics.get_summary(),
            "operations": self.metrics.get_metrics(),
            "metrics_file": str(metrics_file) if metrics_file else None,
        }
