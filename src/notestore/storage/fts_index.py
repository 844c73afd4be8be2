"""FTS5 full-text search index over entries.

The index holds one row per entry, sharing the entry's rowid, with the
title and body tokenized and path/modified/size stored as passthrough
columns. It is kept in step with the entry table by an explicit two-phase
procedure that every mutating entry point runs inside its own transaction:

1. ``remove`` the entry's index row before the entry row changes;
2. ``insert`` a fresh index row after the entry row was written
   (skipped when the entry was deleted).

A failure anywhere in between aborts the caller's transaction, so the entry
row and its index row always change together.
"""
import logging
import re
from contextlib import nullcontext
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import StoreError
from notestore.models.db_models import SEARCH_TABLE
from notestore.models.schema import (
    Entry,
    SearchResult,
    ensure_timezone_aware,
    to_storage_timestamp,
)

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)

_INSERT_SQL = text(f"""
    INSERT INTO {SEARCH_TABLE} (rowid, path, title, body, modified, size)
    VALUES (:rowid, :path, :title, :body, :modified, :size)
""").bindparams(bindparam("modified", type_=DateTime()))

_DELETE_SQL = text(f"DELETE FROM {SEARCH_TABLE} WHERE rowid = :rowid")


def query_terms(query: str) -> List[str]:
    """Split free text into distinct word tokens, in order."""
    return list(dict.fromkeys(_WORD.findall(query)))


def build_match_query(query: str) -> Optional[str]:
    """Build an FTS5 query matching entries that contain any query term.

    Every term is quoted, so punctuation and FTS5 keywords in user input
    are searched for as plain words. Returns None when there is nothing to
    search for.
    """
    terms = query_terms(query)
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


def build_prefix_query(query: str, column: str = "title") -> Optional[str]:
    """Build an FTS5 query for type-ahead matching within one column.

    All terms must match; the last one matches as a prefix.
    """
    terms = query_terms(query)
    if not terms:
        return None
    phrases = [f'{column} : "{term}"' for term in terms[:-1]]
    phrases.append(f'{column} : "{terms[-1]}"*')
    return " AND ".join(phrases)


class SearchIndex:
    """FTS5 search index kept in sync with the entry table.

    Args:
        session_factory: Callable returning a context-manager session.
        title_weight: BM25 weight of the title column.
        body_weight: BM25 weight of the body column.
        read_guard: Context manager held around reads (serializes access to
            a shared in-memory connection; a no-op for file databases).
    """

    def __init__(
        self,
        session_factory: Callable,
        title_weight: float = 10.0,
        body_weight: float = 1.0,
        read_guard: Optional[ContextManager] = None,
    ) -> None:
        self._session_factory = session_factory
        self._title_weight = float(title_weight)
        self._body_weight = float(body_weight)
        self._read_guard = read_guard or nullcontext()

    # ------------------------------------------------------------------
    # Write-path synchronization (called inside the caller's transaction)
    # ------------------------------------------------------------------

    def remove(self, connection: Connection, rowid: int) -> None:
        """Phase 1: drop the index row of an entry that is about to change.

        Only the row sharing the entry's rowid is touched. A stray row under
        another rowid shows up as orphaned in ``check_consistency`` and is
        cleared by ``rebuild``.
        """
        connection.execute(_DELETE_SQL, {"rowid": rowid})

    def insert(self, connection: Connection, rowid: int, entry: Entry) -> None:
        """Phase 2: index an entry that was just inserted or replaced."""
        connection.execute(
            _INSERT_SQL,
            {
                "rowid": rowid,
                "path": entry.path,
                "title": entry.title,
                "body": entry.body,
                "modified": to_storage_timestamp(entry.modified),
                "size": entry.size,
            },
        )

    def count_matches(self, connection: Connection, query: str) -> int:
        """Number of entries a query matches, read through ``connection``."""
        match = build_match_query(query)
        if match is None:
            return 0
        return connection.execute(
            text(f"SELECT count(*) FROM {SEARCH_TABLE} WHERE {SEARCH_TABLE} MATCH :query"),
            {"query": match},
        ).scalar_one()

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = 200) -> Iterator[SearchResult]:
        """Ranked full-text search.

        Entries matching at least one query term, most relevant first (BM25
        over stemmed title and body tokens); equal scores put the most
        recently modified entry first. The results are read in one
        transaction when iteration starts.

        Args:
            query: Free text. Words are matched after stemming, ignoring case
                and diacritics.
            limit: Maximum results.

        Raises:
            StoreError: the index could not be read.
        """
        match = build_match_query(query)
        if match is None:
            return iter(())
        return self._iter_results(query, match, limit)

    def _iter_results(
        self, query: str, match: str, limit: int
    ) -> Iterator[SearchResult]:
        sql = text(f"""
            SELECT
                path, title, body, modified, size,
                bm25({SEARCH_TABLE}, 0.0, {self._title_weight}, {self._body_weight}, 0.0, 0.0)
                    AS relevance
            FROM {SEARCH_TABLE}
            WHERE {SEARCH_TABLE} MATCH :query
            ORDER BY relevance ASC, modified DESC, path ASC
            LIMIT :limit
        """).columns(modified=DateTime)

        try:
            with self._read_guard, self._session_factory() as session:
                rows = session.execute(sql, {"query": match, "limit": limit}).fetchall()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("search", e) from e

        logger.debug(f"Search for '{query}' matched {len(rows)} entries")
        for row in rows:
            entry = Entry(
                path=row.path,
                title=row.title,
                body=row.body,
                modified=ensure_timezone_aware(row.modified),
                size=row.size,
            )
            # bm25() is lower-is-better; expose higher-is-better scores
            yield SearchResult(entry=entry, score=-row.relevance)

    def prefix_titles(self, query: str, limit: int = 5) -> List[str]:
        """Distinct titles matching a type-ahead query, best match first."""
        match = build_prefix_query(query)
        if match is None:
            return []
        sql = text(f"""
            SELECT title FROM {SEARCH_TABLE}
            WHERE {SEARCH_TABLE} MATCH :query
            ORDER BY rank
            LIMIT :fetch
        """)
        try:
            with self._read_guard, self._session_factory() as session:
                titles = session.execute(
                    sql, {"query": match, "fetch": limit * 4}
                ).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("prefix search", e) from e
        return list(dict.fromkeys(t for t in titles if t))[:limit]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def check_consistency(self) -> Dict[str, Any]:
        """Compare the index with the entry table.

        Returns:
            Dict with keys:
                - consistent: True when every entry has exactly one matching
                  index row and there are no other index rows
                - entry_count / index_count: row counts
                - missing: paths of entries without an index row
                - orphaned: paths of index rows without an entry
                - stale: paths whose index row differs from the entry
        """
        columns = "rowid, path, title, body, modified, size"
        try:
            with self._read_guard, self._session_factory() as session:
                entries = {
                    row[0]: tuple(row)
                    for row in session.execute(text(f"SELECT {columns} FROM entry"))
                }
                indexed = {
                    row[0]: tuple(row)
                    for row in session.execute(
                        text(f"SELECT {columns} FROM {SEARCH_TABLE}")
                    )
                }
        except SQLAlchemyError as e:
            raise StoreError.io_failure("index consistency check", e) from e

        missing = sorted(entries[r][1] for r in entries.keys() - indexed.keys())
        orphaned = sorted(indexed[r][1] for r in indexed.keys() - entries.keys())
        stale = sorted(
            entries[r][1]
            for r in entries.keys() & indexed.keys()
            if entries[r] != indexed[r]
        )
        return {
            "consistent": not (missing or orphaned or stale),
            "entry_count": len(entries),
            "index_count": len(indexed),
            "missing": missing,
            "orphaned": orphaned,
            "stale": stale,
        }

    def rebuild(self) -> int:
        """Rebuild the index from the entry table in one transaction.

        Returns:
            Number of entries indexed.
        """
        try:
            with self._session_factory.begin() as session:
                session.execute(text(f"DELETE FROM {SEARCH_TABLE}"))
                session.execute(text(f"""
                    INSERT INTO {SEARCH_TABLE} (rowid, path, title, body, modified, size)
                    SELECT rowid, path, title, body, modified, size FROM entry
                """))
                count = session.execute(
                    text(f"SELECT count(*) FROM {SEARCH_TABLE}")
                ).scalar_one()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("rebuild search index", e) from e
        logger.info(f"Search index rebuilt with {count} entries")
        return count
