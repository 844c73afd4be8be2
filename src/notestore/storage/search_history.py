"""Search history and search-box suggestions."""

import logging
import threading
import uuid
from contextlib import nullcontext
from typing import Callable, ContextManager, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import StoreError
from notestore.models.db_models import DBSearchHistory
from notestore.models.schema import (
    SearchHistoryItem,
    Suggestion,
    SuggestionKind,
    ensure_timezone_aware,
    slugify,
    to_storage_timestamp,
    utc_now,
)
from notestore.storage.entry_repository import EntryRepository
from notestore.storage.fts_index import SearchIndex
from notestore.utils import escape_like_pattern, is_blank

logger = logging.getLogger(__name__)


def collate_suggestions(
    query: str, titles: Sequence[str], queries: Sequence[str]
) -> List[Suggestion]:
    """Merge entry titles and past queries into one suggestion list.

    The literal query comes first unless an entry title matches it. Titles
    come before past queries, and duplicates are dropped by slug with the
    first occurrence winning.
    """
    suggestions: List[Suggestion] = []
    seen = set()

    query = query.strip()
    if query and slugify(query) not in {slugify(t) for t in titles}:
        suggestions.append(Suggestion(kind=SuggestionKind.SEARCH, text=query))
        seen.add(slugify(query))

    for title in titles:
        key = slugify(title)
        if key not in seen:
            seen.add(key)
            suggestions.append(Suggestion(kind=SuggestionKind.ENTRY, text=title))

    for past in queries:
        key = slugify(past)
        if key not in seen:
            seen.add(key)
            suggestions.append(Suggestion(kind=SuggestionKind.SEARCH, text=past))

    return suggestions


class SearchHistoryRepository:
    """Recorded searches, and the suggestions built from them.

    Args:
        session_factory: Callable returning a context-manager session.
        entries: Entry repository, source of title suggestions.
        search_index: Index used to count the hits of a recorded query.
        write_lock: Lock shared by every writer of the database.
        read_guard: Context manager held around reads.
    """

    def __init__(
        self,
        session_factory: Callable,
        entries: EntryRepository,
        search_index: SearchIndex,
        write_lock: Optional[threading.RLock] = None,
        read_guard: Optional[ContextManager] = None,
        suggestion_limit: int = 5,
        history_suggestion_limit: int = 3,
    ):
        self.session_factory = session_factory
        self._entries = entries
        self._index = search_index
        self._write_lock = write_lock or threading.RLock()
        self._read_guard = read_guard or nullcontext()
        self.suggestion_limit = suggestion_limit
        self.history_suggestion_limit = history_suggestion_limit

    def record(self, query: str) -> Optional[SearchHistoryItem]:
        """Record a search with the number of entries it matches now.

        Blank queries are not recorded and return None.
        """
        if is_blank(query):
            return None
        query = query.strip()
        created = utc_now()
        item_id = str(uuid.uuid4())

        with self._write_lock:
            try:
                with self.session_factory.begin() as session:
                    hits = self._index.count_matches(session.connection(), query)
                    session.add(DBSearchHistory(
                        id=item_id,
                        query=query,
                        hits=hits,
                        created=to_storage_timestamp(created),
                    ))
            except SQLAlchemyError as e:
                raise StoreError.io_failure("record search", e) from e

        logger.debug(f"Recorded search '{query}' ({hits} hits)")
        return SearchHistoryItem(id=item_id, query=query, hits=hits, created=created)

    def recent(self, limit: int = 5) -> List[SearchHistoryItem]:
        """Most recent history items, newest first."""
        try:
            with self._read_guard, self.session_factory() as session:
                rows = session.scalars(
                    select(DBSearchHistory)
                    .order_by(DBSearchHistory.created.desc())
                    .limit(limit)
                ).all()
                return [
                    SearchHistoryItem(
                        id=row.id,
                        query=row.query,
                        hits=row.hits,
                        created=ensure_timezone_aware(row.created),
                    )
                    for row in rows
                ]
        except SQLAlchemyError as e:
            raise StoreError.io_failure("read search history", e) from e

    def recent_queries(self, limit: int = 5) -> List[str]:
        """Distinct past queries, most recently searched first."""
        return self._distinct_queries(None, limit)

    def queries_with_prefix(self, prefix: str, limit: int = 3) -> List[str]:
        """Distinct past queries starting with a prefix (case-insensitive)."""
        return self._distinct_queries(prefix, limit)

    def _distinct_queries(self, prefix: Optional[str], limit: int) -> List[str]:
        stmt = select(DBSearchHistory.query)
        if prefix:
            pattern = f"{escape_like_pattern(prefix)}%"
            stmt = stmt.where(DBSearchHistory.query.like(pattern, escape="\\"))
        stmt = stmt.order_by(DBSearchHistory.created.desc()).limit(limit * 4)
        try:
            with self._read_guard, self.session_factory() as session:
                queries = session.scalars(stmt).all()
        except SQLAlchemyError as e:
            raise StoreError.io_failure("read search history", e) from e

        distinct: List[str] = []
        seen = set()
        for q in queries:
            key = slugify(q)
            if key not in seen:
                seen.add(key)
                distinct.append(q)
        return distinct[:limit]

    def suggest(self, query: str) -> List[Suggestion]:
        """Suggestions for the text typed into the search box.

        With no text: recent entry titles, then recent searches. Otherwise
        the text itself, then entry titles it prefix-matches, then past
        searches that start with it.
        """
        if is_blank(query):
            titles = self._entries.recent_titles(self.suggestion_limit)
            queries = self.recent_queries(self.suggestion_limit)
            return collate_suggestions("", titles, queries)

        titles = self._index.prefix_titles(query, self.suggestion_limit)
        queries = self.queries_with_prefix(
            query.strip(), self.history_suggestion_limit
        )
        return collate_suggestions(query, titles, queries)
