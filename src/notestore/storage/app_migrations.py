"""Schema of the note store, as an ordered list of migrations.

Each statement is executed on its own, so a statement must hold exactly
one SQL command. Never edit a migration that has shipped; append a new one.
"""
from notestore.models.schema import Migration
from notestore.storage.migrations import Migrations

# Tokenizer shared by every search index: Porter stemming over unicode61
# word splitting, case folded, diacritics removed.
SEARCH_TOKENIZER = "porter unicode61 remove_diacritics 2"

CREATE_ENTRIES = Migration(
    version="2021-11-04T12:00:00",
    description="entry table and its full-text search index",
    statements=(
        """
        CREATE TABLE entry (
            path TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL,
            modified TIMESTAMP NOT NULL,
            size INTEGER NOT NULL
        )
        """,
        "CREATE INDEX ix_entry_modified ON entry (modified)",
        f"""
        CREATE VIRTUAL TABLE entry_search USING fts5(
            path UNINDEXED,
            title,
            body,
            modified UNINDEXED,
            size UNINDEXED,
            tokenize = '{SEARCH_TOKENIZER}'
        )
        """,
    ),
)

CREATE_SEARCH_HISTORY = Migration(
    version="2022-01-12T09:30:00",
    description="search history for query suggestions",
    statements=(
        """
        CREATE TABLE search_history (
            id TEXT PRIMARY KEY,
            query TEXT NOT NULL,
            hits INTEGER NOT NULL DEFAULT 0,
            created TIMESTAMP NOT NULL
        )
        """,
        "CREATE INDEX ix_search_history_created ON search_history (created)",
    ),
)

APP_MIGRATIONS = Migrations([
    CREATE_ENTRIES,
    CREATE_SEARCH_HISTORY,
])
