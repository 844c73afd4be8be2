"""Storage layer: migrations, entries, search index, search history and directory sync."""
