"""Data models and database mappings for the note store."""
