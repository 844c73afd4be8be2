"""
notestore - local note storage for a personal note-taking client.

Keeps a table of note entries and a full-text search index over them in a
single SQLite database, brings the schema up to date with versioned
migrations on open, and keeps the index in step with every write.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notestore")
except PackageNotFoundError:
    __version__ = "0.3.0"
