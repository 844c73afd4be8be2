"""Common test fixtures for the note store."""

import tempfile
from pathlib import Path

import pytest

from notestore.config import NoteStoreConfig
from notestore.models.db_models import create_store_engine
from notestore.models.schema import Migration
from notestore.services.database_service import DatabaseService


@pytest.fixture
def temp_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_dir):
    """Configuration rooted in the temporary directory."""
    return NoteStoreConfig(
        base_dir=temp_dir,
        database_path=Path("notestore.db"),
        metrics_file=None,
    )


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "notestore.db"


@pytest.fixture
def db(db_path, test_config):
    """A ready database service over an on-disk store."""
    service = DatabaseService.open(db_path, config=test_config)
    yield service
    service.close()


@pytest.fixture
def memory_db(test_config):
    """A ready database service over an in-memory store."""
    service = DatabaseService.open(":memory:", config=test_config)
    yield service
    service.close()


@pytest.fixture
def engine(temp_dir):
    """A bare engine over a fresh database file, for migration tests."""
    engine = create_store_engine(f"sqlite:///{temp_dir / 'migrations.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def make_migration():
    """Factory for migrations; the default statement creates one table."""

    def _make(version: str, *statements: str) -> Migration:
        if not statements:
            table = "t_" + "".join(c for c in version if c.isdigit())
            statements = (f"CREATE TABLE {table} (id INTEGER PRIMARY KEY)",)
        return Migration(version=version, statements=statements)

    return _make
