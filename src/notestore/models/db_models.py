"""SQLAlchemy database models and engine setup for the note store.

The tables mapped here are created by migrations (see
``notestore.storage.app_migrations``), not by ``Base.metadata.create_all``;
the mappings give typed reads and writes over the migrated schema. The one
exception is the applied-migrations table, which the migration engine
creates itself before it can read which migrations have run.
"""
from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notestore.models.schema import Entry, ensure_timezone_aware

# Create base class for SQLAlchemy models
Base = declarative_base()

ENTRY_TABLE = "entry"
SEARCH_TABLE = "entry_search"


class DBEntry(Base):
    """Database model for an entry (a note keyed by path)."""
    __tablename__ = ENTRY_TABLE
    path = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False)
    modified = Column(DateTime, nullable=False)
    size = Column(Integer, nullable=False)

    def to_model(self) -> Entry:
        return Entry(
            path=self.path,
            title=self.title,
            body=self.body,
            modified=ensure_timezone_aware(self.modified),
            size=self.size,
        )

    def __repr__(self) -> str:
        """Return string representation of entry."""
        return f"<Entry(path='{self.path}', title='{self.title}')>"


class DBAppliedMigration(Base):
    """Database model for a migration that has been applied to this store."""
    __tablename__ = "migration"
    version = Column(String(64), primary_key=True)
    applied_at = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<AppliedMigration(version='{self.version}')>"


class DBSearchHistory(Base):
    """Database model for a recorded search query."""
    __tablename__ = "search_history"
    id = Column(String(36), primary_key=True)
    query = Column(Text, nullable=False)
    hits = Column(Integer, nullable=False, default=0)
    created = Column(DateTime, nullable=False, index=True)


def is_memory_url(db_url: str) -> bool:
    """Whether a SQLite URL points at a private in-memory database."""
    return db_url in ("sqlite://", "sqlite:///:memory:")


def create_store_engine(db_url: str, busy_timeout_ms: int = 5000) -> Engine:
    """Create an engine with hardened SQLite configuration.

    - WAL journal mode so readers keep a consistent snapshot while a write
      is in progress (file databases only)
    - NORMAL synchronous mode
    - busy timeout so a second process waits instead of failing at once
    - explicit BEGIN on every transaction: the sqlite3 driver's implicit
      transaction handling is switched off so that DDL run by migrations
      commits or rolls back together with the rest of its transaction

    In-memory databases exist per connection, so they share one connection
    through a StaticPool and callers must serialize access to it.
    """
    in_memory = is_memory_url(db_url)
    if in_memory:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is enough for readers
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Transactions are started by the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory bound to an engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)
