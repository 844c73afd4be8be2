"""Versioned schema migrations.

A ``Migrations`` list is validated when it is built: versions must be
unique and supplied in ascending order, so a bad list fails before any
store is touched. ``apply_all`` then runs every migration the store has not
seen yet, each in its own transaction together with the row that records
it as applied.
"""
import logging
from typing import Iterator, List, Optional, Sequence, Set

from sqlalchemy import literal_column, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import ErrorCode, MigrationError, StoreError
from notestore.models.db_models import DBAppliedMigration
from notestore.models.schema import (
    Migration,
    MigrationSuccess,
    parse_version,
    to_storage_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


def _latest(versions: Set[str]) -> Optional[str]:
    return max(versions, key=parse_version) if versions else None


def read_applied_versions(connection: Connection) -> Set[str]:
    """Read the set of versions recorded as applied."""
    return set(connection.execute(select(DBAppliedMigration.version)).scalars())


def applied_log(engine: Engine) -> List[str]:
    """Applied versions in the order they were recorded."""
    with engine.connect() as connection:
        rows = connection.execute(
            select(DBAppliedMigration.version).order_by(literal_column("rowid"))
        )
        return list(rows.scalars())


class Migrations:
    """An ordered, validated list of migrations."""

    def __init__(self, migrations: Sequence[Migration]):
        migrations = tuple(migrations)
        if not migrations:
            raise MigrationError(
                "Migration list cannot be empty", code=ErrorCode.MIGRATION_INVALID
            )

        seen = set()
        for migration in migrations:
            if migration.sort_key in seen:
                raise MigrationError.duplicate_version(migration.version)
            seen.add(migration.sort_key)

        for previous, current in zip(migrations, migrations[1:]):
            if current.sort_key < previous.sort_key:
                raise MigrationError(
                    f"Migration '{current.version}' is listed after "
                    f"'{previous.version}'; migrations must be in ascending order",
                    version=current.version,
                    code=ErrorCode.MIGRATION_INVALID_ORDER,
                )

        self._migrations = migrations

    def __iter__(self) -> Iterator[Migration]:
        return iter(self._migrations)

    def __len__(self) -> int:
        return len(self._migrations)

    @property
    def versions(self) -> List[str]:
        return [migration.version for migration in self._migrations]

    @property
    def latest(self) -> Migration:
        return self._migrations[-1]

    def pending(self, applied: Set[str]) -> List[Migration]:
        """Migrations not yet recorded as applied, in order.

        Versions are compared as instants, so an applied record spelled
        differently from the list still counts.
        """
        instants = {parse_version(version) for version in applied}
        return [m for m in self._migrations if m.sort_key not in instants]

    def apply_all(self, engine: Engine) -> MigrationSuccess:
        """Bring a store up to date.

        Each pending migration runs in one transaction with the insert that
        records it, so a failure leaves neither a partial schema change nor
        an applied record for it. Migrations that committed before the
        failure stay applied. Running it again with the same list is a no-op.

        Raises:
            MigrationError: the store knows versions this list does not, a
                pending migration is older than the newest applied one, or a
                migration failed (``code`` MIGRATION_EXECUTION_FAILED).
            StoreError: the applied-migrations table could not be read.
        """
        try:
            with engine.begin() as connection:
                DBAppliedMigration.__table__.create(connection, checkfirst=True)
                applied = read_applied_versions(connection)
        except SQLAlchemyError as e:
            raise StoreError.io_failure("read applied migrations", e) from e

        known = {m.sort_key for m in self._migrations}
        unknown = {v for v in applied if parse_version(v) not in known}
        if unknown:
            newest = _latest(unknown)
            raise MigrationError(
                f"Database has applied migrations unknown to this version: "
                f"{sorted(unknown, key=parse_version)}",
                version=newest,
                code=ErrorCode.MIGRATION_UNKNOWN_VERSION,
            )

        from_version = _latest(applied)
        outstanding = self.pending(applied)
        if outstanding and from_version is not None:
            behind = [
                m.version for m in outstanding
                if m.sort_key < parse_version(from_version)
            ]
            if behind:
                # Applying them now would record versions out of order
                raise MigrationError(
                    f"Migrations {behind} are older than the applied version "
                    f"{from_version} and can no longer be applied",
                    version=behind[0],
                    code=ErrorCode.MIGRATION_INVALID_ORDER,
                )

        if not outstanding:
            logger.debug(f"Database is up to date at version {from_version}")
            return MigrationSuccess(from_version=from_version, to_version=from_version)

        done: List[str] = []
        for migration in outstanding:
            try:
                with engine.begin() as connection:
                    for statement in migration.statements:
                        connection.exec_driver_sql(statement)
                    connection.execute(
                        DBAppliedMigration.__table__.insert().values(
                            version=migration.version,
                            applied_at=to_storage_timestamp(utc_now()),
                        )
                    )
            except SQLAlchemyError as e:
                logger.error(
                    f"Migration {migration.version} failed, rolled back: {e}"
                )
                raise MigrationError.execution_failed(migration.version, e) from e
            done.append(migration.version)
            logger.info(
                f"Applied migration {migration.version}"
                + (f": {migration.description}" if migration.description else "")
            )

        return MigrationSuccess(
            from_version=from_version,
            to_version=done[-1],
            applied=tuple(done),
        )
