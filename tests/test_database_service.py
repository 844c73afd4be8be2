"""Tests for the database service lifecycle and maintenance operations."""
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from notestore.config import NoteStoreConfig
from notestore.exceptions import (
    ConfigurationError,
    ErrorCode,
    MigrationError,
    StoreError,
)
from notestore.models.schema import Migration
from notestore.services.database_service import DatabaseService, ServiceState
from notestore.storage.app_migrations import APP_MIGRATIONS
from notestore.storage.migrations import Migrations


class TestLifecycle:
    """Tests for service states."""

    def test_new_service_is_uninitialized(self, db_path, test_config):
        service = DatabaseService(db_path, config=test_config)
        assert service.state is ServiceState.UNINITIALIZED
        assert not db_path.exists()

    def test_open_returns_ready_service(self, db):
        assert db.state is ServiceState.READY
        assert db.is_ready

    def test_operations_before_start_not_ready(self, db_path, test_config):
        service = DatabaseService(db_path, config=test_config)
        with pytest.raises(StoreError) as exc_info:
            service.get("a.md")
        assert exc_info.value.code == ErrorCode.STORE_NOT_READY
        assert exc_info.value.details["state"] == "uninitialized"

    def test_start_reports_applied_migrations(self, db_path, test_config):
        service = DatabaseService(db_path, config=test_config)
        try:
            success = service.start()
            assert success.from_version is None
            assert success.to_version == APP_MIGRATIONS.latest.version
            assert success.applied == tuple(APP_MIGRATIONS.versions)
            assert service.migration_success == success
        finally:
            service.close()

    def test_start_twice_returns_same_result(self, db):
        first = db.migration_success
        assert db.start() == first

    def test_reopen_applies_nothing(self, db_path, test_config):
        with DatabaseService.open(db_path, config=test_config) as first:
            first.upsert("a.md", "Alpha", "kept across opens")

        with DatabaseService.open(db_path, config=test_config) as second:
            assert second.migration_success.applied == ()
            assert second.get("a.md").body == "kept across opens"

    def test_uses_configured_database_path(self, test_config, temp_dir):
        with DatabaseService.open(config=test_config) as service:
            assert service.db_path == temp_dir / "notestore.db"
        assert (temp_dir / "notestore.db").exists()

    def test_empty_location_rejected(self, test_config):
        with pytest.raises(ConfigurationError) as exc_info:
            DatabaseService("  ", config=test_config)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID

    def test_plain_migration_list_validated_on_construction(self, db_path, test_config):
        unsorted = [
            Migration(version="2021-03-01", statements=("CREATE TABLE b (id INTEGER)",)),
            Migration(version="2021-01-01", statements=("CREATE TABLE a (id INTEGER)",)),
        ]
        with pytest.raises(MigrationError) as exc_info:
            DatabaseService(db_path, migrations=unsorted, config=test_config)
        assert exc_info.value.code == ErrorCode.MIGRATION_INVALID_ORDER
        assert not db_path.exists()

    def test_failed_migration_leaves_service_failed(self, db_path, test_config):
        broken = list(APP_MIGRATIONS) + [
            Migration(version="2030-01-01", statements=("CREATE TABLE (",)),
        ]
        service = DatabaseService(db_path, migrations=broken, config=test_config)

        with pytest.raises(MigrationError) as exc_info:
            service.start()

        assert exc_info.value.version == "2030-01-01"
        assert service.state is ServiceState.FAILED
        with pytest.raises(StoreError) as op_error:
            service.upsert("a.md", "A", "body")
        assert op_error.value.code == ErrorCode.STORE_NOT_READY
        # Not retried
        with pytest.raises(StoreError):
            service.start()
        service.close()
        assert service.state is ServiceState.CLOSED


class TestClose:
    """Tests for closing the service."""

    def test_operations_after_close_raise_closed(self, db):
        db.close()
        for call in (
            lambda: db.upsert("a.md", "A", "body"),
            lambda: db.delete("a.md"),
            lambda: db.get("a.md"),
            lambda: db.list(),
            lambda: db.search("a"),
            lambda: db.count(),
            lambda: db.suggest("a"),
            lambda: db.record_search("a"),
        ):
            with pytest.raises(StoreError) as exc_info:
                call()
            assert exc_info.value.code == ErrorCode.STORE_CLOSED

    def test_close_is_idempotent(self, db):
        db.close()
        db.close()
        assert db.state is ServiceState.CLOSED

    def test_start_after_close_rejected(self, db):
        db.close()
        with pytest.raises(StoreError) as exc_info:
            db.start()
        assert exc_info.value.code == ErrorCode.STORE_CLOSED

    def test_pending_iterator_fails_after_close(self, db):
        """An iterator requested before close does not read afterwards."""
        db.upsert("a.md", "A", "body")
        listing = db.list()
        db.close()
        with pytest.raises(StoreError) as exc_info:
            next(listing)
        assert exc_info.value.code == ErrorCode.STORE_CLOSED

    def test_context_manager_closes(self, db_path, test_config):
        with DatabaseService.open(db_path, config=test_config) as service:
            assert service.is_ready
        assert service.state is ServiceState.CLOSED

    def test_context_manager_starts_unstarted_service(self, db_path, test_config):
        with DatabaseService(db_path, config=test_config) as service:
            assert service.is_ready
            service.upsert("a.md", "A", "b")
        assert service.state is ServiceState.CLOSED


class TestDeleteDatabase:
    """Tests for removing the database from disk."""

    def test_delete_database_removes_files(self, db, db_path):
        db.upsert("a.md", "A", "body")
        assert db_path.exists()

        assert db.delete_database() is True

        assert db.state is ServiceState.CLOSED
        assert not db_path.exists()
        for suffix in ("-wal", "-shm", "-journal"):
            assert not db_path.with_name(db_path.name + suffix).exists()

    def test_reopen_after_delete_starts_empty(self, db, db_path, test_config):
        db.upsert("a.md", "A", "body")
        db.delete_database()

        with DatabaseService.open(db_path, config=test_config) as fresh:
            assert fresh.count() == 0
            assert fresh.migration_success.from_version is None

    def test_delete_in_memory_database(self, memory_db):
        assert memory_db.delete_database() is False
        assert memory_db.state is ServiceState.CLOSED


class TestStorageFailures:
    """Database errors surface as StoreError, never swallowed."""

    def test_read_failure_surfaces(self, db):
        with patch.object(
            db._entries, "session_factory",
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(StoreError) as exc_info:
                db.get("a.md")
        assert exc_info.value.code == ErrorCode.STORAGE_IO_FAILED
        assert exc_info.value.operation == "get"

    def test_failed_open_is_store_error(self, temp_dir, test_config):
        path = temp_dir / "not-a-db.db"
        path.write_bytes(b"garbage" * 1000)

        service = DatabaseService(path, config=test_config)
        with pytest.raises(StoreError) as exc_info:
            service.start()
        assert exc_info.value.code == ErrorCode.STORAGE_IO_FAILED
        assert service.state is ServiceState.FAILED

    def test_store_ahead_of_migration_list(self, db_path, test_config):
        with DatabaseService.open(db_path, config=test_config):
            pass

        older = Migrations(list(APP_MIGRATIONS)[:1])
        service = DatabaseService(db_path, migrations=older, config=test_config)
        with pytest.raises(MigrationError) as exc_info:
            service.start()
        assert exc_info.value.code == ErrorCode.MIGRATION_UNKNOWN_VERSION
        assert service.state is ServiceState.FAILED


class TestInMemory:
    """Tests for the in-memory location."""

    def test_round_trip(self, memory_db):
        memory_db.upsert("a.md", "Apple", "fruit")
        assert memory_db.get("a.md").title == "Apple"
        assert [r.entry.path for r in memory_db.search("apple")] == ["a.md"]
        assert memory_db.db_path is None

    def test_not_persisted(self, test_config):
        with DatabaseService.open(":memory:", config=test_config) as first:
            first.upsert("a.md", "A", "body")
        with DatabaseService.open(":memory:", config=test_config) as second:
            assert second.count() == 0


class TestHealth:
    """Tests for health checks and metrics."""

    def test_healthy_database(self, db):
        db.upsert("a.md", "A", "body")
        health = db.check_health()
        assert health["healthy"] is True
        assert health["sqlite_ok"] is True
        assert health["fts_ok"] is True
        assert health["index_consistent"] is True
        assert health["entry_count"] == health["index_count"] == 1
        assert health["issues"] == []
        assert health["critical_issues"] == []

    def test_detects_missing_index_row(self, db):
        db.upsert("a.md", "A", "body")
        with db._session_factory.begin() as session:
            session.execute(text("DELETE FROM entry_search"))

        health = db.check_health()
        assert health["healthy"] is False
        assert health["index_consistent"] is False
        assert any("missing" in issue for issue in health["issues"])

        db.rebuild_search_index()
        assert db.check_health()["healthy"] is True

    def test_wal_mode_enabled(self, db):
        with db._session_factory() as session:
            result = session.execute(text("PRAGMA journal_mode")).fetchone()
        assert result[0].lower() == "wal"

    def test_operations_recorded_in_metrics(self, db):
        db.upsert("a.md", "A", "body")
        list(db.search("body"))
        with pytest.raises(StoreError):
            with patch.object(
                db._entries, "delete",
                side_effect=StoreError("boom", operation="delete"),
            ):
                db.delete("a.md")

        metrics = db.metrics.get_metrics()
        assert metrics["migrate"]["success_count"] == 1
        assert metrics["upsert"]["success_count"] == 1
        assert metrics["search"]["count"] == 1
        assert metrics["delete"]["error_count"] == 1


class TestMetrics:
    """Tests for operation metrics kept by the service."""

    def test_summary_counts_operations(self, db):
        db.upsert("a.md", "A", "body")
        list(db.search("body"))

        report = db.metrics_summary()

        assert report["metrics_file"] is None
        assert report["summary"]["total_operations"] == 3
        assert report["summary"]["total_errors"] == 0
        assert report["summary"]["operations_tracked"] == ["migrate", "search", "upsert"]
        assert report["operations"]["upsert"]["count"] == 1

    def test_summary_available_after_close(self, db):
        db.close()
        assert db.metrics_summary()["summary"]["total_operations"] == 1

    def test_metrics_saved_on_close_and_restored(self, db_path, temp_dir):
        config = NoteStoreConfig(
            base_dir=temp_dir,
            metrics_file=Path("metrics/notestore.json"),
            metrics_save_interval=0,
        )
        metrics_file = temp_dir / "metrics" / "notestore.json"

        with DatabaseService.open(db_path, config=config) as service:
            service.upsert("a.md", "A", "body")
            assert service.metrics_summary()["metrics_file"] == str(metrics_file)
            assert not metrics_file.exists()
        assert metrics_file.exists()

        with DatabaseService.open(db_path, config=config) as reopened:
            operations = reopened.metrics_summary()["operations"]
            assert operations["migrate"]["count"] == 2
            assert operations["upsert"]["count"] == 1

    def test_metrics_file_from_environment(self, db_path, temp_dir, monkeypatch):
        metrics_file = temp_dir / "env-metrics.json"
        monkeypatch.setenv("NOTESTORE_METRICS_FILE", str(metrics_file))
        monkeypatch.setenv("NOTESTORE_METRICS_SAVE_INTERVAL", "1")

        service = DatabaseService.open(db_path, config=NoteStoreConfig(base_dir=temp_dir))
        try:
            assert metrics_file.exists()
        finally:
            service.close()
