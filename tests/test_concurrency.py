"""Tests for concurrent readers and writers.

Writers are serialized by the service lock; readers run alongside them and
must only ever see states before or after a write, never the moment between
the index removal and re-insert of an entry.
"""
import threading
from typing import List

import pytest
from sqlalchemy import text

WRITES = 40


def run_threads(targets) -> List[Exception]:
    errors: List[Exception] = []
    lock = threading.Lock()

    def wrap(target):
        def runner():
            try:
                target()
            except Exception as e:  # collected and asserted on below
                with lock:
                    errors.append(e)
        return runner

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


@pytest.fixture(params=["file", "memory"])
def service(request, db, memory_db):
    return db if request.param == "file" else memory_db


class TestReadersDuringWrites:
    """Readers never observe a half-applied write."""

    def test_search_always_finds_entry_being_rewritten(self, service):
        """The entry is searchable before, during and after every rewrite."""
        service.upsert("hot.md", "Hot", "version 0 steady")
        done = threading.Event()
        misses: List[int] = []

        def writer():
            try:
                for i in range(1, WRITES + 1):
                    service.upsert("hot.md", "Hot", f"version {i} steady")
            finally:
                done.set()

        def reader():
            while not done.is_set():
                if [r.entry.path for r in service.search("steady")] != ["hot.md"]:
                    misses.append(1)

        errors = run_threads([writer, reader, reader])

        assert errors == []
        assert misses == []
        assert service.get("hot.md").body == f"version {WRITES} steady"

    def test_index_and_entries_agree_in_every_snapshot(self, service):
        done = threading.Event()
        mismatches: List[tuple] = []

        def writer():
            try:
                for i in range(WRITES):
                    service.upsert(f"n{i % 5}.md", f"Note {i}", f"body {i}")
                    if i % 3 == 0:
                        service.delete(f"n{(i + 2) % 5}.md")
            finally:
                done.set()

        def reader():
            while not done.is_set():
                with service._session_factory() as session:
                    entries = session.execute(text("SELECT count(*) FROM entry")).scalar_one()
                    indexed = session.execute(
                        text("SELECT count(*) FROM entry_search")
                    ).scalar_one()
                if entries != indexed:
                    mismatches.append((entries, indexed))

        # In memory, raw sessions share one connection with the writer
        readers = [reader] if service.db_path is not None else []
        errors = run_threads([writer] + readers)

        assert errors == []
        assert mismatches == []
        assert service._index.check_consistency()["consistent"] is True


class TestConcurrentWriters:
    """Writers from several threads are serialized."""

    def test_parallel_upserts_all_land(self, service):
        def writer(prefix):
            def run():
                for i in range(10):
                    service.upsert(f"{prefix}/{i}.md", f"{prefix} {i}", "shared words")
            return run

        errors = run_threads([writer(p) for p in ("a", "b", "c", "d")])

        assert errors == []
        assert service.count() == 40
        assert len(list(service.search("shared"))) == 40
        assert service._index.check_consistency()["consistent"] is True

    def test_parallel_writes_to_same_path(self, service):
        def writer(n):
            def run():
                for i in range(10):
                    service.upsert("same.md", f"Writer {n}", f"iteration {i}")
            return run

        errors = run_threads([writer(n) for n in range(4)])

        assert errors == []
        assert service.count() == 1
        report = service._index.check_consistency()
        assert report["consistent"] is True
        assert report["index_count"] == 1
