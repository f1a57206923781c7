"""Tests for collector module: concurrent metadata collection."""

from __future__ import annotations

import threading
import time

import pytest

from collector import CANCELLED, CollectionProgress, DatabaseMetadata, collect_metadata
from config import Datasource
from engines import QueryError


def _ds() -> Datasource:
    return Datasource(name="main", engine="mysql", host="localhost", port=3306, user="u", password="p")


class FakeEngine:
    """Answers metadata queries from a table; methods listed in `fail` raise."""

    def __init__(self, sizes=None, fail=(), fail_for=None, delay=0.0):
        self.sizes = sizes or {}
        self.fail = set(fail)
        self.fail_for = fail_for
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def _answer(self, method, database, value):
        with self._lock:
            self.calls.append((method, database))
        if self.delay:
            time.sleep(self.delay)
        if method in self.fail and (self.fail_for is None or database == self.fail_for):
            raise QueryError(f"{method} exploded")
        return value

    def database_size(self, ds, database, timeout=None):
        return self._answer("database_size", database, self.sizes.get(database, 1000))

    def table_count(self, ds, database, timeout=None):
        return self._answer("table_count", database, 12)

    def procedure_count(self, ds, database, timeout=None):
        return self._answer("procedure_count", database, 3)

    def function_count(self, ds, database, timeout=None):
        return self._answer("function_count", database, 2)

    def view_count(self, ds, database, timeout=None):
        return self._answer("view_count", database, 4)

    def user_grant_count(self, ds, database, timeout=None):
        return self._answer("user_grant_count", database, 5)


class TestCollectMetadata:
    def test_one_record_per_database(self):
        names = [f"db{i}" for i in range(9)]
        result = collect_metadata(FakeEngine(), _ds(), names, workers=3)
        assert set(result) == set(names)
        rec = result["db4"]
        assert rec.size_bytes == 1000
        assert rec.table_count == 12
        assert rec.procedure_count == 3
        assert rec.function_count == 2
        assert rec.view_count == 4
        assert rec.user_grant_count == 5
        assert rec.error == ""

    def test_empty_input(self):
        engine = FakeEngine()
        assert collect_metadata(engine, _ds(), []) == {}
        assert engine.calls == []

    def test_duplicates_collapse(self):
        result = collect_metadata(FakeEngine(), _ds(), ["a", "a", "b"])
        assert sorted(result) == ["a", "b"]

    def test_non_critical_failure_degrades_silently(self):
        engine = FakeEngine(fail={"view_count", "user_grant_count"})
        result = collect_metadata(engine, _ds(), ["app"])
        rec = result["app"]
        assert rec.view_count == 0
        assert rec.user_grant_count == 0
        assert rec.table_count == 12
        assert rec.error == ""

    def test_size_failure_recorded(self):
        engine = FakeEngine(fail={"database_size"}, fail_for="b")
        result = collect_metadata(engine, _ds(), ["a", "b", "c"], workers=2)
        assert len(result) == 3
        assert result["b"].size_bytes == 0
        assert "size_bytes" in result["b"].error
        assert result["a"].error == ""
        assert result["c"].error == ""

    def test_table_count_failure_recorded(self):
        engine = FakeEngine(fail={"table_count"})
        rec = collect_metadata(engine, _ds(), ["app"])["app"]
        assert rec.table_count == 0
        assert "table_count" in rec.error
        assert rec.size_bytes == 1000

    def test_crashing_job_still_yields_record(self, monkeypatch):
        import collector

        def boom(*args, **kwargs):
            raise RuntimeError("worker crashed")

        monkeypatch.setattr(collector, "_collect_one", boom)
        result = collect_metadata(FakeEngine(), _ds(), ["a", "b"])
        assert len(result) == 2
        assert all("worker crashed" in r.error for r in result.values())

    def test_job_timeout_bounds_slow_queries(self):
        engine = FakeEngine(delay=0.5)
        start = time.monotonic()
        rec = collect_metadata(engine, _ds(), ["slow"], job_timeout=0.05)["slow"]
        assert time.monotonic() - start < 0.5
        assert "timed out" in rec.error
        assert rec.size_bytes == 0

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        engine = FakeEngine()
        result = collect_metadata(engine, _ds(), ["a", "b"], cancel=cancel)
        assert {r.error for r in result.values()} == {CANCELLED}
        assert engine.calls == []

    def test_progress_counters(self):
        progress = CollectionProgress()
        engine = FakeEngine(fail={"database_size"}, fail_for="bad")
        collect_metadata(engine, _ds(), ["ok1", "bad", "ok2"], progress=progress)
        assert progress.total == 3
        assert progress.started == 3
        assert progress.completed == 3
        assert progress.failed == 1
        assert progress.percent == 100.0

    def test_progress_logged(self, caplog):
        import logging

        with caplog.at_level(logging.INFO):
            collect_metadata(FakeEngine(), _ds(), ["a", "b"])
        assert "Metadata progress: " in caplog.text


class TestDatabaseMetadata:
    def test_to_dict(self):
        rec = DatabaseMetadata(name="app", size_bytes=5)
        d = rec.to_dict()
        assert d["name"] == "app"
        assert d["size_bytes"] == 5
        assert isinstance(d["collected_at"], str)

    def test_from_dict_restores_record(self):
        rec = DatabaseMetadata(name="app", size_bytes=5, view_count=2, error="table_count: boom")
        assert DatabaseMetadata.from_dict(rec.to_dict()) == rec

    @pytest.mark.parametrize("data", [
        {"size_bytes": 5, "collected_at": "2026-01-01T00:00:00+00:00"},
        {"name": "app", "collected_at": "yesterday"},
        {"name": "app", "size_bytes": "lots", "collected_at": "2026-01-01T00:00:00+00:00"},
    ])
    def test_from_dict_rejects_malformed(self, data):
        with pytest.raises(ValueError):
            DatabaseMetadata.from_dict(data)
