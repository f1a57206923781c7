"""Concurrent per-database metadata collection.

A fixed pool of worker threads drains a pre-filled job queue. Each job runs
the six metadata sub-queries concurrently, every one with its own timeout,
and publishes exactly one DatabaseMetadata record on the results queue. The
caller drains one result per database and then joins the workers.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from config import Datasource
from engines import Engine

log = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = 300.0

# (record field, engine method, default timeout in seconds, critical)
_METRICS = (
    ("size_bytes", "database_size", 10.0, True),
    ("table_count", "table_count", 5.0, True),
    ("procedure_count", "procedure_count", 5.0, False),
    ("function_count", "function_count", 5.0, False),
    ("view_count", "view_count", 5.0, False),
    ("user_grant_count", "user_grant_count", 5.0, False),
)

CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DatabaseMetadata:
    name: str
    size_bytes: int = 0
    table_count: int = 0
    procedure_count: int = 0
    function_count: int = 0
    view_count: int = 0
    user_grant_count: int = 0
    collected_at: datetime = field(default_factory=_now)
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "size_bytes": self.size_bytes,
            "table_count": self.table_count,
            "procedure_count": self.procedure_count,
            "function_count": self.function_count,
            "view_count": self.view_count,
            "user_grant_count": self.user_grant_count,
            "collected_at": self.collected_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DatabaseMetadata:
        """Rebuild a record written by to_dict(); raises ValueError when malformed."""
        try:
            collected_at = datetime.fromisoformat(data["collected_at"])
            return cls(
                name=str(data["name"]),
                size_bytes=int(data.get("size_bytes", 0)),
                table_count=int(data.get("table_count", 0)),
                procedure_count=int(data.get("procedure_count", 0)),
                function_count=int(data.get("function_count", 0)),
                view_count=int(data.get("view_count", 0)),
                user_grant_count=int(data.get("user_grant_count", 0)),
                collected_at=collected_at,
                error=str(data.get("error", "")),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed metadata record: {exc}") from exc


class CollectionProgress:
    """Thread-safe started/completed/failed counters for one collection run."""

    def __init__(self, total: int = 0):
        self.total = total
        self.started = 0
        self.completed = 0
        self.failed = 0
        self._lock = threading.Lock()

    def mark_started(self) -> None:
        with self._lock:
            self.started += 1

    def mark_done(self, failed: bool) -> None:
        with self._lock:
            self.completed += 1
            if failed:
                self.failed += 1

    @property
    def percent(self) -> float:
        with self._lock:
            if not self.total:
                return 100.0
            return self.completed * 100.0 / self.total


def _collect_one(engine: Engine, ds: Datasource, name: str,
                 query_timeout: float | None, job_timeout: float,
                 logger: logging.Logger) -> DatabaseMetadata:
    values = {metric[0]: 0 for metric in _METRICS}
    errors: list[str] = []

    pool = concurrent.futures.ThreadPoolExecutor(
        max_workers=len(_METRICS), thread_name_prefix=f"meta-{name}",
    )
    try:
        futures = {}
        for field_name, method, default_timeout, critical in _METRICS:
            timeout = query_timeout if query_timeout is not None else default_timeout
            future = pool.submit(getattr(engine, method), ds, name, timeout)
            futures[future] = (field_name, critical)

        done, not_done = concurrent.futures.wait(futures, timeout=job_timeout)

        for future in done:
            field_name, critical = futures[future]
            try:
                values[field_name] = int(future.result())
            except Exception as exc:
                if critical:
                    errors.append(f"{field_name}: {exc}")
                else:
                    logger.debug("Metadata query %s for '%s' failed: %s", field_name, name, exc)

        for future in not_done:
            future.cancel()
            field_name, critical = futures[future]
            if critical:
                errors.append(f"{field_name}: job timed out after {job_timeout}s")
    finally:
        # Hung sub-queries are bounded by their own subprocess timeouts.
        pool.shutdown(wait=False, cancel_futures=True)

    return DatabaseMetadata(name=name, error="; ".join(sorted(errors)), **values)


def _worker(engine: Engine, ds: Datasource, jobs: queue.Queue, results: queue.Queue,
            query_timeout: float | None, job_timeout: float,
            cancel: threading.Event | None, progress: CollectionProgress,
            logger: logging.Logger) -> None:
    while True:
        try:
            name = jobs.get_nowait()
        except queue.Empty:
            return

        if cancel is not None and cancel.is_set():
            record = DatabaseMetadata(name=name, error=CANCELLED)
        else:
            progress.mark_started()
            try:
                record = _collect_one(engine, ds, name, query_timeout, job_timeout, logger)
            except Exception as exc:
                logger.exception("Metadata collection for '%s' crashed", name)
                record = DatabaseMetadata(name=name, error=f"collection failed: {exc}")

        progress.mark_done(bool(record.error))
        results.put(record)


def collect_metadata(engine: Engine, ds: Datasource, names: list[str], *,
                     workers: int | None = None,
                     job_timeout: float = DEFAULT_JOB_TIMEOUT,
                     query_timeout: float | None = None,
                     cancel: threading.Event | None = None,
                     progress: CollectionProgress | None = None,
                     logger: logging.Logger | None = None) -> dict[str, DatabaseMetadata]:
    """Collect metadata for every name; one record per unique name.

    Query failures never propagate: size and table-count failures land in
    the record's error, the other counters fall back to 0.
    """
    logger = logger or log
    unique = list(dict.fromkeys(names))
    if not unique:
        return {}

    count = workers or min(os.cpu_count() or 1, len(unique))
    count = max(1, min(count, len(unique)))

    if progress is None:
        progress = CollectionProgress()
    progress.total = len(unique)

    jobs: queue.Queue = queue.Queue()
    for name in unique:
        jobs.put(name)
    results: queue.Queue = queue.Queue()

    logger.info("Collecting metadata for %d database(s) with %d worker(s)", len(unique), count)

    threads = [
        threading.Thread(
            target=_worker,
            args=(engine, ds, jobs, results, query_timeout, job_timeout, cancel, progress, logger),
            name=f"collector-{i}",
            daemon=True,
        )
        for i in range(count)
    ]
    for t in threads:
        t.start()

    collected: dict[str, DatabaseMetadata] = {}
    for _ in range(len(unique)):
        record = results.get()
        collected[record.name] = record
        if record.error:
            logger.warning("Metadata for '%s' incomplete: %s", record.name, record.error)
        logger.info(
            "Metadata progress: %d/%d (%.0f%%), %d failed",
            progress.completed, progress.total, progress.percent, progress.failed,
        )

    for t in threads:
        t.join()

    return collected
