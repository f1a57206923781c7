"""Backup run: filter -> metadata -> disk check -> dump units -> summary."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from capacity import InsufficientSpaceError, check_capacity
from catalog import save_records
from collector import collect_metadata
from compressors import file_extension
from config import ConfigError, Datasource, Job, resolve_timeout
from crypto import FILE_EXTENSION as ENCRYPTED_EXTENSION
from crypto import resolve_encryption_key
from dbfilter import NoDatabasesError, build_filter_rule, filter_databases
from engines import Engine, GTIDUnsupportedError, QueryError, create_engine
from pipeline import DumpError, Transform, build_transforms, run_unit
from summary import (
    FAILED, SUCCESS, SUCCESS_WITH_WARNINGS,
    BackupUnitOutcome, RunSummary, log_summary, save_summary,
)
from utils import format_duration, format_size, write_checksum

log = logging.getLogger(__name__)

# Run states
FILTERING = "FILTERING"
ESTIMATING = "ESTIMATING"
ABORTED_NO_DATABASES = "ABORTED_NO_DATABASES"
ABORTED_NO_SPACE = "ABORTED_NO_SPACE"
EXECUTING = "EXECUTING"
AGGREGATING = "AGGREGATING"
DONE = "DONE"

COMBINED_PREFIX = "all_databases"

_UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]")


def backup_filename(name: str, timestamp: str, job: Job) -> str:
    """Return '<name>-<timestamp>.sql[.ext][.enc]' for a unit of *job*."""
    safe = _UNSAFE_FILENAME_RE.sub("_", name)
    filename = f"{safe}-{timestamp}.sql{file_extension(job.compression.type)}"
    if job.encryption.enabled:
        filename += ENCRYPTED_EXTENSION
    return filename


def unit_prefixes(names: list[str]) -> dict[str, str]:
    """Map each database name to a filename prefix unique within the run.

    Names that sanitize to the same prefix ('a b' and 'a_b') get a short
    hash of the raw name appended.
    """
    by_safe: dict[str, list[str]] = {}
    for name in names:
        by_safe.setdefault(_UNSAFE_FILENAME_RE.sub("_", name), []).append(name)

    prefixes = {}
    for safe, group in by_safe.items():
        if len(group) == 1:
            prefixes[group[0]] = safe
            continue
        for name in group:
            digest = hashlib.sha256(name.encode()).hexdigest()[:8]
            prefixes[name] = f"{safe}_{digest}"
    return prefixes


def _settings(job: Job) -> dict:
    """Non-secret job settings recorded in the summary."""
    return {
        "engine": job.datasource.engine,
        "host": job.datasource.host,
        "port": job.datasource.port,
        "output_dir": job.output_dir,
        "compression": job.compression.type,
        "compression_level": job.compression.level,
        "encryption": job.encryption.enabled,
        "disk_check": job.disk_check,
        "safety_margin_pct": job.safety_margin_pct,
        "exclude_system": job.filter.exclude_system,
        "exclude": list(job.filter.exclude),
        "include": list(job.filter.include),
        "include_file": job.filter.include_file,
    }


def _run_one_unit(engine: Engine, ds: Datasource, databases: list[str], dump_databases: list[str] | None,
                  output_path: str, transforms: list[Transform], estimated_size: int,
                  cancel: threading.Event | None, logger: logging.Logger) -> BackupUnitOutcome:
    label = ", ".join(databases) if len(databases) <= 3 else f"{len(databases)} databases"
    argv = engine.dump_command(ds, dump_databases)
    logger.info("Backing up %s -> %s", label, output_path)
    logger.debug("Command: %s", " ".join(engine.mask_command(argv)))

    start = time.monotonic()
    try:
        result = run_unit(
            argv,
            output_path,
            transforms,
            env=engine.dump_env(ds),
            fatal_markers=engine.fatal_markers,
            timeout=resolve_timeout(ds, "dump_timeout"),
            cancel=cancel,
            logger=logger,
        )
        byte_size = os.path.getsize(output_path)
        if byte_size == 0:
            raise DumpError(f"Dump produced an empty (0-byte) file for {label}")
        checksum = write_checksum(output_path)
    except (DumpError, OSError) as exc:
        duration = time.monotonic() - start
        logger.error("Backup of %s failed after %s: %s", label, format_duration(duration), exc)
        return BackupUnitOutcome(
            databases=tuple(databases),
            output_path=output_path,
            status=FAILED,
            byte_size=os.path.getsize(output_path) if os.path.exists(output_path) else 0,
            duration=duration,
            error=str(exc),
            warnings=getattr(exc, "stderr", ""),
            estimated_size=estimated_size,
        )

    duration = time.monotonic() - start
    logger.info(
        "Backup of %s done in %s (%s), sha256 %s",
        label, format_duration(duration), format_size(byte_size), checksum,
    )
    return BackupUnitOutcome(
        databases=tuple(databases),
        output_path=output_path,
        status=SUCCESS_WITH_WARNINGS if result.has_warnings else SUCCESS,
        byte_size=byte_size,
        duration=duration,
        warnings=result.stderr,
        sha256=checksum,
        estimated_size=estimated_size,
    )


def _finish(summary: RunSummary, job: Job, logger: logging.Logger) -> RunSummary:
    logger.debug("Run %s: %s", summary.backup_id, AGGREGATING)
    summary.finalize(datetime.now(timezone.utc))
    try:
        path = save_summary(summary, job.output_dir)
        logger.info("Run summary saved: %s", path)
    except OSError as exc:
        logger.warning("Could not save run summary: %s", exc)
    log_summary(summary, logger)
    logger.debug("Run %s: %s", summary.backup_id, DONE)
    return summary


def run_backup(job: Job, engine: Engine | None = None, *,
               cancel: threading.Event | None = None,
               disk_usage: Callable = shutil.disk_usage,
               logger: logging.Logger | None = None) -> RunSummary:
    """Run one backup job end to end and return its summary.

    Configuration problems raise ConfigError before any dump starts. An empty
    database selection or a failed disk check ends the run early with an
    aborted summary; a failing unit is recorded and the remaining units run.
    """
    logger = logger or log
    ds = job.datasource
    if engine is None:
        engine = create_engine(ds.engine)

    started = datetime.now(timezone.utc)
    timestamp = started.strftime("%Y%m%d-%H%M%S-%f")
    summary = RunSummary(
        backup_id=f"backup_{started.strftime('%Y%m%d_%H%M%S_%f')}",
        job=job.name,
        mode=job.mode,
        started_at=started,
        settings=_settings(job),
    )

    encryption_key = None
    if job.encryption.enabled:
        encryption_key, source = resolve_encryption_key(job.encryption.key)
        logger.info("Encryption enabled (key from %s)", source)
    try:
        os.makedirs(job.output_dir, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create output directory '{job.output_dir}': {exc}") from exc
    query_timeout = resolve_timeout(ds, "query_timeout")

    # -- filtering ---------------------------------------------------------
    logger.debug("Run %s: %s", summary.backup_id, FILTERING)
    rule = build_filter_rule(job.filter)
    try:
        found = engine.list_databases(ds, timeout=query_timeout)
    except (QueryError, TimeoutError) as exc:
        logger.error("Cannot list databases on %s:%s: %s", ds.host, ds.port, exc)
        summary.abort_reason = f"Cannot list databases: {exc}"
        return _finish(summary, job, logger)
    try:
        names, stats = filter_databases(found, rule)
    except NoDatabasesError as exc:
        logger.error("%s", exc)
        logger.debug("Run %s: %s", summary.backup_id, ABORTED_NO_DATABASES)
        summary.filter_stats = exc.stats
        summary.abort_reason = str(exc)
        return _finish(summary, job, logger)
    summary.filter_stats = stats

    # -- estimating --------------------------------------------------------
    logger.debug("Run %s: %s", summary.backup_id, ESTIMATING)
    if job.disk_check or job.collect_metadata:
        summary.metadata = collect_metadata(
            engine, ds, names,
            workers=job.workers,
            query_timeout=query_timeout,
            cancel=cancel,
            logger=logger,
        )
        try:
            save_records(summary.metadata, job.output_dir, ds.host, ds.port)
        except OSError as exc:
            logger.warning("Could not update scan catalog: %s", exc)

    if job.disk_check:
        try:
            summary.admission = check_capacity(
                names, summary.metadata, job, disk_usage=disk_usage, logger=logger,
            )
        except InsufficientSpaceError as exc:
            logger.error("%s", exc)
            logger.debug("Run %s: %s", summary.backup_id, ABORTED_NO_SPACE)
            summary.admission = exc.result
            summary.abort_reason = str(exc)
            return _finish(summary, job, logger)
        except OSError as exc:
            logger.warning(
                "Cannot determine free space in %s, continuing without disk check: %s",
                job.output_dir, exc,
            )

    if job.capture_gtid:
        try:
            summary.gtid_position = engine.gtid_position(ds, timeout=query_timeout)
            logger.info("Captured GTID position: %s", summary.gtid_position)
        except (GTIDUnsupportedError, QueryError, TimeoutError) as exc:
            logger.warning("GTID capture disabled: %s", exc)

    # -- executing ---------------------------------------------------------
    logger.debug("Run %s: %s", summary.backup_id, EXECUTING)
    transforms = build_transforms(job.compression, encryption_key)
    estimates = {}
    if summary.admission is not None:
        estimates = {e.database: e.estimated_final_size for e in summary.admission.per_database}

    if job.mode == "combined":
        # Nothing excluded: let mysqldump pick up every database itself.
        dump_databases = None if stats.excluded == 0 else names
        estimated = summary.admission.estimated_total if summary.admission else 0
        units = [(names, COMBINED_PREFIX, dump_databases, estimated)]
    else:
        prefixes = unit_prefixes(names)
        units = [([name], prefixes[name], [name], estimates.get(name, 0)) for name in names]

    for databases, prefix, dump_databases, estimated in units:
        output_path = os.path.join(job.output_dir, backup_filename(prefix, timestamp, job))
        if cancel is not None and cancel.is_set():
            summary.outcomes.append(BackupUnitOutcome(
                databases=tuple(databases),
                output_path=output_path,
                status=FAILED,
                error="cancelled",
                estimated_size=estimated,
            ))
            continue
        summary.outcomes.append(_run_one_unit(
            engine, ds, databases, dump_databases, output_path,
            transforms, estimated, cancel, logger,
        ))

    return _finish(summary, job, logger)
