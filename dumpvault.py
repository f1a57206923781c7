#!/usr/bin/env python3
"""dumpvault: MySQL/MariaDB backups with disk-space admission, compression and encryption.

Usage:
    dumpvault backup <job> [--prune] [--dry-run]
    dumpvault backup --all [--prune] [--dry-run]
    dumpvault scan <job> [--rescan]
    dumpvault estimate <job> [--fresh]
    dumpvault cleanup <job> [--dry-run]
    dumpvault summary <job>
    dumpvault encrypt <file> [-o <out>] [--overwrite]
    dumpvault decrypt <file> [-o <out>] [--overwrite]
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time

import config
from backup import run_backup
from capacity import InsufficientSpaceError, check_capacity
from catalog import failed_names, load_records, save_records
from collector import collect_metadata
from config import ConfigError
from crypto import FILE_EXTENSION, DecryptionError, decrypt_file, encrypt_file, resolve_encryption_key
from dbfilter import NoDatabasesError, build_filter_rule, filter_databases
from engines import QueryError, create_engine
from retention import apply_retention
from summary import RUN_SUCCESS, list_summaries
from utils import format_duration, format_size

log = logging.getLogger("dumpvault")


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _install_cancel_handlers() -> threading.Event:
    """Turn SIGINT/SIGTERM into a cancellation request for the running job."""
    cancel = threading.Event()

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        log.warning("Received %s, cancelling (repeat to abort immediately)...", signal.Signals(signum).name)
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    return cancel


def _select_databases(job: config.Job, timeout: float | None = None):
    """Return (engine, included names, filter stats) for a job."""
    engine = create_engine(job.datasource.engine)
    rule = build_filter_rule(job.filter)
    names, stats = filter_databases(engine.list_databases(job.datasource, timeout=timeout), rule)
    return engine, names, stats


def _run_single_job(name: str, raw_config: dict, prune: bool, dry_run: bool = False,
                    cancel: threading.Event | None = None) -> bool:
    """Run one backup job. Returns True when every unit succeeded."""
    job = config.get_job(raw_config, name)
    log.info("=== Job: %s ===", name)
    summary = run_backup(job, cancel=cancel)
    if summary.status != RUN_SUCCESS:
        return False
    if prune:
        apply_retention(job.output_dir, job.retention, dry_run=dry_run)
    return True


def cmd_backup(args: argparse.Namespace, raw_config: dict) -> None:
    if args.all:
        job_names = config.get_all_job_names(raw_config)
        if not job_names:
            log.error("No jobs defined in config.")
            sys.exit(1)
        log.info("Running all jobs: %s", ", ".join(job_names))
    else:
        job_names = [args.job]

    dry_run = getattr(args, "dry_run", False)
    cancel = getattr(args, "cancel", None)
    failed = []
    succeeded = []
    total_start = time.monotonic()

    for name in job_names:
        if cancel is not None and cancel.is_set():
            log.warning("Skipping job '%s': cancelled", name)
            failed.append(name)
            continue
        job_start = time.monotonic()
        try:
            ok = _run_single_job(name, raw_config, args.prune, dry_run=dry_run, cancel=cancel)
        except Exception as e:
            log.error("Job '%s' failed: %s", name, e)
            ok = False
        if ok:
            succeeded.append((name, time.monotonic() - job_start))
        else:
            failed.append(name)

    total_elapsed = time.monotonic() - total_start
    if len(job_names) > 1:
        log.info(
            "=== Summary: %d succeeded, %d failed, total time %s ===",
            len(succeeded), len(failed), format_duration(total_elapsed),
        )
        for name, elapsed in succeeded:
            log.info("  OK   %s (%s)", name, format_duration(elapsed))
        for name in failed:
            log.info("  FAIL %s", name)

    if failed:
        log.error("Failed jobs: %s", ", ".join(failed))
        sys.exit(1)


def _print_metadata(names: list[str], metadata: dict) -> None:
    print(f"{'Database':<32} {'Size':>10} {'Tables':>7} {'Procs':>6} {'Funcs':>6} {'Views':>6} {'Grants':>7}  Error")
    print("-" * 100)
    for name in names:
        m = metadata[name]
        print(
            f"{m.name:<32} {format_size(m.size_bytes):>10} {m.table_count:>7} "
            f"{m.procedure_count:>6} {m.function_count:>6} {m.view_count:>6} "
            f"{m.user_grant_count:>7}  {m.error}"
        )
    total = sum(metadata[name].size_bytes for name in names)
    errors = sum(1 for name in names if metadata[name].error)
    print(f"\nTotal: {len(names)} database(s), {format_size(total)}, {errors} with errors")


def _save_scan(records: dict, job: config.Job) -> None:
    try:
        path = save_records(records, job.output_dir, job.datasource.host, job.datasource.port)
        log.info("Scan records saved: %s", path)
    except OSError as exc:
        log.warning("Could not save scan records: %s", exc)


def cmd_scan(args: argparse.Namespace, raw_config: dict) -> None:
    job = config.get_job(raw_config, args.job)
    ds = job.datasource
    timeout = config.resolve_timeout(ds, "query_timeout")
    engine, names, _ = _select_databases(job, timeout)

    if getattr(args, "rescan", False):
        stored = load_records(job.output_dir, ds.host, ds.port)
        selected = set(names)
        names = [name for name in failed_names(stored) if name in selected]
        if not names:
            print(f"No failed scan records to rescan in '{job.output_dir}'")
            return
        log.info("Rescanning %d database(s) with errors: %s", len(names), ", ".join(names))

    metadata = collect_metadata(engine, ds, names, workers=job.workers, query_timeout=timeout)
    _save_scan(metadata, job)
    _print_metadata(names, metadata)


def cmd_estimate(args: argparse.Namespace, raw_config: dict) -> None:
    job = config.get_job(raw_config, args.job)
    ds = job.datasource
    timeout = config.resolve_timeout(ds, "query_timeout")
    engine, names, _ = _select_databases(job, timeout)

    metadata = {}
    if not getattr(args, "fresh", False):
        stored = load_records(job.output_dir, ds.host, ds.port)
        metadata = {name: stored[name] for name in names if name in stored and not stored[name].error}
        if metadata:
            log.info("Using stored scan records for %d database(s)", len(metadata))
    missing = [name for name in names if name not in metadata]
    if missing:
        collected = collect_metadata(engine, ds, missing, workers=job.workers, query_timeout=timeout)
        _save_scan(collected, job)
        metadata.update(collected)
    os.makedirs(job.output_dir, exist_ok=True)

    try:
        result = check_capacity(names, metadata, job)
        verdict = "OK"
    except InsufficientSpaceError as exc:
        result = exc.result
        verdict = f"INSUFFICIENT (short by {format_size(result.shortage)})"

    print(f"{'Database':<32} {'Size':>10} {'Dump':>10} {'Final':>10}")
    print("-" * 66)
    for e in result.per_database:
        print(
            f"{e.database:<32} {format_size(e.original_size):>10} "
            f"{format_size(e.estimated_dump_size):>10} {format_size(e.estimated_final_size):>10}"
        )
    print()
    print(f"Estimated total:      {format_size(result.estimated_total)}")
    print(f"Required with margin: {format_size(result.required_with_margin)} ({job.safety_margin_pct:g}%)")
    print(f"Available in {job.output_dir}: {format_size(result.available_free)}")
    if result.databases_without_metadata:
        print(f"Without metadata:     {result.databases_without_metadata} database(s)")
    print(f"Verdict:              {verdict}")

    if not result.sufficient:
        sys.exit(1)


def cmd_cleanup(args: argparse.Namespace, raw_config: dict) -> None:
    job = config.get_job(raw_config, args.job)
    apply_retention(job.output_dir, job.retention, dry_run=getattr(args, "dry_run", False))


def cmd_summary(args: argparse.Namespace, raw_config: dict) -> None:
    job = config.get_job(raw_config, args.job)
    summaries = list_summaries(job.output_dir)
    if not summaries:
        print(f"No run summaries found in '{job.output_dir}'")
        return

    print(f"{'Backup ID':<24} {'Status':<9} {'OK':>4} {'Fail':>5} {'Duration':>9}  Reason")
    print("-" * 80)
    for s in summaries:
        outcomes = s.get("outcomes") or []
        ok = sum(1 for o in outcomes if o.get("status") != "failed")
        print(
            f"{s.get('backup_id', '?'):<24} {s.get('status', '?'):<9} {ok:>4} "
            f"{len(outcomes) - ok:>5} {format_duration(s.get('duration_seconds') or 0):>9}  "
            f"{s.get('abort_reason', '')}"
        )
    print(f"\nTotal: {len(summaries)} run(s)")


def _check_paths(input_path: str, output_path: str, overwrite: bool) -> None:
    if not os.path.isfile(input_path):
        raise ConfigError(f"Input file '{input_path}' not found")
    if os.path.exists(output_path) and not overwrite:
        raise ConfigError(f"Output file '{output_path}' already exists (use --overwrite)")


def cmd_encrypt(args: argparse.Namespace, raw_config: dict | None = None) -> None:
    output = args.output or args.input + FILE_EXTENSION
    _check_paths(args.input, output, args.overwrite)
    key, _ = resolve_encryption_key(args.key or "")
    encrypt_file(args.input, output, key)
    print(output)


def cmd_decrypt(args: argparse.Namespace, raw_config: dict | None = None) -> None:
    if args.output:
        output = args.output
    elif args.input.endswith(FILE_EXTENSION):
        output = args.input.removesuffix(FILE_EXTENSION)
    else:
        output = args.input + ".dec"
    _check_paths(args.input, output, args.overwrite)
    key, _ = resolve_encryption_key(args.key or "")
    decrypt_file(args.input, output, key)
    print(output)


# Commands that work on files and need no config.
_STANDALONE = {"encrypt", "decrypt"}


def main() -> None:
    setup_logging()

    parser = argparse.ArgumentParser(
        prog="dumpvault",
        description="MySQL/MariaDB backups with disk-space checks, compression and encryption.",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Config file path (default: $DUMPVAULT_CONFIG or {config.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup
    p_backup = subparsers.add_parser("backup", help="Run a backup job")
    p_backup.add_argument("job", nargs="?", help="Job name from config")
    p_backup.add_argument("--all", action="store_true", help="Run all jobs")
    p_backup.add_argument("--prune", action="store_true", help="Apply retention after a successful backup")
    p_backup.add_argument("--dry-run", action="store_true",
        help="Show what prune would delete without actually deleting")

    # scan
    p_scan = subparsers.add_parser("scan", help="Show per-database metadata")
    p_scan.add_argument("job", help="Job name from config")
    p_scan.add_argument("--rescan", action="store_true",
        help="Only re-collect databases whose stored scan record has an error")

    # estimate
    p_estimate = subparsers.add_parser("estimate", help="Estimate backup size and check free space")
    p_estimate.add_argument("job", help="Job name from config")
    p_estimate.add_argument("--fresh", action="store_true",
        help="Ignore stored scan records and collect metadata again")

    # cleanup
    p_cleanup = subparsers.add_parser("cleanup", help="Apply retention policy")
    p_cleanup.add_argument("job", help="Job name from config")
    p_cleanup.add_argument("--dry-run", action="store_true",
        help="Show what would be deleted without actually deleting")

    # summary
    p_summary = subparsers.add_parser("summary", help="List stored run summaries")
    p_summary.add_argument("job", help="Job name from config")

    # encrypt / decrypt
    for name, help_text in (("encrypt", "Encrypt a file"), ("decrypt", "Decrypt a backup file")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("input", help="Input file")
        p.add_argument("-o", "--output", default=None, help="Output file")
        p.add_argument("--overwrite", action="store_true", help="Replace an existing output file")
        p.add_argument("--key", default=None,
            help="Passphrase (default: $DUMPVAULT_ENCRYPTION_KEY)")

    args = parser.parse_args()

    if args.command == "backup" and not args.all and not args.job:
        parser.error("backup requires a job name or --all")

    commands = {
        "backup": cmd_backup,
        "scan": cmd_scan,
        "estimate": cmd_estimate,
        "cleanup": cmd_cleanup,
        "summary": cmd_summary,
        "encrypt": cmd_encrypt,
        "decrypt": cmd_decrypt,
    }

    try:
        raw_config = None if args.command in _STANDALONE else config.load(args.config)
        if args.command == "backup":
            args.cancel = _install_cancel_handlers()
        commands[args.command](args, raw_config)
    except (ConfigError, DecryptionError, NoDatabasesError, QueryError, TimeoutError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
