"""GFS (Grandfather-Father-Son) retention for local backup files.

Rules, all optional (0 = disabled):
- keep_last:    always keep the N most recent backups
- keep_daily:   keep the newest backup per day, for the last N days
- keep_weekly:  keep the newest backup per ISO week, for the last N weeks
- keep_monthly: keep the newest backup per month, for the last N months
- keep_yearly:  keep the newest backup per year, for the last N years
- max_age_days: delete backups older than N days

Backups are grouped per database (the filename prefix). Only artifacts with
a .sha256 sidecar count; failed units leave partial files without one. A
backup kept by any GFS rule is protected; max_age_days applies to everything
else. The newest backup of each database is never deleted.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from config import RetentionPolicy

log = logging.getLogger(__name__)

_BACKUP_RE = re.compile(
    r"^(?P<database>.+)-(?P<date>\d{8})-(?P<time>\d{6})(?:-(?P<micro>\d{6}))?"
    r"\.sql(\.gz|\.zlib|\.zst)?(\.enc)?$"
)

CHECKSUM_EXTENSION = ".sha256"
SIDECAR_EXTENSIONS = (CHECKSUM_EXTENSION,)


@dataclass
class BackupInfo:
    """A single backup artifact in the output directory."""

    path: str
    filename: str
    database: str
    timestamp: datetime
    size: int


def parse_backup_filename(filename: str) -> tuple[str, datetime] | None:
    """Return (database, timestamp) for 'mydb-20260210-143000-123456.sql.zst.enc', else None.

    The microsecond part is optional.
    """
    m = _BACKUP_RE.match(filename)
    if not m:
        return None
    try:
        ts = datetime.strptime(f"{m['date']}-{m['time']}", "%Y%m%d-%H%M%S")
    except ValueError:
        return None
    if m["micro"]:
        ts = ts.replace(microsecond=int(m["micro"]))
    return m["database"], ts.replace(tzinfo=timezone.utc)


def scan_backups(output_dir: str) -> dict[str, list[BackupInfo]]:
    """Group verified backup files in *output_dir* by database, oldest first."""
    grouped: dict[str, list[BackupInfo]] = {}
    if not os.path.isdir(output_dir):
        return grouped
    entries = [e for e in os.scandir(output_dir) if e.is_file()]
    present = {e.name for e in entries}
    for entry in entries:
        parsed = parse_backup_filename(entry.name)
        if parsed is None:
            continue
        if entry.name + CHECKSUM_EXTENSION not in present:
            log.debug("Ignoring %s: no checksum sidecar (incomplete backup)", entry.name)
            continue
        database, ts = parsed
        grouped.setdefault(database, []).append(
            BackupInfo(entry.path, entry.name, database, ts, entry.stat().st_size)
        )
    for backups in grouped.values():
        backups.sort(key=lambda b: b.timestamp)
    return grouped


def _bucket_key_daily(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d")


def _bucket_key_weekly(dt: datetime) -> str:
    iso = dt.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


def _bucket_key_monthly(dt: datetime) -> str:
    return dt.strftime("%Y-%m")


def _bucket_key_yearly(dt: datetime) -> str:
    return dt.strftime("%Y")


def compute_keep_set(backups: list[BackupInfo], policy: RetentionPolicy) -> set[str]:
    """Return the paths protected by the GFS rules of *policy*."""
    keep: set[str] = set()
    if not backups:
        return keep

    newest_first = sorted(backups, key=lambda b: b.timestamp, reverse=True)
    if policy.keep_last > 0:
        for b in newest_first[: policy.keep_last]:
            keep.add(b.path)

    def _apply_bucket_rule(bucket_fn, count: int) -> None:
        if count <= 0:
            return
        buckets: dict[str, BackupInfo] = {}
        for b in backups:
            bkey = bucket_fn(b.timestamp)
            if bkey not in buckets or b.timestamp > buckets[bkey].timestamp:
                buckets[bkey] = b
        for bkey in sorted(buckets, reverse=True)[:count]:
            keep.add(buckets[bkey].path)

    _apply_bucket_rule(_bucket_key_daily, policy.keep_daily)
    _apply_bucket_rule(_bucket_key_weekly, policy.keep_weekly)
    _apply_bucket_rule(_bucket_key_monthly, policy.keep_monthly)
    _apply_bucket_rule(_bucket_key_yearly, policy.keep_yearly)
    return keep


def select_expired(backups: list[BackupInfo], policy: RetentionPolicy,
                   now: datetime | None = None) -> list[BackupInfo]:
    """Return the backups of one database that the policy lets go."""
    if not backups or not policy.has_rules:
        return []
    if now is None:
        now = datetime.now(timezone.utc)

    keep = compute_keep_set(backups, policy)
    keep.add(max(backups, key=lambda b: b.timestamp).path)

    gfs_rules = any([
        policy.keep_last, policy.keep_daily, policy.keep_weekly,
        policy.keep_monthly, policy.keep_yearly,
    ])
    cutoff = now - timedelta(days=policy.max_age_days) if policy.max_age_days > 0 else None

    expired = []
    for b in backups:
        if b.path in keep:
            continue
        if gfs_rules or (cutoff is not None and b.timestamp < cutoff):
            expired.append(b)
    return expired


def _delete(path: str) -> None:
    os.remove(path)
    for ext in SIDECAR_EXTENSIONS:
        try:
            os.remove(path + ext)
        except FileNotFoundError:
            pass


def apply_retention(output_dir: str, policy: RetentionPolicy, dry_run: bool = False,
                    now: datetime | None = None,
                    logger: logging.Logger | None = None) -> list[str]:
    """Delete expired backups (and their sidecars) in *output_dir*.

    Returns the paths deleted, or that would be deleted when dry_run is set.
    """
    logger = logger or log
    if not policy.has_rules:
        logger.info("No retention policy configured, keeping all backups in %s.", output_dir)
        return []

    grouped = scan_backups(output_dir)
    if not grouped:
        logger.info("No backups found in '%s', nothing to prune.", output_dir)
        return []

    removed: list[str] = []
    for database in sorted(grouped):
        backups = grouped[database]
        expired = select_expired(backups, policy, now=now)
        logger.info(
            "Retention for '%s': %d total, %d to keep, %d to delete",
            database, len(backups), len(backups) - len(expired), len(expired),
        )
        for b in expired:
            when = b.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            if dry_run:
                logger.info("[dry-run] Would delete: %s (%s)", b.filename, when)
            else:
                logger.info("Deleting expired backup: %s (%s)", b.filename, when)
                _delete(b.path)
            removed.append(b.path)

    if removed and not dry_run:
        logger.info("Pruned %d expired backup(s).", len(removed))
    elif not removed:
        logger.info("No expired backups to prune.")
    return removed
