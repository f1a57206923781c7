"""Run summaries: per-unit outcomes, aggregated status, and the JSON audit record."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime

from capacity import AdmissionResult
from collector import DatabaseMetadata
from dbfilter import FilterStats
from utils import format_duration, format_size

log = logging.getLogger(__name__)

SUMMARY_DIR = "summaries"

# Unit statuses
SUCCESS = "success"
SUCCESS_WITH_WARNINGS = "success_with_warnings"
FAILED = "failed"

# Run statuses
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_ABORTED = "aborted"


@dataclass(frozen=True)
class BackupUnitOutcome:
    databases: tuple[str, ...]
    output_path: str
    status: str
    byte_size: int = 0
    duration: float = 0.0
    error: str = ""
    warnings: str = ""
    sha256: str = ""
    estimated_size: int = 0

    @property
    def ok(self) -> bool:
        return self.status != FAILED


@dataclass
class RunSummary:
    backup_id: str
    job: str
    mode: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str = RUN_FAILED
    abort_reason: str = ""
    filter_stats: FilterStats | None = None
    admission: AdmissionResult | None = None
    outcomes: list[BackupUnitOutcome] = field(default_factory=list)
    metadata: dict[str, DatabaseMetadata] = field(default_factory=dict)
    gtid_position: str = ""
    settings: dict = field(default_factory=dict)

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> list[BackupUnitOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[BackupUnitOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def total_bytes(self) -> int:
        return sum(o.byte_size for o in self.outcomes if o.ok)

    def finalize(self, finished_at: datetime) -> None:
        """Stamp the end time and derive the run status from the outcomes."""
        self.finished_at = finished_at
        if self.abort_reason:
            self.status = RUN_ABORTED
        elif not self.outcomes or not self.succeeded:
            self.status = RUN_FAILED
        elif self.failed:
            self.status = RUN_PARTIAL
        else:
            self.status = RUN_SUCCESS

    def to_dict(self) -> dict:
        admission = None
        if self.admission is not None:
            admission = asdict(self.admission)
            admission["shortage"] = self.admission.shortage
        return {
            "backup_id": self.backup_id,
            "job": self.job,
            "mode": self.mode,
            "status": self.status,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration, 3),
            "filter_stats": asdict(self.filter_stats) if self.filter_stats else None,
            "admission": admission,
            "outcomes": [asdict(o) for o in self.outcomes],
            "metadata": {name: meta.to_dict() for name, meta in self.metadata.items()},
            "gtid_position": self.gtid_position,
            "settings": self.settings,
        }


def save_summary(summary: RunSummary, output_dir: str) -> str:
    """Write the summary JSON under <output_dir>/summaries/. Returns its path."""
    directory = os.path.join(output_dir, SUMMARY_DIR)
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{summary.backup_id}.json")
    with open(path, "w") as f:
        json.dump(summary.to_dict(), f, indent=2, default=str)
    return path


def list_summaries(output_dir: str) -> list[dict]:
    """Load stored summaries for an output directory, newest first.

    Unreadable files are skipped with a warning.
    """
    directory = os.path.join(output_dir, SUMMARY_DIR)
    if not os.path.isdir(directory):
        return []
    summaries = []
    for filename in sorted(os.listdir(directory), reverse=True):
        if not filename.endswith(".json"):
            continue
        path = os.path.join(directory, filename)
        try:
            with open(path) as f:
                summaries.append(json.load(f))
        except (OSError, ValueError) as exc:
            log.warning("Skipping unreadable summary %s: %s", path, exc)
    summaries.sort(key=lambda s: s.get("started_at") or "", reverse=True)
    return summaries


def log_summary(summary: RunSummary, logger: logging.Logger | None = None) -> None:
    logger = logger or log
    logger.info(
        "=== Backup %s (%s): %s, %d succeeded, %d failed, %s in %s ===",
        summary.backup_id,
        summary.job,
        summary.status.upper(),
        len(summary.succeeded),
        len(summary.failed),
        format_size(summary.total_bytes),
        format_duration(summary.duration),
    )
    if summary.abort_reason:
        logger.error("Run aborted: %s", summary.abort_reason)
    for o in summary.outcomes:
        names = ", ".join(o.databases)
        if o.status == SUCCESS:
            logger.info("  OK    %s -> %s (%s)", names, o.output_path, format_size(o.byte_size))
        elif o.status == SUCCESS_WITH_WARNINGS:
            logger.info("  WARN  %s -> %s (%s)", names, o.output_path, format_size(o.byte_size))
        else:
            logger.info("  FAIL  %s: %s", names, o.error)
    if summary.gtid_position:
        logger.info("GTID position: %s", summary.gtid_position)
