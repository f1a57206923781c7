"""Pre-flight disk-space admission control from per-database size estimates."""

from __future__ import annotations

import logging
import math
import shutil
from dataclasses import dataclass, field
from typing import Callable

from collector import DatabaseMetadata
from compressors import COMPRESSION_RATIOS, NONE
from config import Job
from utils import format_size

log = logging.getLogger(__name__)

# mysqldump text is larger than InnoDB's on-disk footprint.
SQL_DUMP_MULTIPLIER = 1.35
ENCRYPTION_OVERHEAD = 1.02
COMBINED_OVERHEAD = 1.01
DEFAULT_COMPRESSION_RATIO = 0.5


@dataclass(frozen=True)
class SizeEstimate:
    database: str
    original_size: int
    estimated_dump_size: int
    estimated_final_size: int
    compression_ratio: float
    compression_enabled: bool
    encryption_enabled: bool


@dataclass
class AdmissionResult:
    output_dir: str
    estimated_total: int = 0
    required_with_margin: int = 0
    available_free: int = 0
    sufficient: bool = False
    per_database: list[SizeEstimate] = field(default_factory=list)
    databases_without_metadata: int = 0

    @property
    def shortage(self) -> int:
        return max(0, self.required_with_margin - self.available_free)


class InsufficientSpaceError(Exception):
    """Raised when the output filesystem cannot hold the estimated backup."""

    def __init__(self, result: AdmissionResult):
        self.result = result
        super().__init__(
            f"Insufficient disk space in {result.output_dir}: "
            f"need {format_size(result.required_with_margin)}, "
            f"have {format_size(result.available_free)} "
            f"(short by {format_size(result.shortage)})"
        )


def compression_ratio(compression_type: str, level: str) -> float:
    """Return the expected size ratio for a type/level pair."""
    if compression_type == NONE:
        return 1.0
    ratios = COMPRESSION_RATIOS.get(compression_type)
    if ratios is None:
        return DEFAULT_COMPRESSION_RATIO
    return ratios.get(level, ratios.get("default", DEFAULT_COMPRESSION_RATIO))


def estimate_size(database: str, original_size: int, compression_type: str = NONE,
                  level: str = "default", encryption: bool = False) -> SizeEstimate:
    """Estimate the on-disk artifact size for one database. Rounds up at every stage."""
    dump_size = math.ceil(original_size * SQL_DUMP_MULTIPLIER)
    compressed = compression_type != NONE
    ratio = compression_ratio(compression_type, level)

    final_size = dump_size
    if compressed:
        final_size = math.ceil(final_size * ratio)
    if encryption:
        final_size = math.ceil(final_size * ENCRYPTION_OVERHEAD)

    return SizeEstimate(
        database=database,
        original_size=original_size,
        estimated_dump_size=dump_size,
        estimated_final_size=max(0, final_size),
        compression_ratio=ratio,
        compression_enabled=compressed,
        encryption_enabled=encryption,
    )


def estimate(names: list[str], metadata: dict[str, DatabaseMetadata], job: Job,
             logger: logging.Logger | None = None) -> AdmissionResult:
    """Build the estimate part of an AdmissionResult (free space not yet queried)."""
    logger = logger or log
    if not names:
        raise ValueError("No databases to estimate")

    result = AdmissionResult(output_dir=job.output_dir)
    total = 0
    for name in names:
        meta = metadata.get(name)
        if meta is None or meta.size_bytes <= 0:
            result.databases_without_metadata += 1
            logger.debug("No size metadata for '%s', skipping in estimate", name)
            continue
        est = estimate_size(
            name,
            meta.size_bytes,
            compression_type=job.compression.type,
            level=job.compression.level,
            encryption=job.encryption.enabled,
        )
        result.per_database.append(est)
        total += est.estimated_final_size

    if job.mode == "combined" and len(result.per_database) > 1:
        total = math.ceil(total * COMBINED_OVERHEAD)

    result.estimated_total = total
    result.required_with_margin = math.ceil(total * (1 + job.safety_margin_pct / 100))
    return result


def check_capacity(names: list[str], metadata: dict[str, DatabaseMetadata], job: Job, *,
                   disk_usage: Callable = shutil.disk_usage,
                   logger: logging.Logger | None = None) -> AdmissionResult:
    """Compare the estimated backup size against free space in job.output_dir.

    Raises InsufficientSpaceError when the space is not there. OSError from
    the free-space query propagates.
    """
    logger = logger or log
    result = estimate(names, metadata, job, logger=logger)

    usage = disk_usage(job.output_dir)
    result.available_free = usage.free
    result.sufficient = result.available_free >= result.required_with_margin

    logger.info(
        "Disk check for %s: estimated %s, required with %.0f%% margin %s, free %s",
        job.output_dir,
        format_size(result.estimated_total),
        job.safety_margin_pct,
        format_size(result.required_with_margin),
        format_size(result.available_free),
    )
    if result.databases_without_metadata:
        logger.warning(
            "%d database(s) have no size metadata and are not counted in the estimate",
            result.databases_without_metadata,
        )

    if not result.sufficient:
        raise InsufficientSpaceError(result)
    return result
