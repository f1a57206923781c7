"""Scan catalog: the last metadata record per database, stored as JSON.

The catalog lives at <output_dir>/scans/catalog.json and is tied to the
host and port it was collected from. ``scan`` and ``backup`` merge fresh
records into it; ``scan --rescan`` re-collects the databases whose last
record carries an error; ``estimate`` reuses error-free records.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

from collector import DatabaseMetadata

log = logging.getLogger(__name__)

SCAN_DIR = "scans"
CATALOG_FILE = "catalog.json"


def catalog_path(output_dir: str) -> str:
    return os.path.join(output_dir, SCAN_DIR, CATALOG_FILE)


def _read(path: str) -> dict | None:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        log.warning("Ignoring unreadable scan catalog %s: %s", path, exc)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("databases"), dict):
        log.warning("Ignoring malformed scan catalog %s", path)
        return None
    return data


def load_records(output_dir: str, host: str | None = None,
                 port: int | None = None) -> dict[str, DatabaseMetadata]:
    """Return stored records by database name.

    A catalog collected from a different host or port yields nothing.
    Malformed records are skipped with a warning.
    """
    path = catalog_path(output_dir)
    data = _read(path)
    if data is None:
        return {}
    if (host is not None and data.get("host") != host) or (port is not None and data.get("port") != port):
        log.info(
            "Scan catalog %s belongs to %s:%s, not %s:%s; ignoring it",
            path, data.get("host"), data.get("port"), host, port,
        )
        return {}

    records = {}
    for name, raw in data["databases"].items():
        try:
            records[name] = DatabaseMetadata.from_dict(raw)
        except ValueError as exc:
            log.warning("Skipping scan record for '%s': %s", name, exc)
    return records


def save_records(records: dict[str, DatabaseMetadata], output_dir: str,
                 host: str, port: int) -> str:
    """Merge *records* into the catalog, replacing it atomically. Returns its path."""
    path = catalog_path(output_dir)
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)

    merged = load_records(output_dir, host, port)
    merged.update(records)
    payload = {
        "host": host,
        "port": port,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "databases": {name: merged[name].to_dict() for name in sorted(merged)},
    }

    fd, tmp = tempfile.mkstemp(prefix=".catalog-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    log.debug("Saved %d scan record(s) to %s", len(records), path)
    return path


def failed_names(records: dict[str, DatabaseMetadata]) -> list[str]:
    """Names whose last record carries an error, sorted."""
    return sorted(name for name, record in records.items() if record.error)
