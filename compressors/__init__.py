"""Streaming compression writers and factory.

Every compressor wraps a binary file-like object and exposes ``write``,
``flush`` and ``close``. Closing a compressor flushes its trailer into the
wrapped object but never closes the wrapped object itself; the caller owns
the layer below.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from typing import BinaryIO

from config import ConfigError

NONE = "none"

LEVELS = ("best_speed", "fast", "default", "better", "best")

# Map of compression type names to module names within this package.
_COMPRESSOR_TYPES = {
    "gzip": "gzip_writer",
    "pgzip": "pgzip_writer",
    "zlib": "zlib_writer",
    "zstd": "zstd_writer",
}

_EXTENSIONS = {
    "gzip": ".gz",
    "pgzip": ".gz",
    "zlib": ".zlib",
    "zstd": ".zst",
}

# Expected compressed/uncompressed size of a SQL text dump, per level.
COMPRESSION_RATIOS: dict[str, dict[str, float]] = {
    "gzip": {"best_speed": 0.35, "fast": 0.33, "default": 0.30, "better": 0.27, "best": 0.25},
    "zlib": {"best_speed": 0.35, "fast": 0.33, "default": 0.30, "better": 0.27, "best": 0.25},
    "zstd": {"best_speed": 0.30, "fast": 0.28, "default": 0.25, "better": 0.21, "best": 0.18},
}
# pgzip produces ordinary gzip members, so it compresses like gzip.
COMPRESSION_RATIOS["pgzip"] = COMPRESSION_RATIOS["gzip"]


class Compressor(ABC):
    """Abstract base for compressing writers."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj
        self.closed = False

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Compress *data* into the wrapped object."""

    def flush(self) -> None:
        self._fileobj.flush()

    @abstractmethod
    def _finish(self) -> None:
        """Write any buffered data and the stream trailer."""

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._finish()
        self._fileobj.flush()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def validate_type(compression_type: str) -> str:
    ct = compression_type.lower()
    if ct != NONE and ct not in _COMPRESSOR_TYPES:
        raise ConfigError(
            f"Unsupported compression type '{compression_type}'. "
            f"Supported: {NONE}, {', '.join(_COMPRESSOR_TYPES)}"
        )
    return ct


def validate_level(level: str) -> str:
    lv = level.lower()
    if lv not in LEVELS:
        raise ConfigError(
            f"Unsupported compression level '{level}'. "
            f"Supported: {', '.join(LEVELS)}"
        )
    return lv


def file_extension(compression_type: str) -> str:
    """Return the artifact suffix for *compression_type* ('' for none)."""
    return _EXTENSIONS.get(compression_type, "")


def create_compressor(compression_type: str, level: str, fileobj: BinaryIO) -> Compressor:
    """Create a compressing writer around *fileobj*.

    The compression_type must match a key in _COMPRESSOR_TYPES (e.g. 'zstd').
    """
    if compression_type not in _COMPRESSOR_TYPES:
        raise ConfigError(
            f"Unknown compression type '{compression_type}'. "
            f"Available: {', '.join(_COMPRESSOR_TYPES)}"
        )
    validate_level(level)

    module = importlib.import_module(f".{_COMPRESSOR_TYPES[compression_type]}", package=__name__)
    return module.create(fileobj, level)
