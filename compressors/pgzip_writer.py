"""Parallel gzip compressor: multi-threaded, output readable by any gunzip."""

from __future__ import annotations

import os
from typing import BinaryIO

import pgzip

from . import Compressor

_LEVELS = {
    "best_speed": 1,
    "fast": 3,
    "default": 6,
    "better": 8,
    "best": 9,
}

_BLOCK_SIZE = 1024 * 1024


class PgzipCompressor(Compressor):
    def __init__(self, fileobj: BinaryIO, level: str = "default", threads: int | None = None):
        super().__init__(fileobj)
        self._gz = pgzip.PgzipFile(
            fileobj=fileobj,
            mode="wb",
            compresslevel=_LEVELS[level],
            thread=threads or os.cpu_count() or 1,
            blocksize=_BLOCK_SIZE,
        )

    def write(self, data: bytes) -> int:
        return self._gz.write(data)

    def flush(self) -> None:
        self._gz.flush()

    def _finish(self) -> None:
        self._gz.close()


def create(fileobj: BinaryIO, level: str) -> PgzipCompressor:
    return PgzipCompressor(fileobj, level)
