"""gzip compressor (stdlib)."""

from __future__ import annotations

import gzip
from typing import BinaryIO

from . import Compressor

_LEVELS = {
    "best_speed": 1,
    "fast": 3,
    "default": 6,
    "better": 8,
    "best": 9,
}


class GzipCompressor(Compressor):
    def __init__(self, fileobj: BinaryIO, level: str = "default"):
        super().__init__(fileobj)
        # GzipFile.close() leaves a caller-supplied fileobj open.
        self._gz = gzip.GzipFile(fileobj=fileobj, mode="wb", compresslevel=_LEVELS[level])

    def write(self, data: bytes) -> int:
        return self._gz.write(data)

    def flush(self) -> None:
        self._gz.flush()

    def _finish(self) -> None:
        self._gz.close()


def create(fileobj: BinaryIO, level: str) -> GzipCompressor:
    return GzipCompressor(fileobj, level)
