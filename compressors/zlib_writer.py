"""zlib-format compressor (stdlib)."""

from __future__ import annotations

import zlib
from typing import BinaryIO

from . import Compressor

_LEVELS = {
    "best_speed": 1,
    "fast": 3,
    "default": 6,
    "better": 8,
    "best": 9,
}


class ZlibCompressor(Compressor):
    def __init__(self, fileobj: BinaryIO, level: str = "default"):
        super().__init__(fileobj)
        self._compressor = zlib.compressobj(_LEVELS[level])

    def write(self, data: bytes) -> int:
        out = self._compressor.compress(data)
        if out:
            self._fileobj.write(out)
        return len(data)

    def flush(self) -> None:
        self._fileobj.write(self._compressor.flush(zlib.Z_SYNC_FLUSH))
        self._fileobj.flush()

    def _finish(self) -> None:
        self._fileobj.write(self._compressor.flush(zlib.Z_FINISH))


def create(fileobj: BinaryIO, level: str) -> ZlibCompressor:
    return ZlibCompressor(fileobj, level)
