"""Zstandard compressor."""

from __future__ import annotations

from typing import BinaryIO

import zstandard

from . import Compressor

_LEVELS = {
    "best_speed": 1,
    "fast": 2,
    "default": 3,
    "better": 7,
    "best": 11,
}


class ZstdCompressor(Compressor):
    def __init__(self, fileobj: BinaryIO, level: str = "default"):
        super().__init__(fileobj)
        cctx = zstandard.ZstdCompressor(level=_LEVELS[level])
        self._writer = cctx.stream_writer(fileobj, closefd=False)

    def write(self, data: bytes) -> int:
        return self._writer.write(data)

    def flush(self) -> None:
        self._writer.flush(zstandard.FLUSH_BLOCK)

    def _finish(self) -> None:
        # Ends the frame; with closefd=False the wrapped object stays open.
        self._writer.close()


def create(fileobj: BinaryIO, level: str) -> ZstdCompressor:
    return ZstdCompressor(fileobj, level)
