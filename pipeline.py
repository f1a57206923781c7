"""Run one dump process into a stack of streaming writers.

The output file sits at the bottom of the stack; each transform wraps the
layer below it, and the dump's stdout is pumped into the top layer. Layers
are always closed top-down (reverse wrap order) before the file itself,
whatever happened during the run.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable

from compressors import create_compressor
from config import CompressionOptions
from crypto import EncryptingWriter

log = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024

# A transform receives the layer below and returns the writer wrapping it.
Transform = Callable[[BinaryIO], BinaryIO]


class DumpError(Exception):
    """A backup unit failed; carries the dump's stderr and exit status."""

    def __init__(self, message: str, stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


@dataclass(frozen=True)
class DumpResult:
    stderr: str
    returncode: int

    @property
    def has_warnings(self) -> bool:
        return bool(self.stderr)


def build_transforms(compression: CompressionOptions, encryption_key: str | None = None) -> list[Transform]:
    """Return the writer factories in wrap order: encryption, then compression.

    Compression therefore sees the plaintext dump and encryption sees the
    compressed bytes.
    """
    transforms: list[Transform] = []
    if encryption_key:
        transforms.append(lambda f: EncryptingWriter(f, encryption_key))
    if compression.enabled:
        transforms.append(lambda f: create_compressor(compression.type, compression.level, f))
    return transforms


def is_fatal(returncode: int, stderr: str, fatal_markers: tuple[str, ...] | list[str]) -> bool:
    """Decide whether a dump exit status plus stderr means the unit failed."""
    if returncode == 0:
        return False
    if returncode < 0 or not stderr.strip():
        return True
    lowered = stderr.lower()
    return any(marker.lower() in lowered for marker in fatal_markers)


class _Watchdog(threading.Thread):
    """Kill the dump process on cancellation or when the deadline passes."""

    def __init__(self, proc: subprocess.Popen, cancel: threading.Event | None, timeout: float | None):
        super().__init__(name="dump-watchdog", daemon=True)
        self._proc = proc
        self._cancel = cancel
        self._timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout else None
        self._stopped = threading.Event()
        self.reason = ""

    def run(self) -> None:
        while not self._stopped.wait(0.1):
            if self._cancel is not None and self._cancel.is_set():
                self.reason = "cancelled"
            elif self._deadline is not None and time.monotonic() >= self._deadline:
                self.reason = f"timed out after {self._timeout}s"
            else:
                continue
            self._proc.kill()
            return

    def stop(self) -> None:
        self._stopped.set()
        self.join()


def _drain(stream: BinaryIO, sink: bytearray) -> None:
    for chunk in iter(lambda: stream.read(4096), b""):
        sink += chunk


def _open_output(path: str) -> BinaryIO:
    try:
        # 0o600: dumps contain every row of every table.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    except OSError as exc:
        raise DumpError(f"Cannot create output file {path}: {exc}") from exc
    return os.fdopen(fd, "wb")


def _close_stack(stack: list, logger: logging.Logger) -> Exception | None:
    """Close every layer top-down, then the file. Returns the first error."""
    first_error = None
    for layer in reversed(stack):
        try:
            layer.close()
        except Exception as exc:
            logger.error("Closing %s failed: %s", type(layer).__name__, exc)
            if first_error is None:
                first_error = exc
    return first_error


def run_unit(argv: list[str], output_path: str, transforms: list[Transform], *,
             env: dict[str, str] | None = None,
             fatal_markers: tuple[str, ...] | list[str] = (),
             timeout: float | None = None,
             cancel: threading.Event | None = None,
             logger: logging.Logger | None = None) -> DumpResult:
    """Run *argv* and stream its stdout through *transforms* into *output_path*.

    Returns the dump's stderr and exit status when the unit succeeded, with
    or without warnings. Raises DumpError when it did not.
    """
    logger = logger or log
    stack: list = [_open_output(output_path)]
    stderr_buf = bytearray()
    returncode = None
    stop_reason = ""

    try:
        try:
            for wrap in transforms:
                stack.append(wrap(stack[-1]))
        except Exception as exc:
            raise DumpError(f"Cannot set up writers for {output_path}: {exc}") from exc

        try:
            proc = subprocess.Popen(
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise DumpError(f"Cannot start {argv[0]}: {exc}") from exc

        drain = threading.Thread(target=_drain, args=(proc.stderr, stderr_buf), name="dump-stderr", daemon=True)
        drain.start()
        watchdog = _Watchdog(proc, cancel, timeout)
        watchdog.start()

        top = stack[-1]
        try:
            for chunk in iter(lambda: proc.stdout.read(CHUNK_SIZE), b""):
                top.write(chunk)
        except Exception as exc:
            proc.kill()
            raise DumpError(f"Writing {output_path} failed: {exc}") from exc
        finally:
            proc.stdout.close()
            returncode = proc.wait()
            watchdog.stop()
            drain.join()
            proc.stderr.close()
            stop_reason = watchdog.reason
    finally:
        close_error = _close_stack(stack, logger)

    stderr = stderr_buf.decode("utf-8", errors="replace").strip()

    if stop_reason:
        raise DumpError(f"{argv[0]} {stop_reason}", stderr=stderr, returncode=returncode)
    if is_fatal(returncode, stderr, fatal_markers):
        detail = stderr or "no error output"
        if returncode < 0:
            detail = f"killed by signal {-returncode}; {detail}"
        raise DumpError(
            f"{argv[0]} failed (exit {returncode}): {detail}",
            stderr=stderr,
            returncode=returncode,
        )
    if close_error is not None:
        raise DumpError(f"Finalizing {output_path} failed: {close_error}") from close_error

    if stderr:
        logger.warning("%s reported warnings (exit %d): %s", argv[0], returncode, stderr)
    return DumpResult(stderr=stderr, returncode=returncode)
