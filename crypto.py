"""Passphrase-based streaming encryption for backup artifacts.

Stream layout::

    b"Salted__" | salt (16) | PBKDF2 iterations (uint32 BE)
    frame*      | length (uint32 BE) | flag (1) | AES-256-GCM ciphertext + tag

The key is PBKDF2-HMAC-SHA256(passphrase, salt, iterations). Each frame holds
at most FRAME_SIZE bytes of plaintext and is sealed with the nonce
``counter (11 bytes BE) || flag``; the last frame has flag 1, so truncating a
stream or reordering frames fails authentication.
"""

from __future__ import annotations

import logging
import os
import struct
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import ConfigError

log = logging.getLogger(__name__)

MAGIC = b"Salted__"
ENCRYPTION_KEY_ENV = "DUMPVAULT_ENCRYPTION_KEY"
FILE_EXTENSION = ".enc"

FRAME_SIZE = 64 * 1024
DEFAULT_ITERATIONS = 200_000
MAX_ITERATIONS = 10_000_000

_SALT_LEN = 16
_TAG_LEN = 16
_HEADER = struct.Struct(">I")
_FRAME_HEADER = struct.Struct(">IB")
_FLAG_MORE = 0
_FLAG_FINAL = 1
_MAX_COUNTER = 2 ** 88 - 1


class EncryptionError(Exception):
    """Raised when a stream cannot be encrypted."""


class DecryptionError(Exception):
    """Raised for a wrong passphrase, a tampered or a truncated stream."""


def resolve_encryption_key(explicit: str = "") -> tuple[str, str]:
    """Return (key, source) from an explicit value or the environment."""
    key = explicit.strip()
    if key:
        return key, "config"
    key = os.environ.get(ENCRYPTION_KEY_ENV, "").strip()
    if key:
        return key, "env"
    raise ConfigError(
        f"Encryption is enabled but no key is configured. "
        f"Set encryption.key / encryption.key_env or ${ENCRYPTION_KEY_ENV}."
    )


def _derive_key(passphrase: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


def _nonce(counter: int, flag: int) -> bytes:
    if counter > _MAX_COUNTER:
        raise EncryptionError("Stream too long: frame counter exhausted")
    return counter.to_bytes(11, "big") + bytes([flag])


class EncryptingWriter:
    """Encrypt everything written to it into *fileobj*.

    close() emits the final frame and flushes *fileobj* but does not close it.
    """

    def __init__(self, fileobj: BinaryIO, passphrase: bytes | str, iterations: int = DEFAULT_ITERATIONS):
        if isinstance(passphrase, str):
            passphrase = passphrase.encode()
        if not passphrase:
            raise EncryptionError("Encryption passphrase must not be empty")
        if not 1 <= iterations <= MAX_ITERATIONS:
            raise EncryptionError(f"iterations must be between 1 and {MAX_ITERATIONS}, got {iterations}")

        self._fileobj = fileobj
        salt = os.urandom(_SALT_LEN)
        self._aead = AESGCM(_derive_key(passphrase, salt, iterations))
        self._buffer = bytearray()
        self._counter = 0
        self.closed = False

        fileobj.write(MAGIC + salt + _HEADER.pack(iterations))

    def _emit(self, chunk: bytes, flag: int) -> None:
        sealed = self._aead.encrypt(_nonce(self._counter, flag), chunk, None)
        self._counter += 1
        self._fileobj.write(_FRAME_HEADER.pack(len(sealed), flag))
        self._fileobj.write(sealed)

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed EncryptingWriter")
        self._buffer += data
        # Keep at least one byte buffered so the final frame is never
        # confused with a full one.
        while len(self._buffer) > FRAME_SIZE:
            self._emit(bytes(self._buffer[:FRAME_SIZE]), _FLAG_MORE)
            del self._buffer[:FRAME_SIZE]
        return len(data)

    def flush(self) -> None:
        self._fileobj.flush()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._emit(bytes(self._buffer), _FLAG_FINAL)
        self._buffer.clear()
        self._fileobj.flush()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def _read_exact(src: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = src.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def decrypt_stream(src: BinaryIO, dst: BinaryIO, passphrase: bytes | str) -> int:
    """Decrypt *src* into *dst* frame by frame. Returns plaintext byte count."""
    if isinstance(passphrase, str):
        passphrase = passphrase.encode()

    header = _read_exact(src, len(MAGIC) + _SALT_LEN + _HEADER.size)
    if len(header) < len(MAGIC) or header[: len(MAGIC)] != MAGIC:
        raise DecryptionError("Not an encrypted stream (missing header)")
    if len(header) < len(MAGIC) + _SALT_LEN + _HEADER.size:
        raise DecryptionError("Truncated stream header")

    salt = header[len(MAGIC): len(MAGIC) + _SALT_LEN]
    (iterations,) = _HEADER.unpack(header[len(MAGIC) + _SALT_LEN:])
    if not 1 <= iterations <= MAX_ITERATIONS:
        raise DecryptionError(f"Unsupported key derivation iteration count {iterations}")
    aead = AESGCM(_derive_key(passphrase, salt, iterations))

    counter = 0
    total = 0
    while True:
        frame_header = _read_exact(src, _FRAME_HEADER.size)
        if len(frame_header) < _FRAME_HEADER.size:
            raise DecryptionError("Truncated stream: final frame missing")
        length, flag = _FRAME_HEADER.unpack(frame_header)
        if flag not in (_FLAG_MORE, _FLAG_FINAL) or length < _TAG_LEN or length > FRAME_SIZE + _TAG_LEN:
            raise DecryptionError(f"Corrupt frame header at frame {counter}")
        sealed = _read_exact(src, length)
        if len(sealed) < length:
            raise DecryptionError(f"Truncated stream inside frame {counter}")
        try:
            plain = aead.decrypt(_nonce(counter, flag), sealed, None)
        except InvalidTag:
            raise DecryptionError(
                "Decryption failed: wrong passphrase or corrupted data"
            ) from None
        dst.write(plain)
        total += len(plain)
        counter += 1
        if flag == _FLAG_FINAL:
            break

    if src.read(1):
        raise DecryptionError("Unexpected data after final frame")
    return total


def is_encrypted(path: str) -> bool:
    """Return True if *path* starts with the encrypted-stream magic."""
    with open(path, "rb") as f:
        header = f.read(len(MAGIC))
    return len(header) == len(MAGIC) and header == MAGIC


def _open_private(path: str) -> BinaryIO:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    return os.fdopen(fd, "wb")


def encrypt_file(input_path: str, output_path: str, passphrase: str, iterations: int = DEFAULT_ITERATIONS) -> None:
    """Encrypt a file in streaming fashion."""
    with open(input_path, "rb") as src, _open_private(output_path) as dst:
        with EncryptingWriter(dst, passphrase, iterations=iterations) as writer:
            for chunk in iter(lambda: src.read(FRAME_SIZE), b""):
                writer.write(chunk)
    log.info("Encrypted %s -> %s", input_path, output_path)


def decrypt_file(input_path: str, output_path: str, passphrase: str) -> None:
    """Decrypt a file in streaming fashion; removes the partial output on failure."""
    if not is_encrypted(input_path):
        raise DecryptionError(f"{input_path} is not an encrypted backup")
    with open(input_path, "rb") as src:
        try:
            with _open_private(output_path) as dst:
                decrypt_stream(src, dst, passphrase)
        except DecryptionError:
            os.unlink(output_path)
            raise
    log.info("Decrypted %s -> %s", input_path, output_path)
