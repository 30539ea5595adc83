"""Streaming compression/encryption pipeline and its inverse

Backup direction:  raw dump -> compress(algorithm, level) -> [encrypt(key)] -> artifact bytes
Restore direction: artifact bytes -> [decrypt(key)] -> decompress(algorithm) -> raw dump

The decompression algorithm always comes from the artifact's extension, never
from sniffing its content.

Encrypted stream layout::

    MAGIC (8 bytes) | salt (16 bytes) | frame* | terminator

    frame      = length (4 bytes, big endian) | Fernet token
    terminator = length 0

The Fernet key is derived from the key file passphrase and the per-artifact
salt with PBKDF2-HMAC-SHA256. Every frame is authenticated; the terminator
makes a truncated stream detectable.
"""

import base64
import gzip
import io
import logging
import lzma
import os
import shutil
import stat
import struct
import subprocess
import threading
import zlib
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import BinaryIO

import zstandard
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import ConfigurationError, DecryptionError, InsecureKeyPermissions, PipelineError

logger = logging.getLogger("Pipeline")

COPY_CHUNK = 1024 * 1024
FRAME_SIZE = 1024 * 1024
MAGIC = b"DBTENC1\n"
SALT_SIZE = 16
KDF_ITERATIONS = 200_000
_FRAME_HEADER = struct.Struct(">I")

ENCRYPTED_SUFFIX = ".enc"
ALGORITHM_EXTENSIONS = {"gzip": "gz", "pigz": "gz", "zstd": "zst", "xz": "xz"}
SUFFIX_ALGORITHMS = {".gz": "gzip", ".zst": "zstd", ".xz": "xz"}

DUMP_MARKERS = (b"-- MySQL dump", b"-- MariaDB dump")
VALIDATION_LINES = 50

DECODE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    zstandard.ZstdError,
)


def artifact_extension(algorithm: str, encrypted: bool, kind: str = "sql") -> str:
    """Extension for a pipeline artifact, e.g. 'sql.zst' or 'binlog.gz.enc'"""
    try:
        ext = f"{kind}.{ALGORITHM_EXTENSIONS[algorithm]}"
    except KeyError:
        raise ConfigurationError(f"Unknown compression algorithm: {algorithm}") from None
    return f"{ext}{ENCRYPTED_SUFFIX}" if encrypted else ext


def codec_for_artifact(path: Path | str) -> tuple[str, bool]:
    """Return (decompression algorithm, encrypted) recorded in an artifact's name"""
    name = Path(path).name
    encrypted = name.endswith(ENCRYPTED_SUFFIX)
    if encrypted:
        name = name[: -len(ENCRYPTED_SUFFIX)]
    suffix = Path(name).suffix
    if suffix not in SUFFIX_ALGORITHMS:
        raise PipelineError(f"Cannot determine compression of '{Path(path).name}' from its extension")
    return SUFFIX_ALGORITHMS[suffix], encrypted


def check_key_permissions(key_file: Path) -> None:
    """Refuse key files that group or others can access"""
    try:
        st = key_file.stat()
    except FileNotFoundError:
        raise ConfigurationError(f"Encryption key file not found: {key_file}") from None

    perms = stat.S_IMODE(st.st_mode)
    if perms & 0o077:
        raise InsecureKeyPermissions(
            f"SECURITY: Encryption key permissions are {perms:o} (must be 600 or stricter). "
            f"Fix with: chmod 600 {key_file}"
        )

    if hasattr(os, "geteuid") and os.geteuid() != 0 and st.st_uid not in (os.geteuid(), 0):
        logger.warning(f"Encryption key owned by uid {st.st_uid} (expected {os.geteuid()} or root)")


def derive_fernet_key(passphrase: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
    return base64.urlsafe_b64encode(kdf.derive(passphrase))


class EncryptingWriter(io.RawIOBase):
    """Write-only stream that frames and encrypts everything written to it.

    Closing writes the pending frame and the terminator; the wrapped stream is
    flushed but left open.
    """

    def __init__(self, raw: BinaryIO, passphrase: bytes, frame_size: int = FRAME_SIZE):
        super().__init__()
        self._raw = raw
        self._frame_size = frame_size
        salt = os.urandom(SALT_SIZE)
        self._fernet = Fernet(derive_fernet_key(passphrase, salt))
        self._buffer = bytearray()
        raw.write(MAGIC + salt)

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("write to closed EncryptingWriter")
        data = bytes(b)
        self._buffer.extend(data)
        while len(self._buffer) >= self._frame_size:
            self._emit(bytes(self._buffer[: self._frame_size]))
            del self._buffer[: self._frame_size]
        return len(data)

    def _emit(self, chunk: bytes) -> None:
        token = self._fernet.encrypt(chunk)
        self._raw.write(_FRAME_HEADER.pack(len(token)))
        self._raw.write(token)

    def close(self) -> None:
        if self.closed:
            return
        if self._buffer:
            self._emit(bytes(self._buffer))
            self._buffer.clear()
        self._raw.write(_FRAME_HEADER.pack(0))
        self._raw.flush()
        super().close()


class DecryptingReader(io.RawIOBase):
    """Read-only stream that authenticates and decrypts an encrypted artifact"""

    def __init__(self, raw: BinaryIO, passphrase: bytes):
        super().__init__()
        self._raw = raw
        header = self._read_exact(len(MAGIC) + SALT_SIZE)
        if len(header) < len(MAGIC) + SALT_SIZE or not header.startswith(MAGIC):
            raise DecryptionError("Not an encrypted dbtools artifact (bad header)")
        self._fernet = Fernet(derive_fernet_key(passphrase, header[len(MAGIC) :]))
        self._pending = b""
        self._finished = False

    def readable(self) -> bool:
        return True

    def _read_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self._raw.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _next_frame(self) -> None:
        header = self._read_exact(_FRAME_HEADER.size)
        if len(header) < _FRAME_HEADER.size:
            raise DecryptionError("Encrypted stream is truncated (missing terminator)")
        (length,) = _FRAME_HEADER.unpack(header)
        if length == 0:
            self._finished = True
            return
        token = self._read_exact(length)
        if len(token) < length:
            raise DecryptionError("Encrypted stream is truncated (partial frame)")
        try:
            self._pending = self._fernet.decrypt(token)
        except InvalidToken:
            raise DecryptionError("Decryption failed: wrong key or tampered artifact") from None

    def readinto(self, b) -> int:
        while not self._pending and not self._finished:
            self._next_frame()
        if not self._pending:
            return 0
        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class PigzWriter(io.RawIOBase):
    """Parallel gzip through the pigz binary; output is plain gzip format"""

    def __init__(self, raw: BinaryIO, pigz: str, level: int, threads: int):
        super().__init__()
        self._raw = raw
        self._error: BaseException | None = None
        self._proc = subprocess.Popen(
            [pigz, f"-{level}", "-n", "-c", "-p", str(threads)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
        )
        self._pump = threading.Thread(target=self._copy_out, name="pigz-pump", daemon=True)
        self._pump.start()

    def _copy_out(self) -> None:
        assert self._proc.stdout is not None
        try:
            for chunk in iter(lambda: self._proc.stdout.read(COPY_CHUNK), b""):
                self._raw.write(chunk)
        except BaseException as e:  # surfaced from close()
            self._error = e

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        assert self._proc.stdin is not None
        data = bytes(b)
        try:
            self._proc.stdin.write(data)
        except BrokenPipeError as e:
            raise PipelineError("pigz exited while compressing") from e
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        assert self._proc.stdin is not None
        try:
            self._proc.stdin.close()
        finally:
            self._pump.join()
            returncode = self._proc.wait()
            super().close()
        if self._error is not None:
            raise PipelineError(f"pigz output could not be written: {self._error}") from self._error
        if returncode != 0:
            raise PipelineError(f"pigz failed with exit code {returncode}")


def _open_compressor(sink: BinaryIO, algorithm: str, level: int, threads: int) -> BinaryIO:
    if algorithm == "pigz":
        pigz = shutil.which("pigz")
        if pigz:
            return PigzWriter(sink, pigz, level, threads)  # type: ignore[return-value]
        logger.debug("pigz not found, compressing with in-process gzip")
        algorithm = "gzip"

    if algorithm == "gzip":
        return gzip.GzipFile(filename="", mode="wb", compresslevel=max(1, min(level, 9)), fileobj=sink, mtime=0)  # type: ignore[return-value]
    if algorithm == "xz":
        return lzma.LZMAFile(sink, mode="wb", preset=max(0, min(level, 9)))  # type: ignore[return-value]
    if algorithm == "zstd":
        return zstandard.ZstdCompressor(level=level).stream_writer(sink, closefd=False)  # type: ignore[return-value]
    raise ConfigurationError(f"Unknown compression algorithm: {algorithm}")


def _open_decompressor(source: BinaryIO, algorithm: str) -> BinaryIO:
    if algorithm in ("gzip", "pigz"):
        return gzip.GzipFile(filename="", mode="rb", fileobj=source)  # type: ignore[return-value]
    if algorithm == "xz":
        return lzma.LZMAFile(source, mode="rb")  # type: ignore[return-value]
    if algorithm == "zstd":
        return zstandard.ZstdDecompressor().stream_reader(source, read_across_frames=True, closefd=False)  # type: ignore[return-value]
    raise ConfigurationError(f"Unknown compression algorithm: {algorithm}")


@contextmanager
def open_encoder(
    dst: BinaryIO,
    algorithm: str,
    level: int = 6,
    passphrase: bytes | None = None,
    threads: int | None = None,
) -> Iterator[BinaryIO]:
    """Writable stream that compresses (then encrypts, with a passphrase) into dst"""
    with ExitStack() as stack:
        sink: BinaryIO = dst
        if passphrase is not None:
            encryptor = EncryptingWriter(dst, passphrase)
            stack.callback(encryptor.close)
            sink = encryptor  # type: ignore[assignment]
        compressor = _open_compressor(sink, algorithm, level, threads or os.cpu_count() or 1)
        stack.callback(compressor.close)
        yield compressor


@contextmanager
def open_decoder(src: BinaryIO, algorithm: str, passphrase: bytes | None = None) -> Iterator[BinaryIO]:
    """Readable stream that decrypts (with a passphrase) then decompresses src"""
    source: BinaryIO = src
    if passphrase is not None:
        source = io.BufferedReader(DecryptingReader(src, passphrase), COPY_CHUNK)  # type: ignore[assignment]
    reader = _open_decompressor(source, algorithm)
    try:
        yield reader
    finally:
        reader.close()


def encode_bytes(data: bytes, algorithm: str, level: int = 6, passphrase: bytes | None = None) -> bytes:
    buffer = io.BytesIO()
    with open_encoder(buffer, algorithm, level, passphrase) as writer:
        writer.write(data)
    return buffer.getvalue()


def decode_bytes(data: bytes, algorithm: str, passphrase: bytes | None = None) -> bytes:
    with open_decoder(io.BytesIO(data), algorithm, passphrase) as reader:
        return reader.read()


def iter_chunks(stream: BinaryIO, size: int = COPY_CHUNK) -> Iterator[bytes]:
    while True:
        chunk = stream.read(size)
        if not chunk:
            return
        yield chunk


def iter_lines(stream: BinaryIO, size: int = COPY_CHUNK) -> Iterator[bytes]:
    """Yield lines (with their newline) from a binary stream of any kind"""
    pending: list[bytes] = []
    for chunk in iter_chunks(stream, size):
        pieces = chunk.split(b"\n")
        if len(pieces) == 1:
            pending.append(chunk)
            continue
        pending.append(pieces[0])
        yield b"".join(pending) + b"\n"
        for line in pieces[1:-1]:
            yield line + b"\n"
        pending = [pieces[-1]] if pieces[-1] else []
    if pending:
        yield b"".join(pending)


class StreamPipeline:
    """Pipeline settings for one invocation: algorithm, level and key file"""

    def __init__(
        self,
        algorithm: str = "pigz",
        level: int = 6,
        encrypt: bool = False,
        key_file: Path | None = None,
        threads: int | None = None,
    ):
        self.algorithm = algorithm
        self.level = level
        self.encrypt = encrypt
        self.key_file = key_file
        self.threads = threads
        if encrypt and key_file is None:
            raise ConfigurationError("Encryption enabled but no key file configured")

    @classmethod
    def from_config(cls, config) -> "StreamPipeline":
        return cls(
            algorithm=config.compression_algorithm,
            level=config.compression_level,
            encrypt=config.encryption_enabled,
            key_file=config.key_file,
        )

    def extension(self, kind: str = "sql") -> str:
        return artifact_extension(self.algorithm, self.encrypt, kind)

    def passphrase(self) -> bytes:
        """Validate the key file permissions and read the passphrase"""
        if self.key_file is None:
            raise ConfigurationError("No encryption key file configured (encryption.key_file)")
        check_key_permissions(self.key_file)
        passphrase = self.key_file.read_bytes().strip()
        if not passphrase:
            raise ConfigurationError(f"Encryption key file is empty: {self.key_file}")
        return passphrase

    @contextmanager
    def encoder(self, dst: BinaryIO) -> Iterator[BinaryIO]:
        passphrase = self.passphrase() if self.encrypt else None
        with open_encoder(dst, self.algorithm, self.level, passphrase, self.threads) as writer:
            yield writer

    @contextmanager
    def encrypted_writer(self, dst: BinaryIO) -> Iterator[BinaryIO]:
        """Encryption layer alone, for payloads that are already packaged"""
        writer = EncryptingWriter(dst, self.passphrase())
        try:
            yield writer  # type: ignore[misc]
        finally:
            writer.close()

    @contextmanager
    def decrypted_reader(self, path: Path) -> Iterator[BinaryIO]:
        with open(path, "rb") as raw:
            reader = io.BufferedReader(DecryptingReader(raw, self.passphrase()), COPY_CHUNK)
            yield reader  # type: ignore[misc]

    @contextmanager
    def decoder(self, path: Path) -> Iterator[BinaryIO]:
        """Open an artifact for reading through the inverse pipeline"""
        algorithm, encrypted = codec_for_artifact(path)
        passphrase = self.passphrase() if encrypted else None
        with open(path, "rb") as raw, open_decoder(raw, algorithm, passphrase) as reader:
            yield reader

    def check_integrity(self, path: Path) -> None:
        """Decode the whole artifact, raising PipelineError if it is corrupt"""
        try:
            with self.decoder(path) as reader:
                for _ in iter_chunks(reader):
                    pass
        except PipelineError:
            raise
        except DECODE_ERRORS as e:
            raise PipelineError(f"Backup file appears corrupt: {path.name} ({e})") from e

    def validate_dump(self, path: Path, max_lines: int = VALIDATION_LINES) -> bool:
        """True if the decoded artifact starts with a mysqldump/mariadb-dump header"""
        try:
            with self.decoder(path) as reader:
                for number, line in enumerate(iter_lines(reader, 64 * 1024)):
                    if number >= max_lines:
                        break
                    if line.startswith(DUMP_MARKERS):
                        return True
        except PipelineError as e:
            logger.warning(f"Validation could not decode {path.name}: {e}")
        except DECODE_ERRORS as e:
            logger.warning(f"Validation could not decode {path.name}: {e}")
        return False
