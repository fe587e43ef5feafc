"""
Decompressor: compressed snapshot file -> decompressed byte stream.

In-process decoding uses the standard library codecs. When more than one
decompression thread is requested and a parallel decoder binary is on PATH
(pigz, pbzip2, xz -T, zstd -T), decoding runs in a subprocess and the
pipeline reads its stdout. Both paths produce identical bytes.

Every read error is surfaced as CorruptInputError; a run never treats the
output of a failed decode as valid.
"""

import bz2
import gzip
import logging
import lzma
import shutil
import subprocess
import tempfile
import zlib
from pathlib import Path

from errors import CorruptInputError

log = logging.getLogger(__name__)

MAGIC_BYTES = [
    (b"\x1f\x8b", "gzip"),
    (b"BZh", "bz2"),
    (b"\xfd7zXZ\x00", "xz"),
    (b"\x28\xb5\x2f\xfd", "zstd"),
]

SUFFIXES = {
    ".gz": "gzip",
    ".gzip": "gzip",
    ".bz2": "bz2",
    ".xz": "xz",
    ".zst": "zstd",
    ".zstd": "zstd",
}

# codec -> (binary, argv builder)
PARALLEL_DECODERS = {
    "gzip": ("pigz", lambda n: ["pigz", "-dc", "-p", str(n)]),
    "bz2": ("pbzip2", lambda n: ["pbzip2", "-dc", f"-p{n}"]),
    "xz": ("xz", lambda n: ["xz", "-dc", f"-T{n}"]),
    "zstd": ("zstd", lambda n: ["zstd", "-dc", f"-T{n}"]),
}

IN_PROCESS_OPENERS = {
    "gzip": gzip.open,
    "bz2": bz2.open,
    "xz": lzma.open,
    "none": open,
}

DECODE_ERRORS = (EOFError, zlib.error, lzma.LZMAError, OSError, ValueError)


def sniff_compression(path) -> str | None:
    """Identify the codec from the file's magic bytes (None if unknown)."""
    with open(path, "rb") as f:
        head = f.read(8)
    for magic, codec in MAGIC_BYTES:
        if head.startswith(magic):
            return codec
    return None


def resolve_compression(path, compression: str) -> str:
    """Turn 'auto' into a concrete codec and check it against the file."""
    path = Path(path)
    sniffed = sniff_compression(path) if path.stat().st_size else None

    if compression == "auto":
        codec = SUFFIXES.get(path.suffix.lower())
        if codec is None:
            codec = sniffed or "none"
    else:
        codec = compression

    if codec != "none" and path.stat().st_size and sniffed != codec:
        raise CorruptInputError(
            str(path), f"expected {codec} data, found {sniffed or 'unknown'} header")
    return codec


class DecompressedStream:
    """Binary read-only stream that converts decode failures to CorruptInputError."""

    def __init__(self, raw, path, proc=None, stderr=None):
        self._raw = raw
        self._proc = proc
        self._stderr = stderr
        self.path = str(path)
        self.bytes_read = 0
        self._eof = False

    def _check_proc(self):
        if self._proc is None:
            return
        code = self._proc.wait()
        if code != 0:
            self._stderr.seek(0)
            message = self._stderr.read().decode("utf-8", "replace").strip()
            raise CorruptInputError(self.path, f"decoder exited {code}: {message}")

    def _guard(self, fn, *args) -> bytes:
        try:
            data = fn(*args)
        except CorruptInputError:
            raise
        except DECODE_ERRORS as e:
            raise CorruptInputError(self.path, f"{type(e).__name__}: {e}") from e
        if not data and not self._eof:
            self._eof = True
            self._check_proc()
        self.bytes_read += len(data)
        return data

    def read(self, size: int = -1) -> bytes:
        return self._guard(self._raw.read, size)

    def readline(self, size: int = -1) -> bytes:
        return self._guard(self._raw.readline, size)

    def close(self):
        if self._proc is not None and self._proc.poll() is None:
            self._proc.kill()
            self._proc.wait()
        self._raw.close()
        if self._stderr is not None:
            self._stderr.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def _open_subprocess(path, codec, threads) -> DecompressedStream | None:
    binary, argv = PARALLEL_DECODERS[codec]
    if shutil.which(binary) is None:
        return None
    stderr = tempfile.TemporaryFile()
    f = open(path, "rb")
    try:
        proc = subprocess.Popen(argv(threads), stdin=f, stdout=subprocess.PIPE,
                                stderr=stderr)
    finally:
        f.close()  # the child holds its own descriptor
    log.info(f"decompressing {Path(path).name} with {binary} ({threads} threads)")
    return DecompressedStream(proc.stdout, path, proc=proc, stderr=stderr)


def open_decompressed(path, compression: str = "auto", threads: int = 0) -> DecompressedStream:
    """Open a compressed snapshot for sequential reading of decompressed bytes.

    threads > 1 asks for block-parallel decoding; it silently falls back to
    the in-process decoder when no parallel binary is available.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"input not found: {path}")

    codec = resolve_compression(path, compression)

    if codec != "none" and (threads > 1 or codec == "zstd"):
        stream = _open_subprocess(path, codec, max(threads, 1))
        if stream is not None:
            return stream
        if codec == "zstd":
            raise CorruptInputError(str(path), "zstd input needs the zstd binary on PATH")
        log.info(f"no parallel decoder for {codec} on PATH, decoding in-process")

    try:
        raw = IN_PROCESS_OPENERS[codec](path, "rb")
    except DECODE_ERRORS as e:
        raise CorruptInputError(str(path), f"{type(e).__name__}: {e}") from e
    return DecompressedStream(raw, path)
