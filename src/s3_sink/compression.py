# src/s3_sink/compression.py

"""
Compression codecs applied to an object's byte stream.

`wrap` puts a streaming compressor in front of an output sink. Bytes written
to the wrapper are compressed incrementally; `close()` writes the codec's
trailer before closing the inner sink, and `abort()` discards everything.
"""

import logging
import zlib
from enum import Enum
from typing import Protocol

import snappy
import zstandard

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...

    def abort(self) -> None: ...


class CompressionType(str, Enum):
    NONE = "none"
    GZIP = "gzip"
    SNAPPY = "snappy"
    ZSTD = "zstd"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def content_encoding(self) -> str | None:
        return _CONTENT_ENCODINGS[self]

    @classmethod
    def parse(cls, value: str) -> "CompressionType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = [c.value for c in cls]
            raise ConfigurationError(
                f"Unsupported compression type '{value}', expected one of {allowed}",
                context={"value": value},
            ) from None


_EXTENSIONS = {
    CompressionType.NONE: "",
    CompressionType.GZIP: ".gz",
    CompressionType.SNAPPY: ".snappy",
    CompressionType.ZSTD: ".zst",
}

_CONTENT_ENCODINGS = {
    CompressionType.NONE: None,
    CompressionType.GZIP: "gzip",
    CompressionType.SNAPPY: "x-snappy-framed",
    CompressionType.ZSTD: "zstd",
}


# --- Streaming compressors ---
# Each exposes compress(data) -> bytes and finish() -> bytes.


class _IdentityCompressor:
    def compress(self, data: bytes) -> bytes:
        return data

    def finish(self) -> bytes:
        return b""


class _GzipCompressor:
    def __init__(self, level: int = 6):
        # wbits=31 selects the gzip container (header + CRC32 trailer).
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, 31)

    def compress(self, data: bytes) -> bytes:
        return self._compressor.compress(data)

    def finish(self) -> bytes:
        return self._compressor.flush(zlib.Z_FINISH)


class _SnappyCompressor:
    def __init__(self):
        self._compressor = snappy.StreamCompressor()

    def compress(self, data: bytes) -> bytes:
        if not data:
            return b""
        return self._compressor.add_chunk(data)

    def finish(self) -> bytes:
        return b""


class _ZstdCompressor:
    def __init__(self, level: int = 3):
        self._compressor = zstandard.ZstdCompressor(level=level).compressobj()

    def compress(self, data: bytes) -> bytes:
        return self._compressor.compress(data)

    def finish(self) -> bytes:
        return self._compressor.flush()


_COMPRESSORS = {
    CompressionType.NONE: _IdentityCompressor,
    CompressionType.GZIP: _GzipCompressor,
    CompressionType.SNAPPY: _SnappyCompressor,
    CompressionType.ZSTD: _ZstdCompressor,
}


class CompressedStream:
    """Forwards writes through a compressor into an inner sink."""

    def __init__(self, inner: OutputSink, compression: CompressionType):
        self._inner = inner
        self._compression = compression
        self._compressor = _COMPRESSORS[compression]()
        self._closed = False
        self._aborted = False

    @property
    def compression(self) -> CompressionType:
        return self._compression

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> int:
        if self._aborted:
            return len(data)
        if self._closed:
            raise ValueError("write to a closed compressed stream")
        compressed = self._compressor.compress(data)
        if compressed:
            self._inner.write(compressed)
        return len(data)

    def close(self) -> None:
        """Write the codec trailer, then close (commit) the inner sink."""
        if self._closed:
            return
        self._closed = True
        try:
            tail = self._compressor.finish()
            if tail:
                self._inner.write(tail)
        except Exception:
            self._inner.abort()
            raise
        self._inner.close()

    def abort(self) -> None:
        """Aborts the inner sink. Later writes are discarded."""
        self._closed = True
        self._aborted = True
        self._inner.abort()

    def __enter__(self) -> "CompressedStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


def wrap(sink: OutputSink, compression: CompressionType) -> CompressedStream:
    """Wraps *sink* with the compressor for *compression*."""
    logger.debug(
        "Wrapping output sink", extra={"compression": compression.value}
    )
    return CompressedStream(sink, compression)
