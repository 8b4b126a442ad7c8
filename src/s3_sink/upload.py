# src/s3_sink/upload.py

"""
Streaming upload sink for a single S3 object.

Bytes are buffered up to one part and then streamed through a multipart
upload, so memory use is bounded by the part size rather than the object
size. The object only becomes visible when `close()` completes the upload;
an aborted or abandoned stream never leaves a partial object behind.
"""

import logging
from typing import Any

from .clients import S3Client

logger = logging.getLogger(__name__)


class S3OutputStream:
    """A write-only stream whose `close()` commits the object."""

    def __init__(
        self,
        client: S3Client,
        bucket: str,
        key: str,
        part_size: int = 5 * 1_048_576,
    ):
        self._client = client
        self._bucket = bucket
        self._key = key
        self._part_size = part_size
        self._buffer = bytearray()
        self._upload_id: str | None = None
        self._parts: list[dict[str, Any]] = []
        self._bytes_written = 0
        self._committed = False
        self._aborted = False

    @property
    def key(self) -> str:
        return self._key

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def closed(self) -> bool:
        return self._committed or self._aborted

    def write(self, data: bytes) -> int:
        """Buffers *data*. Writes after an abort are discarded."""
        if self._aborted:
            return len(data)
        if self._committed:
            raise ValueError(f"write to a committed upload stream for {self._key}")
        self._buffer += data
        self._bytes_written += len(data)
        while len(self._buffer) >= self._part_size:
            chunk = bytes(self._buffer[: self._part_size])
            del self._buffer[: self._part_size]
            self._upload_part(chunk)
        return len(data)

    def _upload_part(self, chunk: bytes) -> None:
        try:
            if self._upload_id is None:
                self._upload_id = self._client.create_multipart_upload(
                    self._bucket, self._key
                )
            part_number = len(self._parts) + 1
            etag = self._client.upload_part(
                self._bucket, self._key, self._upload_id, part_number, chunk
            )
        except Exception:
            self.abort()
            raise
        self._parts.append({"PartNumber": part_number, "ETag": etag})

    def close(self) -> None:
        """
        Commits the object. Small objects that never filled a part go up in a
        single PUT; everything else completes its multipart upload.
        """
        if self._committed:
            return
        if self._aborted:
            raise ValueError(f"cannot commit an aborted upload for {self._key}")
        if self._upload_id is None:
            try:
                self._client.put_object(self._bucket, self._key, bytes(self._buffer))
            except Exception:
                self.abort()
                raise
        else:
            if self._buffer:
                self._upload_part(bytes(self._buffer))
            try:
                self._client.complete_multipart_upload(
                    self._bucket, self._key, self._upload_id, self._parts
                )
            except Exception:
                self.abort()
                raise
        self._buffer.clear()
        self._committed = True
        logger.info(
            "Committed object",
            extra={
                "bucket": self._bucket,
                "key": self._key,
                "size": self._bytes_written,
                "parts": len(self._parts),
            },
        )

    def abort(self) -> None:
        """Discards the object. A no-op once the object is committed."""
        if self._committed or self._aborted:
            return
        self._aborted = True
        self._buffer.clear()
        if self._upload_id is None:
            return
        try:
            self._client.abort_multipart_upload(
                self._bucket, self._key, self._upload_id
            )
        except Exception as e:
            # Orphaned parts are never visible as an object.
            logger.warning(
                f"Failed to abort multipart upload: {e}",
                extra={"key": self._key, "upload_id": self._upload_id},
            )
        else:
            logger.debug(
                "Aborted multipart upload",
                extra={"key": self._key, "upload_id": self._upload_id},
            )

    def __enter__(self) -> "S3OutputStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()
