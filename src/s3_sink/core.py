# src/s3_sink/core.py

"""
Core flush logic: turning buffered batches into committed S3 objects.

`write_batch` streams one batch (encode -> compress -> upload) and commits it
only if every step succeeds. `FlushOrchestrator` runs one flush cycle over
every pending batch with all-or-nothing semantics: the grouper is cleared,
and the host may checkpoint, only when every batch of the cycle committed.
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Sequence

from .clients import S3Client
from .compression import CompressionType, wrap
from .exceptions import FlushError, get_error_context
from .grouper import RecordGrouper
from .keys import KeyFormatter
from .schemas import SinkRecord
from .security import validate_object_key
from .upload import S3OutputStream
from .writers import FormatType, OutputField, OutputFieldEncoding, open_writer

if TYPE_CHECKING:
    from .config import SinkConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchWriteSettings:
    """How every batch of a cycle is encoded and where it goes."""

    bucket: str
    compression: CompressionType
    format_type: FormatType
    output_fields: tuple[OutputField, ...]
    value_encoding: OutputFieldEncoding = OutputFieldEncoding.BASE64
    part_size: int = 5 * 1_048_576

    @classmethod
    def from_config(cls, config: "SinkConfig") -> "BatchWriteSettings":
        return cls(
            bucket=config.bucket_name,
            compression=config.compression,
            format_type=config.format_type,
            output_fields=config.output_fields,
            value_encoding=config.value_encoding,
            part_size=config.part_size_bytes,
        )


def write_batch(
    s3_client: S3Client,
    key: str,
    records: Sequence[SinkRecord],
    settings: BatchWriteSettings,
) -> int:
    """
    Encodes, compresses and uploads *records* as the object *key*.

    The object is committed when this returns; if anything raises, the upload
    is aborted and nothing becomes visible. Returns the compressed size.
    """
    stream = S3OutputStream(s3_client, settings.bucket, key, settings.part_size)
    with wrap(stream, settings.compression) as compressed:
        with open_writer(
            settings.format_type,
            compressed,
            settings.output_fields,
            settings.value_encoding,
        ) as writer:
            for record in records:
                writer.write_record(record)
    return stream.bytes_written


class FlushState(str, Enum):
    IDLE = "idle"
    FLUSHING = "flushing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FlushResult:
    keys: tuple[str, ...]
    record_count: int
    bytes_written: int
    skipped_empty: int = 0


@dataclass(frozen=True, slots=True)
class _BatchOutcome:
    key: str
    record_count: int
    bytes_written: int


class FlushOrchestrator:
    """Runs flush cycles over a grouper's pending batches."""

    def __init__(
        self,
        s3_client: S3Client,
        grouper: RecordGrouper,
        key_formatter: KeyFormatter,
        settings: BatchWriteSettings,
        parallelism: int = 1,
    ):
        self._s3_client = s3_client
        self._grouper = grouper
        self._key_formatter = key_formatter
        self._settings = settings
        self._parallelism = max(1, parallelism)
        self._state = FlushState.IDLE

    @property
    def state(self) -> FlushState:
        return self._state

    def flush(self) -> FlushResult:
        """
        Uploads every non-empty pending batch.

        On success the grouper is cleared and the result is returned. On the
        first failure no further batch is started, the grouper keeps every
        batch, and a FlushError wrapping the cause is raised.
        """
        self._state = FlushState.FLUSHING
        pending = self._grouper.records()
        batches = sorted(
            ((filename, records) for filename, records in pending.items() if records),
            key=lambda batch: batch[0],
        )
        skipped = len(pending) - len(batches)
        if skipped:
            logger.debug("Skipping empty batches", extra={"count": skipped})

        logger.info(
            "Starting flush cycle",
            extra={
                "batches": len(batches),
                "records": sum(len(r) for _, r in batches),
                "parallelism": self._parallelism,
            },
        )
        try:
            if self._parallelism > 1 and len(batches) > 1:
                outcomes = self._flush_parallel(batches)
            else:
                outcomes = [self._flush_batch(f, r) for f, r in batches]
        except Exception as e:
            self._state = FlushState.FAILED
            logger.error(
                f"Flush cycle failed, keeping all batches: {e}",
                extra={"error": get_error_context(e)},
            )
            raise FlushError(e) from e

        self._grouper.clear()
        self._state = FlushState.COMMITTED
        result = FlushResult(
            keys=tuple(o.key for o in outcomes),
            record_count=sum(o.record_count for o in outcomes),
            bytes_written=sum(o.bytes_written for o in outcomes),
            skipped_empty=skipped,
        )
        logger.info(
            "Flush cycle committed",
            extra={
                "objects": len(result.keys),
                "records": result.record_count,
                "bytes": result.bytes_written,
            },
        )
        return result

    def _flush_batch(self, filename: str, records: list[SinkRecord]) -> _BatchOutcome:
        key = validate_object_key(self._key_formatter.derive(filename, records[0]))
        logger.debug(
            "Uploading batch",
            extra={"batch": filename, "key": key, "records": len(records)},
        )
        size = write_batch(self._s3_client, key, records, self._settings)
        return _BatchOutcome(key=key, record_count=len(records), bytes_written=size)

    def _flush_parallel(
        self, batches: list[tuple[str, list[SinkRecord]]]
    ) -> list[_BatchOutcome]:
        futures: list[Future] = []
        with ThreadPoolExecutor(
            max_workers=self._parallelism, thread_name_prefix="s3-sink-flush"
        ) as pool:
            for filename, records in batches:
                futures.append(pool.submit(self._flush_batch, filename, records))
            _, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            for future in not_done:
                future.cancel()
        # Leaving the pool waited for every running upload.
        for future in futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()
        return [future.result() for future in futures]
