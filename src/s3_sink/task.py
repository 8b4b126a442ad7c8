# src/s3_sink/task.py

"""
The host-facing sink task.

A host pipeline drives the task through four calls:
1.  `start(props)` parses the configuration, builds the key formatter, the
    record grouper and the shared S3 client, and sets up Powertools logging
    and metrics.
2.  `put(records)` validates records and hands them to the grouper. It never
    performs I/O.
3.  `flush(offsets)` runs one all-or-nothing flush cycle. It returns the
    offsets the host may checkpoint, or raises `FlushError`, in which case
    the host must not advance its checkpoint.
4.  `stop()` releases the S3 client. It is idempotent and safe before start.
"""

import logging
from typing import Any, Callable, Iterable, Mapping

import pydantic
from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit

from . import __version__
from .clients import S3Client, build_s3_client
from .config import SinkConfig
from .core import BatchWriteSettings, FlushOrchestrator, FlushResult, FlushState
from .exceptions import ConfigurationError, FlushError, ValidationError
from .grouper import RecordGrouper, new_record_grouper
from .keys import LEGACY_GROUPING_TEMPLATE, Clock, KeyFormatter, utc_now
from .schemas import SinkRecord, to_sink_record
from .templating import Template

logger = logging.getLogger(__name__)

Offsets = Mapping[tuple[str, int], int]


class S3SinkTask:
    def __init__(
        self,
        client_factory: Callable[[SinkConfig], S3Client] = build_s3_client,
        clock: Clock = utc_now,
    ):
        self._client_factory = client_factory
        self._clock = clock
        self._config: SinkConfig | None = None
        self._s3_client: S3Client | None = None
        self._grouper: RecordGrouper | None = None
        self._orchestrator: FlushOrchestrator | None = None
        self._logger: Logger | None = None
        self._metrics: Metrics | None = None

    @property
    def config(self) -> SinkConfig | None:
        return self._config

    @property
    def state(self) -> FlushState:
        if self._orchestrator is None:
            return FlushState.IDLE
        return self._orchestrator.state

    @property
    def pending_records(self) -> int:
        return 0 if self._grouper is None else len(self._grouper)

    def version(self) -> str:
        return __version__

    def start(self, props: Mapping[str, str]) -> None:
        if props is None:
            raise ConfigurationError("props hasn't been set")
        config = SinkConfig.from_props(props)
        if self._s3_client is not None:
            # Restarting releases the previous client first.
            self.stop()

        self._logger = Logger(service=config.service_name, level=config.log_level)
        copy_config_to_registered_loggers(
            source_logger=self._logger, include={"s3_sink"}
        )
        self._metrics = Metrics(
            namespace=config.metrics_namespace, service=config.service_name
        )

        key_formatter = KeyFormatter(
            strategy=config.naming_strategy,
            compression=config.compression,
            prefix_template=config.prefix_template,
            timestamp_source=config.timestamp_source,
            tz=config.tz,
            clock=self._clock,
        )
        grouper = new_record_grouper(
            Template(config.file_name_template or LEGACY_GROUPING_TEMPLATE),
            key_formatter.context,
            config.max_records_per_file,
        )

        # The client is created last so a bad configuration never leaks one.
        s3_client = self._client_factory(config)

        self._config = config
        self._grouper = grouper
        self._s3_client = s3_client
        self._orchestrator = FlushOrchestrator(
            s3_client=s3_client,
            grouper=grouper,
            key_formatter=key_formatter,
            settings=BatchWriteSettings.from_config(config),
            parallelism=config.flush_parallelism,
        )
        self._logger.info(
            "Started S3 sink task",
            extra={
                "bucket": config.bucket_name,
                "naming_strategy": config.naming_strategy.value,
                "format": config.format_type.value,
                "compression": config.compression.value,
                "grouper": type(grouper).__name__,
            },
        )

    def put(self, records: Iterable[SinkRecord | Mapping[str, Any]]) -> None:
        """Buffers *records*. Either all of them are accepted or none is."""
        if records is None:
            raise ValueError("records cannot be null")
        self._require_started()
        try:
            parsed = [to_sink_record(record) for record in records]
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid record passed to put",
                error_code="INVALID_RECORD",
                context={"validation_errors": e.errors(include_url=False)},
            ) from e

        self._logger.debug("Processing records", extra={"records": len(parsed)})
        for record in parsed:
            self._grouper.put(record)
        if parsed:
            self._metrics.add_metric(
                name="ReceivedRecords", unit=MetricUnit.Count, value=len(parsed)
            )

    def flush(self, offsets: Offsets | None = None) -> dict[tuple[str, int], int]:
        """
        Commits every pending batch to S3.

        Returns the offsets the host may now checkpoint. Raises FlushError
        when any batch failed; pending records are then kept for the next
        attempt and the checkpoint must stay where it is.
        """
        self._require_started()
        try:
            result: FlushResult = self._orchestrator.flush()
            self._metrics.add_metric(
                name="FlushedObjects", unit=MetricUnit.Count, value=len(result.keys)
            )
            self._metrics.add_metric(
                name="FlushedRecords", unit=MetricUnit.Count, value=result.record_count
            )
        except FlushError as e:
            self._metrics.add_metric(name="FailedFlushes", unit=MetricUnit.Count, value=1)
            if e.retryable:
                self._metrics.add_metric(
                    name="RetryableFlushFailures", unit=MetricUnit.Count, value=1
                )
            self._logger.error(
                "Flush failed, offsets must not be committed",
                extra={
                    "error": e.to_dict(),
                    "retryable": e.retryable,
                    "pending_records": self.pending_records,
                },
            )
            raise
        finally:
            self._metrics.flush_metrics()

        committed = dict(offsets or {})
        self._logger.info(
            "Flush succeeded",
            extra={
                "objects": list(result.keys),
                "records": result.record_count,
                "partitions": len(committed),
            },
        )
        return committed

    def stop(self) -> None:
        """Releases the S3 client. Pending, unflushed records are dropped."""
        log = self._logger or logger
        if self._s3_client is not None:
            dropped = self.pending_records
            if dropped:
                log.warning(
                    "Stopping with unflushed records; they will be redelivered",
                    extra={"records": dropped},
                )
            try:
                self._s3_client.close()
            finally:
                self._s3_client = None
                self._orchestrator = None
                self._grouper = None
        log.info("Stop S3 Sink Task")

    def _require_started(self) -> None:
        if self._orchestrator is None:
            raise RuntimeError("S3 sink task has not been started")
