# src/s3_sink/writers.py

"""
Record encoders for the supported output formats.

Every writer serializes exactly one record per `write_record` call straight
into its sink and finalizes any envelope in `close()`. The set of formats is
closed: `open_writer` maps a `FormatType` onto its writer class and nothing
else.
"""

import base64
import csv
import io
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence

from .exceptions import ConfigurationError, RecordEncodingError
from .schemas import SinkRecord

logger = logging.getLogger(__name__)


class ByteSink(Protocol):
    def write(self, data: bytes) -> int: ...


class FormatType(str, Enum):
    CSV = "csv"
    JSONL = "jsonl"
    JSON = "json"

    @classmethod
    def parse(cls, value: str) -> "FormatType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = [f.value for f in cls]
            raise ConfigurationError(
                f"Unsupported format type '{value}', expected one of {allowed}",
                context={"value": value},
            ) from None


class OutputField(str, Enum):
    KEY = "key"
    VALUE = "value"
    OFFSET = "offset"
    TIMESTAMP = "timestamp"
    HEADERS = "headers"


class OutputFieldEncoding(str, Enum):
    NONE = "none"
    BASE64 = "base64"

    @classmethod
    def parse(cls, value: str) -> "OutputFieldEncoding":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported value encoding '{value}'", context={"value": value}
            ) from None


def parse_output_fields(value: str | Iterable[str]) -> tuple[OutputField, ...]:
    """Parses a comma separated field list. Order is preserved."""
    names = value.split(",") if isinstance(value, str) else list(value)
    names = [n.strip().lower() for n in names if n.strip()]
    if not names:
        raise ConfigurationError("At least one output field must be selected")
    fields: list[OutputField] = []
    for name in names:
        try:
            field = OutputField(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown output field '{name}'", context={"field": name}
            ) from None
        if field in fields:
            raise ConfigurationError(
                f"Output field '{name}' is selected twice", context={"field": name}
            )
        fields.append(field)
    return tuple(fields)


# --- Field encoding helpers ---


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


class OutputWriter(ABC):
    """Base class for format writers. Use as a context manager."""

    def __init__(
        self,
        sink: ByteSink,
        fields: Sequence[OutputField],
        value_encoding: OutputFieldEncoding = OutputFieldEncoding.BASE64,
    ):
        if not fields:
            raise ConfigurationError("At least one output field must be selected")
        self._sink = sink
        self._fields = tuple(fields)
        self._value_encoding = value_encoding
        self._records_written = 0
        self._closed = False

    @property
    def records_written(self) -> int:
        return self._records_written

    def write_record(self, record: SinkRecord) -> None:
        if self._closed:
            raise ValueError("write to a closed output writer")
        try:
            payload = self._encode(record, first=self._records_written == 0)
        except RecordEncodingError:
            raise
        except (TypeError, ValueError, UnicodeDecodeError) as e:
            raise RecordEncodingError(
                record.topic, record.partition, record.offset, str(e)
            ) from e
        self._sink.write(payload)
        self._records_written += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        footer = self._footer()
        if footer:
            self._sink.write(footer)

    def __enter__(self) -> "OutputWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def _encode(self, record: SinkRecord, first: bool) -> bytes:
        pass

    def _footer(self) -> bytes:
        return b""


class PlainOutputWriter(OutputWriter):
    """Comma separated values, one line per record, no header row."""

    def _encode(self, record: SinkRecord, first: bool) -> bytes:
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerow(
            [self._column(record, field) for field in self._fields]
        )
        return buffer.getvalue().encode("utf-8")

    def _column(self, record: SinkRecord, field: OutputField) -> str:
        if field is OutputField.KEY:
            if record.key is None:
                return ""
            if isinstance(record.key, (bytes, bytearray)):
                return _b64(bytes(record.key))
            return _as_text(record.key)
        if field is OutputField.VALUE:
            if record.value is None:
                return ""
            if self._value_encoding is OutputFieldEncoding.BASE64:
                return _b64(_as_bytes(record.value))
            return _as_text(record.value)
        if field is OutputField.OFFSET:
            return str(record.offset)
        if field is OutputField.TIMESTAMP:
            return "" if record.timestamp is None else str(record.timestamp)
        # Headers: "b64(key):b64(value)" pairs joined by ';'
        return ";".join(
            f"{_b64(_as_bytes(h.key))}:{'' if h.value is None else _b64(_as_bytes(h.value))}"
            for h in record.headers
        )


class _JsonRecordWriter(OutputWriter):
    def _document(self, record: SinkRecord) -> dict[str, Any]:
        doc: dict[str, Any] = {}
        for field in self._fields:
            if field is OutputField.KEY:
                doc["key"] = self._json_value(record.key, OutputFieldEncoding.NONE)
            elif field is OutputField.VALUE:
                doc["value"] = self._json_value(record.value, self._value_encoding)
            elif field is OutputField.OFFSET:
                doc["offset"] = record.offset
            elif field is OutputField.TIMESTAMP:
                doc["timestamp"] = record.timestamp
            else:
                doc["headers"] = [
                    {
                        "key": h.key,
                        "value": self._json_value(h.value, OutputFieldEncoding.NONE),
                    }
                    for h in record.headers
                ]
        return doc

    @staticmethod
    def _json_value(value: Any, encoding: OutputFieldEncoding) -> Any:
        if value is None:
            return None
        if encoding is OutputFieldEncoding.BASE64:
            return _b64(_as_bytes(value))
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8")
        return value

    def _dumps(self, record: SinkRecord) -> str:
        return json.dumps(self._document(record), ensure_ascii=False)


class JsonLinesOutputWriter(_JsonRecordWriter):
    """One JSON object per line."""

    def _encode(self, record: SinkRecord, first: bool) -> bytes:
        return (self._dumps(record) + "\n").encode("utf-8")


class JsonOutputWriter(_JsonRecordWriter):
    """A single JSON array holding every record of the batch."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sink.write(b"[\n")

    def _encode(self, record: SinkRecord, first: bool) -> bytes:
        separator = "" if first else ",\n"
        return (separator + self._dumps(record)).encode("utf-8")

    def _footer(self) -> bytes:
        return b"\n]"


_WRITERS: dict[FormatType, type[OutputWriter]] = {
    FormatType.CSV: PlainOutputWriter,
    FormatType.JSONL: JsonLinesOutputWriter,
    FormatType.JSON: JsonOutputWriter,
}


def open_writer(
    format_type: FormatType,
    sink: ByteSink,
    fields: Sequence[OutputField],
    value_encoding: OutputFieldEncoding = OutputFieldEncoding.BASE64,
) -> OutputWriter:
    """Opens the writer for *format_type* over *sink*."""
    try:
        writer_cls = _WRITERS[format_type]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported format type {format_type!r}",
            context={"format": str(format_type)},
        ) from None
    return writer_cls(sink, fields, value_encoding)
