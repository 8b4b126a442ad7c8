# src/s3_sink/schemas.py

from typing import Any, Mapping, TypedDict

from pydantic import BaseModel, ConfigDict, Field

# --- Static Type Hinting (for mypy and IDEs) ---


class SinkHeaderDict(TypedDict):
    key: str
    value: Any


class SinkRecordDict(TypedDict, total=False):
    """
    The raw shape of a record as a host may hand it to `S3SinkTask.put`.
    Used for static type analysis only.
    """

    topic: str
    partition: int
    offset: int
    key: Any
    value: Any
    timestamp: int | None
    headers: list[SinkHeaderDict]


# --- Runtime Validation (using Pydantic) ---


class SinkHeader(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Any = None


class SinkRecord(BaseModel):
    """
    One record read from the commit log.

    Records are immutable once received; `timestamp` is epoch milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    topic: str = Field(..., min_length=1)
    partition: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)
    key: Any = None
    value: Any = None
    timestamp: int | None = None
    headers: tuple[SinkHeader, ...] = ()

    @property
    def topic_partition(self) -> tuple[str, int]:
        return self.topic, self.partition


def to_sink_record(record: "SinkRecord | Mapping[str, Any]") -> SinkRecord:
    """Accept an already-parsed record or validate a raw mapping."""
    if isinstance(record, SinkRecord):
        return record
    return SinkRecord.model_validate(record)
