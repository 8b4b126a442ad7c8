# src/s3_sink/keys.py

"""
Object key derivation.

Two naming strategies exist:

* templated: the grouper renders ``file.name.template`` with a batch's first
  record and that filename is the key, verbatim.
* legacy: ``{prefix}{topic}-{partition}-{offset:020d}{extension}``, where the
  prefix is the rendered ``aws.s3.prefix`` template.

Variables are formatted by plain functions of a `KeyContext` and the
placeholder's optional parameter. The context carries a single clock reading
taken when the key is rendered, so ``utc_date``, ``local_date`` and wall-clock
``timestamp`` reflect flush time, not ingestion time. A retried flush can
therefore derive a different legacy key when the prefix uses those variables.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, Collection, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .compression import CompressionType
from .exceptions import ConfigurationError, TemplateError
from .schemas import SinkRecord
from .templating import Parameter, Template

logger = logging.getLogger(__name__)

OFFSET_WIDTH = 20
LEGACY_GROUPING_TEMPLATE = "{{topic}}-{{partition}}-{{start_offset}}"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampSource(str, Enum):
    WALLCLOCK = "wallclock"
    EVENT = "event"

    @classmethod
    def parse(cls, value: str) -> "TimestampSource":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported timestamp source '{value}'", context={"value": value}
            ) from None


class NamingStrategy(str, Enum):
    TEMPLATED = "templated"
    LEGACY = "legacy"


def parse_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(
            f"Unknown timezone '{name}'", context={"value": name}
        ) from None


@dataclass(frozen=True, slots=True)
class KeyContext:
    """Everything a variable formatter may look at."""

    record: SinkRecord
    now: datetime
    timestamp_source: TimestampSource = TimestampSource.WALLCLOCK
    tz: tzinfo = timezone.utc

    def timestamp(self) -> datetime:
        if (
            self.timestamp_source is TimestampSource.EVENT
            and self.record.timestamp is not None
        ):
            return datetime.fromtimestamp(self.record.timestamp / 1000, tz=self.tz)
        return self.now.astimezone(self.tz)


# --- Variable formatters ---


def format_offset(offset: int, parameter: Parameter | None) -> str:
    if parameter is not None and parameter.as_bool():
        return f"{offset:0{OFFSET_WIDTH}d}"
    return str(offset)


_TIMESTAMP_UNITS = {"yyyy": "%Y", "MM": "%m", "dd": "%d", "HH": "%H"}


def _topic(ctx: KeyContext, _: Parameter | None) -> str:
    return ctx.record.topic


def _partition(ctx: KeyContext, _: Parameter | None) -> str:
    return str(ctx.record.partition)


def _start_offset(ctx: KeyContext, parameter: Parameter | None) -> str:
    return format_offset(ctx.record.offset, parameter)


def _timestamp(ctx: KeyContext, parameter: Parameter | None) -> str:
    if parameter is None or parameter.value not in _TIMESTAMP_UNITS:
        raise TemplateError("timestamp requires a unit parameter")
    return ctx.timestamp().strftime(_TIMESTAMP_UNITS[parameter.value])


def _utc_date(ctx: KeyContext, _: Parameter | None) -> str:
    return ctx.now.astimezone(timezone.utc).date().isoformat()


def _local_date(ctx: KeyContext, _: Parameter | None) -> str:
    return ctx.now.astimezone().date().isoformat()


def _key(ctx: KeyContext, _: Parameter | None) -> str:
    key = ctx.record.key
    if key is None:
        return "null"
    if isinstance(key, (bytes, bytearray)):
        try:
            return bytes(key).decode("utf-8")
        except UnicodeDecodeError:
            # Non-UTF-8 keys render as url-safe base64
            return base64.urlsafe_b64encode(bytes(key)).decode("ascii")
    return str(key)


VariableFormatter = Callable[[KeyContext, Parameter | None], str]

VARIABLE_FORMATTERS: Mapping[str, VariableFormatter] = {
    "topic": _topic,
    "partition": _partition,
    "start_offset": _start_offset,
    "timestamp": _timestamp,
    "utc_date": _utc_date,
    "local_date": _local_date,
    "key": _key,
}

# Allowed parameter name -> allowed values, and whether it is mandatory.
_VARIABLE_PARAMETERS: Mapping[str, tuple[str, frozenset[str], bool]] = {
    "start_offset": ("padding", frozenset({"true", "false"}), False),
    "timestamp": ("unit", frozenset(_TIMESTAMP_UNITS), True),
}

LEGACY_PREFIX_VARIABLES = frozenset(
    {"timestamp", "partition", "start_offset", "topic", "utc_date", "local_date"}
)


def validate_template(template: Template, allowed: Collection[str]) -> None:
    """
    Checks variable names and parameters up front, so rendering can never
    fail per record.
    """
    for variable in template.variables():
        if variable.name not in allowed:
            raise TemplateError(
                f"Unsupported variable '{variable.name}', "
                f"supported are {sorted(allowed)}",
                template=template.source,
            )
        spec = _VARIABLE_PARAMETERS.get(variable.name)
        parameter = variable.parameter
        if spec is None:
            if parameter is not None:
                raise TemplateError(
                    f"Variable '{variable.name}' takes no parameters",
                    template=template.source,
                )
            continue
        name, values, required = spec
        if parameter is None:
            if required:
                raise TemplateError(
                    f"Variable '{variable.name}' requires parameter '{name}'",
                    template=template.source,
                )
            continue
        if parameter.name != name or parameter.value not in values:
            raise TemplateError(
                f"Invalid parameter '{parameter.name}={parameter.value}' "
                f"for variable '{variable.name}', expected {name} in {sorted(values)}",
                template=template.source,
            )


def render(template: Template, ctx: KeyContext) -> str:
    bindings = {
        name: (lambda parameter, fmt=fmt: fmt(ctx, parameter))
        for name, fmt in VARIABLE_FORMATTERS.items()
    }
    return template.render(bindings)


class KeyFormatter:
    """Derives the object key for a batch."""

    def __init__(
        self,
        strategy: NamingStrategy,
        compression: CompressionType,
        prefix_template: Template | None = None,
        timestamp_source: TimestampSource = TimestampSource.WALLCLOCK,
        tz: tzinfo = timezone.utc,
        clock: Clock = utc_now,
    ):
        self._strategy = strategy
        self._compression = compression
        self._prefix = prefix_template or Template("")
        self._timestamp_source = timestamp_source
        self._tz = tz
        self._clock = clock
        if strategy is NamingStrategy.LEGACY:
            validate_template(self._prefix, LEGACY_PREFIX_VARIABLES)

    @property
    def strategy(self) -> NamingStrategy:
        return self._strategy

    def context(self, record: SinkRecord) -> KeyContext:
        return KeyContext(
            record=record,
            now=self._clock(),
            timestamp_source=self._timestamp_source,
            tz=self._tz,
        )

    def derive(self, filename: str, head_record: SinkRecord) -> str:
        if self._strategy is NamingStrategy.TEMPLATED:
            return filename
        return self.legacy_key(head_record)

    def legacy_key(self, record: SinkRecord) -> str:
        prefix = render(self._prefix, self.context(record))
        offset = format_offset(record.offset, Parameter("padding", "true"))
        return (
            f"{prefix}{record.topic}-{record.partition}-{offset}"
            f"{self._compression.extension}"
        )
