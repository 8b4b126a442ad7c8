import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from functools import lru_cache
from typing import Mapping

from .compression import CompressionType
from .exceptions import ConfigurationError
from .keys import (
    LEGACY_PREFIX_VARIABLES,
    NamingStrategy,
    TimestampSource,
    parse_timezone,
    validate_template,
)
from .templating import Template
from .writers import (
    FormatType,
    OutputField,
    OutputFieldEncoding,
    parse_output_fields,
)

logger = logging.getLogger(__name__)

MIN_PART_SIZE_BYTES = 5 * 1_048_576  # S3 minimum for every part but the last

CREDENTIAL_PROVIDERS = ("default", "static", "sts")

# Every property the sink understands. load_from_env() maps each one to an
# environment variable by upper-casing it and replacing dots with underscores.
PROPERTIES = (
    "aws.s3.bucket.name",
    "aws.s3.region",
    "aws.s3.endpoint",
    "aws.s3.path.style.access.enabled",
    "aws.s3.prefix",
    "aws.access.key.id",
    "aws.secret.access.key",
    "aws.credentials.provider",
    "aws.sts.role.arn",
    "aws.sts.role.session.name",
    "aws.sts.role.external.id",
    "aws.sts.role.session.duration",
    "aws.s3.part.size.bytes",
    "aws.s3.connect.timeout.seconds",
    "aws.s3.operation.timeout.seconds",
    "aws.s3.max.attempts",
    "file.name.template",
    "file.compression.type",
    "file.max.records",
    "format.output.type",
    "format.output.fields",
    "format.output.fields.value.encoding",
    "timestamp.source",
    "timestamp.timezone",
    "flush.parallelism",
    "service.name",
    "log.level",
    "metrics.namespace",
)


def _env_name(prop: str) -> str:
    return prop.upper().replace(".", "_")


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"'{value}' is not a boolean")


@dataclass(frozen=True, slots=True)
class SinkConfig:
    """Sink configuration, parsed and validated once at start."""

    # --- Storage ---
    bucket_name: str
    region: str
    endpoint_url: str | None
    path_style_access: bool
    prefix: str

    # --- Credentials ---
    credentials_provider: str
    access_key_id: str | None
    secret_access_key: str | None
    sts_role_arn: str | None
    sts_session_name: str
    sts_external_id: str | None
    sts_session_duration_seconds: int

    # --- Upload ---
    part_size_bytes: int
    connect_timeout_seconds: int
    operation_timeout_seconds: int
    max_attempts: int

    # --- Files ---
    file_name_template: str | None
    compression: CompressionType
    max_records_per_file: int
    format_type: FormatType
    output_fields: tuple[OutputField, ...]
    value_encoding: OutputFieldEncoding
    timestamp_source: TimestampSource
    timestamp_timezone: str
    flush_parallelism: int

    # --- Observability ---
    service_name: str
    log_level: str
    metrics_namespace: str

    # --- Derived Properties ---
    @property
    def naming_strategy(self) -> NamingStrategy:
        if self.file_name_template:
            return NamingStrategy.TEMPLATED
        return NamingStrategy.LEGACY

    @property
    def prefix_template(self) -> Template:
        return Template(self.prefix)

    @property
    def tz(self) -> tzinfo:
        return parse_timezone(self.timestamp_timezone)

    @classmethod
    def from_props(cls, props: Mapping[str, str]) -> "SinkConfig":
        """
        Builds a configuration from a property map, performing validation and
        type casting. Fails fast with a ConfigurationError if anything is invalid.
        """
        unknown = sorted(set(props) - set(PROPERTIES))
        if unknown:
            logger.warning("Ignoring unknown properties", extra={"unknown": unknown})

        def get(name: str, default: str | None = None) -> str | None:
            value = props.get(name)
            if value is None or str(value).strip() == "":
                return default
            return str(value).strip()

        try:
            # --- Handle required variables ---
            bucket_name = props["aws.s3.bucket.name"].strip()
            if not bucket_name:
                raise ValueError("aws.s3.bucket.name must not be empty.")

            # --- Storage ---
            region = get("aws.s3.region", "us-east-1")
            endpoint_url = get("aws.s3.endpoint")
            path_style_access = _parse_bool(
                get(
                    "aws.s3.path.style.access.enabled",
                    "true" if endpoint_url else "false",
                )
            )
            prefix = props.get("aws.s3.prefix") or ""

            # --- Credentials ---
            access_key_id = get("aws.access.key.id")
            secret_access_key = get("aws.secret.access.key")
            sts_role_arn = get("aws.sts.role.arn")
            default_provider = "default"
            if sts_role_arn:
                default_provider = "sts"
            elif access_key_id:
                default_provider = "static"
            credentials_provider = get(
                "aws.credentials.provider", default_provider
            ).lower()
            if credentials_provider not in CREDENTIAL_PROVIDERS:
                raise ValueError(
                    f"aws.credentials.provider must be one of "
                    f"{list(CREDENTIAL_PROVIDERS)}, not '{credentials_provider}'"
                )
            if credentials_provider == "static" and not (
                access_key_id and secret_access_key
            ):
                raise ValueError(
                    "Static credentials need aws.access.key.id and aws.secret.access.key."
                )
            if credentials_provider == "sts" and not sts_role_arn:
                raise ValueError("STS credentials need aws.sts.role.arn.")
            sts_session_duration_seconds = int(
                get("aws.sts.role.session.duration", "3600")
            )
            if not 900 <= sts_session_duration_seconds <= 43200:
                raise ValueError(
                    "aws.sts.role.session.duration must be between 900 and 43200."
                )

            # --- Upload ---
            part_size_bytes = int(
                get("aws.s3.part.size.bytes", str(MIN_PART_SIZE_BYTES))
            )
            if part_size_bytes < MIN_PART_SIZE_BYTES:
                raise ValueError(
                    f"aws.s3.part.size.bytes must be at least {MIN_PART_SIZE_BYTES}."
                )
            connect_timeout_seconds = int(get("aws.s3.connect.timeout.seconds", "10"))
            if connect_timeout_seconds <= 0:
                raise ValueError(
                    "aws.s3.connect.timeout.seconds must be a positive integer."
                )
            operation_timeout_seconds = int(
                get("aws.s3.operation.timeout.seconds", "30")
            )
            if operation_timeout_seconds <= 0:
                raise ValueError(
                    "aws.s3.operation.timeout.seconds must be a positive integer."
                )
            max_attempts = int(get("aws.s3.max.attempts", "1"))
            if max_attempts < 1:
                raise ValueError("aws.s3.max.attempts must be at least 1.")

            # --- Files ---
            file_name_template = get("file.name.template")
            if file_name_template:
                Template(file_name_template)
            else:
                validate_template(Template(prefix), LEGACY_PREFIX_VARIABLES)
            compression = CompressionType.parse(get("file.compression.type", "gzip"))
            max_records_per_file = int(get("file.max.records", "0"))
            if max_records_per_file < 0:
                raise ValueError("file.max.records must be a non-negative integer.")
            format_type = FormatType.parse(get("format.output.type", "csv"))
            output_fields = parse_output_fields(get("format.output.fields", "value"))
            value_encoding = OutputFieldEncoding.parse(
                get("format.output.fields.value.encoding", "base64")
            )
            timestamp_source = TimestampSource.parse(
                get("timestamp.source", "wallclock")
            )
            timestamp_timezone = get("timestamp.timezone", "UTC")
            parse_timezone(timestamp_timezone)
            flush_parallelism = int(get("flush.parallelism", "1"))
            if flush_parallelism < 1:
                raise ValueError("flush.parallelism must be at least 1.")

            # --- Observability ---
            service_name = get("service.name", "s3-sink")
            metrics_namespace = get("metrics.namespace", "S3Sink")
            log_level = get("log.level", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"log.level must be one of {allowed_log_levels}, not '{log_level}'"
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required property: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid value for a property: {e}") from e

        return cls(
            bucket_name=bucket_name,
            region=region,
            endpoint_url=endpoint_url,
            path_style_access=path_style_access,
            prefix=prefix,
            credentials_provider=credentials_provider,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            sts_role_arn=sts_role_arn,
            sts_session_name=get("aws.sts.role.session.name", "s3-sink"),
            sts_external_id=get("aws.sts.role.external.id"),
            sts_session_duration_seconds=sts_session_duration_seconds,
            part_size_bytes=part_size_bytes,
            connect_timeout_seconds=connect_timeout_seconds,
            operation_timeout_seconds=operation_timeout_seconds,
            max_attempts=max_attempts,
            file_name_template=file_name_template,
            compression=compression,
            max_records_per_file=max_records_per_file,
            format_type=format_type,
            output_fields=output_fields,
            value_encoding=value_encoding,
            timestamp_source=timestamp_source,
            timestamp_timezone=timestamp_timezone,
            flush_parallelism=flush_parallelism,
            service_name=service_name,
            log_level=log_level,
            metrics_namespace=metrics_namespace,
        )

    @classmethod
    def load_from_env(cls) -> "SinkConfig":
        """Reads every known property from its environment variable."""
        props = {
            prop: os.environ[_env_name(prop)]
            for prop in PROPERTIES
            if _env_name(prop) in os.environ
        }
        return cls.from_props(props)


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> SinkConfig:
    """
    Loads the sink configuration from environment variables.
    The result is cached, so the environment is only read once.
    """
    logger.info("Loading sink configuration from environment...")
    return SinkConfig.load_from_env()
