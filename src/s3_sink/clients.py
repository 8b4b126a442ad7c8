# src/s3_sink/clients.py

"""
Client wrapper for the S3 operations the sink needs.

`S3Client` gives a typed interface over a raw boto3 client and maps botocore
failures onto the sink's exception hierarchy, so callers only ever see
retryable or non-retryable `S3SinkError`s. `build_s3_client` creates the one
boto3 client a task shares between all of its uploads.
"""

import logging
from typing import TYPE_CHECKING, Any, NoReturn

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import (
    S3AccessDeniedError,
    S3BucketNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
    S3UploadError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

    from .config import SinkConfig

logger = logging.getLogger(__name__)

_THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "SlowDown",
    "TooManyRequests",
}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}


class S3Client:
    """
    A wrapper for the S3 write path: single PUTs and multipart uploads.
    """

    def __init__(
        self,
        s3_client: "S3ClientType",
        timeout_seconds: float = 30,
        content_encoding: str | None = None,
    ):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            timeout_seconds: The read timeout the client was built with; only
                used to describe timeout errors.
            content_encoding: Optional Content-Encoding stored on every object.
        """
        self._client = s3_client
        self._timeout_seconds = timeout_seconds
        self._content_encoding = content_encoding

    @property
    def raw(self) -> "S3ClientType":
        return self._client

    def _extra_args(self) -> dict[str, Any]:
        if self._content_encoding:
            return {"ContentEncoding": self._content_encoding}
        return {}

    def put_object(self, bucket: str, key: str, body: bytes) -> None:
        """Uploads a whole object in one request."""
        try:
            self._client.put_object(
                Bucket=bucket, Key=key, Body=body, **self._extra_args()
            )
        except Exception as e:
            self._raise_mapped(e, "PutObject", bucket, key)
        logger.debug(
            "Upload (PUT) completed successfully",
            extra={"bucket": bucket, "key": key, "size": len(body)},
        )

    def create_multipart_upload(self, bucket: str, key: str) -> str:
        try:
            response = self._client.create_multipart_upload(
                Bucket=bucket, Key=key, **self._extra_args()
            )
        except Exception as e:
            self._raise_mapped(e, "CreateMultipartUpload", bucket, key)
        upload_id = response["UploadId"]
        logger.debug(
            "Started multipart upload",
            extra={"bucket": bucket, "key": key, "upload_id": upload_id},
        )
        return upload_id

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes
    ) -> str:
        """Uploads one part and returns its ETag."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except Exception as e:
            self._raise_mapped(
                e, "UploadPart", bucket, key, part_number=part_number
            )
        return response["ETag"]

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[dict[str, Any]]
    ) -> None:
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception as e:
            self._raise_mapped(e, "CompleteMultipartUpload", bucket, key)
        logger.debug(
            "Multipart upload completed successfully",
            extra={"bucket": bucket, "key": key, "parts": len(parts)},
        )

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except Exception as e:
            self._raise_mapped(e, "AbortMultipartUpload", bucket, key)

    def close(self) -> None:
        """Closes the connection pool of the underlying boto3 client."""
        self._client.close()

    def _raise_mapped(
        self, error: Exception, operation: str, bucket: str, key: str, **context: Any
    ) -> NoReturn:
        """Re-raises *error* as the matching S3 sink exception."""
        base_context = {"bucket": bucket, "key": key, **context}
        if isinstance(error, ClientError):
            error_code = error.response.get("Error", {}).get("Code", "Unknown")
            error_message = error.response.get("Error", {}).get("Message", str(error))
            aws_context = {
                **base_context,
                "aws_error_code": error_code,
                "aws_error_message": error_message,
            }

            # Map boto3 error codes to our specific exception types
            if error_code in ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"):
                raise S3AccessDeniedError(
                    bucket=bucket, key=key, context=aws_context
                ) from error
            elif error_code == "NoSuchBucket":
                raise S3BucketNotFoundError(bucket=bucket, context=aws_context) from error
            elif error_code in _THROTTLING_CODES:
                raise S3ThrottlingError(operation, context=aws_context) from error
            elif error_code in _TIMEOUT_CODES:
                raise S3TimeoutError(
                    operation, self._timeout_seconds, context=aws_context
                ) from error
            else:
                raise S3UploadError(
                    operation, error_message, context=aws_context
                ) from error
        if isinstance(error, (ReadTimeoutError, ConnectTimeoutError)):
            raise S3TimeoutError(
                operation,
                self._timeout_seconds,
                context={**base_context, "timeout_error": str(error)},
            ) from error
        if isinstance(error, EndpointConnectionError):
            raise S3TimeoutError(
                operation,
                self._timeout_seconds,
                error_code="S3_CONNECTION_ERROR",
                context={**base_context, "connection_error": str(error)},
            ) from error
        raise error


# --- Client construction ---


def build_session(config: "SinkConfig") -> boto3.session.Session:
    """Creates a boto3 session for the configured credential provider."""
    if config.credentials_provider == "static":
        logger.info("Using static AWS credentials")
        return boto3.session.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
        )
    if config.credentials_provider == "sts":
        logger.info(
            "Assuming role for AWS credentials",
            extra={"role_arn": config.sts_role_arn},
        )
        sts = boto3.session.Session(region_name=config.region).client("sts")
        assume_args: dict[str, Any] = {
            "RoleArn": config.sts_role_arn,
            "RoleSessionName": config.sts_session_name,
            "DurationSeconds": config.sts_session_duration_seconds,
        }
        if config.sts_external_id:
            assume_args["ExternalId"] = config.sts_external_id
        credentials = sts.assume_role(**assume_args)["Credentials"]
        return boto3.session.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=config.region,
        )
    logger.info("Using the default AWS credential chain")
    return boto3.session.Session(region_name=config.region)


def build_s3_client(config: "SinkConfig") -> S3Client:
    """
    Builds the shared S3 client. boto3 clients are thread-safe, so one client
    serves every upload of a flush cycle, parallel or not.
    """
    boto_config = BotoConfig(
        connect_timeout=config.connect_timeout_seconds,
        read_timeout=config.operation_timeout_seconds,
        retries={"max_attempts": config.max_attempts, "mode": "standard"},
        s3={"addressing_style": "path" if config.path_style_access else "auto"},
        max_pool_connections=max(10, config.flush_parallelism),
    )
    session = build_session(config)
    client = session.client(
        "s3",
        endpoint_url=config.endpoint_url,
        region_name=config.region,
        config=boto_config,
    )
    logger.info(
        "S3 client created",
        extra={
            "bucket": config.bucket_name,
            "region": config.region,
            "endpoint": config.endpoint_url,
            "path_style": config.path_style_access,
        },
    )
    return S3Client(
        client,
        timeout_seconds=config.operation_timeout_seconds,
        content_encoding=config.compression.content_encoding,
    )
