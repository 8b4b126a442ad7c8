# src/s3_sink/exceptions.py

"""
Shared custom exceptions for the S3 sink.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- S3SinkError (base)
  - RetryableError (the host may re-run the flush cycle)
    - S3ThrottlingError
    - S3TimeoutError
    - S3UploadError
  - NonRetryableError (retrying the same cycle will fail again)
    - ConfigurationError
      - TemplateError
    - ValidationError
      - InvalidObjectKeyError
    - RecordEncodingError
    - S3AccessDeniedError
    - S3BucketNotFoundError
  - FlushError (wraps the first failure of a flush cycle)
"""

from typing import Any, Dict, Optional


class S3SinkError(Exception):
    """Base exception for all S3 sink errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableError)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": self.retryable,
        }


class RetryableError(S3SinkError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(S3SinkError):
    """Base class for errors that should not be retried."""

    pass


# === S3-Related Errors ===


class S3Error(S3SinkError):
    """Base class for S3-related errors."""

    pass


class S3AccessDeniedError(S3Error, NonRetryableError):
    """Raised when access is denied to a bucket or object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", {}))
        super().__init__(
            message, error_code="S3_ACCESS_DENIED", context=context, **kwargs
        )


class S3BucketNotFoundError(S3Error, NonRetryableError):
    """Raised when the target bucket does not exist."""

    def __init__(self, bucket: str, **kwargs):
        message = f"S3 bucket not found: s3://{bucket}"
        context = {"bucket": bucket}
        context.update(kwargs.pop("context", {}))
        super().__init__(
            message, error_code="S3_BUCKET_NOT_FOUND", context=context, **kwargs
        )


class S3ThrottlingError(S3Error, RetryableError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", {}))
        super().__init__(message, error_code="S3_THROTTLING", context=context, **kwargs)


class S3TimeoutError(S3Error, RetryableError):
    """Raised when S3 operations time out or the endpoint is unreachable."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs):
        message = f"S3 operation timed out after {timeout_seconds}s: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation, "timeout_seconds": timeout_seconds})
        kwargs.setdefault("error_code", "S3_TIMEOUT")
        super().__init__(message, context=context, **kwargs)


class S3UploadError(S3Error, RetryableError):
    """Raised for any other failure while streaming an object to S3."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"S3 {operation} failed: {reason}"
        context = {"operation": operation, "reason": reason}
        context.update(kwargs.pop("context", {}))
        if "error_code" not in kwargs:
            kwargs["error_code"] = "S3_UPLOAD_FAILED"
        super().__init__(message, context=context, **kwargs)


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the sink configuration."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "CONFIGURATION_ERROR"
        super().__init__(message, **kwargs)


class TemplateError(ConfigurationError):
    """Raised when a key template uses unknown variables or parameters."""

    def __init__(self, message: str, template: Optional[str] = None, **kwargs):
        context = {"template": template}
        context.update(kwargs.pop("context", {}))
        super().__init__(
            message, error_code="INVALID_TEMPLATE", context=context, **kwargs
        )


# === Validation & Encoding Errors ===


class ValidationError(NonRetryableError):
    """Base class for validation errors."""

    pass


class InvalidObjectKeyError(ValidationError):
    """Raised when a derived object key is unsafe to upload under."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_OBJECT_KEY"
        super().__init__(message, **kwargs)


class RecordEncodingError(NonRetryableError):
    """Raised when a record cannot be serialized in the configured format."""

    def __init__(self, topic: str, partition: int, offset: int, reason: str, **kwargs):
        message = f"Cannot encode record {topic}-{partition}@{offset}: {reason}"
        context = {
            "topic": topic,
            "partition": partition,
            "offset": offset,
            "reason": reason,
        }
        super().__init__(
            message, error_code="RECORD_ENCODING_FAILED", context=context, **kwargs
        )


# === Flush Errors ===


class FlushError(S3SinkError):
    """
    Raised when a flush cycle fails. Nothing in the cycle may be checkpointed.

    The retryable flag mirrors the underlying cause, so the host can tell a
    throttled upload from a record that will never encode.
    """

    def __init__(self, cause: BaseException, **kwargs):
        message = f"Flush cycle failed: {cause}"
        self.cause = cause
        context = {"cause": get_error_context(cause)}
        context.update(kwargs.pop("context", {}))
        super().__init__(message, error_code="FLUSH_FAILED", context=context, **kwargs)

    @property
    def retryable(self) -> bool:
        return is_retryable_error(self.cause)


# === Utility Functions ===


def is_retryable_error(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, S3SinkError):
        return error.retryable
    return False


def get_error_context(error: BaseException) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, S3SinkError):
        return error.to_dict()
    return {
        "error_type": error.__class__.__name__,
        "message": str(error),
        "retryable": False,  # Unknown errors default to non-retryable
    }
