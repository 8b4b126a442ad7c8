# tests/unit/test_exceptions.py

import json

import pytest

from s3_sink.exceptions import (
    ConfigurationError,
    FlushError,
    InvalidObjectKeyError,
    NonRetryableError,
    RecordEncodingError,
    RetryableError,
    S3AccessDeniedError,
    S3BucketNotFoundError,
    S3Error,
    S3SinkError,
    S3ThrottlingError,
    S3TimeoutError,
    S3UploadError,
    TemplateError,
    ValidationError,
    get_error_context,
    is_retryable_error,
)


class TestS3SinkError:
    """Test the base S3SinkError class."""

    def test_basic_initialization(self):
        error = S3SinkError("Test message")
        assert str(error) == "Test message"
        assert error.message == "Test message"
        assert error.error_code == "S3SinkError"
        assert error.context == {}
        assert error.correlation_id is None

    def test_to_dict(self):
        """Test conversion to dictionary."""
        error = S3SinkError(
            "Test message",
            error_code="TEST_CODE",
            context={"key": "value"},
            correlation_id="test-123",
        )
        assert error.to_dict() == {
            "error_type": "S3SinkError",
            "error_code": "TEST_CODE",
            "message": "Test message",
            "context": {"key": "value"},
            "correlation_id": "test-123",
            "retryable": False,
        }

    def test_to_dict_is_json_serializable(self):
        error = S3TimeoutError("PutObject", 30.0, context={"bucket": "b"})
        assert json.loads(json.dumps(error.to_dict()))["context"]["bucket"] == "b"


class TestS3Errors:
    """Test S3-related error classes."""

    def test_s3_access_denied_error(self):
        error = S3AccessDeniedError("test-bucket", "test-key")
        assert "s3://test-bucket/test-key" in str(error)
        assert error.error_code == "S3_ACCESS_DENIED"
        assert error.context == {"bucket": "test-bucket", "key": "test-key"}
        assert isinstance(error, NonRetryableError)
        assert isinstance(error, S3Error)

    def test_s3_bucket_not_found_error(self):
        error = S3BucketNotFoundError("missing", context={"region": "eu-west-1"})
        assert error.error_code == "S3_BUCKET_NOT_FOUND"
        assert error.context == {"bucket": "missing", "region": "eu-west-1"}
        assert not error.retryable

    def test_s3_throttling_error(self):
        error = S3ThrottlingError("UploadPart")
        assert "throttled" in str(error)
        assert error.error_code == "S3_THROTTLING"
        assert error.context["operation"] == "UploadPart"
        assert isinstance(error, RetryableError)
        assert error.retryable

    def test_s3_timeout_error(self):
        error = S3TimeoutError("PutObject", 30.0)
        assert "30.0s" in str(error)
        assert error.error_code == "S3_TIMEOUT"
        assert error.context["timeout_seconds"] == 30.0
        assert error.retryable

    def test_s3_timeout_error_custom_code(self):
        error = S3TimeoutError("PutObject", 5, error_code="S3_CONNECTION_ERROR")
        assert error.error_code == "S3_CONNECTION_ERROR"

    def test_s3_upload_error(self):
        error = S3UploadError("CompleteMultipartUpload", "InternalError")
        assert str(error) == "S3 CompleteMultipartUpload failed: InternalError"
        assert error.error_code == "S3_UPLOAD_FAILED"
        assert error.retryable


class TestConfigurationAndValidationErrors:
    def test_configuration_error(self):
        error = ConfigurationError("bad value")
        assert error.error_code == "CONFIGURATION_ERROR"
        assert not error.retryable

    def test_template_error_is_a_configuration_error(self):
        error = TemplateError("Unsupported variable", template="{{nope}}")
        assert isinstance(error, ConfigurationError)
        assert error.error_code == "INVALID_TEMPLATE"
        assert error.context["template"] == "{{nope}}"

    def test_invalid_object_key_error(self):
        error = InvalidObjectKeyError("bad key", context={"key": "../x"})
        assert isinstance(error, ValidationError)
        assert error.error_code == "INVALID_OBJECT_KEY"

    def test_record_encoding_error(self):
        error = RecordEncodingError("orders", 1, 42, "invalid utf-8")
        assert str(error) == "Cannot encode record orders-1@42: invalid utf-8"
        assert error.context["offset"] == 42
        assert not error.retryable


class TestFlushError:
    def test_wraps_cause(self):
        cause = S3ThrottlingError("PutObject")
        error = FlushError(cause)
        assert error.cause is cause
        assert error.error_code == "FLUSH_FAILED"
        assert error.context["cause"]["error_code"] == "S3_THROTTLING"

    @pytest.mark.parametrize(
        "cause, retryable",
        [
            (S3ThrottlingError("PutObject"), True),
            (S3UploadError("UploadPart", "boom"), True),
            (RecordEncodingError("t", 0, 0, "bad"), False),
            (InvalidObjectKeyError("bad key"), False),
            (RuntimeError("unexpected"), False),
        ],
    )
    def test_retryable_mirrors_cause(self, cause, retryable):
        error = FlushError(cause)
        assert error.retryable is retryable
        assert error.to_dict()["retryable"] is retryable


class TestUtilityFunctions:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (S3ThrottlingError("PutObject"), True),
            (S3TimeoutError("PutObject", 30), True),
            (S3AccessDeniedError("b", "k"), False),
            (ConfigurationError("x"), False),
            (ValueError("x"), False),
        ],
    )
    def test_is_retryable_error(self, error, expected):
        assert is_retryable_error(error) is expected

    def test_get_error_context_for_sink_error(self):
        error = S3ThrottlingError("PutObject")
        assert get_error_context(error) == error.to_dict()

    def test_get_error_context_for_other_error(self):
        assert get_error_context(ValueError("Standard error")) == {
            "error_type": "ValueError",
            "message": "Standard error",
            "retryable": False,
        }
