"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import gzip
import os
from datetime import datetime, timezone
from typing import Any, Callable

import pytest
import snappy
import zstandard
from botocore.exceptions import ClientError

from s3_sink.clients import S3Client
from s3_sink.compression import CompressionType
from s3_sink.schemas import SinkRecord

BUCKET = "test-bucket"


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables Powertools reads.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "s3-sink-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "S3SinkTest")
    yield
    os.environ.clear()
    os.environ.update(original)


def _client_error(code: str, operation: str = "PutObject", message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeS3:
    """
    An in-memory stand-in for the boto3 S3 client's write path.

    Objects only appear in `objects` on put_object or complete_multipart_upload,
    mirroring S3's visibility rules. `fail(...)` makes an operation raise.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: dict[str, dict[str, Any]] = {}
        self.aborted: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.closed = False
        self._failures: list[tuple[str, Callable[[str], bool], Exception]] = []
        self._next_upload = 0

    def fail(
        self,
        operation: str,
        error: Exception,
        key: str | None = None,
        key_contains: str | None = None,
    ) -> None:
        def matches(k: str) -> bool:
            if key is not None:
                return k == key
            if key_contains is not None:
                return key_contains in k
            return True

        self._failures.append((operation, matches, error))

    def clear_failures(self) -> None:
        self._failures.clear()

    def _record(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        for failing_operation, matches, error in self._failures:
            if failing_operation == operation and matches(key):
                raise error

    def put_object(self, Bucket: str, Key: str, Body: bytes, **kwargs) -> dict:
        self._record("put_object", Key)
        self.objects[(Bucket, Key)] = bytes(Body)
        return {"ETag": '"etag"'}

    def create_multipart_upload(self, Bucket: str, Key: str, **kwargs) -> dict:
        self._record("create_multipart_upload", Key)
        self._next_upload += 1
        upload_id = f"upload-{self._next_upload}"
        self.uploads[upload_id] = {"bucket": Bucket, "key": Key, "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(
        self, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict:
        self._record("upload_part", Key)
        self.uploads[UploadId]["parts"][PartNumber] = bytes(Body)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(
        self, Bucket: str, Key: str, UploadId: str, MultipartUpload: dict
    ) -> dict:
        self._record("complete_multipart_upload", Key)
        upload = self.uploads.pop(UploadId)
        self.objects[(Bucket, Key)] = b"".join(
            upload["parts"][part["PartNumber"]] for part in MultipartUpload["Parts"]
        )
        return {}

    def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> dict:
        self._record("abort_multipart_upload", Key)
        self.uploads.pop(UploadId, None)
        self.aborted.append(UploadId)
        return {}

    def close(self) -> None:
        self.closed = True

    def get(self, key: str, bucket: str = BUCKET) -> bytes:
        return self.objects[(bucket, key)]

    def keys(self, bucket: str = BUCKET) -> list[str]:
        return sorted(k for b, k in self.objects if b == bucket)


def _decompress(data: bytes, compression: CompressionType) -> bytes:
    if compression is CompressionType.GZIP:
        return gzip.decompress(data)
    if compression is CompressionType.SNAPPY:
        return snappy.StreamDecompressor().decompress(data)
    if compression is CompressionType.ZSTD:
        return zstandard.ZstdDecompressor().decompressobj().decompress(data)
    return data


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def s3_client(fake_s3: FakeS3) -> S3Client:
    return S3Client(s3_client=fake_s3)


@pytest.fixture
def make_record() -> Callable[..., SinkRecord]:
    def _make(
        offset: int = 0,
        topic: str = "orders",
        partition: int = 0,
        key: Any = None,
        value: Any = "payload",
        timestamp: int | None = 1_700_000_000_000,
        headers: tuple = (),
    ) -> SinkRecord:
        return SinkRecord(
            topic=topic,
            partition=partition,
            offset=offset,
            key=key,
            value=value,
            timestamp=timestamp,
            headers=headers,
        )

    return _make


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    now = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)
    return lambda: now


@pytest.fixture
def base_props() -> dict[str, str]:
    return {
        "aws.s3.bucket.name": BUCKET,
        "aws.s3.region": "eu-west-1",
        "format.output.type": "jsonl",
        "format.output.fields": "key,value,offset",
        "format.output.fields.value.encoding": "none",
        "file.compression.type": "gzip",
    }


@pytest.fixture
def decompress() -> Callable[[bytes, CompressionType], bytes]:
    return _decompress


@pytest.fixture
def client_error() -> Callable[..., ClientError]:
    return _client_error
