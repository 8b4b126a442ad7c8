# tests/unit/test_upload.py

"""
Unit tests for the streaming upload sink in s3_sink/upload.py, run against an
in-memory S3 fake so visibility of objects can be asserted directly.
"""

import pytest

from s3_sink.exceptions import S3ThrottlingError, S3UploadError
from s3_sink.upload import S3OutputStream

BUCKET = "test-bucket"


def test_small_object_is_put_in_one_request(s3_client, fake_s3):
    # Act
    with S3OutputStream(s3_client, BUCKET, "small.txt", part_size=1024) as stream:
        stream.write(b"hello ")
        stream.write(b"world")

    # Assert
    assert fake_s3.get("small.txt") == b"hello world"
    assert [op for op, _ in fake_s3.calls] == ["put_object"]
    assert stream.committed
    assert stream.bytes_written == 11


def test_nothing_is_visible_before_close(s3_client, fake_s3):
    stream = S3OutputStream(s3_client, BUCKET, "pending.txt", part_size=4)

    stream.write(b"0123456789")

    assert fake_s3.keys() == []
    assert len(fake_s3.uploads) == 1


def test_large_object_streams_parts(s3_client, fake_s3):
    """Full parts go up as they fill; the remainder becomes the last part."""
    # Act
    with S3OutputStream(s3_client, BUCKET, "big.bin", part_size=4) as stream:
        stream.write(b"abcdef")
        stream.write(b"ghij")

    # Assert
    assert fake_s3.get("big.bin") == b"abcdefghij"
    assert [op for op, _ in fake_s3.calls] == [
        "create_multipart_upload",
        "upload_part",
        "upload_part",
        "upload_part",
        "complete_multipart_upload",
    ]
    assert fake_s3.uploads == {}


def test_exception_in_context_aborts_multipart_upload(s3_client, fake_s3):
    with pytest.raises(RuntimeError):
        with S3OutputStream(s3_client, BUCKET, "broken.bin", part_size=4) as stream:
            stream.write(b"abcdefgh")
            raise RuntimeError("encoder failed")

    assert fake_s3.keys() == []
    assert fake_s3.aborted == ["upload-1"]
    assert not stream.committed


def test_failed_part_upload_aborts_and_propagates(s3_client, fake_s3, client_error):
    # Arrange
    fake_s3.fail("upload_part", client_error("SlowDown", "UploadPart"))
    stream = S3OutputStream(s3_client, BUCKET, "throttled.bin", part_size=4)

    # Act / Assert
    with pytest.raises(S3ThrottlingError):
        stream.write(b"abcd")
    assert fake_s3.aborted == ["upload-1"]
    assert stream.closed


def test_writes_after_abort_are_discarded(s3_client, fake_s3, client_error):
    # Arrange
    fake_s3.fail("upload_part", client_error("SlowDown", "UploadPart"))
    stream = S3OutputStream(s3_client, BUCKET, "throttled.bin", part_size=4)
    with pytest.raises(S3ThrottlingError):
        stream.write(b"abcd")
    calls = len(fake_s3.calls)

    # Act
    written = stream.write(b"more")

    # Assert
    assert written == 4
    assert len(fake_s3.calls) == calls
    assert stream.bytes_written == 4
    assert fake_s3.keys() == []


def test_write_after_commit_raises(s3_client):
    stream = S3OutputStream(s3_client, BUCKET, "done.txt")
    stream.close()

    with pytest.raises(ValueError):
        stream.write(b"late")


def test_failed_put_leaves_nothing_behind(s3_client, fake_s3, client_error):
    fake_s3.fail("put_object", client_error("InternalError"))
    stream = S3OutputStream(s3_client, BUCKET, "small.txt")
    stream.write(b"data")

    with pytest.raises(S3UploadError):
        stream.close()

    assert fake_s3.keys() == []
    assert stream.closed and not stream.committed


def test_failed_complete_aborts(s3_client, fake_s3, client_error):
    fake_s3.fail("complete_multipart_upload", client_error("InternalError"))

    with pytest.raises(S3UploadError):
        with S3OutputStream(s3_client, BUCKET, "big.bin", part_size=2) as stream:
            stream.write(b"abcd")

    assert fake_s3.keys() == []
    assert fake_s3.aborted == ["upload-1"]


def test_abort_failure_is_logged_not_raised(s3_client, fake_s3, client_error):
    fake_s3.fail("abort_multipart_upload", client_error("InternalError"))
    stream = S3OutputStream(s3_client, BUCKET, "big.bin", part_size=2)
    stream.write(b"abcd")

    stream.abort()

    assert stream.closed
    assert fake_s3.keys() == []


def test_abort_after_commit_is_a_no_op(s3_client, fake_s3):
    stream = S3OutputStream(s3_client, BUCKET, "done.txt")
    stream.write(b"data")
    stream.close()

    stream.abort()
    stream.close()

    assert fake_s3.get("done.txt") == b"data"
    assert fake_s3.aborted == []


def test_close_after_abort_raises(s3_client):
    stream = S3OutputStream(s3_client, BUCKET, "gone.txt")
    stream.abort()

    with pytest.raises(ValueError):
        stream.close()


def test_rewriting_a_key_replaces_the_object(s3_client, fake_s3):
    for payload in (b"first attempt", b"second attempt"):
        with S3OutputStream(s3_client, BUCKET, "same.txt") as stream:
            stream.write(payload)

    assert fake_s3.get("same.txt") == b"second attempt"
    assert fake_s3.keys() == ["same.txt"]


def test_empty_object_is_committed(s3_client, fake_s3):
    with S3OutputStream(s3_client, BUCKET, "empty.txt"):
        pass

    assert fake_s3.get("empty.txt") == b""
