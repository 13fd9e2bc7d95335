import errno

import pytest

from kindle_transcript.errors import (
    EmptyResponse,
    ModelRefusal,
    TranscriptionFatal,
    error_status,
    is_retryable_error,
)


class FakeAPIError(Exception):
    def __init__(self, message="api error", status_code=None, body=None, code=None, type=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.code = code
        self.type = type


class APIConnectionError(Exception):
    pass


@pytest.mark.parametrize(
    "exc",
    [
        FakeAPIError(status_code=429),
        FakeAPIError(status_code=503),
        FakeAPIError(status_code=500),
        FakeAPIError(code="ECONNRESET"),
        FakeAPIError(code="ENOTFOUND"),
        ConnectionResetError(errno.ECONNRESET, "reset by peer"),
        TimeoutError("read timed out"),
        APIConnectionError("connection error"),
        EmptyResponse("empty response"),
        ModelRefusal("I'm sorry"),
    ],
)
def test_retryable_errors(exc):
    assert is_retryable_error(exc) is True


@pytest.mark.parametrize(
    "exc",
    [
        FakeAPIError(status_code=400, body={"error": {"type": "invalid_request_error"}}),
        FakeAPIError(status_code=400, type="invalid_request_error"),
        FakeAPIError(status_code=429, body={"error": {"code": "insufficient_quota"}}),
        FakeAPIError(status_code=401),
        TranscriptionFatal("bad image"),
        ValueError("bug"),
        None,
    ],
)
def test_fatal_errors(exc):
    assert is_retryable_error(exc) is False


def test_error_status_reads_either_attribute():
    exc = Exception("x")
    exc.status = 502
    assert error_status(exc) == 502
    assert error_status(FakeAPIError(status_code=429)) == 429
    assert error_status(ValueError()) is None
