"""Error taxonomy shared by extraction, transcription and export."""

from __future__ import annotations

import errno
from typing import Any

FATAL_ERROR_TYPES = {"insufficient_quota", "invalid_request_error"}
RETRYABLE_ERROR_CODES = {"ECONNRESET", "ENOTFOUND", "ECONNREFUSED"}
RETRYABLE_ERRNOS = {errno.ECONNRESET, errno.ECONNREFUSED}
RETRYABLE_SDK_ERRORS = {"APIConnectionError", "APITimeoutError"}


class KindleTranscriptError(RuntimeError):
    """Base class for every error raised on purpose by this package."""


class PreconditionError(KindleTranscriptError):
    """A required identifier, credential or input file is missing."""


class SessionError(KindleTranscriptError):
    """The one-time reader session could not be established."""


class TocBoundaryError(KindleTranscriptError):
    """The table of contents has no page-numbered entry to start from."""


class NavigationStall(KindleTranscriptError):
    """The reader did not show a new page within the poll bound."""


class ManifestCorrupt(KindleTranscriptError):
    """A manifest file exists but cannot be parsed."""

    def __init__(self, path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class TranscriptionRetryable(KindleTranscriptError):
    """A transcription attempt failed in a way that may succeed on retry."""


class EmptyResponse(TranscriptionRetryable):
    pass


class ModelRefusal(TranscriptionRetryable):
    def __init__(self, text: str) -> None:
        super().__init__(f"model refused: {text!r}")
        self.text = text


class TranscriptionFatal(KindleTranscriptError):
    """A transcription attempt failed in a way that retrying cannot fix."""


class TranscriptionGivenUp(KindleTranscriptError):
    """No transcript could be produced for one artifact."""

    def __init__(self, screenshot: str, attempts: int, cause: BaseException | None) -> None:
        super().__init__(f"{screenshot}: gave up after {attempts} attempt(s): {cause}")
        self.screenshot = screenshot
        self.attempts = attempts
        self.cause = cause


def error_status(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _error_tags(exc: BaseException) -> set[str]:
    tags: set[str] = set()
    for attr in ("type", "code"):
        value: Any = getattr(exc, attr, None)
        if isinstance(value, str):
            tags.add(value)
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        for key in ("type", "code"):
            value = nested.get(key)
            if isinstance(value, str):
                tags.add(value)
    return tags


def is_retryable_error(exc: BaseException | None) -> bool:
    """Classify a transcription failure as retryable (True) or fatal (False)."""
    if exc is None:
        return False
    if isinstance(exc, TranscriptionRetryable):
        return True
    if isinstance(exc, TranscriptionFatal):
        return False

    tags = _error_tags(exc)
    if tags & FATAL_ERROR_TYPES:
        return False

    status = error_status(exc)
    if status == 429:
        return True
    if status is not None and 500 <= status < 600:
        return True

    if tags & RETRYABLE_ERROR_CODES:
        return True
    if getattr(exc, "errno", None) in RETRYABLE_ERRNOS:
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return type(exc).__name__ in RETRYABLE_SDK_ERRORS
