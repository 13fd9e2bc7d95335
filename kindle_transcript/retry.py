"""
Bounded retry helper shared by page-turn polling and transcription.

A caller supplies the operation, a classifier deciding which failures are
worth another attempt, and a backoff policy mapping the attempt number to a
delay in seconds.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from kindle_transcript.log import RunLog

T = TypeVar("T")


@dataclass(frozen=True)
class FixedBackoff:
    interval_seconds: float = 0.1

    def delay(self, attempt: int) -> float:
        return self.interval_seconds


@dataclass(frozen=True)
class ExponentialBackoff:
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter_ratio: float = 0.1
    rng: Callable[[], float] = field(default=random.random, compare=False)

    def delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt `attempt` (1-based)."""
        exponential = self.base_seconds * (2 ** (attempt - 1))
        jitter = self.rng() * self.jitter_ratio
        return min(exponential * (1 + jitter), self.max_seconds)


class RetryError(RuntimeError):
    """Raised when an operation fails for good: not retryable, or out of attempts."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None, exhausted: bool) -> None:
        reason = "out of attempts" if exhausted else "not retryable"
        super().__init__(f"{label} failed after {attempts} attempt(s) ({reason}): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.exhausted = exhausted


def retry_call(
    label: str,
    fn: Callable[[int], T],
    *,
    max_attempts: int,
    is_retryable: Callable[[BaseException], bool],
    backoff,
    sleep: Callable[[float], None] = time.sleep,
    log: RunLog | None = None,
) -> tuple[T, int]:
    """Call `fn(attempt)` until it returns, returning `(result, attempts)`.

    Failures the classifier rejects stop immediately; retryable ones sleep for
    `backoff.delay(attempt)` and try again until `max_attempts` is reached.
    Either way a RetryError carrying the last failure is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(attempt), attempt
        except Exception as exc:
            if not is_retryable(exc):
                raise RetryError(label, attempt, exc, exhausted=False) from exc
            if attempt >= max_attempts:
                raise RetryError(label, attempt, exc, exhausted=True) from exc
            delay = backoff.delay(attempt)
            if log is not None:
                log.warning(
                    f"{label} attempt {attempt}/{max_attempts} failed: {exc}. "
                    f"Retrying in {delay:.1f}s..."
                )
            sleep(delay)
