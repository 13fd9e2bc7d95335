import pytest

from kindle_transcript.retry import ExponentialBackoff, FixedBackoff, RetryError, retry_call


def test_exponential_backoff_is_bounded_and_non_decreasing():
    for jitter in (0.0, 0.05, 0.0999):
        backoff = ExponentialBackoff(rng=lambda: jitter / 0.1)
        delays = [backoff.delay(attempt) for attempt in range(1, 21)]
        assert delays == sorted(delays)
        assert max(delays) <= 33.0
        assert delays[-1] == 30.0


def test_exponential_backoff_without_jitter_doubles():
    backoff = ExponentialBackoff(rng=lambda: 0.0)
    assert [backoff.delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_fixed_backoff():
    assert FixedBackoff(0.25).delay(1) == FixedBackoff(0.25).delay(50) == 0.25


def test_retry_call_returns_result_and_attempt_count():
    sleeps = []
    outcomes = iter([ValueError("flaky"), ValueError("flaky"), "ok"])

    def operation(attempt):
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return f"{outcome}@{attempt}"

    result = retry_call(
        "op",
        operation,
        max_attempts=5,
        is_retryable=lambda exc: True,
        backoff=ExponentialBackoff(rng=lambda: 0.0),
        sleep=sleeps.append,
    )

    assert result == ("ok@3", 3)
    assert sleeps == [1.0, 2.0]


def test_retry_call_stops_on_non_retryable_error():
    calls = []

    def operation(attempt):
        calls.append(attempt)
        raise KeyError("fatal")

    with pytest.raises(RetryError) as excinfo:
        retry_call("op", operation, max_attempts=5, is_retryable=lambda exc: False, backoff=FixedBackoff(), sleep=lambda s: None)

    assert calls == [1]
    assert excinfo.value.exhausted is False
    assert isinstance(excinfo.value.last_error, KeyError)


def test_retry_call_gives_up_after_max_attempts(log):
    def operation(attempt):
        raise TimeoutError(f"slow {attempt}")

    with pytest.raises(RetryError) as excinfo:
        retry_call(
            "op", operation, max_attempts=3, is_retryable=lambda exc: True, backoff=FixedBackoff(), sleep=lambda s: None, log=log
        )

    assert excinfo.value.exhausted is True
    assert excinfo.value.attempts == 3
    assert str(excinfo.value.last_error) == "slow 3"
    assert log.stream.getvalue().count("Warning: op attempt") == 2


def test_retry_call_requires_an_attempt():
    with pytest.raises(ValueError):
        retry_call("op", lambda attempt: None, max_attempts=0, is_retryable=lambda exc: True, backoff=FixedBackoff())
