import pytest

from circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitState
from retry import RetryConfig, calculate_backoff, retry


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _boom():
    raise ConnectionError("down")


def test_breaker_opens_after_threshold_and_allows_a_trial_call_after_timeout():
    clock = _Clock()
    breaker = CircuitBreaker("klines", failure_threshold=2, reset_timeout=30.0, clock=clock)

    for _ in range(2):
        with pytest.raises(ConnectionError):
            breaker.call(_boom)
    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerError):
        breaker.call(lambda: "never")

    clock.now = 30.0
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state is CircuitState.CLOSED


def test_half_open_failure_reopens():
    clock = _Clock()
    breaker = CircuitBreaker("orders", failure_threshold=1, reset_timeout=5.0, clock=clock)
    with pytest.raises(ConnectionError):
        breaker.call(_boom)
    clock.now = 5.0
    with pytest.raises(ConnectionError):
        breaker.call(_boom)
    assert breaker.state is CircuitState.OPEN


def test_backoff_grows_and_caps():
    cfg = RetryConfig(initial_delay=1.0, max_delay=5.0, exponential_base=2.0, jitter_range=0.0)
    assert [calculate_backoff(a, cfg) for a in range(4)] == [1.0, 2.0, 4.0, 5.0]

    jittery = RetryConfig(initial_delay=10.0, jitter_range=0.1)
    assert calculate_backoff(0, jittery, rng=lambda lo, hi: hi) == pytest.approx(11.0)


def test_retry_until_success():
    delays = []
    attempts = []

    @retry(exceptions=(ConnectionError,), config=RetryConfig(max_attempts=3, jitter_range=0.0),
           sleep=delays.append)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    assert flaky() == "ok"
    assert delays == [1.0, 2.0]


def test_retry_reraises_last_error():
    @retry(exceptions=(ConnectionError,), config=RetryConfig(max_attempts=2), sleep=lambda s: None)
    def always():
        raise ConnectionError("still down")

    with pytest.raises(ConnectionError, match="still down"):
        always()


def test_unlisted_errors_are_not_retried():
    calls = []

    @retry(exceptions=(ConnectionError,), sleep=lambda s: None)
    def broken():
        calls.append(1)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        broken()
    assert len(calls) == 1


def test_open_breaker_is_not_retried():
    breaker = CircuitBreaker("x", failure_threshold=1, reset_timeout=60.0, clock=_Clock())
    calls = []

    @retry(exceptions=(Exception,), config=RetryConfig(max_attempts=5),
           circuit_breaker=breaker, sleep=lambda s: None)
    def fetch():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(CircuitBreakerError):
        fetch()
    assert len(calls) == 1
