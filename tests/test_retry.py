import pytest

from gateway.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, exc: Exception = RuntimeError("boom")):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def recording_sleep(delays):
    async def _sleep(seconds):
        delays.append(seconds)

    return _sleep


@pytest.mark.asyncio
async def test_succeeds_on_last_attempt_with_fixed_delay():
    delays = []
    policy = RetryPolicy(max_attempts=3, delay_s=5, sleep=recording_sleep(delays))
    op = Flaky(failures=2)
    assert await policy.run(op, label="flaky") == "ok"
    assert op.calls == 3
    assert delays == [5, 5]


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error():
    delays = []
    policy = RetryPolicy(max_attempts=3, delay_s=1, sleep=recording_sleep(delays))
    op = Flaky(failures=5, exc=ValueError("still down"))
    with pytest.raises(ValueError, match="still down"):
        await policy.run(op)
    assert op.calls == 3
    assert delays == [1, 1]


@pytest.mark.asyncio
async def test_unlisted_errors_are_not_retried():
    policy = RetryPolicy(max_attempts=3, delay_s=0, retry_on=(ValueError,))
    op = Flaky(failures=1, exc=KeyError("nope"))
    with pytest.raises(KeyError):
        await policy.run(op)
    assert op.calls == 1


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
