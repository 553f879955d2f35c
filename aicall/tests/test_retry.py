import pytest

from aicall.utils.retry import (BackoffState, RetryError, RetryPolicy,
                                aretry_call, backoff_delay)


def test_exponential_delays_are_capped():
    policy = RetryPolicy(attempts=6, base=1.0, max_delay=5.0)
    assert policy.delays() == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert [backoff_delay(a, base=1.0, max_delay=5.0) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.parametrize("mode", ["full", "equal", "decorrelated"])
def test_jittered_delays_stay_within_cap(mode):
    state = BackoffState()
    for attempt in range(1, 8):
        d = backoff_delay(attempt, base=0.5, max_delay=3.0, jitter=mode, state=state)
        assert 0.0 <= d <= 3.0


def test_policy_validation():
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base=-1.0)
    with pytest.raises(ValueError):
        backoff_delay(1, base=1.0, max_delay=1.0, jitter="bogus")  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_aretry_call_retries_then_succeeds():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("down")
        return "ok"

    async def fake_sleep(d):
        sleeps.append(d)

    out = await aretry_call(flaky, policy=RetryPolicy(attempts=3), exceptions=ConnectionError, sleep=fake_sleep)
    assert out == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.anyio
async def test_aretry_call_exhaustion_wraps_last_error():
    seen = []

    async def always_down():
        raise TimeoutError("nope")

    async def fake_sleep(d):
        pass

    with pytest.raises(RetryError) as ei:
        await aretry_call(
            always_down,
            policy=RetryPolicy(attempts=3),
            exceptions=(TimeoutError,),
            on_retry=lambda a, e, d: seen.append((a, d)),
            sleep=fake_sleep,
        )
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_exception, TimeoutError)
    assert seen == [(1, 1.0), (2, 2.0)]


@pytest.mark.anyio
async def test_aretry_call_does_not_retry_other_errors():
    calls = []

    async def bad():
        calls.append(1)
        raise ValueError("not transient")

    with pytest.raises(ValueError):
        await aretry_call(bad, exceptions=ConnectionError)
    assert calls == [1]
