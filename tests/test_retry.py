import asyncio

import pytest

from itinerary_pipeline.errors import (
    CancellationError,
    ErrorKind,
    ProviderError,
    ProviderErrorCode,
    RetryExhaustedError,
)
from itinerary_pipeline.retry import (
    CancellationToken,
    RetryManager,
    default_policy,
    rate_limit_policy,
    transient_only_condition,
)


def _fast(**overrides):
    return default_policy(base_delay_s=0.001, max_delay_s=0.004, jitter=False, **overrides)


class _Flaky:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _unavailable():
    return ProviderError(ProviderErrorCode.SERVICE_UNAVAILABLE, "503 from upstream", provider="fake")


def test_retryable_error_exhausts_exactly_max_attempts():
    op = _Flaky(*[_unavailable() for _ in range(10)])
    manager = RetryManager("test", _fast(max_attempts=3))

    with pytest.raises(RetryExhaustedError) as info:
        asyncio.run(manager.execute(op))

    assert op.calls == 3
    assert info.value.attempts == 3
    assert isinstance(info.value.last_error, ProviderError)
    assert info.value.kind is ErrorKind.PROVIDER_UNAVAILABLE


def test_permanent_error_is_not_retried():
    op = _Flaky(ProviderError(ProviderErrorCode.AUTHENTICATION, "bad key"))
    manager = RetryManager("test", _fast())

    with pytest.raises(ProviderError) as info:
        asyncio.run(manager.execute(op))

    assert op.calls == 1
    assert info.value.kind is ErrorKind.PROVIDER_AUTH


def test_quota_and_unknown_errors_are_permanent():
    for code in (ProviderErrorCode.QUOTA_EXCEEDED, ProviderErrorCode.UNKNOWN):
        op = _Flaky(ProviderError(code, "nope"))
        with pytest.raises(ProviderError):
            asyncio.run(RetryManager("test", _fast()).execute(op))
        assert op.calls == 1


def test_recovers_and_reports_progress():
    events = []
    op = _Flaky(_unavailable(), ProviderError(ProviderErrorCode.TIMEOUT, "slow"))
    manager = RetryManager("test", _fast(on_progress=events.append))

    assert asyncio.run(manager.execute(op)) == "ok"
    assert op.calls == 3
    assert [e.attempt for e in events] == [2, 3]
    assert all(e.max_attempts == 3 for e in events)
    assert events[1].error.code is ProviderErrorCode.TIMEOUT
    assert events[0].delay_s <= events[1].delay_s


def test_backoff_is_monotonic_and_capped():
    manager = RetryManager("test", default_policy(jitter=False))
    delays = [manager.compute_delay(n) for n in range(2, 8)]
    assert delays == sorted(delays)
    assert delays[:3] == [1.0, 2.0, 4.0]
    assert max(delays) == 8.0


def test_rate_limit_policy_schedule():
    manager = RetryManager("test", rate_limit_policy(jitter=False))
    assert manager.config.max_attempts == 5
    assert [manager.compute_delay(n) for n in range(2, 7)] == [2.0, 5.0, 12.5, 30.0, 30.0]


def test_jitter_stays_within_half_to_one_and_a_half():
    manager = RetryManager("test", default_policy(jitter=True))
    for _ in range(200):
        delay = manager.compute_delay(3)
        assert 1.0 <= delay <= 3.0


def test_transient_only_condition_hands_off_rate_limits():
    rate_limited = ProviderError(ProviderErrorCode.RATE_LIMIT, "429")
    assert rate_limited.retryable
    assert not transient_only_condition(rate_limited)
    assert transient_only_condition(_unavailable())
    assert transient_only_condition(ConnectionError("reset"))
    assert not transient_only_condition(ValueError("bug"))


def test_custom_condition_stops_retries():
    op = _Flaky(_unavailable(), _unavailable())
    manager = RetryManager("test", _fast(retry_condition=lambda e: False))
    with pytest.raises(ProviderError):
        asyncio.run(manager.execute(op))
    assert op.calls == 1


def test_cancelled_token_prevents_first_attempt():
    token = CancellationToken()
    token.cancel("user left")
    op = _Flaky()

    with pytest.raises(CancellationError, match="user left"):
        asyncio.run(RetryManager("test", _fast()).execute(op, token))
    assert op.calls == 0


def test_cancellation_during_backoff_stops_retrying():
    token = CancellationToken()
    op = _Flaky(*[_unavailable() for _ in range(5)])
    config = default_policy(base_delay_s=5.0, max_delay_s=5.0, jitter=False,
                            on_progress=lambda progress: token.cancel("stop"))

    async def run():
        return await RetryManager("test", config).execute(op, token)

    with pytest.raises(CancellationError):
        asyncio.run(asyncio.wait_for(run(), timeout=2.0))
    assert op.calls == 1


def test_cancellation_while_in_flight():
    token = CancellationToken()
    started = []

    async def slow():
        started.append(True)
        await asyncio.sleep(5)
        return "late"

    async def run():
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        return await RetryManager("test", _fast()).execute(slow, token)

    with pytest.raises(CancellationError):
        asyncio.run(asyncio.wait_for(run(), timeout=2.0))
    assert started == [True]


def _rate_limited():
    return ProviderError(ProviderErrorCode.RATE_LIMIT, "429 from upstream", provider="fake")


def test_prior_error_counts_as_first_attempt():
    events = []
    op = _Flaky(*[_rate_limited() for _ in range(10)])
    manager = RetryManager("test", rate_limit_policy(base_delay_s=0.01, max_delay_s=0.05, jitter=False,
                                                     on_progress=events.append))

    async def run():
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RetryExhaustedError) as info:
            await manager.execute(op, prior_error=_rate_limited())
        return info.value, loop.time() - started

    error, elapsed = asyncio.run(run())
    assert op.calls == 4
    assert error.attempts == 5
    assert [e.attempt for e in events] == [2, 3, 4, 5]
    assert events[0].delay_s == 0.01
    # 0.01 + 0.025 + 0.05 + 0.05 of waiting in total
    assert elapsed >= 0.12


def test_prior_error_with_single_attempt_policy_gives_up():
    op = _Flaky()
    manager = RetryManager("test", _fast(max_attempts=1))

    with pytest.raises(RetryExhaustedError) as info:
        asyncio.run(manager.execute(op, prior_error=_rate_limited()))
    assert op.calls == 0
    assert info.value.attempts == 1
