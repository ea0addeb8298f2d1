import asyncio
import time

import pytest

from conftest import fast_config, itinerary_text, make_orchestrator, make_request
from itinerary_pipeline.budget import BudgetOptimizer
from itinerary_pipeline.errors import (
    CancellationError,
    CircuitOpenError,
    ErrorKind,
    ItineraryValidationError,
    PipelineError,
    ProviderError,
    ProviderErrorCode,
    RetryExhaustedError,
)
from itinerary_pipeline.models import GenerationOptions, QuickItinerary
from itinerary_pipeline.orchestrator import ItineraryOrchestrator, expand_quick_itinerary
from itinerary_pipeline.providers import FakeCompletionProvider
from itinerary_pipeline.quality import QualityScorer
from itinerary_pipeline.retry import CancellationToken, rate_limit_policy
from itinerary_pipeline.validation import check_business_rules


def _error(code, message="upstream said no"):
    return ProviderError(code, message, provider="fake")


def _run(orchestrator, coro_fn):
    async def run():
        async with orchestrator:
            return await coro_fn(orchestrator)
    return asyncio.run(run())


def test_generates_valid_paris_itinerary(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)
    result = _run(orchestrator, lambda o: o.generate_itinerary(paris_request))

    itinerary = result.itinerary.itinerary
    assert itinerary.duration == 3
    assert [d.date for d in itinerary.days] == ["2025-06-01", "2025-06-02", "2025-06-03"]
    assert all(len(d.activities) >= 2 for d in itinerary.days)
    assert result.metadata.generation_method == "ai"
    assert result.metadata.quality == "high"
    assert result.performance.cache_hit is False
    assert result.performance.ai_generation_time_ms is not None
    assert provider.calls[0].max_tokens == 20000
    assert "- Destination: Paris, France" in provider.calls[0].prompt


def test_second_identical_request_is_served_from_cache(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)

    async def twice(o):
        first = await o.generate_itinerary(paris_request)
        second = await o.generate_itinerary(make_request(destination="  PARIS, france"))
        return first, second

    first, second = _run(orchestrator, twice)
    assert provider.call_count == 1
    assert second.performance.cache_hit is True
    assert second.metadata.generation_method == "cache"
    assert "cache_hit" in second.performance.optimizations_applied
    assert second.itinerary.model_dump() == first.itinerary.model_dump()
    assert orchestrator.stats().cache_hits == 1


def test_use_cache_false_always_generates(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)
    options = GenerationOptions(use_cache=False)

    async def twice(o):
        await o.generate_itinerary(paris_request, options)
        return await o.generate_itinerary(paris_request, options)

    result = _run(orchestrator, twice)
    assert provider.call_count == 2
    assert result.performance.cache_hit is False


def test_auth_failure_is_not_retried_or_cached(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.AUTHENTICATION)])
    orchestrator = make_orchestrator(provider)

    with pytest.raises(ProviderError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    assert info.value.kind == ErrorKind.PROVIDER_AUTH
    assert provider.call_count == 1
    stats = orchestrator.stats()
    assert stats.failures == 1
    assert stats.cache.size == 0


def test_transient_failure_is_retried_with_progress_events(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.SERVICE_UNAVAILABLE)])
    orchestrator = make_orchestrator(provider)
    events = []

    result = _run(orchestrator, lambda o: o.generate_itinerary(paris_request, on_retry=events.append))
    assert result.itinerary.itinerary.duration == 3
    assert provider.call_count == 2
    assert [e.attempt for e in events] == [2]
    assert isinstance(events[0].error, ProviderError)


def test_retries_are_exhausted_after_three_attempts(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.SERVICE_UNAVAILABLE)] * 3)
    orchestrator = make_orchestrator(provider)

    with pytest.raises(RetryExhaustedError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    assert info.value.attempts == 3
    assert info.value.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert provider.call_count == 3


def test_rate_limit_switches_to_rate_limit_policy(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.RATE_LIMIT)] * 2)
    orchestrator = make_orchestrator(provider)
    events = []

    result = _run(orchestrator, lambda o: o.generate_itinerary(paris_request, on_retry=events.append))
    assert result.metadata.generation_method == "ai"
    assert provider.call_count == 3
    assert [e.attempt for e in events] == [2, 3]


def test_quota_exhaustion_is_not_retried(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.QUOTA_EXCEEDED)])
    orchestrator = make_orchestrator(provider)
    with pytest.raises(ProviderError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    assert info.value.kind == ErrorKind.PROVIDER_QUOTA_EXCEEDED
    assert provider.call_count == 1


def test_invalid_output_fails_without_placeholder(paris_request):
    provider = FakeCompletionProvider(responses=["Sorry, I can only chat about the weather."])
    orchestrator = make_orchestrator(provider)

    with pytest.raises(ItineraryValidationError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    assert info.value.kind == ErrorKind.VALIDATION_ERROR
    assert "weather" in info.value.raw_excerpt
    assert orchestrator.stats().cache.size == 0


def test_regeneration_sends_corrections(paris_request):
    provider = FakeCompletionProvider(responses=[itinerary_text(duration=4)])
    orchestrator = make_orchestrator(provider)
    options = GenerationOptions(max_regenerations=1)

    result = _run(orchestrator, lambda o: o.generate_itinerary(paris_request, options))
    assert provider.call_count == 2
    assert "previous answer was rejected" in provider.calls[1].prompt
    assert "duration: 4 does not match" in provider.calls[1].prompt
    assert "regenerated" in result.performance.optimizations_applied


def test_slow_provider_hits_generation_timeout(paris_request):
    provider = FakeCompletionProvider(delay_s=5)
    orchestrator = make_orchestrator(provider)
    options = GenerationOptions(max_timeout_s=0.1)

    started = time.monotonic()
    with pytest.raises(PipelineError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request, options))
    assert info.value.kind == ErrorKind.PROVIDER_TIMEOUT
    assert time.monotonic() - started < 2


def test_cancelled_before_start_never_calls_provider(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)

    async def cancelled(o):
        token = CancellationToken()
        token.cancel("user navigated away")
        return await o.generate_itinerary(paris_request, cancellation_token=token)

    with pytest.raises(CancellationError, match="navigated away"):
        _run(orchestrator, cancelled)
    assert provider.call_count == 0


def test_cancel_during_generation(paris_request):
    provider = FakeCompletionProvider(delay_s=1)
    orchestrator = make_orchestrator(provider)

    async def cancel_midway(o):
        token = CancellationToken()
        task = asyncio.create_task(o.generate_itinerary(paris_request, cancellation_token=token))
        await asyncio.sleep(0.05)
        token.cancel()
        started = time.monotonic()
        with pytest.raises(CancellationError):
            await task
        return time.monotonic() - started

    assert _run(orchestrator, cancel_midway) < 0.5
    assert orchestrator.stats().cache.size == 0


def test_open_circuit_rejects_without_calling_provider(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.AUTHENTICATION)])
    orchestrator = make_orchestrator(provider, breaker_failure_threshold=1, breaker_reset_timeout_s=60)

    async def twice(o):
        with pytest.raises(ProviderError):
            await o.generate_itinerary(paris_request)
        await o.generate_itinerary(make_request(destination="Rome, Italy"))

    with pytest.raises(CircuitOpenError) as info:
        _run(orchestrator, twice)
    assert info.value.kind == ErrorKind.CIRCUIT_OPEN
    assert provider.call_count == 1


def test_quick_generation(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)
    options = GenerationOptions(prioritize_speed=True)

    result = _run(orchestrator, lambda o: o.generate_itinerary(paris_request, options))
    itinerary = result.itinerary.itinerary
    assert provider.calls[0].max_tokens == 2000
    assert "quick_generation" in result.performance.optimizations_applied
    assert itinerary.duration == 3
    assert all(a.location.coordinates.is_unresolved for a in itinerary.activities())
    assert result.metadata.quality == "high"
    assert result.metadata.estimated_accuracy == 85


def test_quick_and_full_results_are_cached_separately(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)

    async def both(o):
        await o.generate_itinerary(paris_request, GenerationOptions(prioritize_speed=True))
        return await o.generate_itinerary(paris_request)

    result = _run(orchestrator, both)
    assert provider.call_count == 2
    assert result.performance.cache_hit is False


def test_tight_budget_is_optimized():
    request = make_request(budget={"amount": 400, "currency": "USD"})
    provider = FakeCompletionProvider(responses=[itinerary_text()])
    orchestrator = make_orchestrator(provider)

    result = _run(orchestrator, lambda o: o.generate_itinerary(request))
    estimate = result.itinerary.itinerary.total_budget_estimate
    assert abs(estimate.amount - 400) <= 40
    assert "budget_optimization" in result.performance.optimizations_applied
    assert any("below our estimate" in w for w in result.warnings)
    assert result.itinerary.itinerary.emergency_info.emergency_number == "112"


def test_concurrent_requests_all_complete():
    provider = FakeCompletionProvider(delay_s=0.05)
    orchestrator = make_orchestrator(provider)
    cities = ["Paris, France", "Rome, Italy", "Kyoto, Japan", "Lima, Peru", "Oslo, Norway"]

    async def many(o):
        return await asyncio.gather(*(o.generate_itinerary(make_request(destination=c)) for c in cities))

    results = _run(orchestrator, many)
    assert [r.itinerary.itinerary.destination for r in results] == cities
    stats = orchestrator.stats()
    assert stats.requests_total == 5
    assert stats.queue.dispatched_total == 5


def test_health_check_reports_components():
    healthy = _run(make_orchestrator(), lambda o: o.health_check())
    assert healthy.status == "healthy"
    assert healthy.provider == "fake"
    assert healthy.cache_ok
    assert healthy.breaker_state == "closed"

    broken = FakeCompletionProvider(responses=[_error(ProviderErrorCode.SERVICE_UNAVAILABLE)])
    report = _run(make_orchestrator(broken), lambda o: o.health_check())
    assert report.status == "unhealthy"
    assert "SERVICE_UNAVAILABLE" in report.provider_error


def test_expand_quick_itinerary_assigns_slot_times():
    quick = QuickItinerary.model_validate({
        "days": [{"day": 1, "activities": [
            {"name": "Louvre", "type": "attraction", "timeSlot": "morning", "price": 22,
             "description": "World famous museum."},
            {"name": "Tuileries", "type": "attraction", "timeSlot": "morning", "price": 0,
             "description": "Stroll through the garden."},
            {"name": "Le Comptoir", "type": "restaurant", "timeSlot": "evening", "price": 45,
             "description": "Classic bistro dinner."},
        ]}],
        "totalEstimate": 300,
    })
    request = make_request(end_date="2025-06-01")
    response = expand_quick_itinerary(quick, request, BudgetOptimizer())
    day = response.itinerary.days[0]
    assert [(a.name, a.start_time, a.end_time) for a in day.activities] == [
        ("Louvre", "09:00", "11:00"),
        ("Tuileries", "11:00", "13:00"),
        ("Le Comptoir", "19:00", "21:00"),
    ]
    assert day.activities[1].pricing.price_type == "free"
    assert day.date == "2025-06-01"
    assert response.itinerary.total_budget_estimate.breakdown.accommodation == 120
    assert response.itinerary.emergency_info.emergency_number == "112"


class _TimedProvider(FakeCompletionProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started_at = []

    async def generate(self, prompt, **kwargs):
        self.started_at.append(time.monotonic())
        return await super().generate(prompt, **kwargs)


def test_rate_limit_waits_before_calling_again(paris_request):
    provider = _TimedProvider(responses=[_error(ProviderErrorCode.RATE_LIMIT)] * 2)
    orchestrator = make_orchestrator(
        provider, rate_limit_retry=rate_limit_policy(base_delay_s=0.05, max_delay_s=1.0, jitter=False)
    )

    _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    gaps = [later - earlier for earlier, later in zip(provider.started_at, provider.started_at[1:])]
    assert provider.call_count == 3
    assert gaps[0] >= 0.045
    assert gaps[1] >= 0.12


def test_rate_limits_stop_after_five_calls(paris_request):
    provider = FakeCompletionProvider(responses=[_error(ProviderErrorCode.RATE_LIMIT)] * 10)
    orchestrator = make_orchestrator(provider)

    with pytest.raises(RetryExhaustedError) as info:
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request))
    assert provider.call_count == 5
    assert info.value.attempts == 5


def test_cancelled_token_is_not_served_from_cache(paris_request):
    provider = FakeCompletionProvider()
    orchestrator = make_orchestrator(provider)

    async def warm_then_cancel(o):
        await o.generate_itinerary(paris_request)
        token = CancellationToken()
        token.cancel("tab closed")
        return await o.generate_itinerary(paris_request, cancellation_token=token)

    with pytest.raises(CancellationError, match="tab closed"):
        _run(orchestrator, warm_then_cancel)
    assert provider.call_count == 1
    assert orchestrator.stats().cache_hits == 0


class _CancellingScorer(QualityScorer):
    def __init__(self, token):
        super().__init__()
        self.token = token

    def score(self, itinerary, declared_budget, declared_currency):
        self.token.cancel("cancelled while optimizing")
        return super().score(itinerary, declared_budget, declared_currency)


def test_cancel_after_generation_discards_result(paris_request):
    token = CancellationToken()
    orchestrator = ItineraryOrchestrator(fast_config(), FakeCompletionProvider(),
                                         quality_scorer=_CancellingScorer(token))

    with pytest.raises(CancellationError, match="while optimizing"):
        _run(orchestrator, lambda o: o.generate_itinerary(paris_request, cancellation_token=token))
    stats = orchestrator.stats()
    assert stats.cache.size == 0
    assert stats.failures == 1


def test_expand_quick_itinerary_spreads_crowded_slot():
    quick = QuickItinerary.model_validate({
        "days": [{"day": 1, "activities": [
            {"name": name, "type": "restaurant", "timeSlot": "evening", "price": 30,
             "description": "Evening stop."}
            for name in ("Aperitivo", "Dinner", "Jazz club")
        ]}],
        "totalEstimate": 300,
    })
    request = make_request(end_date="2025-06-01")
    response = expand_quick_itinerary(quick, request, BudgetOptimizer())
    activities = response.itinerary.days[0].activities
    assert [(a.start_time, a.end_time) for a in activities] == [
        ("19:00", "20:20"), ("20:20", "21:40"), ("21:40", "23:00"),
    ]
    assert activities[0].duration == "80 minutes"
    _, warnings = check_business_rules(response.itinerary)
    assert not [w for w in warnings if "overlap" in w.lower()]
