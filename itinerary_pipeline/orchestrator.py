"""End-to-end itinerary generation.

``ItineraryOrchestrator.generate_itinerary`` walks one request through
CACHE_LOOKUP, GENERATING, VALIDATING, OPTIMIZING, CACHING and DONE. A cache
hit jumps straight to DONE. Failures while generating or validating move to
FAILED and propagate to the caller unchanged; no placeholder itinerary is
ever produced in their place.

Outbound calls go request queue -> circuit breaker -> retry -> provider, so
the queue paces whole generations and the breaker sees one outcome per
generation rather than one per attempt.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from .budget import BudgetOptimizer, convert_currency
from .cache import CachedItinerary, CacheStats, InMemoryResponseCache, ItineraryCache, ResponseCache, fingerprint
from .circuit_breaker import CircuitBreaker, CircuitBreakerStats
from .config import PipelineConfig
from .errors import (
    GenerationTimeoutError,
    ItineraryValidationError,
    PipelineError,
    ProviderError,
    ProviderErrorCode,
)
from .models import (
    Accessibility,
    Activity,
    BudgetBreakdown,
    Coordinates,
    DailyBudget,
    Day,
    DayTransportation,
    EmergencyInfo,
    GenerationOptions,
    GenerationRequest,
    Itinerary,
    ItineraryResponse,
    ItineraryResult,
    Location,
    PerformanceMetrics,
    Pricing,
    QuickItinerary,
    ResultMetadata,
    TotalBudgetEstimate,
)
from .prompts import PromptBuilder, PromptTemplate
from .providers import CompletionProvider, build_provider
from .quality import QualityScorer
from .rate_limiter import QueueStats, RequestQueue
from .retry import CancellationToken, RetryConfig, RetryManager, RetryProgress
from .tracing import log_event
from .validation import ResponseValidator, ValidatedItinerary, check_business_rules


logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    CACHE_LOOKUP = "CACHE_LOOKUP"
    GENERATING = "GENERATING"
    VALIDATING = "VALIDATING"
    OPTIMIZING = "OPTIMIZING"
    CACHING = "CACHING"
    DONE = "DONE"
    FAILED = "FAILED"


class PipelineStats(BaseModel):
    requests_total: int
    cache_hits: int
    failures: int
    queue: QueueStats
    breaker: CircuitBreakerStats
    cache: Optional[CacheStats] = None


class HealthReport(BaseModel):
    status: str  # healthy | degraded | unhealthy
    provider: str
    provider_ok: bool
    provider_latency_ms: Optional[float] = None
    provider_error: Optional[str] = None
    breaker_state: str
    cache_ok: bool


# (start hour, end hour) of the window each time slot fills
_SLOT_WINDOWS = {"morning": (9, 13), "afternoon": (14, 18), "evening": (19, 23)}
MAX_QUICK_ACTIVITY_MINUTES = 120
_QUICK_TRANSPORT = {"walking": "walking", "public": "public", "rental-car": "rental_car", "mixed": "public"}
_HEALTH_PROMPT = 'Reply with the JSON object {"status": "ok"} and nothing else.'


def _clock_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def expand_quick_itinerary(quick: QuickItinerary, request: GenerationRequest,
                           optimizer: BudgetOptimizer) -> ItineraryResponse:
    """Lift a quick answer into the full schema.

    Times come from the time slot, locations are left unresolved at (0, 0)
    and the category breakdown follows the accommodation tier's usual split.
    """
    currency = request.budget.currency
    day_count = len(quick.days)
    shares = optimizer.calculate_category_budgets(quick.total_estimate, request.preferences.accommodation_type)
    days = []
    for quick_day in sorted(quick.days, key=lambda d: d.day):
        slot_totals = {slot: 0 for slot in _SLOT_WINDOWS}
        for item in quick_day.activities:
            slot_totals[item.time_slot] += 1
        slot_seen = {slot: 0 for slot in _SLOT_WINDOWS}
        activities = []
        for item in quick_day.activities:
            window_start, window_end = _SLOT_WINDOWS[item.time_slot]
            # activities sharing a slot split its window instead of overlapping
            minutes = min(MAX_QUICK_ACTIVITY_MINUTES,
                          (window_end - window_start) * 60 // slot_totals[item.time_slot])
            start = window_start * 60 + slot_seen[item.time_slot] * minutes
            slot_seen[item.time_slot] += 1
            activities.append(Activity(
                time_slot=item.time_slot,
                start_time=_clock_time(start),
                end_time=_clock_time(start + minutes),
                name=item.name,
                type=item.type,
                description=item.description,
                location=Location(name=item.name, address=request.destination,
                                  coordinates=Coordinates(lat=0, lng=0)),
                pricing=Pricing(amount=item.price, currency=currency,
                                price_type="free" if item.price == 0 else "per_person"),
                duration="2 hours" if minutes == 120 else f"{minutes} minutes",
                accessibility=Accessibility(),
            ))
        days.append(Day(
            day=quick_day.day,
            date=(request.start_date + timedelta(days=quick_day.day - 1)).isoformat(),
            theme=f"Day {quick_day.day} in {request.destination}",
            activities=activities,
            daily_budget=DailyBudget(amount=round(quick.total_estimate / day_count, 2), currency=currency),
            transportation=DayTransportation(
                primary_method=_QUICK_TRANSPORT[request.preferences.transportation],
                estimated_cost=round(shares.transportation / day_count, 2),
            ),
        ))
    return ItineraryResponse(itinerary=Itinerary(
        destination=request.destination,
        duration=day_count,
        total_budget_estimate=TotalBudgetEstimate(
            amount=quick.total_estimate,
            currency=currency,
            breakdown=BudgetBreakdown(**shares.model_dump()),
        ),
        days=days,
        general_tips=["Quick itinerary: venue locations and opening hours are not verified"],
        emergency_info=EmergencyInfo(emergency_number="112"),
    ))


class ItineraryOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        provider: CompletionProvider,
        cache_store: Optional[ResponseCache] = None,
        queue: Optional[RequestQueue] = None,
        breaker: Optional[CircuitBreaker] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        validator: Optional[ResponseValidator] = None,
        budget_optimizer: Optional[BudgetOptimizer] = None,
        quality_scorer: Optional[QualityScorer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.provider = provider
        self.cache_store = cache_store or InMemoryResponseCache(default_ttl_s=config.cache_ttl_s)
        self.cache = ItineraryCache(self.cache_store, ttl_s=config.cache_ttl_s)
        self.queue = queue or RequestQueue(
            "ai-provider",
            max_requests_per_window=config.requests_per_minute,
            window_s=config.rate_window_s,
            politeness_delay_s=config.politeness_delay_s,
        )
        self.breaker = breaker or CircuitBreaker(
            "ai-provider",
            failure_threshold=config.breaker_failure_threshold,
            reset_timeout_s=config.breaker_reset_timeout_s,
            monitoring_period_s=config.breaker_monitoring_period_s,
        )
        self.prompt_builder = prompt_builder or PromptBuilder(config)
        self.validator = validator or ResponseValidator()
        self.budget_optimizer = budget_optimizer or BudgetOptimizer()
        self.quality_scorer = quality_scorer or QualityScorer()
        self._clock = clock
        self._requests_total = 0
        self._cache_hits = 0
        self._failures = 0

    @classmethod
    def from_config(cls, config: Optional[PipelineConfig] = None,
                    provider: Optional[CompletionProvider] = None) -> "ItineraryOrchestrator":
        config = config or PipelineConfig.from_env()
        return cls(config, provider or build_provider(config))

    async def __aenter__(self) -> "ItineraryOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.queue.aclose()
        await self.provider.aclose()

    async def generate_itinerary(
        self,
        request: GenerationRequest,
        options: Optional[GenerationOptions] = None,
        cancellation_token: Optional[CancellationToken] = None,
        on_retry: Optional[Callable[[RetryProgress], None]] = None,
    ) -> ItineraryResult:
        options = options or GenerationOptions()
        token = cancellation_token
        run_id = uuid.uuid4().hex[:8]
        started = time.perf_counter()
        quick = options.prioritize_speed
        model = options.model or self.config.model
        key = fingerprint(request, variant=f"{'quick' if quick else 'full'}:{model}")
        self._requests_total += 1

        state = self._enter(run_id, None, PipelineState.CACHE_LOOKUP, destination=request.destination,
                            quick=quick, fingerprint=key[:12])
        self._check_cancelled(token, run_id, state)
        if options.use_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                self._cache_hits += 1
                self._enter(run_id, state, PipelineState.DONE, cache_hit=True)
                return self._cached_result(cached, key, started)

        generation_ms = 0.0
        validation_ms = 0.0
        applied: list[str] = ["quick_generation"] if quick else []
        try:
            state = self._enter(run_id, state, PipelineState.GENERATING, model=model)
            template = (self.prompt_builder.build_quick(request, model) if quick
                        else self.prompt_builder.build_full(request, model))
            timeout_s = options.max_timeout_s or (
                self.config.quick_timeout_s if quick else self.config.default_timeout_s
            )
            deadline = self._clock() + timeout_s
            regenerations_left = options.max_regenerations

            while True:
                gen_started = time.perf_counter()
                raw_text = await self._generate(template, model, deadline, timeout_s, token, on_retry)
                generation_ms += (time.perf_counter() - gen_started) * 1000

                state = self._enter(run_id, state, PipelineState.VALIDATING, chars=len(raw_text))
                val_started = time.perf_counter()
                try:
                    validated = self._validate(raw_text, request, quick)
                    break
                except ItineraryValidationError as e:
                    if regenerations_left <= 0:
                        raise
                    regenerations_left -= 1
                    template = self.prompt_builder.with_corrections(template, e.errors or [e.message])
                    applied.append("regenerated")
                    state = self._enter(run_id, state, PipelineState.GENERATING, regenerating=True,
                                        errors=len(e.errors))
                finally:
                    validation_ms += (time.perf_counter() - val_started) * 1000
        except PipelineError as e:
            self._failures += 1
            self._enter(run_id, state, PipelineState.FAILED, kind=e.kind.value, error=e.message)
            raise

        state = self._enter(run_id, state, PipelineState.OPTIMIZING)
        response = validated.response
        warnings = list(validated.warnings)
        if response.itinerary.duration != request.duration_days:
            warnings.append(
                f"Itinerary covers {response.itinerary.duration} days but the trip lasts {request.duration_days}"
            )
        budget_check = self.budget_optimizer.validate_budget(request)
        if budget_check.needs_optimization:
            itinerary_currency = response.itinerary.total_budget_estimate.currency
            target = convert_currency(request.total_budget, request.budget.currency, itinerary_currency)
            optimization = self.budget_optimizer.optimize_itinerary(response, target)
            response = optimization.response
            warnings.extend(budget_check.recommendations)
            if optimization.savings > 0:
                applied.append("budget_optimization")
        report = self.quality_scorer.score(response.itinerary, request.total_budget, request.budget.currency)

        # a result finished after cancellation is neither cached nor returned
        self._check_cancelled(token, run_id, state)
        if options.use_cache:
            state = self._enter(run_id, state, PipelineState.CACHING)
            await self.cache.set(key, CachedItinerary(
                itinerary=response.model_dump(by_alias=True),
                quality=report.quality,
                estimated_accuracy=report.estimated_accuracy,
                model=model,
                warnings=warnings,
                stored_at=time.time(),
            ))

        total_ms = (time.perf_counter() - started) * 1000
        self._enter(run_id, state, PipelineState.DONE, total_ms=total_ms, quality=report.quality,
                    score=report.score)
        return ItineraryResult(
            itinerary=response,
            performance=PerformanceMetrics(
                total_time_ms=total_ms,
                cache_hit=False,
                ai_generation_time_ms=generation_ms,
                validation_time_ms=validation_ms,
                optimizations_applied=tuple(applied),
            ),
            warnings=warnings,
            metadata=ResultMetadata(
                generated_at=datetime.now(timezone.utc),
                generation_method="ai",
                quality=report.quality,
                estimated_accuracy=report.estimated_accuracy,
                model=model,
                fingerprint=key,
            ),
        )

    async def _generate(
        self,
        template: PromptTemplate,
        model: str,
        deadline: float,
        timeout_s: float,
        token: Optional[CancellationToken],
        on_retry: Optional[Callable[[RetryProgress], None]],
    ) -> str:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise GenerationTimeoutError(timeout_s)

        async def call_provider() -> str:
            attempt_timeout = min(self.config.request_timeout_s, max(deadline - self._clock(), 0.001))
            return await self.provider.generate(
                template.user_prompt,
                max_tokens=template.max_tokens,
                temperature=template.temperature,
                timeout_s=attempt_timeout,
                system_prompt=template.system_prompt,
                model=model,
            )

        async def with_retries() -> str:
            default_retry = RetryManager("ai-provider", self._policy(self.config.default_retry, on_retry))
            try:
                return await default_retry.execute(call_provider, token)
            except ProviderError as e:
                if e.code is not ProviderErrorCode.RATE_LIMIT:
                    raise
                rate_limited = e
            log_event(logger, logging.WARNING, "orchestrator", "rate_limit_policy", error=rate_limited.message)
            rate_limit_retry = RetryManager("ai-provider-rate-limit", self._policy(self.config.rate_limit_retry, on_retry))
            # the rate limit already seen is attempt 1 of this policy
            return await rate_limit_retry.execute(call_provider, token, prior_error=rate_limited)

        async def chain() -> str:
            return await self.queue.enqueue(lambda: self.breaker.execute(with_retries))

        work = chain() if token is None else token.guard(chain())
        try:
            return await asyncio.wait_for(work, timeout=remaining)
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(timeout_s) from None

    @staticmethod
    def _policy(base: RetryConfig, on_retry: Optional[Callable[[RetryProgress], None]]) -> RetryConfig:
        if on_retry is None:
            return base
        return base.model_copy(update={"on_progress": on_retry})

    def _validate(self, raw_text: str, request: GenerationRequest, quick: bool) -> ValidatedItinerary:
        if not quick:
            return self.validator.validate_itinerary(raw_text)
        response = expand_quick_itinerary(self.validator.validate_quick(raw_text), request, self.budget_optimizer)
        errors, warnings = check_business_rules(response.itinerary)
        if errors:
            raise ItineraryValidationError("quick itinerary broke business rules", errors=errors, raw_text=raw_text)
        return ValidatedItinerary(response=response, warnings=warnings)

    def _cached_result(self, cached: CachedItinerary, key: str, started: float) -> ItineraryResult:
        response = ItineraryResponse.model_validate(cached.itinerary)
        return ItineraryResult(
            itinerary=response,
            performance=PerformanceMetrics(
                total_time_ms=(time.perf_counter() - started) * 1000,
                cache_hit=True,
                optimizations_applied=("cache_hit",),
            ),
            warnings=cached.warnings,
            metadata=ResultMetadata(
                generated_at=datetime.now(timezone.utc),
                generation_method="cache",
                quality=cached.quality,
                estimated_accuracy=cached.estimated_accuracy,
                model=cached.model,
                fingerprint=key,
            ),
        )

    def _check_cancelled(self, token: Optional[CancellationToken], run_id: str, state: PipelineState) -> None:
        if token is None or not token.is_cancelled:
            return
        self._failures += 1
        self._enter(run_id, state, PipelineState.FAILED, kind="CANCELLATION", error=token.reason or "")
        token.raise_if_cancelled()

    def _enter(self, run_id: str, old: Optional[PipelineState], new: PipelineState, **fields) -> PipelineState:
        level = logging.ERROR if new is PipelineState.FAILED else logging.INFO
        log_event(logger, level, "orchestrator", "generate_itinerary", run=run_id,
                  transition=f"{old.value if old else 'START'}->{new.value}", **fields)
        return new

    async def health_check(self) -> HealthReport:
        started = time.monotonic()
        provider_ok = True
        provider_error = None
        try:
            await self.queue.enqueue(lambda: self.provider.generate(
                _HEALTH_PROMPT, max_tokens=20, temperature=0.0, timeout_s=10.0
            ))
        except PipelineError as e:
            provider_ok = False
            provider_error = e.message
        latency_ms = (time.monotonic() - started) * 1000

        cache_ok = True
        try:
            await self.cache_store.set("health:check", "ok", 10)
            cache_ok = await self.cache_store.get("health:check") == "ok"
            await self.cache_store.delete("health:check")
        except (OSError, RuntimeError) as e:
            log_event(logger, logging.WARNING, "orchestrator", "health_check", cache_ok=False, error=str(e))
            cache_ok = False

        if not provider_ok:
            status = "unhealthy"
        elif not cache_ok or not self.breaker.is_healthy():
            status = "degraded"
        else:
            status = "healthy"
        log_event(logger, logging.INFO, "orchestrator", "health_check", status=status, latency_ms=latency_ms)
        return HealthReport(
            status=status,
            provider=self.provider.name,
            provider_ok=provider_ok,
            provider_latency_ms=latency_ms if provider_ok else None,
            provider_error=provider_error,
            breaker_state=self.breaker.state.value,
            cache_ok=cache_ok,
        )

    def stats(self) -> PipelineStats:
        cache_stats = self.cache_store.stats() if isinstance(self.cache_store, InMemoryResponseCache) else None
        return PipelineStats(
            requests_total=self._requests_total,
            cache_hits=self._cache_hits,
            failures=self._failures,
            queue=self.queue.stats(),
            breaker=self.breaker.stats(),
            cache=cache_stats,
        )
