"""Exponential-backoff retries with jitter, progress reporting and cancellation.

``RetryManager`` drives ``tenacity.AsyncRetrying`` with the pipeline's own
delay schedule and retry predicate. The delay before attempt ``n`` (n >= 2) is
``min(max_delay, base_delay * multiplier ** (n - 2))``, optionally multiplied
by a factor drawn from [0.5, 1.5].
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from .errors import (
    CancellationError,
    PipelineError,
    ProviderError,
    ProviderErrorCode,
    RetryExhaustedError,
)
from .tracing import log_event


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryProgress(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    attempt: int  # the attempt about to be made
    max_attempts: int
    delay_s: float
    error: BaseException


def default_retry_condition(error: BaseException) -> bool:
    if isinstance(error, CancellationError):
        return False
    if isinstance(error, PipelineError):
        return error.retryable
    return isinstance(error, (ConnectionError, asyncio.TimeoutError))


def transient_only_condition(error: BaseException) -> bool:
    """Retry transient failures but hand rate limits to the rate-limit policy."""
    if isinstance(error, ProviderError) and error.code is ProviderErrorCode.RATE_LIMIT:
        return False
    return default_retry_condition(error)


class RetryConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = Field(3, ge=1)
    base_delay_s: float = Field(1.0, ge=0)
    max_delay_s: float = Field(8.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    jitter: bool = True
    retry_condition: Optional[Callable[[BaseException], bool]] = None
    on_progress: Optional[Callable[[RetryProgress], None]] = None


def default_policy(**overrides: Any) -> RetryConfig:
    return RetryConfig(**{"max_attempts": 3, "base_delay_s": 1.0, "max_delay_s": 8.0,
                          "backoff_multiplier": 2.0, "jitter": True, **overrides})


def rate_limit_policy(**overrides: Any) -> RetryConfig:
    # 2s, 5s, 12.5s, 30s: long enough to outlast a ~60s provider window
    return RetryConfig(**{"max_attempts": 5, "base_delay_s": 2.0, "max_delay_s": 30.0,
                          "backoff_multiplier": 2.5, "jitter": True, **overrides})


class CancellationToken:
    """Cooperative cancellation shared between a caller and the pipeline."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "cancelled by caller")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CancellationError(self.reason or "cancelled during retry delay")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` but abandon it as soon as the token is cancelled."""
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise CancellationError(self.reason or "cancelled while in flight")


class RetryManager:
    def __init__(self, name: str, config: Optional[RetryConfig] = None) -> None:
        self.name = name
        self.config = config or default_policy()

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds before ``attempt`` (the first retry is attempt 2)."""
        cfg = self.config
        exponent = max(0, attempt - 2)
        delay = min(cfg.max_delay_s, cfg.base_delay_s * (cfg.backoff_multiplier ** exponent))
        if cfg.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cancellation_token: Optional[CancellationToken] = None,
        prior_error: Optional[BaseException] = None,
    ) -> T:
        """Run ``operation`` under this policy.

        ``prior_error`` is a failure already seen by the caller. It counts as
        attempt 1, so the first call here waits out the attempt-2 delay.
        """
        token = cancellation_token
        sleep = token.sleep if token is not None else asyncio.sleep
        offset = 0
        if prior_error is not None:
            offset = 1
            if self.config.max_attempts <= offset:
                raise RetryExhaustedError(
                    f"{self.name} failed after {offset} attempts", prior_error, offset
                ) from prior_error
            delay = self.compute_delay(2)
            self._report(2, delay, prior_error)
            await sleep(delay)
        condition = self.config.retry_condition or default_retry_condition

        def should_retry(error: BaseException) -> bool:
            if isinstance(error, CancellationError):
                return False
            return condition(error)

        async def attempt() -> T:
            if token is None:
                return await operation()
            token.raise_if_cancelled()
            return await token.guard(operation())

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts - offset),
            wait=lambda state: self.compute_delay(state.attempt_number + 1 + offset),
            retry=retry_if_exception(should_retry),
            before_sleep=lambda state: self._before_sleep(state, offset),
            sleep=sleep,
            reraise=False,
        )
        try:
            result = await retrying(attempt)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number + offset
            log_event(logger, logging.ERROR, "retry", self.name, ok=False,
                      attempts=attempts, error=str(last_error))
            raise RetryExhaustedError(
                f"{self.name} failed after {attempts} attempts", last_error, attempts
            ) from last_error
        return result

    def _before_sleep(self, retry_state: RetryCallState, offset: int = 0) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if error is not None:
            self._report(retry_state.attempt_number + 1 + offset, float(delay), error)

    def _report(self, next_attempt: int, delay: float, error: BaseException) -> None:
        log_event(logger, logging.WARNING, "retry", self.name, attempt=next_attempt,
                  max_attempts=self.config.max_attempts, delay_s=float(delay), error=str(error))
        if self.config.on_progress is not None and error is not None:
            self.config.on_progress(
                RetryProgress(
                    attempt=next_attempt,
                    max_attempts=self.config.max_attempts,
                    delay_s=float(delay),
                    error=error,
                )
            )
