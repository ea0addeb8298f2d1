import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from .errors import CancellationError, CircuitOpenError
from .tracing import log_event


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerStats(BaseModel):
    name: str
    state: CircuitState
    failure_count: int
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    short_circuited: int = 0
    open_count: int = 0
    last_failure: Optional[str] = None
    next_attempt_in_s: Optional[float] = None


StateListener = Callable[[CircuitState, CircuitState], None]


def _counts_as_failure(error: BaseException) -> bool:
    return not isinstance(error, CancellationError)


class CircuitBreaker:
    """Three-state breaker guarding one external dependency.

    Failures are counted inside a rolling ``monitoring_period_s`` window; once
    ``failure_threshold`` of them accumulate the breaker opens for
    ``reset_timeout_s`` and then lets a single trial call through.

    State changes never await, so each check-and-set runs atomically on the
    event loop and concurrent callers observe a consistent state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout_s: float = 60.0,
        monitoring_period_s: float = 120.0,
        is_failure: Callable[[BaseException], bool] = _counts_as_failure,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self.monitoring_period_s = monitoring_period_s
        self._is_failure = is_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._listeners: list[StateListener] = []
        self._stats = CircuitBreakerStats(name=name, state=self._state, failure_count=0)

    @property
    def state(self) -> CircuitState:
        # The open -> half-open transition is time driven; report it lazily.
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def execute(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        self._stats.total_requests += 1
        if not self._admit():
            self._stats.short_circuited += 1
            log_event(logger, logging.WARNING, "circuit-breaker", self.name,
                      state=self._state.value, short_circuit=True, fallback=fallback is not None)
            if fallback is not None:
                return await fallback()
            raise CircuitOpenError(
                f"circuit breaker [{self.name}] is {self._state.value}; "
                f"retry in {self._remaining_cooldown():.1f}s",
                retry_at=self._opened_at + self.reset_timeout_s,
            )

        try:
            result = await primary()
        except Exception as exc:
            if self._is_failure(exc):
                self._on_failure(exc)
            else:
                self._release_trial()
            if fallback is not None:
                log_event(logger, logging.WARNING, "circuit-breaker", self.name,
                          primary_failed=True, fallback=True, error=str(exc))
                return await fallback()
            raise
        except BaseException:
            self._release_trial()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._failures.clear()
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)
        log_event(logger, logging.INFO, "circuit-breaker", self.name, reset=True)

    def stats(self) -> CircuitBreakerStats:
        remaining = self._remaining_cooldown() if self._state is CircuitState.OPEN else None
        return self._stats.model_copy(
            update={
                "state": self.state,
                "failure_count": len(self._failures),
                "next_attempt_in_s": remaining,
            }
        )

    def is_healthy(self) -> bool:
        return self.state is CircuitState.CLOSED

    def _admit(self) -> bool:
        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.OPEN:
            if not self._cooldown_elapsed():
                return False
            self._transition(CircuitState.HALF_OPEN)
        # half-open: exactly one trial call at a time
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def _on_success(self) -> None:
        self._stats.successful_requests += 1
        self._failures.clear()
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, error: BaseException) -> None:
        now = self._clock()
        self._stats.failed_requests += 1
        self._stats.last_failure = str(error) or type(error).__name__

        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._open(now)
            return

        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.monitoring_period_s:
            self._failures.popleft()

        if len(self._failures) >= self.failure_threshold:
            self._open(now)
        else:
            log_event(logger, logging.WARNING, "circuit-breaker", self.name,
                      failures=len(self._failures), threshold=self.failure_threshold)

    def _release_trial(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._stats.open_count += 1
        self._transition(CircuitState.OPEN)

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.reset_timeout_s

    def _remaining_cooldown(self) -> float:
        return max(0.0, self._opened_at + self.reset_timeout_s - self._clock())

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        level = logging.ERROR if new_state is CircuitState.OPEN else logging.INFO
        log_event(logger, level, "circuit-breaker", self.name,
                  transition=f"{old_state.value}->{new_state.value}", failures=len(self._failures))
        for listener in list(self._listeners):
            listener(old_state, new_state)
