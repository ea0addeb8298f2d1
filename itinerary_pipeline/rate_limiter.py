import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from .errors import CancellationError
from .tracing import log_event


logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueStats(BaseModel):
    name: str
    queue_length: int
    in_flight: int
    requests_this_window: int
    max_requests_per_window: int
    window_s: float
    dispatched_total: int


class _Job:
    __slots__ = ("factory", "future", "enqueued_at")

    def __init__(self, factory: Callable[[], Awaitable[Any]], future: "asyncio.Future[Any]") -> None:
        self.factory = factory
        self.future = future
        self.enqueued_at = time.monotonic()


class RequestQueue:
    """FIFO queue that dispatches work under a fixed-window request budget.

    A single drain task owns the window counter: it pops jobs in enqueue
    order, sleeps until the window resets when the budget is spent, then
    starts the job and waits ``politeness_delay_s`` before the next one.
    Jobs run concurrently once dispatched; a failing job rejects only its
    own caller.
    """

    def __init__(
        self,
        name: str,
        max_requests_per_window: int = 60,
        window_s: float = 60.0,
        politeness_delay_s: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests_per_window < 1:
            raise ValueError("max_requests_per_window must be at least 1")
        self.name = name
        self.max_requests_per_window = max_requests_per_window
        self.window_s = window_s
        self.politeness_delay_s = politeness_delay_s
        self._clock = clock
        self._queue: Optional[asyncio.Queue[_Job]] = None
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._window_start = clock()
        self._window_count = 0
        self._dispatched_total = 0
        self._closed = False

    async def enqueue(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Queue ``factory`` and wait for its result.

        Cancelling the awaiting caller (for example through ``asyncio.wait_for``)
        removes a not-yet-dispatched job and cancels a running one.
        """
        if self._closed:
            raise CancellationError(f"request queue [{self.name}] is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._ensure_drain().put_nowait(_Job(factory, future))
        return await future

    def stats(self) -> QueueStats:
        self._roll_window()
        return QueueStats(
            name=self.name,
            queue_length=self._queue.qsize() if self._queue is not None else 0,
            in_flight=len(self._in_flight),
            requests_this_window=self._window_count,
            max_requests_per_window=self.max_requests_per_window,
            window_s=self.window_s,
            dispatched_total=self._dispatched_total,
        )

    async def aclose(self) -> None:
        self._closed = True
        if self._drain_task is not None:
            self._drain_task.cancel()
            await asyncio.gather(self._drain_task, return_exceptions=True)
            self._drain_task = None
        if self._queue is not None:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                if not job.future.done():
                    job.future.set_exception(
                        CancellationError(f"request queue [{self.name}] shut down")
                    )
        for task in list(self._in_flight):
            task.cancel()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    def _ensure_drain(self) -> "asyncio.Queue[_Job]":
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name=f"request-queue-{self.name}")
        return self._queue

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            if job.future.done():
                # caller gave up while waiting
                continue
            try:
                await self._wait_for_slot()
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.set_exception(CancellationError(f"request queue [{self.name}] shut down"))
                raise
            if job.future.done():
                continue
            self._window_count += 1
            self._dispatched_total += 1
            waited_ms = (time.monotonic() - job.enqueued_at) * 1000
            log_event(logger, logging.DEBUG, "request-queue", self.name, dispatched=self._dispatched_total,
                      window_count=self._window_count, queue_wait_ms=waited_ms)
            task = asyncio.create_task(self._run(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            job.future.add_done_callback(lambda fut, t=task: t.cancel() if fut.cancelled() else None)
            if self.politeness_delay_s > 0:
                await asyncio.sleep(self.politeness_delay_s)

    async def _wait_for_slot(self) -> None:
        while True:
            self._roll_window()
            if self._window_count < self.max_requests_per_window:
                return
            wait_s = self.window_s - (self._clock() - self._window_start)
            log_event(logger, logging.INFO, "request-queue", self.name, rate_limited=True,
                      wait_s=max(wait_s, 0.0))
            await asyncio.sleep(max(wait_s, 0.0))

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self._window_start >= self.window_s:
            self._window_start = now
            self._window_count = 0

    async def _run(self, job: _Job) -> None:
        try:
            result = await job.factory()
        except asyncio.CancelledError:
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as exc:
            if not job.future.done():
                job.future.set_exception(exc)
        else:
            if not job.future.done():
                job.future.set_result(result)
