"""Admission control, priority queueing and dispatch for generation work.

One :class:`RequestScheduler` owns the per-user rate table, the ordered
queue and the active set. Everything runs on a single asyncio loop; the
admission check never awaits, so check-and-increment and the queue insert
happen as one step.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generator, Generic, List, Optional, TypeVar

from .errors import (
    DuplicateTaskError,
    GenerationError,
    QueueFullError,
    QueueTimeoutError,
    RateLimitedError,
    RequestTimeoutError,
    TaskCancelledError,
    should_retry,
)
from .metrics import MetricsLogger
from .rate_limiter import UserRateLimiter
from .settings import SchedulerSettings
from .types import ProgressChannel, QueueStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")
WorkFn = Callable[[], Awaitable[Any]]

_AVG_SMOOTHING = 0.2
# sorts ahead of every tier priority
_FRONT_RANK = -(2**63)


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    NOT_CANCELLABLE = "not_cancellable"


class TaskHandle(Generic[T]):
    """Pending result of an accepted task. Await it to get the value."""

    def __init__(self, task_id: str, future: "asyncio.Future[T]"):
        self.task_id = task_id
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> T:
        return self._future.result()

    def exception(self) -> BaseException | None:
        return self._future.exception()

    def __await__(self) -> Generator[Any, None, T]:
        return asyncio.shield(self._future).__await__()


@dataclass(eq=False)
class _QueuedTask:
    id: str
    work: WorkFn
    owner: str
    priority: int
    enqueued_at: float
    seq: int
    future: "asyncio.Future[Any]"
    tier: str = "default"
    status_channel: Optional[ProgressChannel] = None
    attempts: int = 0
    dispatched: bool = False
    started_at: float | None = None
    runner: "asyncio.Task[Any] | None" = None
    run_timer: asyncio.TimerHandle | None = None
    queue_timer: asyncio.TimerHandle | None = None
    status_timer: asyncio.TimerHandle | None = None
    retry_timer: asyncio.TimerHandle | None = None

    @property
    def sort_key(self) -> tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.seq)

    @property
    def settled(self) -> bool:
        return self.future.done()


class RequestScheduler:
    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        *,
        rate_limiter: UserRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsLogger | None = None,
    ):
        self.settings = settings or SchedulerSettings()
        self.metrics = metrics
        self._clock = clock
        self.rate_limiter = rate_limiter or UserRateLimiter(
            self.settings.user_rate_limit,
            self.settings.user_rate_window_s,
            clock=clock,
        )
        self._queue: List[tuple[tuple[int, float, int], _QueuedTask]] = []
        self._active: Dict[str, _QueuedTask] = {}
        self._tasks: Dict[str, _QueuedTask] = {}
        self._seq = itertools.count()
        self._avg_task_seconds = self.settings.avg_task_seconds
        self._periodic: list[asyncio.Task[None]] = []

    # -- introspection -------------------------------------------------

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def avg_task_seconds(self) -> float:
        return self._avg_task_seconds

    def position(self, task_id: str) -> int | None:
        for index, (_, task) in enumerate(self._queue):
            if task.id == task_id:
                return index + 1
        return None

    def eta_seconds(self, position: int) -> float:
        avg = self._avg_task_seconds
        load = self.active_count / self.settings.max_concurrent if self.settings.max_concurrent else 0.0
        return position * avg + load * avg / 2

    def stats(self) -> dict[str, Any]:
        oldest_age: float | None = None
        if self._queue:
            oldest = min(task.enqueued_at for _, task in self._queue)
            oldest_age = round(self._clock() - oldest, 3)
        return {
            "active": self.active_count,
            "queued": self.queued_count,
            "max_concurrent": self.settings.max_concurrent,
            "max_queue_size": self.settings.max_queue_size,
            "oldest_queued_age_s": oldest_age,
            "avg_task_seconds": round(self._avg_task_seconds, 3),
            "user_rate_limit": self.settings.user_rate_limit,
            "user_rate_window_s": self.settings.user_rate_window_s,
            "tracked_users": len(self.rate_limiter),
        }

    # -- admission -----------------------------------------------------

    def enqueue(
        self,
        task_id: str,
        work: WorkFn,
        *,
        owner: str,
        tier: str | None = None,
        status_channel: ProgressChannel | None = None,
    ) -> TaskHandle[Any]:
        loop = asyncio.get_running_loop()
        if task_id in self._tasks:
            raise DuplicateTaskError(f"Task '{task_id}' is already scheduled.")
        policy = self.settings.tier(tier)
        decision = self.rate_limiter.try_acquire(owner, policy)
        if not decision.allowed:
            window_minutes = self.settings.user_rate_window_s / 60
            _log_task_event(logging.INFO, event="rejected", task_id=task_id, owner=owner, detail="rate_limited")
            raise RateLimitedError(
                "Rate limit exceeded. You can make {limit} requests per {minutes:g} minutes. "
                "Please try again in {wait:.0f} seconds.".format(
                    limit=decision.limit,
                    minutes=window_minutes,
                    wait=decision.retry_after,
                ),
                limit=decision.limit,
                window_s=self.settings.user_rate_window_s,
                retry_after=decision.retry_after,
            )
        if len(self._queue) >= self.settings.max_queue_size:
            self.rate_limiter.refund(owner)
            _log_task_event(logging.WARNING, event="rejected", task_id=task_id, owner=owner, detail="queue_full")
            raise QueueFullError("Queue is full. Please try again later.")
        task = _QueuedTask(
            id=task_id,
            work=work,
            owner=owner,
            priority=policy.priority,
            enqueued_at=self._clock(),
            seq=next(self._seq),
            future=loop.create_future(),
            tier=policy.name,
            status_channel=status_channel,
        )
        self._tasks[task_id] = task
        self._insert(task)
        task.run_timer = loop.call_later(self.settings.request_timeout_s, self._on_run_timeout, task)
        task.queue_timer = loop.call_later(self.settings.queue_timeout_s, self._on_queue_timeout, task)
        if status_channel is not None:
            task.status_timer = loop.call_later(
                self.settings.status_initial_delay_s, self._publish_status, task
            )
        _log_task_event(
            logging.DEBUG,
            event="enqueued",
            task_id=task_id,
            owner=owner,
            detail=f"priority={task.priority} queued={len(self._queue)}",
        )
        self._dispatch()
        return TaskHandle(task_id, task.future)

    async def schedule(
        self,
        task_id: str,
        work: WorkFn,
        *,
        owner: str,
        tier: str | None = None,
        status_channel: ProgressChannel | None = None,
    ) -> Any:
        return await self.enqueue(task_id, work, owner=owner, tier=tier, status_channel=status_channel)

    def _insert(self, task: _QueuedTask) -> None:
        bisect.insort(self._queue, (task.sort_key, task))

    def _insert_front(self, task: _QueuedTask) -> None:
        # newest retry first, ahead of every waiting task whatever its priority
        front_key = (_FRONT_RANK, -self._clock(), -next(self._seq))
        self._queue.insert(0, (front_key, task))

    def _remove_queued(self, task: _QueuedTask) -> bool:
        for index, (_, queued) in enumerate(self._queue):
            if queued is task:
                del self._queue[index]
                return True
        return False

    # -- dispatch ------------------------------------------------------

    def _dispatch(self) -> None:
        while self._queue and len(self._active) < self.settings.max_concurrent:
            _, task = self._queue.pop(0)
            if task.settled:
                continue
            self._start(task)

    def _start(self, task: _QueuedTask) -> None:
        loop = asyncio.get_running_loop()
        if not task.dispatched:
            task.dispatched = True
            _cancel_timer(task.queue_timer)
            task.queue_timer = None
            _cancel_timer(task.status_timer)
            task.status_timer = None
            if self.metrics is not None:
                self.metrics.observe_queue_wait(tier=task.tier, seconds=self._clock() - task.enqueued_at)
            if task.status_channel is not None:
                task.status_channel.publish(
                    QueueStatus(
                        task_id=task.id,
                        position=None,
                        total_in_system=self.active_count + self.queued_count + 1,
                        eta_seconds=0.0,
                        state="processing",
                    )
                )
        self._active[task.id] = task
        task.attempts += 1
        task.started_at = self._clock()
        _log_task_event(
            logging.DEBUG,
            event="dispatched",
            task_id=task.id,
            owner=task.owner,
            detail=f"attempt={task.attempts} active={len(self._active)}",
        )
        task.runner = loop.create_task(self._run(task))

    async def _run(self, task: _QueuedTask) -> None:
        try:
            value = await task.work()
        except asyncio.CancelledError:
            # cancelled by a timeout or shutdown; the canceller settles the handle
            return
        except Exception as exc:
            self._on_failure(task, exc)
        else:
            self._on_success(task, value)

    def _on_success(self, task: _QueuedTask, value: Any) -> None:
        self._record_runtime(task)
        self._active.pop(task.id, None)
        if self._settle(task, value=value):
            _log_task_event(logging.INFO, event="completed", task_id=task.id, owner=task.owner, detail=f"attempts={task.attempts}")
        self._dispatch()

    def _on_failure(self, task: _QueuedTask, exc: Exception) -> None:
        self._active.pop(task.id, None)
        if task.settled:
            self._dispatch()
            return
        if task.attempts < self.settings.retry_attempts and should_retry(exc):
            delay = self.settings.retry_delay_s * task.attempts
            _log_task_event(
                logging.WARNING,
                event="retrying",
                task_id=task.id,
                owner=task.owner,
                detail=f"attempt={task.attempts} delay={delay:g}s error={exc}",
            )
            if self.metrics is not None:
                self.metrics.observe_retry(tier=task.tier, error_class=_error_class(exc))
            loop = asyncio.get_running_loop()
            task.retry_timer = loop.call_later(delay, self._requeue, task)
        else:
            self._record_runtime(task)
            self._settle(task, error=exc)
            _log_task_event(
                logging.WARNING,
                event="failed",
                task_id=task.id,
                owner=task.owner,
                detail=f"attempts={task.attempts} error={_error_class(exc)}",
            )
        self._dispatch()

    def _requeue(self, task: _QueuedTask) -> None:
        task.retry_timer = None
        if task.settled:
            return
        self._insert_front(task)
        self._dispatch()

    def _record_runtime(self, task: _QueuedTask) -> None:
        if task.started_at is None:
            return
        elapsed = max(self._clock() - task.started_at, 0.0)
        self._avg_task_seconds = (1 - _AVG_SMOOTHING) * self._avg_task_seconds + _AVG_SMOOTHING * elapsed

    # -- settlement ----------------------------------------------------

    def _settle(self, task: _QueuedTask, *, value: Any = None, error: BaseException | None = None) -> bool:
        if task.settled:
            return False
        for timer in (task.run_timer, task.queue_timer, task.status_timer, task.retry_timer):
            _cancel_timer(timer)
        task.run_timer = task.queue_timer = task.status_timer = task.retry_timer = None
        self._tasks.pop(task.id, None)
        if error is not None:
            task.future.set_exception(error)
        else:
            task.future.set_result(value)
        # keep unobserved failures from being reported at garbage collection
        task.future.exception()
        if self.metrics is not None:
            self.metrics.observe_task(tier=task.tier, outcome="completed" if error is None else _error_class(error))
        if task.status_channel is not None:
            task.status_channel.close()
        return True

    def _on_run_timeout(self, task: _QueuedTask) -> None:
        task.run_timer = None
        if task.settled:
            return
        self._remove_queued(task)
        self._active.pop(task.id, None)
        if task.runner is not None and not task.runner.done():
            task.runner.cancel()
        self._settle(task, error=RequestTimeoutError("AI generation request timed out"))
        _log_task_event(logging.WARNING, event="timeout", task_id=task.id, owner=task.owner, detail="request")
        self._dispatch()

    def _on_queue_timeout(self, task: _QueuedTask) -> None:
        task.queue_timer = None
        if task.settled or task.dispatched:
            return
        self._remove_queued(task)
        self._settle(task, error=QueueTimeoutError("Request timed out in queue"))
        _log_task_event(logging.WARNING, event="timeout", task_id=task.id, owner=task.owner, detail="queue")
        self._dispatch()

    # -- cancellation --------------------------------------------------

    def cancel(self, task_id: str, owner: str) -> CancelOutcome:
        task = self._tasks.get(task_id)
        if task is None:
            return CancelOutcome.NOT_FOUND
        if task.owner != owner:
            return CancelOutcome.NOT_OWNER
        if task.id in self._active:
            return CancelOutcome.NOT_CANCELLABLE
        # a task waiting out its retry delay counts as queued
        if not self._remove_queued(task) and task.retry_timer is None:
            return CancelOutcome.NOT_CANCELLABLE
        self._settle(task, error=TaskCancelledError("Request was cancelled"))
        _log_task_event(logging.INFO, event="cancelled", task_id=task.id, owner=owner)
        return CancelOutcome.CANCELLED

    def clear_queue(self) -> int:
        cleared = 0
        while self._queue:
            _, task = self._queue.pop()
            if self._settle(task, error=TaskCancelledError("Queue cleared")):
                cleared += 1
        for task in list(self._tasks.values()):
            if task.retry_timer is not None and task.id not in self._active:
                if self._settle(task, error=TaskCancelledError("Queue cleared")):
                    cleared += 1
        logger.info("queue cleared tasks=%d", cleared)
        return cleared

    # -- status --------------------------------------------------------

    def _publish_status(self, task: _QueuedTask) -> None:
        task.status_timer = None
        if task.settled or task.dispatched or task.status_channel is None:
            return
        position = self.position(task.id)
        if position is not None:
            task.status_channel.publish(
                QueueStatus(
                    task_id=task.id,
                    position=position,
                    total_in_system=self.active_count + self.queued_count,
                    eta_seconds=round(self.eta_seconds(position), 1),
                )
            )
        if self.settings.status_interval_s > 0:
            loop = asyncio.get_running_loop()
            task.status_timer = loop.call_later(self.settings.status_interval_s, self._publish_status, task)

    # -- background upkeep ---------------------------------------------

    def start(self) -> None:
        if self._periodic:
            return
        self._periodic = [
            asyncio.create_task(self._every(self.settings.sweep_interval_s, self._sweep)),
            asyncio.create_task(self._every(self.settings.stats_interval_s, self._log_stats)),
        ]

    async def aclose(self) -> None:
        tasks, self._periodic = self._periodic, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _every(self, interval: float, job: Callable[[], None]) -> None:
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            job()

    def _sweep(self) -> None:
        removed = self.rate_limiter.sweep()
        if removed:
            logger.debug("rate table sweep removed=%d", removed)

    def _log_stats(self) -> None:
        if self._active or self._queue:
            stats = self.stats()
            logger.info(
                "scheduler stats active=%d/%d queued=%d avg_task_s=%.1f",
                stats["active"],
                stats["max_concurrent"],
                stats["queued"],
                stats["avg_task_seconds"],
            )


def _cancel_timer(timer: asyncio.TimerHandle | None) -> None:
    if timer is not None:
        timer.cancel()


def _error_class(exc: BaseException) -> str:
    if isinstance(exc, GenerationError):
        return exc.error_class
    return type(exc).__name__


def _log_task_event(
    level: int,
    *,
    event: str,
    task_id: str,
    owner: str,
    detail: str | None = None,
) -> None:
    message = f"{event} task_id={task_id} owner={owner}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


__all__ = ["CancelOutcome", "RequestScheduler", "TaskHandle"]
