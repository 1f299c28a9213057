"""
Dispatcher for the Job Queue.

- Pulls the best-ordered ready job from the queue and runs its handler
- Applies the lifecycle transition for the outcome (complete / retry / fail)
- Enqueues follow-on jobs declared by successful handlers
- Reports terminal failures to the alert sink
- Runs the background polling loop and a worker pool of configurable size

What Dispatcher MUST NOT do:
- Hold the queue lock across an await
- Cancel a handler that is already executing (stop() is a graceful drain)
"""

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from .clock import Clock
from .entities import DrainResult, Job
from .errors import ErrorCode, SchedulerError
from .retry_policy import (
    create_retry_context,
    format_retry_delay,
    update_retry_context,
)

if TYPE_CHECKING:
    from .queue_manager import JobQueue


logger = logging.getLogger(__name__)


RATE_LIMIT_WINDOW = timedelta(minutes=1)


class DispatcherState(str, Enum):
    """Dispatcher lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class DispatchOutcome(str, Enum):
    """Result of running one job."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"


@dataclass
class LoopRun:
    """State owned by one start()..stop() run of the background loop."""

    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    handlers: int = 0


class RateLimiter:
    """
    Sliding one-minute window over dispatch start times.

    acquire() returns as soon as the window has room; the caller records the
    dispatch with record() in the same event-loop step.
    """

    def __init__(self, clock: Clock, per_minute: int):
        if per_minute < 1:
            raise ValueError(f"rate limit must be at least 1, got {per_minute}")
        self.clock = clock
        self.per_minute = per_minute
        self._window: deque[datetime] = deque()

    def _prune(self, now: datetime) -> None:
        while self._window and now - self._window[0] >= RATE_LIMIT_WINDOW:
            self._window.popleft()

    def has_capacity(self) -> bool:
        self._prune(self.clock.now())
        return len(self._window) < self.per_minute

    async def acquire(self) -> None:
        while True:
            now = self.clock.now()
            self._prune(now)
            if len(self._window) < self.per_minute:
                return
            wait = (self._window[0] + RATE_LIMIT_WINDOW - now).total_seconds()
            logger.debug(f"Rate limit reached, waiting {wait:.1f}s")
            await self.clock.sleep(wait)

    def record(self) -> None:
        self._window.append(self.clock.now())


class Dispatcher:
    """
    Runs queued jobs against registered handlers.

    Drain semantics (process_all and each background tick):
    1. Claim the best-ordered ready job (atomic in the queue)
    2. Await its handler
    3. Apply the transition, enqueue follow-on jobs
    4. Repeat until no job is ready and nothing is in flight

    With workers > 1, up to that many handlers run at once. Admission is
    always the best-ordered ready job at the moment a worker is free.
    """

    def __init__(
        self,
        queue: "JobQueue",
        clock: Clock,
        workers: int = 1,
        poll_interval: float = 1.0,
        rate_limit_per_minute: Optional[int] = None,
        rng: Optional[Any] = None,
    ):
        """
        Initialize Dispatcher.

        Args:
            queue: JobQueue owning job state and handlers
            clock: Time source for retry deadlines and sleeps
            workers: Maximum concurrent handlers
            poll_interval: Seconds between background polls when idle
            rate_limit_per_minute: Optional dispatch rate cap
            rng: Random source for retry jitter
        """
        self.queue = queue
        self.clock = clock
        self.workers = workers
        self.poll_interval = poll_interval
        self.rng = rng
        self.rate_limiter = (
            RateLimiter(clock, rate_limit_per_minute)
            if rate_limit_per_minute else None
        )

        self._state = DispatcherState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._run: Optional[LoopRun] = None
        # Loops that outlived a stop() timeout; each keeps its own LoopRun
        self._lingering: set[asyncio.Task] = set()
        self._in_flight = 0

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == DispatcherState.RUNNING

    @property
    def in_flight(self) -> int:
        """Number of handlers currently executing."""
        return self._in_flight

    # =========================================================================
    # Drain
    # =========================================================================

    async def drain(self, run: Optional[LoopRun] = None) -> DrainResult:
        """
        Dispatch ready jobs until none remain.

        Args:
            run: Background loop run this drain belongs to. Once its stop
                event is set no new job is claimed while in-flight handlers
                finish.

        Returns:
            Aggregate outcomes of this drain
        """
        result = DrainResult()
        changed = asyncio.Event()
        active = {"count": 0}

        def keep_going() -> bool:
            return run is None or not run.stop_event.is_set()

        async def worker() -> None:
            while keep_going():
                if self.rate_limiter is not None and self.queue.has_ready_job():
                    await self.rate_limiter.acquire()
                    if not keep_going():
                        break

                claimed = self.queue.claim_next()
                if claimed is None:
                    if active["count"] == 0:
                        changed.set()
                        return
                    changed.clear()
                    await changed.wait()
                    continue

                if self.rate_limiter is not None:
                    self.rate_limiter.record()

                job, handler = claimed
                active["count"] += 1
                self._in_flight += 1
                if run is not None:
                    run.handlers += 1
                try:
                    if handler is None:
                        outcome = await self._fail_unhandled(job)
                    else:
                        outcome = await self.run_job(job, handler)
                finally:
                    active["count"] -= 1
                    self._in_flight -= 1
                    if run is not None:
                        run.handlers -= 1
                    changed.set()

                if outcome == DispatchOutcome.COMPLETED:
                    result.completed += 1
                elif outcome == DispatchOutcome.FAILED:
                    result.failed += 1
                else:
                    result.retried += 1

        try:
            await asyncio.gather(*(worker() for _ in range(self.workers)))
        finally:
            self.queue.flush()

        if result.dispatched:
            logger.info(
                f"Drain finished: {result.completed} completed, "
                f"{result.failed} failed, {result.retried} rescheduled"
            )
        return result

    # =========================================================================
    # Single Job Execution
    # =========================================================================

    async def run_job(self, job: Job, handler) -> DispatchOutcome:
        """
        Execute a claimed (RUNNING) job and apply its transition.

        Handler errors never propagate out of this method.
        """
        logger.info(
            f"Dispatching job {job.id} (type={job.type.value}, "
            f"attempt={job.attempts}, priority={job.priority})"
        )

        try:
            outcome = handler(job.payload)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            return await self._handle_failure(job, e)

        next_jobs = self.queue.mark_completed(job, outcome)
        logger.info(f"Job {job.id} completed (type={job.type.value})")

        for next_job in next_jobs:
            try:
                self.queue.enqueue_next(next_job)
            except SchedulerError as e:
                logger.error(
                    f"Job {job.id} declared an invalid follow-on job: {e}",
                    exc_info=True,
                )

        return DispatchOutcome.COMPLETED

    async def _handle_failure(self, job: Job, error: Exception) -> DispatchOutcome:
        context = self.queue.get_retry_context(job.id) or create_retry_context(
            job.id, job.type, policy=self.queue.get_policy(job.type)
        )
        context = update_retry_context(
            context, error, job.attempts, self.clock.now(), rng=self.rng
        )

        if context.will_retry:
            self.queue.mark_retry(job, context)
            logger.warning(
                f"Job {job.id} failed on attempt {job.attempts}, retrying in "
                f"{format_retry_delay(context.delay_ms)}: {error} ({context.reason})"
            )
            return DispatchOutcome.RETRIED

        self.queue.mark_failed(job, str(error))
        logger.error(
            f"Job {job.id} failed permanently after {job.attempts} attempt(s): "
            f"{error} ({context.reason})"
        )
        await self._notify_failure(job, context.reason)
        return DispatchOutcome.FAILED

    async def _fail_unhandled(self, job: Job) -> DispatchOutcome:
        # Already transitioned to FAILED by claim_next
        logger.error(f"Job {job.id} failed: {job.last_error}")
        await self._notify_failure(job, ErrorCode.NO_HANDLER)
        return DispatchOutcome.FAILED

    async def _notify_failure(self, job: Job, reason: Optional[str]) -> None:
        sink = self.queue.alert_sink
        if sink is None:
            return

        detail = {
            "job_id": job.id,
            "job_type": job.type.value,
            "attempts": job.attempts,
            "error": job.last_error,
            "reason": reason,
            "payload": job.payload,
        }
        try:
            await sink.notify(
                "job_failed",
                "warning",
                f"Job Failed: {job.type.value}",
                detail,
            )
        except Exception as e:
            logger.error(
                f"Alert delivery failed for job {job.id}: {e}", exc_info=True
            )

    # =========================================================================
    # Background Loop
    # =========================================================================

    def start(self) -> None:
        """
        Start the polling loop as a task on the running event loop.

        No-op if already running. A loop left behind by a timed-out stop()
        keeps its own stop event and never dispatches again.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        if self._task is not None and not self._task.done():
            logger.debug("Dispatcher already running")
            return

        loop = asyncio.get_running_loop()
        run = LoopRun()
        self._run = run
        self._state = DispatcherState.RUNNING
        self._task = loop.create_task(self._run_loop(run))
        logger.info(
            f"Dispatcher started (workers={self.workers}, "
            f"poll_interval={self.poll_interval}s)"
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the polling loop.

        With no handler in flight (sleeping between polls or waiting on the
        rate limit) the loop is cancelled immediately. Otherwise no new job
        is claimed and in-flight handlers are awaited for up to `timeout`
        seconds. Calling stop() when stopped is a no-op.
        """
        task = self._task
        if task is None and not self._lingering:
            return

        pending = set(self._lingering)
        if task is not None:
            self._run.stop_event.set()
            self._state = DispatcherState.STOPPING
            if self._run.handlers == 0:
                task.cancel()
            pending.add(task)

        pending = {t for t in pending if not t.done()}
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning(
                    f"Dispatcher did not drain within {timeout}s; "
                    f"{self._in_flight} handler(s) still running"
                )
                for leftover in still_running:
                    self._lingering.add(leftover)
                    leftover.add_done_callback(self._lingering.discard)

        self._task = None
        self._run = None
        self._state = DispatcherState.STOPPED
        logger.info("Dispatcher stopped")

    async def _run_loop(self, run: LoopRun) -> None:
        logger.debug("Dispatcher loop started")

        while not run.stop_event.is_set():
            try:
                await self.drain(run)
            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}", exc_info=True)

            if run.stop_event.is_set():
                break

            await self.clock.sleep(self.poll_interval)

        logger.debug("Dispatcher loop exited")
