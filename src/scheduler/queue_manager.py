"""
Job Queue for the lead pipeline.

Responsibilities:
- Holds every Job (pending, running, completed, failed) in an in-memory store
- Orders pending jobs: priority ASC, created_at ASC, insertion order
- Validates job type and payload at enqueue time (fail fast)
- Owns the handler registry and per-job retry contexts
- Exposes stats / pending snapshot / clear, safe to call while handlers run

What JobQueue does NOT do itself:
- Run the dispatch loop or invoke handlers (Dispatcher's responsibility)
- Decide retries (retry_policy's responsibility)

Concurrency:
All store mutations happen under a threading.RLock that is never held across
an await, so read operations never wait on a running handler.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from .clock import Clock, SystemClock
from .dispatcher import Dispatcher
from .entities import (
    DrainResult,
    HandlerResult,
    Job,
    JobStatus,
    JobType,
    NextJob,
    QueueStats,
    coerce_job_type,
)
from .errors import (
    HandlerNotRegisteredError,
    InvalidOperationError,
    InvalidPayloadError,
    JobNotFoundError,
    UnknownJobTypeError,
)
from .persistence import JsonQueueStore
from .retry_policy import RetryContext, RetryPolicy, get_retry_policy


logger = logging.getLogger(__name__)


JobHandler = Callable[[dict], Awaitable[Any]]


class JobQueue:
    """
    Priority job queue with handler dispatch and policy-driven retries.

    Usage:
        queue = JobQueue()
        queue.register_handler("discover", handle_discover)
        queue.enqueue("discover", {"query": "plumbers in Austin TX"})
        result = await queue.process_all()

    Background mode:
        queue.start()          # poll every poll_interval seconds
        ...
        await queue.stop()     # waits for in-flight handlers
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        alert_sink: Optional[Any] = None,
        workers: int = 1,
        poll_interval: float = 1.0,
        rate_limit_per_minute: Optional[int] = None,
        retry_policies: Optional[Mapping[Union[JobType, str], RetryPolicy]] = None,
        store: Optional[JsonQueueStore] = None,
        rng: Optional[Any] = None,
    ):
        """
        Initialize JobQueue.

        Args:
            clock: Time source (SystemClock by default)
            alert_sink: Object with async notify(kind, severity, title, detail)
            workers: Concurrent handler count (1 = strictly sequential)
            poll_interval: Seconds between background polls
            rate_limit_per_minute: Max dispatches per sliding minute (None = unlimited)
            retry_policies: Per-type policy overrides
            store: Optional JSON snapshot store for persistence
            rng: Random source for retry jitter
        """
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")

        self.clock = clock or SystemClock()
        self.alert_sink = alert_sink
        self.retry_policies = dict(retry_policies or {})
        self.store = store

        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._handlers: dict[JobType, JobHandler] = {}
        self._retry_contexts: dict[str, RetryContext] = {}
        self._dirty = False

        if self.store is not None:
            for job in self.store.load_and_recover():
                self._jobs[job.id] = job
            self._mark_dirty()
            self.flush()

        self._dispatcher = Dispatcher(
            queue=self,
            clock=self.clock,
            workers=workers,
            poll_interval=poll_interval,
            rate_limit_per_minute=rate_limit_per_minute,
            rng=rng,
        )

    # =========================================================================
    # Handler Registry
    # =========================================================================

    def register_handler(
        self,
        job_type: Union[JobType, str],
        handler: JobHandler,
    ) -> None:
        """
        Associate a handler with a job type. Re-registering overwrites.

        Raises:
            UnknownJobTypeError: If job_type is not a pipeline job type
            TypeError: If handler is not callable
        """
        key = self._resolve_type(job_type)
        if not callable(handler):
            raise TypeError(f"Handler for '{key.value}' must be callable")

        if key in self._handlers:
            logger.debug(f"Overwriting handler for job type '{key.value}'")
        self._handlers[key] = handler

    def has_handler(self, job_type: Union[JobType, str]) -> bool:
        return self._resolve_type(job_type) in self._handlers

    def get_policy(self, job_type: Union[JobType, str]) -> RetryPolicy:
        """Retry policy in effect for a job type (overrides first)."""
        return get_retry_policy(job_type, self.retry_policies)

    # =========================================================================
    # Job Insertion
    # =========================================================================

    def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict] = None,
        priority: int = 0,
        run_at: Optional[datetime] = None,
    ) -> Job:
        """
        Add a new pending job. Never blocks on running handlers.

        Args:
            job_type: One of the pipeline job types
            payload: Dict passed verbatim to the handler
            priority: Lower dispatches sooner
            run_at: Earliest dispatch time (defaults to now)

        Returns:
            The created Job

        Raises:
            UnknownJobTypeError: If job_type is not a pipeline job type
            InvalidPayloadError: If payload is not a dict
        """
        job = self._add_job(job_type, payload, priority, run_at)
        self.flush()
        return job

    def enqueue_next(self, next_job: NextJob) -> Job:
        """
        Enqueue a follow-on job declared by a handler.

        Written to the snapshot with the rest of the drain, not immediately.
        """
        return self._add_job(
            next_job.type,
            next_job.payload,
            priority=next_job.priority,
            run_at=next_job.run_at,
        )

    def _add_job(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict],
        priority: int = 0,
        run_at: Optional[datetime] = None,
    ) -> Job:
        key = self._resolve_type(job_type)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidPayloadError(payload)

        job = Job.create(
            job_type=key,
            payload=payload,
            priority=priority,
            now=self.clock.now(),
            run_at=run_at,
        )

        with self._lock:
            self._jobs[job.id] = job
            self._mark_dirty()

        logger.info(
            f"Enqueued job {job.id} (type={key.value}, priority={priority})"
        )
        return job

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> Job:
        """
        Get a job or raise.

        Raises:
            JobNotFoundError: If no job has this id
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        job_type: Optional[Union[JobType, str]] = None,
    ) -> list[Job]:
        """All jobs matching the filters, in dispatch order."""
        status_key = JobStatus(status) if status is not None else None
        type_key = self._resolve_type(job_type) if job_type is not None else None

        with self._lock:
            jobs = [
                job for job in self._jobs.values()
                if (status_key is None or job.status == status_key)
                and (type_key is None or job.type == type_key)
            ]
        return sorted(jobs, key=lambda j: j.sort_key)

    def get_pending_jobs(self, ready_only: bool = False) -> list[Job]:
        """
        Snapshot of pending jobs in dispatch order.

        Args:
            ready_only: Only jobs whose next_run_at has passed
        """
        pending = self.list_jobs(status=JobStatus.PENDING)
        if ready_only:
            now = self.clock.now()
            pending = [job for job in pending if job.is_ready(now)]
        return pending

    def get_stats(self) -> QueueStats:
        """Counts by status and by type. Both maps sum to total."""
        by_status = {status.value: 0 for status in JobStatus}
        by_type = {job_type.value: 0 for job_type in JobType}

        with self._lock:
            for job in self._jobs.values():
                by_status[job.status.value] += 1
                by_type[job.type.value] += 1
            total = len(self._jobs)

        return QueueStats(total=total, by_status=by_status, by_type=by_type)

    def get_retry_context(self, job_id: str) -> Optional[RetryContext]:
        """Retry bookkeeping for a job awaiting retry, if any."""
        with self._lock:
            return self._retry_contexts.get(job_id)

    # =========================================================================
    # Removal
    # =========================================================================

    def clear(self, status: Optional[Union[JobStatus, str]] = None) -> int:
        """
        Remove jobs with the given status (all non-running jobs if omitted).

        Running jobs are never removed.

        Returns:
            Number of jobs removed

        Raises:
            ValueError: If status is not a valid job status
        """
        status_key = JobStatus(status) if status is not None else None

        with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.status != JobStatus.RUNNING
                and (status_key is None or job.status == status_key)
            ]
            for job_id in doomed:
                del self._jobs[job_id]
                self._retry_contexts.pop(job_id, None)
            if doomed:
                self._mark_dirty()
        if doomed:
            self.flush()

        label = status_key.value if status_key else "all"
        logger.info(f"Cleared {len(doomed)} job(s) (status={label})")
        return len(doomed)

    # =========================================================================
    # Execution (delegated to Dispatcher)
    # =========================================================================

    async def process_all(self) -> DrainResult:
        """
        Dispatch ready jobs until none remain, including jobs chained by
        handlers during this call. Jobs rescheduled into the future are not
        waited for.

        Returns:
            Terminal outcomes reached during this call
        """
        return await self._dispatcher.drain()

    def start(self) -> None:
        """Start the background polling loop on the running event loop."""
        self._dispatcher.start()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the background loop. Idempotent; in-flight handlers finish."""
        await self._dispatcher.stop(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._dispatcher.is_running

    @property
    def dispatcher(self):
        return self._dispatcher

    # =========================================================================
    # Lifecycle Transitions (called by Dispatcher)
    # =========================================================================

    def claim_next(self) -> Optional[tuple[Job, Optional[JobHandler]]]:
        """
        Atomically claim the best-ordered ready job.

        - Handler registered: PENDING → RUNNING, attempts += 1
        - No handler: PENDING → FAILED with NO_HANDLER, attempts unchanged

        Returns:
            (job, handler) with handler None for a NO_HANDLER failure,
            or None if no job is ready
        """
        now = self.clock.now()
        with self._lock:
            job = self._peek_ready_locked(now)
            if job is None:
                return None

            handler = self._handlers.get(job.type)
            if handler is None:
                error = HandlerNotRegisteredError(job.type.value)
                job.status = JobStatus.FAILED
                job.last_error = str(error)
                job.finished_at = now
                job.updated_at = now
                self._retry_contexts.pop(job.id, None)
                self._mark_dirty()
                return job, None

            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.started_at = now
            job.updated_at = now
            self._mark_dirty()
            return job, handler

    def has_ready_job(self) -> bool:
        with self._lock:
            return self._peek_ready_locked(self.clock.now()) is not None

    def next_run_at(self) -> Optional[datetime]:
        """Earliest next_run_at among pending jobs."""
        with self._lock:
            times = [
                job.next_run_at for job in self._jobs.values()
                if job.status == JobStatus.PENDING
            ]
        return min(times) if times else None

    def mark_completed(self, job: Job, outcome: Any) -> list[NextJob]:
        """
        RUNNING → COMPLETED.

        Returns:
            Follow-on jobs the handler declared (not yet enqueued)
        """
        if isinstance(outcome, HandlerResult):
            result, next_jobs = outcome.result, list(outcome.next_jobs)
        else:
            result, next_jobs = outcome, []

        with self._lock:
            self._require_running(job)
            now = self.clock.now()
            job.status = JobStatus.COMPLETED
            job.result = result
            job.finished_at = now
            job.updated_at = now
            self._retry_contexts.pop(job.id, None)
            self._mark_dirty()

        return next_jobs

    def mark_retry(self, job: Job, context: RetryContext) -> None:
        """RUNNING → PENDING with next_run_at pushed to the retry time."""
        with self._lock:
            self._require_running(job)
            job.status = JobStatus.PENDING
            job.last_error = context.last_error
            job.next_run_at = context.next_retry_at
            job.updated_at = self.clock.now()
            self._retry_contexts[job.id] = context
            self._mark_dirty()

    def mark_failed(self, job: Job, error_message: str) -> None:
        """RUNNING → FAILED (terminal)."""
        with self._lock:
            self._require_running(job)
            now = self.clock.now()
            job.status = JobStatus.FAILED
            job.last_error = error_message
            job.finished_at = now
            job.updated_at = now
            self._retry_contexts.pop(job.id, None)
            self._mark_dirty()

    # =========================================================================
    # Persistence
    # =========================================================================

    def flush(self) -> bool:
        """
        Write the snapshot if jobs changed since the last write.

        enqueue() and clear() flush immediately. Dispatch transitions only
        mark the queue dirty and the dispatcher flushes once per drain, so a
        busy drain does not rewrite the file for every job.

        Returns:
            True if a snapshot was written
        """
        if self.store is None:
            return False

        with self._lock:
            if not self._dirty:
                return False
            records = [job.to_dict() for job in self._jobs.values()]
            self._dirty = False

        self.store.write_records(records)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _peek_ready_locked(self, now: datetime) -> Optional[Job]:
        best = None
        for job in self._jobs.values():
            if job.is_ready(now) and (best is None or job.sort_key < best.sort_key):
                best = job
        return best

    def _require_running(self, job: Job) -> None:
        if job.status != JobStatus.RUNNING:
            raise InvalidOperationError(
                f"Job {job.id} is {job.status.value}, expected running"
            )

    def _mark_dirty(self) -> None:
        if self.store is not None:
            self._dirty = True

    @staticmethod
    def _resolve_type(job_type: Union[JobType, str]) -> JobType:
        try:
            return coerce_job_type(job_type)
        except ValueError:
            raise UnknownJobTypeError(job_type) from None
