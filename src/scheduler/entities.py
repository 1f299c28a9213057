"""
Scheduler Domain Entities.

- Job: Single unit of pipeline work (discover, capture, score, generate,
  deploy, email, followup)
- NextJob / HandlerResult: Explicit stage chaining returned by handlers
- QueueStats / DrainResult: Read models returned by the queue

Status values:
- pending: Waiting for dispatch (also covers "scheduled for a future retry",
  distinguished by next_run_at)
- running: Handler is executing
- completed: Handler returned successfully
- failed: Terminal, no further transitions
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import itertools
import uuid


class JobType(str, Enum):
    """Closed set of pipeline job types."""

    DISCOVER = "discover"
    CAPTURE = "capture"
    SCORE = "score"
    GENERATE = "generate"
    DEPLOY = "deploy"
    EMAIL = "email"
    FOLLOWUP = "followup"


class JobStatus(str, Enum):
    """
    Job lifecycle status.

    Valid transitions:
    - pending → running (dispatch)
    - running → completed (handler success)
    - running → pending (retry scheduled)
    - running → failed (no retry)
    - pending → failed (no handler registered)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# FIFO tie-break for jobs created within the same clock tick
_sequence = itertools.count(1)


def generate_job_id() -> str:
    """Generate a new job ID."""
    return f"job-{uuid.uuid4().hex}"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_job_type(value: "JobType | str") -> JobType:
    """
    Convert a string to a JobType.

    Raises:
        ValueError: If the value is not a known job type
    """
    if isinstance(value, JobType):
        return value
    return JobType(value)


@dataclass
class Job:
    """
    Single unit of work queued for execution.

    Mutability rules:
    - id, type, payload, created_at, sequence: Immutable
    - attempts: Only increases, never resets across retries
    - status, next_run_at, last_error, result, started_at, finished_at,
      updated_at: Mutated by the dispatcher only
    """

    id: str
    type: JobType
    payload: dict
    created_at: datetime
    updated_at: datetime
    next_run_at: datetime
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    result: Any = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    sequence: int = 0

    @classmethod
    def create(
        cls,
        job_type: JobType,
        payload: dict,
        priority: int = 0,
        now: Optional[datetime] = None,
        run_at: Optional[datetime] = None,
    ) -> "Job":
        """Create a new pending Job with generated ID."""
        now = now or utcnow()
        return cls(
            id=generate_job_id(),
            type=job_type,
            payload=payload,
            created_at=now,
            updated_at=now,
            next_run_at=run_at or now,
            priority=priority,
            sequence=next(_sequence),
        )

    @property
    def sort_key(self) -> tuple:
        """Dispatch ordering: priority ASC, created_at ASC, insertion order."""
        return (self.priority, self.created_at, self.sequence)

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    def is_ready(self, now: datetime) -> bool:
        """Check if job may be dispatched at the given time."""
        return self.status == JobStatus.PENDING and self.next_run_at <= now

    def to_dict(self) -> dict:
        """Convert job to a JSON-safe dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "created_at": _to_iso(self.created_at),
            "updated_at": _to_iso(self.updated_at),
            "next_run_at": _to_iso(self.next_run_at),
            "last_error": self.last_error,
            "result": self.result,
            "started_at": _to_iso(self.started_at),
            "finished_at": _to_iso(self.finished_at),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        """Create job from dictionary."""
        return cls(
            id=data["id"],
            type=JobType(data["type"]),
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            priority=data.get("priority", 0),
            attempts=data.get("attempts", 0),
            created_at=_from_iso(data["created_at"]),
            updated_at=_from_iso(data.get("updated_at") or data["created_at"]),
            next_run_at=_from_iso(data.get("next_run_at") or data["created_at"]),
            last_error=data.get("last_error"),
            result=data.get("result"),
            started_at=_from_iso(data.get("started_at")),
            finished_at=_from_iso(data.get("finished_at")),
            sequence=data.get("sequence", 0),
        )


@dataclass(frozen=True)
class NextJob:
    """A follow-on job a handler asks the queue to enqueue after success."""

    type: JobType
    payload: dict = field(default_factory=dict)
    priority: int = 0
    run_at: Optional[datetime] = None


@dataclass
class HandlerResult:
    """
    Explicit handler outcome.

    The queue records `result` on the job, then enqueues `next_jobs`.
    Handlers may also return a plain value, treated as a result with no
    follow-on jobs.
    """

    result: Any = None
    next_jobs: list[NextJob] = field(default_factory=list)


@dataclass
class QueueStats:
    """Snapshot of queue counts."""

    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
        }


@dataclass
class DrainResult:
    """Aggregate outcome of a drain (process_all or one loop tick)."""

    completed: int = 0
    failed: int = 0
    retried: int = 0

    @property
    def dispatched(self) -> int:
        return self.completed + self.failed + self.retried
