"""
Job Scheduler Core Module.

- entities: Job, JobType, JobStatus, HandlerResult / NextJob
- retry_policy: per-type retry rules and backoff
- queue_manager: JobQueue (store, ordering, stats, clear)
- dispatcher: drain / background loop / worker pool
- persistence: optional JSON snapshot store
- alerting: AlertManager used as the queue's alert sink
"""

from .entities import (
    JobType,
    JobStatus,
    Job,
    NextJob,
    HandlerResult,
    QueueStats,
    DrainResult,
)
from .errors import (
    ErrorCode,
    SchedulerError,
    UnknownJobTypeError,
    InvalidPayloadError,
    HandlerNotRegisteredError,
    JobNotFoundError,
    InvalidOperationError,
    JobError,
)
from .retry_policy import (
    BackoffType,
    RetryPolicy,
    RetryDecision,
    RetryContext,
    DEFAULT_RETRY_POLICY,
    RETRY_POLICIES,
    get_retry_policy,
    calculate_retry_delay,
    should_retry,
    extract_error_code,
    create_retry_context,
    update_retry_context,
    format_retry_delay,
)
from .clock import Clock, SystemClock
from .persistence import JsonQueueStore
from .queue_manager import JobQueue
from .dispatcher import Dispatcher, DispatcherState
from .alerting import (
    Alert,
    AlertType,
    AlertSeverity,
    AlertChannel,
    AlertThresholds,
    AlertManager,
)

__all__ = [
    # Entities
    "JobType",
    "JobStatus",
    "Job",
    "NextJob",
    "HandlerResult",
    "QueueStats",
    "DrainResult",
    # Errors
    "ErrorCode",
    "SchedulerError",
    "UnknownJobTypeError",
    "InvalidPayloadError",
    "HandlerNotRegisteredError",
    "JobNotFoundError",
    "InvalidOperationError",
    "JobError",
    # Retry policy
    "BackoffType",
    "RetryPolicy",
    "RetryDecision",
    "RetryContext",
    "DEFAULT_RETRY_POLICY",
    "RETRY_POLICIES",
    "get_retry_policy",
    "calculate_retry_delay",
    "should_retry",
    "extract_error_code",
    "create_retry_context",
    "update_retry_context",
    "format_retry_delay",
    # Components
    "Clock",
    "SystemClock",
    "JsonQueueStore",
    "JobQueue",
    "Dispatcher",
    "DispatcherState",
    # Alerting
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertChannel",
    "AlertThresholds",
    "AlertManager",
]
