"""
Scheduler-specific exceptions.

Two families:
- SchedulerError and subclasses: programming errors raised to the caller
  (unknown job type, malformed payload, missing handler). These fail fast
  and are never routed through the retry policy.
- JobError: structured failure raised by handlers. Its string form is
  "CODE: message" so code extraction from plain messages keeps working.
"""

from typing import Optional


class ErrorCode:
    """Error codes understood by the default retry policies."""

    # Transient
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TEMPORARY_FAILURE = "TEMPORARY_FAILURE"
    API_ERROR = "API_ERROR"
    OVERLOADED = "OVERLOADED"
    BROWSER_CRASHED = "BROWSER_CRASHED"
    PAGE_LOAD_FAILED = "PAGE_LOAD_FAILED"
    DEPLOYMENT_FAILED = "DEPLOYMENT_FAILED"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"

    # Terminal
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_QUERY = "INVALID_QUERY"
    INVALID_URL = "INVALID_URL"
    INVALID_LEAD = "INVALID_LEAD"
    INVALID_RECIPIENT = "INVALID_RECIPIENT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    BLOCKED = "BLOCKED"
    CONTENT_POLICY_VIOLATION = "CONTENT_POLICY_VIOLATION"
    DOMAIN_NOT_AVAILABLE = "DOMAIN_NOT_AVAILABLE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    LEAD_UNSUBSCRIBED = "LEAD_UNSUBSCRIBED"
    HARD_BOUNCE = "HARD_BOUNCE"
    SPAM_BLOCKED = "SPAM_BLOCKED"
    SEQUENCE_CANCELLED = "SEQUENCE_CANCELLED"

    # Programming / wiring
    NO_HANDLER = "NO_HANDLER"
    NOT_CONFIGURED = "NOT_CONFIGURED"


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class UnknownJobTypeError(SchedulerError, ValueError):
    """Raised when a job type is not one of the pipeline job types."""

    def __init__(self, job_type: object):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type!r}")


class InvalidPayloadError(SchedulerError, ValueError):
    """Raised when a job payload is not a mapping."""

    def __init__(self, payload: object):
        self.payload = payload
        super().__init__(
            f"Job payload must be a dict, got {type(payload).__name__}"
        )


class HandlerNotRegisteredError(SchedulerError):
    """Raised when a job is dispatched with no handler for its type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(
            f"{ErrorCode.NO_HANDLER}: No handler registered for job type '{job_type}'"
        )


class JobNotFoundError(SchedulerError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidOperationError(SchedulerError):
    """
    Raised when an operation violates scheduler invariants.

    Examples:
    - Dispatching a job that is already running
    - Transitioning a failed job
    """
    pass


class JobError(Exception):
    """
    Structured handler failure.

    Usage:
        raise JobError(ErrorCode.RATE_LIMIT, "too many requests")
        str(err) == "RATE_LIMIT: too many requests"
    """

    def __init__(self, code: str, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else code)

    @classmethod
    def from_message(
        cls,
        message: Optional[str],
        default_code: str = ErrorCode.TEMPORARY_FAILURE,
    ) -> "JobError":
        """
        Build a JobError from a collaborator's error string.

        A leading "CODE:" token is kept as the code; otherwise default_code
        is used.
        """
        from .retry_policy import extract_error_code

        message = message or ""
        code = extract_error_code(message)
        if code is None:
            return cls(default_code, message)
        return cls(code, message[len(code) + 1:].strip())
