"""
Retry Policy Engine.

Pure functions mapping (job type, attempt, error) to a retry decision and a
backoff delay. Nothing here touches the queue, the clock, or I/O; the
dispatcher passes in `now` and an optional random source.

Decision order (should_retry):
1. attempt_number >= max_attempts → no retry
2. Error code extracted (JobError.code, else leading "CODE:" token)
3. Non-retryable match → no retry (wins over retryable)
4. Non-empty retryable list: match → retry, else no retry
5. Empty retryable list → retry

Backoff (calculate_retry_delay), with n = attempt_number:
    exponential: min(base * 2^(n-1), max)
    linear:      min(base * n, max)
    fixed:       base
then jitter: delay + delay * jitter_factor * U(-1, 1), clamped at 0.
"""

import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Optional, Union

from .entities import JobType
from .errors import ErrorCode, JobError


_ERROR_CODE_RE = re.compile(r"^([A-Z_]+):")


class BackoffType(str, Enum):
    """Backoff growth strategy."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-job-type retry rules.

    Raises:
        ValueError: If jitter_factor is outside [0, 1] or max_attempts < 1
    """

    max_attempts: int
    backoff_type: BackoffType
    base_delay_ms: int
    max_delay_ms: int
    jitter_factor: float
    retryable_errors: tuple[str, ...] = ()
    non_retryable_errors: tuple[str, ...] = ()

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(
                f"max_attempts must be at least 1, got {self.max_attempts}"
            )
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError(
                f"jitter_factor must be within [0, 1], got {self.jitter_factor}"
            )
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Delays must be non-negative")


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of should_retry."""

    retry: bool
    reason: str


@dataclass(frozen=True)
class RetryContext:
    """
    Retry bookkeeping for a job between failed attempts.

    Replaced (never mutated) on each failure by update_retry_context.
    """

    job_id: str
    job_type: JobType
    policy: RetryPolicy
    attempt_number: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    will_retry: bool = False
    reason: Optional[str] = None
    delay_ms: Optional[int] = None


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff_type=BackoffType.EXPONENTIAL,
    base_delay_ms=60_000,
    max_delay_ms=3_600_000,
    jitter_factor=0.1,
)

RETRY_POLICIES: dict[JobType, RetryPolicy] = {
    JobType.DISCOVER: RetryPolicy(
        max_attempts=3,
        backoff_type=BackoffType.EXPONENTIAL,
        base_delay_ms=60_000,
        max_delay_ms=900_000,
        jitter_factor=0.2,
        retryable_errors=(
            ErrorCode.RATE_LIMIT,
            ErrorCode.TIMEOUT,
            ErrorCode.NETWORK_ERROR,
            ErrorCode.SERVICE_UNAVAILABLE,
        ),
        non_retryable_errors=(
            ErrorCode.INVALID_QUERY,
            ErrorCode.AUTHENTICATION_FAILED,
        ),
    ),
    JobType.CAPTURE: RetryPolicy(
        max_attempts=4,
        backoff_type=BackoffType.EXPONENTIAL,
        base_delay_ms=30_000,
        max_delay_ms=600_000,
        jitter_factor=0.15,
        retryable_errors=(
            ErrorCode.TIMEOUT,
            ErrorCode.NETWORK_ERROR,
            ErrorCode.BROWSER_CRASHED,
            ErrorCode.PAGE_LOAD_FAILED,
        ),
        non_retryable_errors=(
            ErrorCode.INVALID_URL,
            ErrorCode.BLOCKED,
        ),
    ),
    JobType.GENERATE: RetryPolicy(
        max_attempts=3,
        backoff_type=BackoffType.EXPONENTIAL,
        base_delay_ms=60_000,
        max_delay_ms=1_800_000,
        jitter_factor=0.1,
        retryable_errors=(
            ErrorCode.RATE_LIMIT,
            ErrorCode.TIMEOUT,
            ErrorCode.API_ERROR,
            ErrorCode.OVERLOADED,
        ),
        non_retryable_errors=(
            ErrorCode.CONTENT_POLICY_VIOLATION,
            ErrorCode.INVALID_INPUT,
        ),
    ),
    JobType.DEPLOY: RetryPolicy(
        max_attempts=5,
        backoff_type=BackoffType.EXPONENTIAL,
        base_delay_ms=30_000,
        max_delay_ms=1_800_000,
        jitter_factor=0.2,
        retryable_errors=(
            ErrorCode.DEPLOYMENT_FAILED,
            ErrorCode.TIMEOUT,
            ErrorCode.NETWORK_ERROR,
            ErrorCode.SERVICE_UNAVAILABLE,
        ),
        non_retryable_errors=(
            ErrorCode.DOMAIN_NOT_AVAILABLE,
            ErrorCode.QUOTA_EXCEEDED,
        ),
    ),
    JobType.EMAIL: RetryPolicy(
        max_attempts=5,
        backoff_type=BackoffType.EXPONENTIAL,
        base_delay_ms=60_000,
        max_delay_ms=3_600_000,
        jitter_factor=0.25,
        retryable_errors=(
            ErrorCode.RATE_LIMIT,
            ErrorCode.TEMPORARY_FAILURE,
            ErrorCode.NETWORK_ERROR,
            ErrorCode.SERVICE_UNAVAILABLE,
        ),
        non_retryable_errors=(
            ErrorCode.INVALID_RECIPIENT,
            ErrorCode.UNSUBSCRIBED,
            ErrorCode.HARD_BOUNCE,
            ErrorCode.SPAM_BLOCKED,
        ),
    ),
    JobType.FOLLOWUP: RetryPolicy(
        max_attempts=3,
        backoff_type=BackoffType.LINEAR,
        base_delay_ms=300_000,
        max_delay_ms=1_800_000,
        jitter_factor=0.1,
        retryable_errors=(
            ErrorCode.RATE_LIMIT,
            ErrorCode.TEMPORARY_FAILURE,
        ),
        non_retryable_errors=(
            ErrorCode.SEQUENCE_CANCELLED,
            ErrorCode.LEAD_UNSUBSCRIBED,
        ),
    ),
    JobType.SCORE: RetryPolicy(
        max_attempts=2,
        backoff_type=BackoffType.FIXED,
        base_delay_ms=60_000,
        max_delay_ms=60_000,
        jitter_factor=0.0,
        retryable_errors=(
            ErrorCode.TIMEOUT,
            ErrorCode.DATA_UNAVAILABLE,
        ),
        non_retryable_errors=(ErrorCode.INVALID_LEAD,),
    ),
}


# =========================================================================
# Policy Lookup
# =========================================================================

def get_retry_policy(
    job_type: Union[JobType, str],
    overrides: Optional[Mapping] = None,
) -> RetryPolicy:
    """
    Look up the retry policy for a job type.

    Never raises: unknown types fall back to DEFAULT_RETRY_POLICY.
    Entries in `overrides` (keyed by JobType or its string value) take
    precedence over the built-in table.
    """
    try:
        key = job_type if isinstance(job_type, JobType) else JobType(job_type)
    except ValueError:
        key = None

    if overrides:
        for candidate in (key, getattr(key, "value", None), job_type):
            if candidate is not None and candidate in overrides:
                return overrides[candidate]

    if key is None:
        return DEFAULT_RETRY_POLICY
    return RETRY_POLICIES.get(key, DEFAULT_RETRY_POLICY)


# =========================================================================
# Backoff
# =========================================================================

def calculate_retry_delay(
    policy: RetryPolicy,
    attempt_number: int,
    rng: Optional[random.Random] = None,
    apply_jitter: bool = True,
) -> int:
    """
    Delay in milliseconds before the next attempt.

    Args:
        policy: Policy providing backoff parameters
        attempt_number: 1-based number of the attempt that just failed
        rng: Random source for jitter (module random when omitted)
        apply_jitter: False returns the deterministic capped backoff

    Returns:
        Non-negative delay in milliseconds
    """
    n = max(attempt_number, 1)

    if policy.backoff_type == BackoffType.EXPONENTIAL:
        delay = min(policy.base_delay_ms * (2 ** (n - 1)), policy.max_delay_ms)
    elif policy.backoff_type == BackoffType.LINEAR:
        delay = min(policy.base_delay_ms * n, policy.max_delay_ms)
    else:
        delay = policy.base_delay_ms

    if apply_jitter and policy.jitter_factor > 0:
        source = rng or random
        jitter = delay * policy.jitter_factor * source.uniform(-1, 1)
        delay = delay + jitter

    return max(0, round(delay))


# =========================================================================
# Error Classification
# =========================================================================

def extract_error_code(message: Optional[str]) -> Optional[str]:
    """Leading upper-case "CODE:" token of a message, if any."""
    if not message:
        return None
    match = _ERROR_CODE_RE.match(message)
    return match.group(1) if match else None


def _error_code_and_message(error: Union[BaseException, str]) -> tuple[Optional[str], str]:
    if isinstance(error, JobError):
        return error.code, str(error)
    message = str(error)
    return extract_error_code(message), message


def _matches(patterns: tuple[str, ...], code: Optional[str], message: str) -> bool:
    return any(p == code or p in message for p in patterns)


def should_retry(
    policy: RetryPolicy,
    error: Union[BaseException, str],
    attempt_number: int,
) -> RetryDecision:
    """
    Decide whether a failed attempt should be retried.

    Args:
        policy: Policy for the job's type
        error: Raised exception or error message
        attempt_number: Attempts made so far, including the failed one

    Returns:
        RetryDecision with a human-readable reason
    """
    if attempt_number >= policy.max_attempts:
        return RetryDecision(
            False, f"Max attempts ({policy.max_attempts}) exceeded"
        )

    code, message = _error_code_and_message(error)

    if _matches(policy.non_retryable_errors, code, message):
        return RetryDecision(
            False, f"Error {code or message!r} is non-retryable"
        )

    if policy.retryable_errors:
        if _matches(policy.retryable_errors, code, message):
            return RetryDecision(True, f"Error {code or message!r} is retryable")
        return RetryDecision(
            False, "Error did not match any retryable pattern"
        )

    return RetryDecision(True, "Default retry behavior")


# =========================================================================
# Retry Context
# =========================================================================

def create_retry_context(
    job_id: str,
    job_type: Union[JobType, str],
    policy: Optional[RetryPolicy] = None,
) -> RetryContext:
    """Fresh context for a job that has not failed yet."""
    job_type = job_type if isinstance(job_type, JobType) else JobType(job_type)
    return RetryContext(
        job_id=job_id,
        job_type=job_type,
        policy=policy or get_retry_policy(job_type),
    )


def update_retry_context(
    context: RetryContext,
    error: Union[BaseException, str],
    attempt_number: int,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> RetryContext:
    """
    Record a failed attempt and compute the next step.

    Returns a new context; next_retry_at and delay_ms are only set when the
    decision is to retry.
    """
    decision = should_retry(context.policy, error, attempt_number)

    delay_ms = None
    next_retry_at = None
    if decision.retry:
        delay_ms = calculate_retry_delay(context.policy, attempt_number, rng=rng)
        next_retry_at = now + timedelta(milliseconds=delay_ms)

    return replace(
        context,
        attempt_number=attempt_number,
        last_error=str(error),
        next_retry_at=next_retry_at,
        will_retry=decision.retry,
        reason=decision.reason,
        delay_ms=delay_ms,
    )


def format_retry_delay(ms: int) -> str:
    """Human-readable delay: 750ms, 30s, 1.5m, 2.0h."""
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{round(ms / 1000)}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    return f"{ms / 3_600_000:.1f}h"
