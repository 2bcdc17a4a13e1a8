"""
Error taxonomy for dispatch and job execution.

Dispatch-level errors abort the whole evaluation before any job is scheduled.
Job-level errors are contained to their DAG branch and reported through
``RunResult``. ``classify_failure`` maps raw executor output to the retryable
or non-retryable job error class.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Base class for all dispatch engine errors."""


class ValidationError(DispatchError):
    """Malformed event or pipeline/component configuration."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None):
        self.problems = list(problems or [])
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        return base + ": " + "; ".join(self.problems)


class DispatchAmbiguityWarning(UserWarning):
    """No pipeline matched a non-schedule event."""


class JobError(DispatchError):
    """Failure raised while executing a single job."""

    retryable = False

    def __init__(self, message: str, logs_ref: Optional[str] = None):
        self.logs_ref = logs_ref
        super().__init__(message)


class TransientJobError(JobError):
    """Retryable failure (network, timeout, rate limiting)."""

    retryable = True


class PermanentJobError(JobError):
    """Non-retryable failure (failing assertion, compile error)."""


@dataclass(frozen=True)
class FailurePattern:
    """Known failure signature and the error class it maps to."""

    pattern: str
    error_class: type
    description: str


# First match wins; anything unmatched is permanent. Test and compile
# failures are checked before the transient signatures.
FAILURE_PATTERNS = (
    FailurePattern(
        r"AssertionError|FAILED .*::|\d+ failed|assert ",
        PermanentJobError,
        "test assertion failure",
    ),
    FailurePattern(
        r"SyntaxError|error TS\d+|cannot find symbol|compilation failed",
        PermanentJobError,
        "compile error",
    ),
    FailurePattern(
        r"ConnectionError|Connection (reset|refused)|ECONNRESET|ECONNREFUSED",
        TransientJobError,
        "network connection failure",
    ),
    FailurePattern(
        r"\btimed out\b|TimeoutError|ETIMEDOUT|deadline exceeded",
        TransientJobError,
        "timeout",
    ),
    FailurePattern(
        r"Temporary failure in name resolution|getaddrinfo|EAI_AGAIN",
        TransientJobError,
        "DNS resolution failure",
    ),
    FailurePattern(
        r"rate limit|HTTP 429|Too Many Requests",
        TransientJobError,
        "rate limited",
    ),
    FailurePattern(
        r"(HTTP|status code:?) 50[234]|Service Unavailable|Bad Gateway",
        TransientJobError,
        "upstream registry unavailable",
    ),
)


def classify_failure(output: str) -> type:
    """Return the job error class for a failed job's output."""
    for failure in FAILURE_PATTERNS:
        if re.search(failure.pattern, output or "", re.IGNORECASE):
            logger.debug(f"Failure classified as {failure.description}")
            return failure.error_class
    return PermanentJobError


__all__ = [
    "DispatchError",
    "ValidationError",
    "DispatchAmbiguityWarning",
    "JobError",
    "TransientJobError",
    "PermanentJobError",
    "FailurePattern",
    "FAILURE_PATTERNS",
    "classify_failure",
]
