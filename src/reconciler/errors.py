"""Error taxonomy and retry policy shared by every job.

Every exception that escapes a processor is classified into an
:class:`ErrorCategory`. The runner uses the category to decide whether the job
is retried and how long to back off before the next attempt.
"""

import logging
import random
from enum import Enum
from typing import Optional

import openai
import psycopg
import requests
from botocore.exceptions import ClientError, ConnectTimeoutError, EndpointConnectionError
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    RETRYABLE = "retryable"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.TIMEOUT,
    ErrorCategory.NETWORK,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.RETRYABLE,
})

# Base backoff per category (ms), doubled per attempt
_BASE_DELAY_MS = {
    ErrorCategory.RATE_LIMIT: 30_000,
    ErrorCategory.TIMEOUT: 5_000,
    ErrorCategory.NETWORK: 2_000,
    ErrorCategory.RETRYABLE: 1_000,
}
MAX_RETRY_DELAY_MS = 5 * 60 * 1000


# ============================================================================
# Exceptions
# ============================================================================


class PipelineError(Exception):
    """Base class for errors raised by the pipeline itself."""

    category = ErrorCategory.RETRYABLE

    def __init__(self, message: str, *, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class JobTimeoutError(PipelineError):
    """An operation exceeded its time budget."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class ValidationFailure(PipelineError):
    """Input can never succeed; retrying is pointless."""

    category = ErrorCategory.VALIDATION


class NotFoundError(PipelineError):
    category = ErrorCategory.NOT_FOUND


class UnauthorizedError(PipelineError):
    category = ErrorCategory.UNAUTHORIZED


class RateLimitError(PipelineError):
    category = ErrorCategory.RATE_LIMIT


class NetworkError(PipelineError):
    category = ErrorCategory.NETWORK


class InboxAuthError(UnauthorizedError):
    """Mail provider rejected our credentials.

    Args:
        message: Provider error message
        code: Short machine-readable code (e.g. "invalid_grant")
        provider: Provider name (e.g. "gmail")
        requires_reauth: True when the user must reconnect the account
    """

    def __init__(self, message: str, code: str, provider: str, requires_reauth: bool = True):
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.requires_reauth = requires_reauth

    @property
    def retryable(self) -> bool:
        return not self.requires_reauth


class InboxSyncError(PipelineError):
    """Provider sync failed for a reason other than authentication."""

    def __init__(self, message: str, code: str, provider: str, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.retryable = retryable


class JobFailedError(PipelineError):
    """A job awaited with trigger-and-wait finished in the failed state."""

    def __init__(self, job_id: str, job_name: str, reason: str,
                 category: ErrorCategory = ErrorCategory.RETRYABLE):
        super().__init__(f"Job {job_name} ({job_id}) failed: {reason}", category=category)
        self.job_id = job_id
        self.job_name = job_name
        self.reason = reason


# ============================================================================
# Classification
# ============================================================================


def _category_from_status(status_code: Optional[int]) -> Optional[ErrorCategory]:
    if status_code is None:
        return None
    if status_code in (401, 403):
        return ErrorCategory.UNAUTHORIZED
    if status_code == 404:
        return ErrorCategory.NOT_FOUND
    if status_code in (408, 504):
        return ErrorCategory.TIMEOUT
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code in (400, 413, 415, 422):
        return ErrorCategory.VALIDATION
    if status_code >= 500:
        return ErrorCategory.RETRYABLE
    return None


_S3_CODES = {
    "404": ErrorCategory.NOT_FOUND,
    "NoSuchKey": ErrorCategory.NOT_FOUND,
    "NoSuchBucket": ErrorCategory.NOT_FOUND,
    "403": ErrorCategory.UNAUTHORIZED,
    "AccessDenied": ErrorCategory.UNAUTHORIZED,
    "InvalidAccessKeyId": ErrorCategory.UNAUTHORIZED,
    "SignatureDoesNotMatch": ErrorCategory.UNAUTHORIZED,
    "SlowDown": ErrorCategory.RATE_LIMIT,
    "Throttling": ErrorCategory.RATE_LIMIT,
    "ThrottlingException": ErrorCategory.RATE_LIMIT,
    "RequestTimeout": ErrorCategory.TIMEOUT,
}

_MESSAGE_HINTS = [
    (("timed out", "timeout"), ErrorCategory.TIMEOUT),
    (("rate limit", "too many requests", "429"), ErrorCategory.RATE_LIMIT),
    (("econnreset", "econnrefused", "connection reset", "connection refused", "network"),
     ErrorCategory.NETWORK),
    (("not found", "404"), ErrorCategory.NOT_FOUND),
    (("unauthorized", "forbidden", "401", "403"), ErrorCategory.UNAUTHORIZED),
]


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to an error category.

    Args:
        exc: Exception raised by a processor or one of its collaborators

    Returns:
        ErrorCategory: Category driving the retry decision
    """
    if isinstance(exc, PipelineError):
        return exc.category

    if isinstance(exc, PydanticValidationError):
        return ErrorCategory.VALIDATION

    # openai: timeout is a subclass of connection error, check it first
    if isinstance(exc, openai.APITimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, openai.APIConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(exc, openai.APIStatusError):
        return _category_from_status(exc.status_code) or ErrorCategory.RETRYABLE

    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(exc, requests.exceptions.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return _category_from_status(status) or ErrorCategory.RETRYABLE

    if isinstance(exc, ConnectTimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, EndpointConnectionError):
        return ErrorCategory.NETWORK
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return _S3_CODES.get(code, ErrorCategory.RETRYABLE)

    if isinstance(exc, psycopg.OperationalError):
        return ErrorCategory.NETWORK

    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK

    message = str(exc).lower()
    for needles, category in _MESSAGE_HINTS:
        if any(needle in message for needle in needles):
            return category

    return ErrorCategory.RETRYABLE


def is_retryable(exc: BaseException) -> bool:
    """Whether the queue should schedule another attempt for this error."""
    explicit = getattr(exc, "retryable", None)
    if isinstance(explicit, bool):
        return explicit
    return classify_error(exc) in RETRYABLE_CATEGORIES


def retry_delay_ms(category: ErrorCategory, attempt: int, jitter: bool = True) -> int:
    """Backoff before the next attempt.

    Args:
        category: Category of the failure
        attempt: Number of attempts already made (1-based)
        jitter: Spread delays by +/-20% so retries do not synchronise

    Returns:
        int: Delay in milliseconds
    """
    base = _BASE_DELAY_MS.get(category, _BASE_DELAY_MS[ErrorCategory.RETRYABLE])
    delay = min(base * (2 ** max(attempt - 1, 0)), MAX_RETRY_DELAY_MS)
    if jitter:
        delay = int(delay * random.uniform(0.8, 1.2))
    return delay
