import time

import pytest
import requests
from botocore.exceptions import ClientError
from pydantic import ValidationError

from reconciler.errors import (
    MAX_RETRY_DELAY_MS,
    ErrorCategory,
    InboxAuthError,
    InboxSyncError,
    JobTimeoutError,
    NotFoundError,
    classify_error,
    is_retryable,
    retry_delay_ms,
)
from reconciler.schemas import EmbedInboxPayload
from reconciler.timeouts import with_timeout


def http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"HTTP {status}", response=response)


def test_pipeline_errors_carry_their_category():
    assert classify_error(JobTimeoutError("slow")) == ErrorCategory.TIMEOUT
    assert classify_error(NotFoundError("gone")) == ErrorCategory.NOT_FOUND
    assert classify_error(InboxAuthError("denied", code="invalid_grant", provider="gmail")) == ErrorCategory.UNAUTHORIZED


def test_requests_errors():
    assert classify_error(requests.Timeout("read timed out")) == ErrorCategory.TIMEOUT
    assert classify_error(requests.ConnectionError("refused")) == ErrorCategory.NETWORK
    assert classify_error(http_error(429)) == ErrorCategory.RATE_LIMIT
    assert classify_error(http_error(404)) == ErrorCategory.NOT_FOUND
    assert classify_error(http_error(503)) == ErrorCategory.RETRYABLE
    assert classify_error(http_error(422)) == ErrorCategory.VALIDATION


def test_s3_error_codes():
    missing = ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
    throttled = ClientError({"Error": {"Code": "SlowDown", "Message": "slow down"}}, "PutObject")
    assert classify_error(missing) == ErrorCategory.NOT_FOUND
    assert classify_error(throttled) == ErrorCategory.RATE_LIMIT


def test_payload_validation_errors_are_not_retried():
    with pytest.raises(ValidationError) as excinfo:
        EmbedInboxPayload.model_validate({"teamId": "team-1"})
    assert classify_error(excinfo.value) == ErrorCategory.VALIDATION
    assert not is_retryable(excinfo.value)


def test_message_hints_and_default():
    assert classify_error(RuntimeError("Rate limit exceeded for model")) == ErrorCategory.RATE_LIMIT
    assert classify_error(RuntimeError("ECONNRESET while reading")) == ErrorCategory.NETWORK
    assert classify_error(RuntimeError("boom")) == ErrorCategory.RETRYABLE


def test_explicit_retryable_flag_wins():
    assert not is_retryable(InboxAuthError("revoked", code="invalid_grant", provider="gmail"))
    assert is_retryable(InboxAuthError("flaky", code="token_refresh_failed", provider="gmail", requires_reauth=False))
    assert not is_retryable(InboxSyncError("nope", code="unsupported_provider", provider="x", retryable=False))
    assert not is_retryable(NotFoundError("gone"))
    assert is_retryable(ConnectionError("reset"))


def test_retry_delay_doubles_and_is_capped():
    assert retry_delay_ms(ErrorCategory.RATE_LIMIT, 1, jitter=False) == 30_000
    assert retry_delay_ms(ErrorCategory.RATE_LIMIT, 3, jitter=False) == 120_000
    assert retry_delay_ms(ErrorCategory.NETWORK, 20, jitter=False) == MAX_RETRY_DELAY_MS


def test_retry_delay_jitter_stays_within_twenty_percent():
    for _ in range(20):
        assert 1_600 <= retry_delay_ms(ErrorCategory.NETWORK, 1) <= 2_400


def test_with_timeout_returns_value():
    assert with_timeout(lambda x: x * 2, 1.0, "double", 21) == 42


def test_with_timeout_raises_timeout_error():
    with pytest.raises(JobTimeoutError) as excinfo:
        with_timeout(time.sleep, 0.05, "sleeping", 0.5)
    assert excinfo.value.timeout_seconds == 0.05
    assert "sleeping" in str(excinfo.value)
