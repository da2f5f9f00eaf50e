"""
Tests for error normalization, friendly messages, retry and reporting.
"""
import pytest
import requests

from backoffice.backend import BackendError
from backoffice.errors import (
    ErrorReporter,
    get_http_status,
    get_user_message,
    is_transient_error,
    normalize_error,
    with_retry,
)


class FakeSession:
    def __init__(self, fail: bool = False):
        self.posts = []
        self.fail = fail

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.fail:
            raise requests.ConnectionError("monitoring down")


# =============================================================================
# Normalization
# =============================================================================

def test_normalize_exception_with_status_and_code():
    normalized = normalize_error(BackendError("duplicate key", status=409, code="23505"))
    assert normalized.message == "duplicate key"
    assert normalized.code == "23505"
    assert normalized.status == 409
    assert normalized.name == "BackendError"


def test_normalize_dict_and_plain_values():
    assert normalize_error({"message": "boom", "code": 42}).code == "42"
    assert normalize_error(None).message == "Something went wrong."
    assert normalize_error("plain").message == "plain"


def test_get_http_status_variants():
    assert get_http_status({"status": 503}) == 503
    assert get_http_status({"status_code": 429}) == 429
    assert get_http_status(ValueError("x")) is None


# =============================================================================
# Friendly Messages
# =============================================================================

@pytest.mark.parametrize("err,expected", [
    (BackendError("Invalid login credentials"), "Invalid email or password. Please try again."),
    (BackendError("new row violates row-level security policy"), "You don't have permission to perform this action."),
    (BackendError("Network error: connection refused"), "Connection problem. Please check your internet and try again."),
    (BackendError("Request timeout: /rest/v1/rpc/x"), "The request took too long. Please try again."),
    (BackendError("slow down", status=429), "Too many requests. Please wait a moment and try again."),
    (BackendError("upstream", status=503), "Our servers are temporarily busy. Please try again in a moment."),
    (BackendError("conflict", code="23505"), "This record already exists. Please use a different value."),
    (BackendError("insert failed", code="23503"), "This action cannot be completed because it references missing data."),
    (BackendError("JWT expired"), "Your session may have expired. Please sign in again."),
])
def test_user_friendly_messages(err, expected):
    assert get_user_message(err) == expected


def test_long_messages_are_truncated():
    message = get_user_message(RuntimeError("x" * 500))
    assert len(message) == 200
    assert message.endswith("...")


def test_empty_message_fallback():
    assert get_user_message(RuntimeError("")) == "Something went wrong. Please try again."


# =============================================================================
# Transient Detection and Retry
# =============================================================================

def test_is_transient_error():
    assert is_transient_error(BackendError("bad gateway", status=502))
    assert is_transient_error(RuntimeError("Failed to fetch"))
    assert is_transient_error(requests.Timeout())
    assert not is_transient_error(BackendError("permission denied", status=403))
    assert not is_transient_error(ValueError("bad input"))


@pytest.mark.asyncio
async def test_with_retry_recovers_from_transient_failures():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise BackendError("unavailable", status=503)
        return "ok"

    assert await with_retry(flaky, max_attempts=3, base_delay=0) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_with_retry_stops_on_permanent_failure():
    attempts = []

    async def forbidden():
        attempts.append(1)
        raise BackendError("permission denied", status=403)

    with pytest.raises(BackendError):
        await with_retry(forbidden, max_attempts=5, base_delay=0)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    attempts = []

    async def down():
        attempts.append(1)
        raise BackendError("timeout")

    with pytest.raises(BackendError):
        await with_retry(down, max_attempts=2, base_delay=0)
    assert len(attempts) == 2


# =============================================================================
# Reporting
# =============================================================================

def test_report_without_url_only_logs():
    session = FakeSession()
    ErrorReporter(session=session).report(RuntimeError("boom"), {"context": "test"})
    assert session.posts == []


def test_report_posts_payload():
    session = FakeSession()
    reporter = ErrorReporter("https://monitor.example.com/errors", app_env="production", session=session)
    reporter.report(BackendError("boom", code="P0001"), {"context": "AppCache.get", "key": "dash"})

    url, payload = session.posts[0]
    assert url == "https://monitor.example.com/errors"
    assert payload["env"] == "production"
    assert payload["message"] == "boom"
    assert payload["code"] == "P0001"
    assert payload["key"] == "dash"
    assert "timestamp" in payload


def test_report_delivery_failure_is_ignored():
    session = FakeSession(fail=True)
    reporter = ErrorReporter("https://monitor.example.com/errors", session=session)
    reporter.report(RuntimeError("boom"))
    assert len(session.posts) == 1


def test_handle_returns_friendly_message():
    session = FakeSession()
    reporter = ErrorReporter("https://monitor.example.com/errors", session=session)
    message = reporter.handle(BackendError("upstream", status=504), {"context": "page"})
    assert message == "Our servers are temporarily busy. Please try again in a moment."
    assert session.posts[0][1]["http_status"] == 504
