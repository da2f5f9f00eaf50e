"""
Error normalization, friendly messages, reporting and retry for backend calls.
"""
import re
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import requests
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger("backoffice.errors")

T = TypeVar("T")

# Message patterns that indicate transient failures (worth retrying)
TRANSIENT_PATTERNS = [
    re.compile(r"network\s*error", re.I),
    re.compile(r"failed\s*to\s*fetch", re.I),
    re.compile(r"load\s*failed", re.I),
    re.compile(r"timeout", re.I),
    re.compile(r"ECONNRESET|ECONNREFUSED|ETIMEDOUT|ENOTFOUND", re.I),
    re.compile(r"503\s*service\s*unavailable", re.I),
    re.compile(r"502\s*bad\s*gateway", re.I),
    re.compile(r"504\s*gateway\s*timeout", re.I),
    re.compile(r"429\s*too\s*many\s*requests", re.I),
]

TRANSIENT_HTTP_CODES = {408, 429, 500, 502, 503, 504}

MAX_MESSAGE_LENGTH = 200
GENERIC_MESSAGE = "Something went wrong. Please try again."


@dataclass
class NormalizedError:
    """Uniform view over exceptions, error dicts and plain values."""
    message: str
    code: Optional[str] = None
    status: Optional[int] = None
    name: Optional[str] = None
    original: Any = None


def get_http_status(err: Any) -> Optional[int]:
    """Extract an HTTP status from an error object or dict, if present."""
    for attr in ("status", "status_code"):
        value = err.get(attr) if isinstance(err, dict) else getattr(err, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(err, "response", None)
    if response is not None and isinstance(getattr(response, "status_code", None), int):
        return response.status_code
    return None


def normalize_error(err: Any) -> NormalizedError:
    """Normalize unknown values to a NormalizedError."""
    if err is None or err == "":
        return NormalizedError(message="Something went wrong.", original=err)
    if isinstance(err, BaseException):
        code = getattr(err, "code", None)
        return NormalizedError(
            message=str(err),
            code=str(code) if code is not None else None,
            status=get_http_status(err),
            name=type(err).__name__,
            original=err,
        )
    if isinstance(err, dict) and "message" in err:
        code = err.get("code")
        return NormalizedError(
            message=str(err["message"]),
            code=str(code) if code is not None else None,
            status=get_http_status(err),
            original=err,
        )
    return NormalizedError(message=str(err), original=err)


def get_user_friendly_message(
    message: str,
    code: Optional[str] = None,
    status: Optional[int] = None,
) -> str:
    """Map technical errors to user-friendly messages."""
    code = code or ""
    lower = (message or "").lower()

    # Auth
    if "invalid login" in lower or "invalid_credentials" in lower:
        return "Invalid email or password. Please try again."
    if "email not confirmed" in lower:
        return "Please confirm your email before signing in."
    if "access denied" in lower or "permission" in lower or "policy" in lower:
        return "You don't have permission to perform this action."
    if "session" in lower and ("expired" in lower or "invalid" in lower):
        return "Your session has expired. Please sign in again."

    # Network / availability
    if "failed to fetch" in lower or "network error" in lower or "load failed" in lower:
        return "Connection problem. Please check your internet and try again."
    if "timeout" in lower or "timed out" in lower:
        return "The request took too long. Please try again."

    # Rate limit
    if status == 429 or "too many requests" in lower:
        return "Too many requests. Please wait a moment and try again."

    # Server errors
    if (status is not None and status >= 500) or any(c in lower for c in ("503", "502", "504")):
        return "Our servers are temporarily busy. Please try again in a moment."

    # Common database errors
    if "duplicate" in lower or "unique" in lower or code == "23505":
        return "This record already exists. Please use a different value."
    if "foreign key" in lower or code == "23503":
        return "This action cannot be completed because it references missing data."
    if "row-level security" in lower or "rlspolicy" in lower or "new row violates" in lower:
        return "You don't have permission to perform this action."
    if "jwt" in lower or "token" in lower:
        return "Your session may have expired. Please sign in again."

    # Fallback: original message, truncated when long
    if message and len(message) > MAX_MESSAGE_LENGTH:
        return message[:MAX_MESSAGE_LENGTH - 3] + "..."
    return message or GENERIC_MESSAGE


def get_user_message(err: Any) -> str:
    """Friendly message for any error value."""
    normalized = normalize_error(err)
    return get_user_friendly_message(normalized.message, normalized.code, normalized.status)


def is_transient_error(err: Any) -> bool:
    """Check if the error looks transient (suitable for retry)."""
    if isinstance(err, (requests.ConnectionError, requests.Timeout, asyncio.TimeoutError)):
        return True
    normalized = normalize_error(err)
    if normalized.status is not None and normalized.status in TRANSIENT_HTTP_CODES:
        return True
    return any(p.search(normalized.message or "") for p in TRANSIENT_PATTERNS)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    is_retryable: Callable[[Any], bool] = is_transient_error,
) -> T:
    """
    Retry an async function with exponential backoff for transient failures.

    The delay before attempt ``n + 1`` is ``min(max_delay, base_delay * 2 ** (n - 1))``.

    Raises:
        Exception: The last error, or the first non-retryable one
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await fn()
    return result


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.info(
        f"Transient failure (attempt {retry_state.attempt_number}), "
        f"retrying in {delay}s: {error}"
    )


class ErrorReporter:
    """
    Logs errors and forwards them to a monitoring endpoint when configured.

    Delivery failures are ignored so reporting can never cause more errors.
    """

    def __init__(
        self,
        report_url: Optional[str] = None,
        app_env: str = "staging",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.report_url = report_url
        self.app_env = app_env
        self.timeout = timeout
        self._session = session or requests.Session()

    def build_payload(self, err: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        normalized = normalize_error(err)
        payload = {
            "env": self.app_env,
            "message": normalized.message,
            "code": normalized.code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        payload.update(context or {})
        return payload

    def report(self, err: Any, context: Optional[Dict[str, Any]] = None) -> None:
        """Log the error and send it to the monitoring endpoint, if any."""
        payload = self.build_payload(err, context)
        logger.error(f"[AppError] {payload['message']} context={context or {}}")
        if not self.report_url:
            return
        try:
            self._session.post(self.report_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"Error report delivery failed: {e}")

    def handle(self, err: Any, context: Optional[Dict[str, Any]] = None, report: bool = True) -> str:
        """
        Normalize, report and return the user-friendly message.
        """
        normalized = normalize_error(err)
        friendly = get_user_friendly_message(normalized.message, normalized.code, normalized.status)
        if report:
            merged = dict(context or {})
            merged.update({"friendly_message": friendly, "http_status": normalized.status})
            self.report(err, merged)
        return friendly
