"""Retry utilities for backend calls using tenacity.

Only errors classified as transient are retried: ``httpx`` timeouts,
network failures (connect, read, write) and protocol errors, and
``BackendError(transient=True)`` (rate limits, 5xx). Permanent failures
(auth, malformed request) propagate on the first attempt.

Examples:
    Retry a chat request with exponential backoff::

        >>> @with_retry(max_attempts=3)
        ... async def send(request: ChatRequest) -> ChatResponse:
        ...     response = await client.post("/chat/completions", json=request)
        ...     raise_for_backend_status(response)
        ...     return parse(response)

    Add extra retryable exceptions::

        >>> @with_retry(max_attempts=5, extra_exceptions=(ConnectionResetError,))
        ... async def fetch() -> str:
        ...     ...
"""

import logging
from collections.abc import Callable

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from yoke.lib.errors import BackendError

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


def is_transient_status(status_code: int) -> bool:
    """True for rate-limit/conflict statuses and any 5xx."""
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def is_transient(exc: BaseException) -> bool:
    """Classify an exception raised by a backend call."""
    match exc:
        case BackendError(transient=transient):
            return transient
        case httpx.HTTPStatusError(response=response):
            return is_transient_status(response.status_code)
        case _:
            return isinstance(exc, TRANSIENT_HTTP_ERRORS)


def log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Transient backend failure (attempt %d): %s", state.attempt_number, exc
    )


def with_retry[T](
    max_attempts: int = 3,
    min_wait: float = 2,
    max_wait: float = 10,
    extra_exceptions: tuple[type[Exception], ...] = (),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for retrying async backend calls with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including the first).
        min_wait: Minimum wait time between retries in seconds.
        max_wait: Maximum wait time between retries in seconds.
        extra_exceptions: Additional exception types to treat as transient.

    Returns:
        Decorator that wraps the function with retry logic. The last
        exception is re-raised once attempts are exhausted.
    """

    def should_retry(exc: BaseException) -> bool:
        return is_transient(exc) or isinstance(exc, extra_exceptions)

    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception(should_retry),
        before_sleep=log_retry,
        reraise=True,
    )
