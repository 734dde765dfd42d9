"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import SourceAPIError

logger = structlog.get_logger()


def is_transient(exc: BaseException) -> bool:
    """Rate limits, 5xx and transport failures are worth another attempt."""
    return isinstance(exc, SourceAPIError) and exc.is_transient


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    status = getattr(exc, "status", None)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    logger.warning(
        "request_retrying",
        attempt=state.attempt_number,
        status=status,
        error=str(exc),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable: Callable[[BaseException], bool] = is_transient,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry)
        async def fetch() -> dict: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception(retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
