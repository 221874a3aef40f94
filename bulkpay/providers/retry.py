"""
Exponential backoff for idempotent provider reads.

Status lookups (GET) are retried on transient failures (429 rate limits,
502/503/504) with exponential backoff. Submissions are never passed
through here: a retried POST could pay the same recipient twice.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("bulkpay.retry")

RETRIABLE_STATUS_CODES = {429, 502, 503, 504}
MAX_DELAY = 30.0


class ProviderError(Exception):
    """A failed provider call, carried between the HTTP layer and the gateway boundary."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retriable: bool = True,
        details: Any = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable
        self.details = details
        self.code = code


class RateLimitError(ProviderError):
    """429 Too Many Requests from the provider."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None, details: Any = None):
        super().__init__(message, status_code=429, retriable=True, details=details)
        self.retry_after = retry_after


class PermanentError(ProviderError):
    """Non-retriable error (bad request, unknown id, rejected credentials)."""

    def __init__(self, message: str, status_code: int = 400, details: Any = None):
        super().__init__(message, status_code=status_code, retriable=False, details=details)


def error_for_status(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    retry_after: Optional[str] = None,
) -> ProviderError:
    """Pick the exception class matching an HTTP error status."""
    if status_code == 429:
        try:
            after = float(retry_after) if retry_after else None
        except ValueError:
            after = None
        error: ProviderError = RateLimitError(message, retry_after=after, details=details)
    elif status_code in RETRIABLE_STATUS_CODES:
        error = ProviderError(message, status_code=status_code, retriable=True, details=details)
    else:
        error = PermanentError(message, status_code=status_code, details=details)
    error.code = code
    return error


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with exponential backoff on retriable errors.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts.
        base_delay: First sleep in seconds, doubled after every attempt.

    Returns:
        The result of the function call.

    Raises:
        ProviderError: On permanent failure or exhausted retries.
    """
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except ProviderError as e:
            if not e.retriable or attempt >= max_retries:
                if e.retriable:
                    logger.error("Exhausted %d retries for provider call: %s", max_retries, e)
                raise

            sleep_for = min(delay, MAX_DELAY)
            if isinstance(e, RateLimitError) and e.retry_after:
                sleep_for = min(e.retry_after, MAX_DELAY)

            logger.warning(
                "Retriable error on attempt %d/%d: %s (sleeping %.1fs)",
                attempt + 1,
                max_retries + 1,
                e,
                sleep_for,
            )
            await asyncio.sleep(sleep_for)
            delay = min(delay * 2, MAX_DELAY)

    raise ProviderError("Unknown error after retries")
