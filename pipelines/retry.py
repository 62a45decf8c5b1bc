"""Exponential backoff with jitter, shared by the crawler, embeddings and classifier."""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from .errors import FetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retryable HTTP status codes
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def is_transient_error(exception: BaseException) -> bool:
    """Determine if an error is worth retrying."""
    if isinstance(exception, FetchError):
        return exception.retryable

    if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return True

    if isinstance(exception, aiohttp.ClientResponseError):
        return exception.status in RETRYABLE_STATUS_CODES

    if isinstance(exception, aiohttp.ClientError):
        # Retry on connection errors, but not on client errors like 404
        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ClientConnectorError,
                                      aiohttp.ServerDisconnectedError))

    return False


@dataclass
class RetryPolicy:
    """Parameters for retry_async.

    The delay before retry ``n`` (zero-based) is
    ``min(base_delay * multiplier ** n, max_delay)`` plus a random jitter of up
    to ``jitter_fraction`` of that delay.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_fraction: float = 0.1
    is_retryable: Callable[[BaseException], bool] = is_transient_error

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    def compute_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        jitter = random.uniform(0, self.jitter_fraction) * base
        return base + jitter


async def retry_async(fn: Callable[[], Awaitable[T]],
                      policy: Optional[RetryPolicy] = None,
                      description: str = "operation",
                      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                      on_retry: Optional[Callable[[int, BaseException], None]] = None) -> T:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    The last error is re-raised unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except Exception as e:
            if not policy.is_retryable(e) or attempt >= policy.max_attempts - 1:
                raise

            delay = policy.compute_delay(attempt)
            logger.warning(f"{description} failed: {e}, retrying in {delay:.2f}s "
                           f"(attempt {attempt + 1}/{policy.max_attempts})")
            if on_retry:
                on_retry(attempt, e)
            await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description} failed after retries")


async def describe_error_response(response) -> str:
    """Best-effort error message from a failed JSON API response."""
    try:
        data = await response.json()
    except Exception:
        return response.reason or 'Unknown error'
    if isinstance(data, str):
        return data
    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get('message'), str):
        return error['message']
    return json.dumps(data)
