"""
Async HTTP utilities with retry logic, exponential backoff and timeouts.

Source adapters call their backing APIs through ``request_json``, which
retries transient failures (5xx, 429, timeouts, connection errors) with
exponential backoff and jitter, and bounds the whole retried call with an
overall deadline so a hung source can never stall the caller.

Example:
    >>> import httpx
    >>> from ironsync.core.reconcile.http import with_async_retry
    >>>
    >>> @with_async_retry(max_retries=2)
    ... async def fetch(client: httpx.AsyncClient, url: str) -> httpx.Response:
    ...     response = await client.get(url)
    ...     response.raise_for_status()
    ...     return response

Configuration:
    - Default timeout: 10.0 seconds for the whole call, retries included
    - Default retries: 2 attempts
    - Default base delay: 0.5 seconds
    - Default multiplier: 2.0x per retry
    - Jitter: Random variance of ±20% added to delay
"""

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 2)
        base_delay: Initial delay in seconds before first retry (default: 0.5)
        multiplier: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add jitter to delays (default: True)
        jitter_ratio: Random variance ratio for jitter (default: 0.2 = ±20%)
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 0.5,
        multiplier: float = 2.0,
        jitter: bool = True,
        jitter_ratio: float = 0.2,
    ) -> None:
        """
        Initialize retry configuration.

        Raises:
            ValueError: If parameters are invalid
        """
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given retry attempt.

        Uses exponential backoff: delay = base_delay * (multiplier ^ attempt)

        Args:
            attempt: Retry attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = self.base_delay * (self.multiplier**attempt)

        if self.jitter:
            variance = delay * self.jitter_ratio
            delay = delay + random.uniform(-variance, variance)

        return max(0.0, delay)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception represents a transient, retryable error.

    Retryable errors include 5xx responses, 429 (rate limited), timeouts and
    any other transport-level failure. 4xx client errors (404, 401, 400, ...)
    and non-HTTP exceptions are not retryable.
    """
    # HTTPStatusError is also an HTTPError, so check it first
    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        return status_code == 429 or 500 <= status_code < 600

    if isinstance(exception, (httpx.TimeoutException, httpx.RequestError, httpx.HTTPError)):
        return True

    return False


def with_async_retry(
    max_retries: int = 2,
    base_delay: float = 0.5,
    multiplier: float = 2.0,
    jitter: bool = True,
    jitter_ratio: float = 0.2,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator adding retry with exponential backoff to a coroutine function.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        multiplier: Exponential backoff multiplier
        jitter: Whether to add jitter to delays
        jitter_ratio: Random variance ratio for jitter

    Returns:
        Decorator wrapping the coroutine function with retry logic
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        multiplier=multiplier,
        jitter=jitter,
        jitter_ratio=jitter_ratio,
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            func_name = getattr(func, "__name__", repr(func))

            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e):
                        logger.debug(
                            f"{func_name}: Non-retryable error on attempt {attempt + 1}: {e}"
                        )
                        raise

                    if attempt >= config.max_retries:
                        logger.warning(
                            f"{func_name}: Max retries ({config.max_retries}) exceeded: {e}"
                        )
                        raise

                    delay = config.calculate_delay(attempt)
                    logger.info(
                        f"{func_name}: Retry attempt {attempt + 1}/{config.max_retries} "
                        f"after {delay:.2f}s due to: {e}"
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry loop completed without success or exception")

        return wrapper

    return decorator


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: float = 10.0,
    retry: RetryConfig | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make an HTTP request with retries, bounded by an overall deadline.

    Each attempt uses ``timeout`` as its httpx timeout, and the whole call,
    backoff delays included, is cancelled once ``timeout`` seconds elapse.
    Non-2xx responses are raised as ``httpx.HTTPStatusError`` after retries.

    Args:
        client: Shared async client
        method: HTTP method (GET, POST, ...)
        url: URL to request
        timeout: Overall deadline in seconds
        retry: Retry policy (defaults to RetryConfig())
        **kwargs: Extra arguments for ``client.request``

    Returns:
        The successful response

    Raises:
        httpx.HTTPStatusError: On 4xx, or 5xx/429 after retries
        httpx.TimeoutException: When the deadline expires
        httpx.RequestError: After retries on transport errors
    """
    policy = retry or RetryConfig()

    @with_async_retry(
        max_retries=policy.max_retries,
        base_delay=policy.base_delay,
        multiplier=policy.multiplier,
        jitter=policy.jitter,
        jitter_ratio=policy.jitter_ratio,
    )
    async def _make_request() -> httpx.Response:
        response = await client.request(method, url, timeout=timeout, **kwargs)
        response.raise_for_status()
        return response

    try:
        return await asyncio.wait_for(_make_request(), timeout=timeout)
    except asyncio.TimeoutError:
        raise httpx.TimeoutException(f"{method} {url} exceeded {timeout}s deadline") from None


__all__ = [
    "RetryConfig",
    "with_async_retry",
    "request_json",
    "is_retryable_error",
]
