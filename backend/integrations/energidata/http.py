"""
Outbound HTTP Helpers

- fetch_with_timeout: one request with a hard deadline
- retry_with_backoff: bounded retries with exponential delay around any
  async operation
"""

from typing import Any, Awaitable, Callable, Optional, TypeVar
import asyncio
import time

import httpx
import structlog

from .base import (
    RetryPolicy,
    UpstreamConnectionError,
    UpstreamTimeoutError,
    retry_always,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 8.0


async def fetch_with_timeout(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    json_body: Optional[Any] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    api_name: Optional[str] = None,
) -> httpx.Response:
    """
    Issue a request and give up if the full response takes longer than timeout.

    The response is returned as-is; status codes are the caller's concern.

    Raises:
        UpstreamTimeoutError: deadline elapsed
        UpstreamConnectionError: any other transport failure
    """
    try:
        # httpx timeouts are per phase, wait_for bounds the whole exchange
        return await asyncio.wait_for(
            client.request(
                method,
                url,
                params=params,
                headers=headers,
                json=json_body,
                timeout=timeout,
            ),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        logger.warning("upstream_timeout", url=url, timeout=timeout)
        raise UpstreamTimeoutError(
            f"No response from {url} within {timeout}s",
            api_name=api_name,
        ) from e
    except httpx.TransportError as e:
        logger.warning(
            "upstream_transport_error",
            url=url,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise UpstreamConnectionError(str(e) or type(e).__name__, api_name=api_name) from e


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    should_retry: Callable[[BaseException], bool] = retry_always,
    jitter: float = 0.0,
    deadline: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Run operation until it succeeds or max_attempts is reached.

    Every exception is retried unless should_retry returns False for it.
    The delay before attempt n (n >= 2) is base_delay * 2^(n-2). When a
    monotonic deadline is given, a retry whose delay would cross it is
    skipped. In every give-up case the last exception is re-raised as-is.

    Args:
        operation: Zero-argument coroutine function
        max_attempts: Total number of calls, including the first
        base_delay: Delay in seconds before the second attempt
        should_retry: Predicate deciding whether an error is worth retrying
        jitter: Fraction (0-1) of random spread applied to each delay
        deadline: Absolute time on `clock` after which no retry starts
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        jitter=jitter,
        should_retry=should_retry,
    )

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "retry_attempts_exhausted",
                    attempts=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if not policy.should_retry(e):
                logger.info(
                    "retry_skipped_non_retryable",
                    attempt=attempt,
                    error_type=type(e).__name__,
                )
                raise

            delay = policy.get_delay(attempt + 1)
            if deadline is not None and clock() + delay > deadline:
                logger.warning(
                    "retry_deadline_reached",
                    attempt=attempt,
                    delay=delay,
                    error_type=type(e).__name__,
                )
                raise

            logger.warning(
                "upstream_retry",
                attempt=attempt,
                delay=delay,
                error=str(e),
                error_type=type(e).__name__,
            )
            await sleep(delay)
            attempt += 1


async def retry_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """retry_with_backoff driven by a RetryPolicy"""
    return await retry_with_backoff(
        operation,
        policy.max_attempts,
        policy.base_delay,
        should_retry=policy.should_retry,
        jitter=policy.jitter,
        deadline=deadline,
        clock=clock,
    )
