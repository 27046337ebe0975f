"""
Retry logic for executor API calls.

Only transient failures are retried (rate limits, 5xx, connection errors),
with exponential backoff and jitter. This is per-request resilience inside a
single cycle; the scheduler itself never backs off between cycles.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import anthropic
import structlog

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 529)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range


def is_retryable_error(error: Exception) -> bool:
    """True for errors worth another attempt; 4xx request errors are not."""
    if isinstance(error, (anthropic.APIConnectionError, anthropic.RateLimitError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before the next attempt.

    ``base_delay * exponential_base ** attempt`` capped at ``max_delay``, plus
    symmetric jitter. A server-provided Retry-After wins (never under 1s).
    """
    if retry_after is not None and retry_after > 0:
        return max(1.0, retry_after)

    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.1, delay + jitter)


def _retry_after_seconds(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        return float(response.headers.get("retry-after", 0))
    except (ValueError, AttributeError, TypeError):
        return None


async def with_retries(
    func: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Await ``func()``, retrying transient errors. Re-raises the last error."""
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e),
                    attempt=attempt,
                )
                raise
            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e),
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 1),
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
