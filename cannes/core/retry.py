"""Exponential backoff for transient ranking and collaborator failures.

Two policies are in use:
- storage: optimistic version races on a ranking list (TierWriteConflict)
  and contention on aggregate increments (AggregateWriteConflict)
- collaborator: network errors and 5xx answers from external services
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

from cannes.config import get_settings
from cannes.core.errors import AggregateWriteConflict, TierWriteConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORAGE_CONFLICTS = (TierWriteConflict, AggregateWriteConflict)
NETWORK_ERRORS = (httpx.TimeoutException, httpx.NetworkError, ConnectionError, asyncio.TimeoutError)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5  # Seconds before the second attempt
    max_delay: float = 10.0
    backoff: float = 2.0
    jitter: float = 0.1  # +/- fraction of the delay
    retryable_exceptions: tuple = field(default_factory=lambda: NETWORK_ERRORS)
    retryable_status_codes: tuple = (500, 502, 503, 504)

    @classmethod
    def for_storage(cls) -> "RetryConfig":
        """Short, tight retries for list version races and aggregate contention."""
        settings = get_settings()
        return cls(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            retryable_exceptions=STORAGE_CONFLICTS,
        )

    @classmethod
    def for_collaborator(cls) -> "RetryConfig":
        return cls(max_attempts=get_settings().max_retry_attempts)

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, self.retryable_exceptions):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in self.retryable_status_codes
        return False

    def delay(self, attempt: int) -> float:
        """Wait before retrying after the zero-based ``attempt`` failed."""
        delay = min(self.base_delay * self.backoff ** attempt, self.max_delay)
        spread = delay * self.jitter
        return max(0.0, delay + random.uniform(-spread, spread))


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig | None = None,
    **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient failures.

    Usage:
        mutation = await retry_async(attempt, config=RetryConfig.for_storage())

    Errors the config does not consider transient propagate at once; the
    last transient error is re-raised once attempts are exhausted.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                raise
            if attempt == config.max_attempts - 1:
                logger.error(f"{name} gave up after {config.max_attempts} attempts: {type(e).__name__}: {e}")
                raise
            wait = config.delay(attempt)
            logger.warning(
                f"{name} attempt {attempt + 1}/{config.max_attempts} hit {type(e).__name__}: {e}; "
                f"retrying in {wait:.2f}s"
            )
            await asyncio.sleep(wait)

    raise ValueError(f"max_attempts must be positive, got {config.max_attempts}")
