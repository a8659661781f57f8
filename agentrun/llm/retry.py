"""
Retry and timeout policy applied to every Model Backend call.

Adapters stay free of control flow: they raise ``ProviderError`` (marked
``transient`` where a retry makes sense) and this module decides whether to
try again.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from agentrun.errors import ProviderError, ProviderRateLimited, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Parameters
    ----------
    max_attempts:
        Total number of attempts, including the first one.
    base_delay:
        Backoff before the second attempt; doubles on each retry.
    max_delay:
        Upper bound for a single backoff sleep.
    timeout:
        Per-attempt timeout in seconds.  ``None`` disables it.
    jitter:
        Random extra delay (seconds) added to each backoff.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout: float | None = 60.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def backoff(self, attempt: int, error: ProviderError | None = None) -> float:
        """Delay before retry number *attempt* (1-based)."""
        if isinstance(error, ProviderRateLimited) and error.retry_after:
            return min(error.retry_after, self.max_delay)
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.jitter:
            delay += random.random() * self.jitter
        return min(delay, self.max_delay)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    provider: str | None = None,
    should_retry: Callable[[], bool] | None = None,
) -> T:
    """
    Await ``fn()`` under *policy*.

    Timeouts become ``ProviderTimeout``.  Any other non-``ProviderError``
    exception is wrapped in a non-transient ``ProviderError``.  Only
    transient errors are retried, and only while *should_retry* (if given)
    returns ``True``.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(fn(), timeout=policy.timeout)
            return await fn()
        except asyncio.TimeoutError as exc:
            error: ProviderError = ProviderTimeout(provider, policy.timeout or 0.0)
            error.cause = exc
        except ProviderError as exc:
            error = exc
            if error.provider is None:
                error.provider = provider
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"{type(exc).__name__}: {exc}",
                provider=provider,
                cause=exc,
            ) from exc

        retryable = error.transient and attempt < policy.max_attempts
        if retryable and should_retry is not None:
            retryable = should_retry()
        if not retryable:
            raise error

        delay = policy.backoff(attempt, error)
        logger.warning(
            "Provider %s attempt %d/%d failed (%s); retrying in %.2fs",
            provider, attempt, policy.max_attempts, error.code, delay,
        )
        await asyncio.sleep(delay)
