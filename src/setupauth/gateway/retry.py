"""Shared retry primitive for remote API calls.

The gateway is the only place that retries. Reconcilers, the patcher and
the orchestrator never loop on a remote call themselves.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from setupauth.config import RetryConfig
from setupauth.gateway.errors import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ApiRetryPolicy:
    """Bounded exponential backoff for remote calls."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.25

    @classmethod
    def from_config(cls, retry: RetryConfig) -> ApiRetryPolicy:
        max_attempts = max(1, min(10, int(retry.max_attempts or 1)))
        base_delay = max(0.0, float(retry.base_delay_seconds))
        multiplier = max(1.0, float(retry.multiplier))
        max_delay = max(base_delay, float(retry.max_delay_seconds))
        jitter = max(0.0, float(retry.jitter_seconds))
        return cls(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay,
            multiplier=multiplier,
            max_delay_seconds=max_delay,
            jitter_seconds=jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-indexed)."""
        delay = min(
            self.max_delay_seconds,
            self.base_delay_seconds * (self.multiplier ** (attempt - 1)),
        )
        if self.jitter_seconds > 0:
            delay += random.uniform(0.0, self.jitter_seconds)
        return delay


def is_retryable_api_error(error: BaseException) -> bool:
    """Return True when a remote failure is likely transient."""
    return classify(error).transient


async def call_with_retry(
    invoke: Callable[[], Awaitable[T]],
    *,
    policy: ApiRetryPolicy,
    should_retry: Callable[[BaseException], bool] | None = None,
    on_failure: Callable[[int, int, BaseException, int], None] | None = None,
    operation: str = "",
) -> T:
    """Invoke an async remote call with a queued retry policy."""
    decider = should_retry or is_retryable_api_error
    attempts = deque(range(1, policy.max_attempts + 1))
    last_error: BaseException | None = None

    while attempts:
        attempt = attempts.popleft()
        try:
            return await invoke()
        except Exception as error:
            last_error = error
            remaining = len(attempts)
            retryable = decider(error)
            if on_failure is not None:
                on_failure(attempt, policy.max_attempts, error, remaining)
            if not retryable or remaining <= 0:
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                "Retrying %s in %.2fs after attempt %d/%d failed: %s",
                operation or "remote call", delay, attempt,
                policy.max_attempts, error,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error
    raise RuntimeError("retry queue exhausted without attempts")
