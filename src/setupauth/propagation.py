"""Poll until an eventually-consistent change becomes observable."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from setupauth.config import PropagationConfig
from setupauth.exceptions import PropagationTimeoutError

logger = logging.getLogger(__name__)

Predicate = Callable[[], bool | Awaitable[bool]]


async def wait_for(
    predicate: Predicate,
    *,
    timeout: float = 30.0,
    interval: float = 2.0,
    description: str = "change",
) -> None:
    """Poll ``predicate`` every ``interval`` seconds until it returns True.

    Raises ``PropagationTimeoutError`` once ``timeout`` has elapsed without
    success. An exception raised by the predicate propagates immediately.
    The first unsuccessful poll logs a single notice; later polls are quiet.
    ``interval`` must be positive.
    """
    if interval <= 0:
        raise ValueError(f"Poll interval must be positive, got {interval!r}")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    notified = False
    started = time.monotonic()

    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            if notified:
                logger.info(
                    "%s propagated after %.1fs",
                    description, time.monotonic() - started,
                )
            return

        if not notified:
            logger.info(
                "Waiting for %s to propagate (up to %gs)...", description, timeout,
            )
            notified = True

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PropagationTimeoutError(description, timeout)
        await asyncio.sleep(min(interval, remaining))


@dataclass(frozen=True)
class PropagationWaiter:
    """``wait_for`` bound to configured defaults."""

    timeout: float = 30.0
    interval: float = 2.0

    @classmethod
    def from_config(cls, config: PropagationConfig) -> PropagationWaiter:
        return cls(
            timeout=float(config.timeout_seconds),
            interval=float(config.interval_seconds),
        )

    async def wait(
        self,
        predicate: Predicate,
        *,
        description: str,
        timeout: float | None = None,
    ) -> None:
        await wait_for(
            predicate,
            timeout=self.timeout if timeout is None else timeout,
            interval=self.interval,
            description=description,
        )
