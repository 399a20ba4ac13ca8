"""Event bus for setup-auth.

The orchestrator publishes run and step events; the CLI subscribes to
print progress. Handlers may be plain functions or coroutines. Coroutine
handlers run as tasks and are awaited by ``drain()``, which the
orchestrator calls before a run returns.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


@dataclass
class Event:
    event_type: str
    run_id: str
    data: dict = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


EventHandler = Callable[[Event], Any]


class EventBus:
    """In-process publish/subscribe keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self.subscribe(ALL_EVENTS, handler)

    def emit(self, event: Event) -> None:
        """Deliver ``event``; a failing handler is logged and skipped."""
        for handler in (
            *self._subscribers.get(ALL_EVENTS, ()),
            *self._subscribers.get(event.event_type, ()),
        ):
            if inspect.iscoroutinefunction(handler):
                self._schedule(handler, event)
                continue
            try:
                handler(event)
            except Exception as e:
                logger.warning("Handler %r failed on %s: %s", handler, event.event_type, e)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d event handler(s) still running after drain", len(pending))

    def _schedule(self, handler: EventHandler, event: Event) -> None:
        try:
            task = asyncio.get_running_loop().create_task(handler(event))
        except RuntimeError:
            logger.debug("No running loop; dropped %s for %r", event.event_type, handler)
            return
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning("Async event handler failed: %s", task.exception())
