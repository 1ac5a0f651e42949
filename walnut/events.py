"""In-process publish/subscribe for completion notifications.

Delivery is best effort and at most once; the transaction ledger stays the
source of truth for anything a subscriber misses.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from loguru import logger

SEND_COMPLETED = "sendCompleted"
TOPUP_COMPLETED = "topupCompleted"

Callback = Callable[[dict[str, Any]], Any]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, callback: Callback) -> None:
        self._subscribers.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: str, payload: dict[str, Any]) -> int:
        """Deliver ``payload`` to every subscriber of ``event``.

        Coroutine callbacks are scheduled on the running loop. A failing
        subscriber is logged and skipped.

        Returns:
            Number of subscribers notified
        """
        delivered = 0
        for callback in list(self._subscribers.get(event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
                delivered += 1
            except Exception:
                logger.exception(f"Subscriber of {event} failed")
        return delivered

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async subscriber failed: {task.exception()!r}")
