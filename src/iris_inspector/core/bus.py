"""
Asyncio-based event bus for telemetry and control traffic.

The decoded kernel event stream never travels over this bus; it is wired
directly from the transport to the distributor. The bus carries the slower
side channels instead: status snapshots, health summaries and control
commands, fanned out by topic to modules such as the Prometheus exporter and
the control API.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from asyncio import QueueEmpty
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .contracts import BasePayload, EventHandler

logger = logging.getLogger(__name__)


Handler = Callable[[str, BasePayload], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    """Handle for a topic subscription."""

    topic: str
    handler: EventHandler


class EventBus:
    """Topic-based publish/subscribe bus backed by a bounded queue."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue: asyncio.Queue[tuple[str, BasePayload]] = asyncio.Queue(maxsize=queue_size)
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._published_total = 0
        self._processed_total = 0
        self._dropped_total = 0

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    @property
    def counters(self) -> dict[str, int]:
        return {
            "published": self._published_total,
            "processed": self._processed_total,
            "dropped": self._dropped_total,
            "queued": self._queue.qsize(),
        }

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register an async handler for a topic."""
        self._subscribers[topic].append(handler)
        logger.debug("Subscribed handler %s to topic %s", handler, topic)
        return Subscription(topic=topic, handler=handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered handler."""
        handlers = self._subscribers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Queue a payload for a topic; waits when the queue is full."""
        self._published_total += 1
        if self._queue.full():
            logger.warning("Event bus queue is full; publisher will wait for free space.")
        await self._queue.put((topic, payload))

    def publish_nowait(self, topic: str, payload: BasePayload) -> bool:
        """Queue a payload without waiting; returns False when it had to be dropped."""
        self._published_total += 1
        try:
            self._queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.debug("Dropped %s payload; bus queue is full", topic)
            return False
        return True

    async def start(self) -> None:
        if self._dispatcher_task is None:
            self._stopping.clear()
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="iris-bus")
            logger.info("Event bus dispatcher started.")

    async def stop(self) -> None:
        """Stop the dispatcher, wait for in-flight handlers and drop what is still queued."""
        if self._dispatcher_task is None:
            return
        self._stopping.set()
        await self._queue.put(("", _StopPayload()))
        await self._dispatcher_task
        self._dispatcher_task = None
        if self._handler_tasks:
            pending = list(self._handler_tasks)
            self._handler_tasks.clear()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Event bus dispatcher stopped.")

    async def _dispatcher(self) -> None:
        while not self._stopping.is_set():
            topic, payload = await self._queue.get()
            try:
                if isinstance(payload, _StopPayload):
                    break
                handlers = list(self._subscribers.get(topic, []))
                if not handlers:
                    continue
                # Handlers run as tasks so one that publishes back cannot deadlock the queue.
                for handler in handlers:
                    task = asyncio.create_task(self._call_handler(handler, topic, payload))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._on_handler_done)
                self._processed_total += 1
            finally:
                self._queue.task_done()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                break
            else:
                self._dropped_total += 1
                self._queue.task_done()

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Bus handler failed", exc_info=exc)

    async def _call_handler(self, handler: Handler, topic: str, payload: BasePayload) -> None:
        result = handler(topic, payload)
        if inspect.isawaitable(result):
            await result


class _StopPayload(BasePayload):
    """Sentinel payload to signal dispatcher shutdown."""


__all__ = ["EventBus", "Handler", "Subscription"]
