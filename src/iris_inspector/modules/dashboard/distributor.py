"""
Fan-out of decoded kernel events to live subscribers over WebSocket.

`broadcast` runs synchronously on the event loop: the event is serialized
once and offered to every subscriber's bounded queue in a single step, so the
subscriber set cannot change halfway through an event. Each subscriber has
its own writer task that drains the queue with a send timeout. A subscriber
whose queue is full, whose send fails or times out, or whose sink is found
closed is removed on its own; everyone else keeps receiving.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from ...core.catalogue import EventCatalogue
from ...core.contracts import BaseModule, DistributorStats, Event, HealthStatus, ModuleConfig
from ...decoders.registry import DecodedPayload
from ...protocol.messages import (
    BatchMessage,
    EventBody,
    EventMessage,
    PongMessage,
    ShutdownMessage,
    StatsBody,
    StatsMessage,
    WelcomeBody,
    WelcomeMessage,
    now_ms,
)

logger = logging.getLogger(__name__)

GOING_AWAY = 1001


class SubscriberSink(Protocol):
    """Outbound side of one subscriber connection."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketSink:
    """Adapts a FastAPI/Starlette websocket to `SubscriberSink`."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        await self._websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._websocket.close(code=code, reason=reason)


@dataclass(eq=False)
class _Subscriber:
    id: int
    sink: SubscriberSink
    queue: asyncio.Queue[str]
    writer: asyncio.Task[None] | None = field(default=None)


class EventDistributor(BaseModule):
    """Serve `/ws` and push every broadcast event to each connected subscriber."""

    name = "modules.dashboard.distributor"

    def __init__(
        self,
        *,
        catalogue: EventCatalogue | None = None,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._catalogue = catalogue or EventCatalogue()
        self._host = "0.0.0.0"
        self._port = 3001
        self._serve_http = True
        self._queue_size = 1024
        self._send_timeout = 5.0
        self._cleanup_interval = 30.0
        self._ws_ping_interval = 30.0
        self._subscribers: dict[int, _Subscriber] = {}
        self._next_id = 0
        self._total_connections = 0
        self._events_broadcast = 0
        self._bytes_sent = 0
        self._started_at = time.monotonic()
        self._background: set[asyncio.Task[None]] = set()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._app: FastAPI | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_http = bool(options.get("serve_http", self._serve_http))
        self._queue_size = int(options.get("queue_size", self._queue_size))
        self._send_timeout = float(options.get("send_timeout_seconds", self._send_timeout))
        self._cleanup_interval = float(
            options.get("cleanup_interval_seconds", self._cleanup_interval)
        )
        self._ws_ping_interval = float(options.get("ws_ping_interval", self._ws_ping_interval))

    async def start(self) -> None:
        self._started_at = time.monotonic()
        self._app = self.build_app()
        if self._cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(
                self._cleanup_loop(), name=f"{self.name}-cleanup"
            )
        if not self._serve_http:
            logger.info("EventDistributor running in embedded mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="info",
            ws_ping_interval=self._ws_ping_interval,
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("EventDistributor listening on ws://%s:%s/ws", self._host, self._port)

    async def stop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        await self.shutdown()
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None
        self._app = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("EventDistributor has not been started.")
        return self._app

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def stats(self) -> DistributorStats:
        return DistributorStats(
            total_connections=self._total_connections,
            active_connections=len(self._subscribers),
            total_events_broadcast=self._events_broadcast,
            total_bytes_sent=self._bytes_sent,
            uptime_seconds=max(0.0, time.monotonic() - self._started_at),
        )

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={
                "subscribers": len(self._subscribers),
                "events_broadcast": self._events_broadcast,
                "serving": self._server_task is not None,
            },
        )

    def add_subscriber(self, sink: SubscriberSink) -> int:
        """Register `sink` and queue its welcome message. Needs a running loop."""
        self._next_id += 1
        subscriber = _Subscriber(
            id=self._next_id, sink=sink, queue=asyncio.Queue(maxsize=self._queue_size)
        )
        self._subscribers[subscriber.id] = subscriber
        self._total_connections += 1
        welcome = WelcomeMessage(
            data=WelcomeBody(
                client_id=subscriber.id,
                server_time=now_ms(),
                stats=StatsBody.from_stats(self.stats()),
            )
        )
        subscriber.queue.put_nowait(welcome.to_json())
        subscriber.writer = asyncio.create_task(
            self._writer(subscriber), name=f"{self.name}-writer-{subscriber.id}"
        )
        logger.info("Client #%d connected", subscriber.id)
        return subscriber.id

    def remove_subscriber(self, subscriber_id: int, *, reason: str = "removed") -> bool:
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return False
        writer = subscriber.writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        if subscriber.sink.is_open:
            task = asyncio.create_task(self._close_sink(subscriber))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        logger.info("Client #%d removed (%s)", subscriber_id, reason)
        return True

    def broadcast(self, event: Event, decoded: DecodedPayload | None = None) -> None:
        if not self._subscribers:
            return
        body = EventBody.from_event(
            event, name=self._catalogue.name_of(event.event_type), decoded=decoded
        )
        self._offer(EventMessage(data=body).to_json())
        self._events_broadcast += 1

    def broadcast_batch(self, events: Iterable[tuple[Event, DecodedPayload | None]]) -> None:
        if not self._subscribers:
            return
        bodies = [
            EventBody.from_event(
                event, name=self._catalogue.name_of(event.event_type), decoded=decoded
            )
            for event, decoded in events
        ]
        if not bodies:
            return
        self._offer(BatchMessage(data=bodies).to_json())
        self._events_broadcast += len(bodies)

    def handle_client_message(self, subscriber_id: int, raw: str) -> None:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Invalid message from client #%d: %s", subscriber_id, exc)
            return
        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "ping":
            self._enqueue(subscriber, PongMessage().to_json())
        elif kind == "getStats":
            self._enqueue(subscriber, StatsMessage(data=StatsBody.from_stats(self.stats())).to_json())
        elif kind == "subscribe":
            logger.info(
                "Client #%d subscription request: %s", subscriber_id, message.get("filters")
            )
        else:
            logger.warning("Unknown message type from client #%d: %r", subscriber_id, kind)

    async def shutdown(self) -> None:
        """Send a shutdown notice to every subscriber and close them as going away."""
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        if subscribers:
            logger.info("Shutting down %d subscriber connection(s)", len(subscribers))
        writers = [sub.writer for sub in subscribers if sub.writer is not None]
        for writer in writers:
            writer.cancel()
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)
        notice = ShutdownMessage().to_json()
        for subscriber in subscribers:
            if not subscriber.sink.is_open:
                continue
            try:
                await asyncio.wait_for(subscriber.sink.send_text(notice), self._send_timeout)
                await asyncio.wait_for(
                    subscriber.sink.close(GOING_AWAY, "Server shutdown"), self._send_timeout
                )
            except Exception as exc:
                logger.warning("Failed to close client #%d cleanly: %s", subscriber.id, exc)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cleanup_closed(self) -> int:
        """Drop subscribers whose sink is no longer open."""
        dead = [sub.id for sub in self._subscribers.values() if not sub.sink.is_open]
        for subscriber_id in dead:
            self.remove_subscriber(subscriber_id, reason="closed")
        if dead:
            logger.info("Cleaned up %d disconnected client(s)", len(dead))
        return len(dead)

    def build_app(self) -> FastAPI:
        app = FastAPI(title="IRIS Event Distributor", version="0.1.0")

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {
                "status": "healthy",
                "wsClients": len(self._subscribers),
                "stats": StatsBody.from_stats(self.stats()).to_wire(),
            }

        @app.get("/stats")
        async def stats() -> dict[str, Any]:
            return StatsBody.from_stats(self.stats()).to_wire()

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            subscriber_id = self.add_subscriber(WebSocketSink(websocket))
            try:
                while True:
                    raw = await websocket.receive_text()
                    self.handle_client_message(subscriber_id, raw)
            except WebSocketDisconnect:
                logger.info("Client #%d disconnected", subscriber_id)
            finally:
                self.remove_subscriber(subscriber_id, reason="disconnected")

        self._app = app
        return app

    def _offer(self, text: str) -> None:
        for subscriber in list(self._subscribers.values()):
            if not subscriber.sink.is_open:
                self.remove_subscriber(subscriber.id, reason="closed")
                continue
            try:
                subscriber.queue.put_nowait(text)
            except asyncio.QueueFull:
                logger.warning("Client #%d is too slow; dropping connection", subscriber.id)
                self.remove_subscriber(subscriber.id, reason="slow consumer")

    def _enqueue(self, subscriber: _Subscriber, text: str) -> None:
        try:
            subscriber.queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("Client #%d is too slow; dropping connection", subscriber.id)
            self.remove_subscriber(subscriber.id, reason="slow consumer")

    async def _writer(self, subscriber: _Subscriber) -> None:
        while True:
            text = await subscriber.queue.get()
            try:
                await asyncio.wait_for(subscriber.sink.send_text(text), self._send_timeout)
            except TimeoutError:
                logger.warning(
                    "Send to client #%d timed out after %.1fs", subscriber.id, self._send_timeout
                )
                self.remove_subscriber(subscriber.id, reason="send timeout")
                return
            except Exception as exc:
                logger.error("Failed to send to client #%d: %s", subscriber.id, exc)
                self.remove_subscriber(subscriber.id, reason="send failed")
                return
            self._bytes_sent += len(text.encode("utf-8"))

    async def _close_sink(self, subscriber: _Subscriber) -> None:
        try:
            await asyncio.wait_for(subscriber.sink.close(), self._send_timeout)
        except Exception as exc:
            logger.debug("Closing client #%d failed: %s", subscriber.id, exc)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup_closed()


__all__ = ["EventDistributor", "SubscriberSink", "WebSocketSink"]
