"""
Expose pipeline and distributor telemetry via Prometheus.

The exporter subscribes to `status.pipeline` and `status.distributor` and
renders the latest snapshot as gauges.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import BaseModule, BasePayload, DistributorStats, ModuleConfig, PipelineStatus

logger = logging.getLogger(__name__)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class PrometheusExporter(BaseModule):
    """Status module that exports telemetry via HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._pipeline_topic = "status.pipeline"
        self._distributor_topic = "status.distributor"
        self._port = 9093
        self._addr = "127.0.0.1"
        self._subscriptions: list[Subscription] = []

        def gauge(name: str, documentation: str) -> Gauge:
            return Gauge(f"iris_{name}", documentation, registry=self._registry)

        self._connected = gauge("ingest_connected", "1 while the kernel channel is connected.")
        self._session_initialized = gauge(
            "session_initialized", "1 once the current session announced itself."
        )
        self._connections = gauge("ingest_connections_total", "Successful kernel connections.")
        self._frames = gauge("frames_total", "Frames extracted from the byte stream.")
        self._events = gauge("events_total", "Events parsed from frames.")
        self._rejected = gauge("header_rejected_total", "Frames too short to hold a header.")
        self._corruption = gauge("corruption_total", "Corruption signals raised by the decoder.")
        self._discarded = gauge("bytes_discarded_total", "Bytes dropped while resynchronizing.")
        self._decode_failures = gauge("decode_failures_total", "Payload decoder failures.")
        self._pending = gauge("decoder_pending_bytes", "Bytes buffered in the frame decoder.")
        self._subscribers = gauge("subscribers", "Currently connected subscribers.")
        self._subscriber_connections = gauge(
            "subscriber_connections_total", "Subscriber connections since startup."
        )
        self._broadcast = gauge("events_broadcast_total", "Events broadcast to subscribers.")
        self._bytes_sent = gauge("bytes_sent_total", "Bytes sent to subscribers.")

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._pipeline_topic = options.get("pipeline_topic", self._pipeline_topic)
        self._distributor_topic = options.get("distributor_topic", self._distributor_topic)

    async def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        self._subscriptions = [
            self.bus.subscribe(self._pipeline_topic, self._handle_pipeline),
            self.bus.subscribe(self._distributor_topic, self._handle_distributor),
        ]

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        server = getattr(self._server, "shutdown", None)
        if callable(server):
            server()
        self._server = None

    async def _handle_pipeline(self, topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, PipelineStatus):
            return
        self._connected.set(1 if payload.connection_state == "connected" else 0)
        self._session_initialized.set(1 if payload.init_received else 0)
        self._connections.set(payload.connections_total)
        self._frames.set(payload.frames_total)
        self._events.set(payload.events_total)
        self._rejected.set(payload.header_rejected_total)
        self._corruption.set(payload.corruption_total)
        self._discarded.set(payload.bytes_discarded_total)
        self._decode_failures.set(payload.decode_failures_total)
        self._pending.set(payload.pending_bytes)

    async def _handle_distributor(self, topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, DistributorStats):
            return
        self._subscribers.set(payload.active_connections)
        self._subscriber_connections.set(payload.total_connections)
        self._broadcast.set(payload.total_events_broadcast)
        self._bytes_sent.set(payload.total_bytes_sent)


__all__ = ["PrometheusExporter"]
