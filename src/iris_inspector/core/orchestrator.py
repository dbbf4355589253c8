"""
Lifecycle coordinator and decode pipeline for the IRIS inspector.

The orchestrator owns the shared event bus, the session state, the event
catalogue and the payload decoder registry, and passes them by reference to
whoever needs them. It wires the transport's output stream straight into the
distributor through a single pump task:

    TransportClient.stream() -> HeaderParser -> registry.resolve -> EventDistributor.broadcast

Everything the pump sees is handled synchronously, so events reach the
distributor in exactly the order the frames arrived on the wire. Telemetry
and control commands travel on the bus instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from ..decoders.registry import PayloadDecoderRegistry, default_registry
from ..modules.dashboard.distributor import EventDistributor
from ..modules.input.kernel_socket import Connected, Disconnected, TransportClient, TransportItem
from ..protocol.header import HeaderParser
from .bus import EventBus, Subscription
from .catalogue import EventCatalogue, EventType
from .contracts import (
    BaseModule,
    BasePayload,
    ControlCommand,
    CorruptionSignal,
    Frame,
    HealthStatus,
    HealthSummary,
    ModuleConfig,
    PipelineStatus,
    SessionState,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """Manage module lifecycle and run the frame-to-subscriber pump."""

    def __init__(
        self,
        *,
        transport: TransportClient,
        distributor: EventDistributor,
        bus: EventBus | None = None,
        catalogue: EventCatalogue | None = None,
        registry: PayloadDecoderRegistry | None = None,
        session: SessionState | None = None,
        telemetry_interval: float = 5.0,
        progress_log_interval: float = 5.0,
        publish_telemetry: bool = True,
        command_topic: str = "dashboard.control.command",
    ) -> None:
        self.bus = bus or EventBus()
        self.catalogue = catalogue or EventCatalogue()
        self.registry = registry or default_registry()
        self.session = session or SessionState()
        self.transport = transport
        self.distributor = distributor
        self.parser = HeaderParser()
        self._modules: list[BaseModule] = []
        self._configs: dict[BaseModule, ModuleConfig] = {}
        self._running = False
        self._telemetry_interval = telemetry_interval
        self._progress_log_interval = progress_log_interval
        self._publish_telemetry = publish_telemetry
        self._command_topic = command_topic
        self._command_subscription: Subscription | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._telemetry_task: asyncio.Task[None] | None = None
        self._frames_total = 0
        self._events_total = 0
        self._corruption_total = 0
        self._bytes_discarded_total = 0
        self._pump_errors = 0
        self._last_progress_log = time.monotonic()

    async def add_module(self, module: BaseModule, config: ModuleConfig | None = None) -> None:
        """
        Register a module with an optional configuration.

        Modules receive the shared bus before configuration and are started
        in registration order.
        """
        module.set_bus(self.bus)
        if config is None:
            config = ModuleConfig()
        await module.configure(config)
        self._modules.append(module)
        self._configs[module] = config
        logger.info("Registered module %s", module.name)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pump_errors(self) -> int:
        return self._pump_errors

    async def start(self) -> None:
        """Start the bus, the pump and every module; the transport comes up last."""
        if self._running:
            logger.warning("Orchestrator already running.")
            return
        if self.distributor not in self._modules:
            await self.add_module(self.distributor)
        if self.transport not in self._modules:
            await self.add_module(self.transport)
        # The transport connects on start, so it has to come after its consumers.
        self._modules.remove(self.transport)
        self._modules.append(self.transport)

        await self.bus.start()
        self._command_subscription = self.bus.subscribe(self._command_topic, self._handle_command)
        self._pump_task = asyncio.create_task(self._pump(), name="iris-pump")
        for module in self._modules:
            logger.info("Starting module %s", module.name)
            await module.start()
        self._running = True
        if self._publish_telemetry:
            self._telemetry_task = asyncio.create_task(
                self._telemetry_loop(), name="iris-telemetry"
            )
        logger.info("Orchestrator started %d modules.", len(self._modules))

    async def stop(self) -> None:
        """Disconnect the kernel, say goodbye to subscribers, then stop everything else."""
        if not self._running:
            logger.warning("Orchestrator stop requested while not running.")
            return
        self._running = False
        await self.transport.disconnect()
        # The pump is cancelled below before it sees the final Disconnected item.
        self.session.reset()
        if self._pump_task:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None
        await self.distributor.shutdown()
        if self._telemetry_task:
            self._telemetry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._telemetry_task
            self._telemetry_task = None
        for module in reversed(self._modules):
            try:
                await module.stop()
            except Exception:
                logger.exception("Module %s failed to stop cleanly.", module.name)
        if self._command_subscription:
            self.bus.unsubscribe(self._command_subscription)
            self._command_subscription = None
        await self.bus.stop()
        logger.info("Orchestrator stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Aggregate health information from all modules."""
        reports: dict[str, HealthStatus] = {}
        for module in self._modules:
            reports[module.name] = await module.health()
        return reports

    def pipeline_status(self) -> PipelineStatus:
        return PipelineStatus(
            connection_state=self.transport.state.value,
            init_received=self.session.init_received,
            connections_total=self.transport.connections_total,
            frames_total=self._frames_total,
            events_total=self._events_total,
            header_rejected_total=self.parser.rejected,
            corruption_total=self._corruption_total,
            bytes_discarded_total=self._bytes_discarded_total,
            decode_failures_total=self.registry.failures,
            pending_bytes=self.transport.decoder.pending,
        )

    def process(self, item: TransportItem) -> None:
        """Handle one item from the transport stream; never raises."""
        try:
            if isinstance(item, Frame):
                self._handle_frame(item)
            elif isinstance(item, CorruptionSignal):
                self._handle_corruption(item)
            elif isinstance(item, Disconnected):
                self._handle_disconnected(item)
            elif isinstance(item, Connected):
                logger.debug("Ingest channel %s connected (first=%s)", item.endpoint, item.first)
        except Exception:
            self._pump_errors += 1
            logger.exception("Failed to process %s from the ingest stream", type(item).__name__)

    async def _pump(self) -> None:
        async for item in self.transport.stream():
            self.process(item)

    def _handle_frame(self, frame: Frame) -> None:
        self._frames_total += 1
        event = self.parser.parse(frame)
        if event is None:
            return
        self._events_total += 1
        if event.event_type == EventType.IRIS_INIT and self.session.mark_initialized():
            logger.info("Kernel connection established")
        decoded = None
        if event.payload is not None:
            decoded = self.registry.resolve(event.event_type, event.payload)
        self.distributor.broadcast(event, decoded)
        now = time.monotonic()
        if now - self._last_progress_log >= self._progress_log_interval:
            logger.info("Processed %d events", self._events_total)
            self._last_progress_log = now

    def _handle_corruption(self, signal: CorruptionSignal) -> None:
        self._corruption_total += 1
        self._bytes_discarded_total += signal.discarded_length
        # Garbage before the first IRIS_INIT is normal boot noise (BIOS, bootloader output).
        if not self.session.init_received:
            return
        logger.warning(
            "Corrupted data detected: %s (%d bytes discarded)",
            signal.reason,
            signal.discarded_length,
        )

    def _handle_disconnected(self, item: Disconnected) -> None:
        if self.session.init_received:
            logger.info("Connection lost")
        self.session.reset()

    async def _handle_command(self, topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, ControlCommand):
            logger.debug("Ignoring non ControlCommand payload on %s", topic)
            return
        if payload.command == "ingest.start":
            logger.info("Control command: starting ingest")
            await self.transport.connect()
        elif payload.command == "ingest.stop":
            logger.info("Control command: stopping ingest")
            await self.transport.disconnect()
        else:
            logger.warning("Unknown control command %s", payload.command)

    async def _telemetry_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._telemetry_interval)
            await self.publish_telemetry()

    async def publish_telemetry(self) -> None:
        """Publish status snapshots; a full bus drops them since the next round supersedes them."""
        self.bus.publish_nowait("status.pipeline", self.pipeline_status())
        self.bus.publish_nowait("status.distributor", self.distributor.stats())
        reports = await self.health()
        summary = HealthSummary(status=self._determine_overall_status(reports), modules=reports)
        self.bus.publish_nowait("status.health.summary", summary)

    @staticmethod
    def _determine_overall_status(reports: dict[str, HealthStatus]) -> str:
        statuses = {report.status for report in reports.values()}
        if "error" in statuses:
            return "error"
        if "degraded" in statuses:
            return "degraded"
        return "healthy"


__all__ = ["Orchestrator"]
