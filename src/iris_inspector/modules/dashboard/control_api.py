"""
FastAPI-powered control surface for the ingest side of the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import FastAPI

from ...core.bus import Subscription
from ...core.contracts import (
    BaseModule,
    BasePayload,
    ControlCommand,
    DistributorStats,
    HealthSummary,
    ModuleConfig,
    PipelineStatus,
)

logger = logging.getLogger(__name__)

_STATUS_TOPICS = {
    "status.pipeline": "pipeline",
    "status.distributor": "distributor",
    "status.health.summary": "health",
}


class ControlApi(BaseModule):
    """Expose HTTP endpoints that publish control commands to the bus."""

    name = "modules.dashboard.control_api"

    def __init__(
        self,
        *,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._host = "127.0.0.1"
        self._port = 8080
        self._serve_api = True
        self._command_topic = "dashboard.control.command"
        self._latest: dict[str, BasePayload] = {}
        self._subscriptions: list[Subscription] = []
        self._app: FastAPI | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_api = bool(options.get("serve_api", self._serve_api))
        self._command_topic = options.get("command_topic", self._command_topic)

    async def start(self) -> None:
        self._app = self._build_app()
        for topic in _STATUS_TOPICS:
            self._subscriptions.append(self.bus.subscribe(topic, self._remember))
        if not self._serve_api:
            logger.info("ControlApi running in embedded-only mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="info",
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("ControlApi listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("ControlApi has not been started or configured yet.")
        return self._app

    async def _remember(self, topic: str, payload: BasePayload) -> None:
        expected = {
            "status.pipeline": PipelineStatus,
            "status.distributor": DistributorStats,
            "status.health.summary": HealthSummary,
        }[topic]
        if isinstance(payload, expected):
            self._latest[_STATUS_TOPICS[topic]] = payload

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="IRIS Control API", version="0.1.0")

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok"}

        @app.get("/status")
        async def status() -> dict[str, Any]:
            return {
                key: (
                    self._latest[key].model_dump(mode="json") if key in self._latest else None
                )
                for key in _STATUS_TOPICS.values()
            }

        @app.post("/ingest/start", status_code=202)
        async def ingest_start() -> dict[str, str]:
            await self._publish_command(ControlCommand(command="ingest.start"))
            return {"status": "accepted"}

        @app.post("/ingest/stop", status_code=202)
        async def ingest_stop() -> dict[str, str]:
            await self._publish_command(ControlCommand(command="ingest.stop"))
            return {"status": "accepted"}

        return app

    async def _publish_command(self, command: ControlCommand) -> None:
        await self.bus.publish(self._command_topic, command)


__all__ = ["ControlApi"]
