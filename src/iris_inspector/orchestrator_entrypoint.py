"""
CLI entrypoint that boots the IRIS inspector.

Loads the Dynaconf configuration, builds the transport, distributor and the
optional control/metrics surfaces, and runs until SIGINT or SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .core.bus import EventBus
from .core.catalogue import EventCatalogue
from .core.config import ConfigError, ConfigService, ConfigSnapshot
from .core.orchestrator import Orchestrator
from .decoders.registry import default_registry
from .modules import ControlApi, EventDistributor, PrometheusExporter, TransportClient

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


async def build_orchestrator(snapshot: ConfigSnapshot) -> Orchestrator:
    """Instantiate and register every module the snapshot enables."""
    catalogue = EventCatalogue()
    transport = TransportClient()
    distributor = EventDistributor(catalogue=catalogue)
    orchestrator = Orchestrator(
        transport=transport,
        distributor=distributor,
        bus=EventBus(queue_size=snapshot.telemetry.bus_queue_size),
        catalogue=catalogue,
        registry=default_registry(),
        telemetry_interval=snapshot.telemetry.interval_seconds,
        progress_log_interval=snapshot.telemetry.progress_log_interval_seconds,
        command_topic=snapshot.control_api.command_topic,
    )
    await orchestrator.add_module(distributor, snapshot.module_config(distributor.name))
    for module in (ControlApi(), PrometheusExporter()):
        config = snapshot.module_config(module.name)
        if not config.enabled:
            LOGGER.info("Config disabled for %s; skipping", module.name)
            continue
        await orchestrator.add_module(module, config)
    await orchestrator.add_module(transport, snapshot.module_config(transport.name))
    return orchestrator


async def run_pipeline(*, config_dir: Path | None, log_level: str | None = None) -> None:
    """Build the pipeline from configuration and run until interrupted."""

    config_service = ConfigService(config_dir=config_dir)
    snapshot = config_service.snapshot
    if log_level is None:
        configure_logging(snapshot.logging.level)
    if snapshot.logging.file is not None:
        _ensure_rotating_file_handler(
            snapshot.logging.file,
            max_mb=snapshot.logging.max_mb,
            backup_count=snapshot.logging.backup_count,
        )

    orchestrator = await build_orchestrator(snapshot)
    ingest = snapshot.ingest
    endpoint = ingest.socket_path if ingest.channel == "unix" else f"{ingest.host}:{ingest.port}"
    LOGGER.info("IRIS Kernel Inspector v%s", __version__)
    LOGGER.info("Kernel channel: %s (%s)", endpoint, ingest.channel)
    LOGGER.info(
        "Subscribers: ws://%s:%s/ws", snapshot.distributor.host, snapshot.distributor.port
    )

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await orchestrator.start()
    LOGGER.info("Waiting for kernel connection. Press Ctrl+C to stop.")

    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()
        LOGGER.info("IRIS inspector stopped")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, shutting down gracefully.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )
    logging.getLogger().setLevel(numeric_level)


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="IRIS kernel event inspector backend.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/local.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: logging.level from config, else INFO).",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        asyncio.run(run_pipeline(config_dir=args.config_dir, log_level=args.log_level))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("IRIS inspector crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_orchestrator", "configure_logging", "main", "run_pipeline"]
