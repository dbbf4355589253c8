"""
Dynaconf-powered configuration loader with Pydantic validation.

`config.yaml` holds the shipped defaults; an optional `local.yaml` next to
it overrides them per machine, and `IRIS_`-prefixed environment variables
override both (for example `IRIS_INGEST__SOCKET_PATH=/tmp/other.sock`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .contracts import BaseModule, ModuleConfig


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


CONFIG_FILENAMES = ("config.yaml", "local.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


class IngestSettings(BaseModel):
    """Where the kernel's debug stream comes from and how to reconnect to it."""

    model_config = ConfigDict(extra="ignore")

    channel: Literal["unix", "tcp"] = Field(default="unix")
    socket_path: str = Field(default="/tmp/nyros-debug.sock")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=4444, ge=1, le=65535)
    initial_reconnect_delay: float = Field(
        default=1.0, gt=0.0, description="Delay between attempts before the first connection."
    )
    reconnect_delay: float = Field(
        default=2.0, gt=0.0, description="Delay between attempts after a connection was lost."
    )
    read_size: int = Field(default=4096, ge=1)
    queue_size: int = Field(default=4096, ge=1)


class DistributorSettings(BaseModel):
    """WebSocket fan-out surface."""

    model_config = ConfigDict(extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=1, le=65535)
    serve_http: bool = Field(default=True)
    queue_size: int = Field(default=1024, ge=1, description="Per-subscriber send queue bound.")
    send_timeout_seconds: float = Field(default=5.0, gt=0.0)
    cleanup_interval_seconds: float = Field(default=30.0, ge=0.0)
    ws_ping_interval: float = Field(default=30.0, gt=0.0)


class ControlApiSettings(BaseModel):
    """Control API (FastAPI) configuration."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    serve_api: bool = Field(default=True)
    command_topic: str = Field(default="dashboard.control.command")


class MetricsSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, ge=1, le=65535)


class TelemetrySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval_seconds: float = Field(default=5.0, gt=0.0)
    progress_log_interval_seconds: float = Field(default=5.0, gt=0.0)
    bus_queue_size: int = Field(default=256, ge=1)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None, description="Rotating log file; disabled when unset.")
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)


class ConfigSnapshot(BaseModel):
    """
    Validated, strongly typed view of the merged configuration.

    Provides helpers to derive per-module configuration dictionaries.
    """

    model_config = ConfigDict(extra="ignore")

    ingest: IngestSettings = Field(default_factory=IngestSettings)
    distributor: DistributorSettings = Field(default_factory=DistributorSettings)
    control_api: ControlApiSettings = Field(default_factory=ControlApiSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def module_config(self, module_name: str) -> ModuleConfig:
        """Produce a ModuleConfig tailored for the requested module."""
        if module_name == "modules.input.kernel_socket":
            return ModuleConfig(options=self.ingest.model_dump(mode="python"))
        if module_name == "modules.dashboard.distributor":
            return ModuleConfig(options=self.distributor.model_dump(mode="python"))
        if module_name == "modules.dashboard.control_api":
            options = self.control_api.model_dump(mode="python", exclude={"enabled"})
            return ModuleConfig(enabled=self.control_api.enabled, options=options)
        if module_name == "modules.status.prometheus_exporter":
            return ModuleConfig(
                enabled=self.metrics.enabled,
                options={"addr": self.metrics.addr, "port": self.metrics.port},
            )
        raise KeyError(f"No module configuration defined for {module_name}")


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="IRIS",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
            merge_enabled=True,
        )
        self._snapshot = self._build_snapshot()

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def module_config_for(self, module: str | type[BaseModule] | BaseModule) -> ModuleConfig:
        if isinstance(module, BaseModule):
            name = module.name
        elif isinstance(module, str):
            name = module
        else:
            name = getattr(module, "name", module.__name__)
        return self._snapshot.module_config(name)

    def _build_snapshot(self) -> ConfigSnapshot:
        raw = self._settings.as_dict()
        data = {
            key: _section(raw, key)
            for key in ("ingest", "distributor", "control_api", "metrics", "telemetry", "logging")
        }
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc


__all__ = [
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "ControlApiSettings",
    "DistributorSettings",
    "IngestSettings",
    "LoggingSettings",
    "MetricsSettings",
    "TelemetrySettings",
]
