"""Tests for the Dynaconf-backed configuration service."""

from __future__ import annotations

from pathlib import Path

import pytest

from iris_inspector.core.config import (
    ConfigError,
    ConfigService,
    ConfigSnapshot,
    DistributorSettings,
    IngestSettings,
)
from iris_inspector.modules.input.kernel_socket import TransportClient


def test_config_service_loads_snapshot(sample_config_service: ConfigService) -> None:
    snapshot = sample_config_service.snapshot
    assert isinstance(snapshot, ConfigSnapshot)
    assert snapshot.ingest.socket_path.endswith("kernel.sock")
    assert snapshot.ingest.reconnect_delay == pytest.approx(0.1)
    assert snapshot.logging.level == "DEBUG"
    assert snapshot.logging.file is None


def test_local_yaml_overrides_defaults(sample_config_service: ConfigService) -> None:
    distributor = sample_config_service.snapshot.distributor
    assert distributor.queue_size == 32
    assert distributor.port == 3901
    assert distributor.send_timeout_seconds == pytest.approx(0.5)


def test_module_config_generation(sample_config_service: ConfigService) -> None:
    ingest_cfg = sample_config_service.module_config_for(TransportClient)
    assert ingest_cfg.options["channel"] == "unix"
    assert ingest_cfg.options["initial_reconnect_delay"] == pytest.approx(0.05)

    distributor_cfg = sample_config_service.module_config_for("modules.dashboard.distributor")
    assert distributor_cfg.options["serve_http"] is False
    assert distributor_cfg.options["queue_size"] == 32

    control_api_cfg = sample_config_service.module_config_for("modules.dashboard.control_api")
    assert control_api_cfg.enabled is True
    assert control_api_cfg.options["serve_api"] is False
    assert "enabled" not in control_api_cfg.options

    metrics_cfg = sample_config_service.module_config_for("modules.status.prometheus_exporter")
    assert metrics_cfg.enabled is True
    assert metrics_cfg.options == {"addr": "127.0.0.1", "port": 9999}

    with pytest.raises(KeyError):
        sample_config_service.module_config_for("modules.unknown")


def test_environment_overrides_files(
    sample_config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("IRIS_DISTRIBUTOR__port", "4100")

    snapshot = ConfigService(config_dir=sample_config_dir).snapshot

    assert snapshot.distributor.port == 4100
    assert snapshot.distributor.queue_size == 32


def test_refresh_picks_up_file_changes(sample_config_dir: Path) -> None:
    service = ConfigService(config_dir=sample_config_dir)
    (sample_config_dir / "local.yaml").write_text("distributor:\n  queue_size: 64\n", encoding="utf-8")

    snapshot = service.refresh()

    assert snapshot.distributor.queue_size == 64


def test_missing_config_files_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        ConfigService(config_dir=tmp_path)


def test_invalid_values_raise_config_error(tmp_path: Path) -> None:
    (tmp_path / "config.yaml").write_text(
        "ingest:\n  channel: serial\ndistributor:\n  port: 70000\n", encoding="utf-8"
    )

    with pytest.raises(ConfigError) as excinfo:
        ConfigService(config_dir=tmp_path)

    assert "validation failed" in str(excinfo.value)


def test_defaults_match_shipped_configuration() -> None:
    service = ConfigService()

    assert service.snapshot.ingest == IngestSettings()
    assert service.snapshot.distributor == DistributorSettings()
    assert service.snapshot.metrics.enabled is False
