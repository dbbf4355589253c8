from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from iris_inspector.core.config import ConfigService


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_yaml = f"""
    ingest:
      channel: unix
      socket_path: "{(tmp_path / 'kernel.sock').as_posix()}"
      initial_reconnect_delay: 0.05
      reconnect_delay: 0.1

    distributor:
      host: 127.0.0.1
      port: 3901
      serve_http: false
      queue_size: 16
      send_timeout_seconds: 0.5

    control_api:
      port: 9080
      serve_api: false

    metrics:
      enabled: true
      port: 9999

    telemetry:
      interval_seconds: 0.05

    logging:
      level: DEBUG
    """
    local_yaml = """
    distributor:
      queue_size: 32
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "local.yaml", local_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)
