"""Status and telemetry exporters."""

from .prometheus_exporter import PrometheusExporter

__all__ = ["PrometheusExporter"]
