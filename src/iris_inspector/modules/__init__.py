"""
Lifecycle-managed IRIS inspector components grouped by responsibility.
"""

from .dashboard.control_api import ControlApi
from .dashboard.distributor import EventDistributor
from .input.kernel_socket import TransportClient
from .status.prometheus_exporter import PrometheusExporter

__all__ = [
    "ControlApi",
    "EventDistributor",
    "PrometheusExporter",
    "TransportClient",
]
