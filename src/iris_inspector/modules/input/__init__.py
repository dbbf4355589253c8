"""Ingest modules that read the kernel's debug byte stream."""

from .kernel_socket import (
    Connected,
    Disconnected,
    IngestChannel,
    TcpChannel,
    TransportClient,
    UnixSocketChannel,
)

__all__ = [
    "Connected",
    "Disconnected",
    "IngestChannel",
    "TcpChannel",
    "TransportClient",
    "UnixSocketChannel",
]
