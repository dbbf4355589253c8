"""
Ingest module that reads the kernel's debug stream from a byte channel.

The kernel writes frames into a Unix domain socket (QEMU's serial chardev)
and never waits for anyone. This module owns the connection lifecycle and the
frame decoder, and hands everything it produces to a single consumer through
`stream()`. Connection drops are expected: QEMU restarts, the socket file
appears late, the guest reboots. Each one yields a `Disconnected` item and
schedules one reconnection attempt.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Protocol

from ...core.contracts import BaseModule, CorruptionSignal, Frame, HealthStatus, ModuleConfig
from ...protocol.framing import FrameDecoder

logger = logging.getLogger(__name__)


class ConnectionState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True)
class Connected:
    endpoint: str
    first: bool


@dataclass(frozen=True, slots=True)
class Disconnected:
    endpoint: str
    reason: str | None = None


TransportItem = Frame | CorruptionSignal | Connected | Disconnected


class IngestChannel(Protocol):
    """Byte source the transport reads from."""

    @property
    def endpoint(self) -> str: ...

    async def connect(self) -> None: ...

    async def read(self, size: int) -> bytes:
        """Return the next chunk; an empty result means the peer closed."""
        ...

    async def close(self) -> None: ...


class _StreamChannel(abc.ABC):
    """Shared plumbing for channels backed by asyncio streams."""

    def __init__(self) -> None:
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @abc.abstractmethod
    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the underlying stream pair."""

    async def connect(self) -> None:
        self._reader, self._writer = await self._open()

    async def read(self, size: int) -> bytes:
        if self._reader is None:
            return b""
        return await self._reader.read(size)

    async def close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError, ConnectionError):
            await writer.wait_closed()


class UnixSocketChannel(_StreamChannel):
    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = path

    @property
    def endpoint(self) -> str:
        return self._path

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_unix_connection(self._path)


class TcpChannel(_StreamChannel):
    """QEMU serial exposed as `-serial tcp:host:port,server`."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__()
        self._host = host
        self._port = port

    @property
    def endpoint(self) -> str:
        return f"tcp://{self._host}:{self._port}"

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self._host, self._port)


def build_channel(options: dict) -> IngestChannel:
    """Create the channel described by the `ingest` options."""
    kind = options.get("channel", "unix")
    if kind == "unix":
        return UnixSocketChannel(options.get("socket_path", "/tmp/nyros-debug.sock"))
    if kind == "tcp":
        return TcpChannel(options.get("host", "127.0.0.1"), int(options.get("port", 4444)))
    raise ValueError(f"Unsupported ingest channel '{kind}'")


# Errors that only mean "nothing is listening yet".
_NOT_YET_AVAILABLE = (FileNotFoundError, ConnectionRefusedError)


class TransportClient(BaseModule):
    """
    Best-effort connection to the kernel with decoder ownership.

    Every chunk read from the channel goes through the frame decoder; frames
    and corruption signals are queued in stream order together with
    `Connected`/`Disconnected` markers. A single timer drives reconnection;
    `disconnect()` cancels it and keeps the client down until `connect()` is
    called again.
    """

    name = "modules.input.kernel_socket"

    def __init__(
        self,
        *,
        channel_factory: Callable[[dict], IngestChannel] | None = None,
        decoder: FrameDecoder | None = None,
    ) -> None:
        super().__init__()
        self._channel_factory = channel_factory or build_channel
        self._decoder = decoder or FrameDecoder()
        self._options: dict = {}
        self._channel: IngestChannel | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._state = ConnectionState.DISCONNECTED
        self._has_ever_connected = False
        self._stopping = False
        self._initial_reconnect_delay = 1.0
        self._reconnect_delay = 2.0
        self._read_size = 4096
        self._queue_size = 4096
        self._queue: asyncio.Queue[TransportItem] = asyncio.Queue(maxsize=self._queue_size)
        self._connections_total = 0
        self._bytes_received = 0

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._options = dict(options)
        self._initial_reconnect_delay = float(
            options.get("initial_reconnect_delay", self._initial_reconnect_delay)
        )
        self._reconnect_delay = float(options.get("reconnect_delay", self._reconnect_delay))
        self._read_size = int(options.get("read_size", self._read_size))
        self._queue_size = int(options.get("queue_size", self._queue_size))
        self._queue = asyncio.Queue(maxsize=self._queue_size)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def decoder(self) -> FrameDecoder:
        return self._decoder

    @property
    def connections_total(self) -> int:
        return self._connections_total

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def start(self) -> None:
        await self.connect()

    async def stop(self) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Begin connecting; failures are folded into the reconnect cycle."""
        self._stopping = False
        self._cancel_reconnect()
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.CONNECTING
        channel = self._channel_factory(self._options)
        self._channel = channel
        try:
            await channel.connect()
        except (OSError, ConnectionError) as exc:
            self._log_error(channel, exc)
            await self._abort_connect(channel)
            return
        except Exception:
            logger.exception("Unexpected failure connecting to %s", channel.endpoint)
            await self._abort_connect(channel)
            return
        if self._stopping:
            await channel.close()
            self._channel = None
            self._state = ConnectionState.DISCONNECTED
            return

        first = not self._has_ever_connected
        if first:
            logger.info("Connected to kernel debug channel %s", channel.endpoint)
        else:
            logger.debug("Reconnected to kernel debug channel %s", channel.endpoint)
        self._has_ever_connected = True
        self._connections_total += 1
        self._decoder.reset()
        self._state = ConnectionState.CONNECTED
        await self._queue.put(Connected(endpoint=channel.endpoint, first=first))
        self._read_task = asyncio.create_task(self._read_loop(channel), name=f"{self.name}-read")

    async def disconnect(self) -> None:
        """Tear the connection down and stay down."""
        self._stopping = True
        self._cancel_reconnect()
        pending_connect = self._connect_task
        self._connect_task = None
        if pending_connect is not None and pending_connect is not asyncio.current_task():
            pending_connect.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending_connect
        task = self._read_task
        self._read_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        channel = self._channel
        self._channel = None
        if channel is not None:
            logger.info("Disconnecting from %s", channel.endpoint)
            await channel.close()
        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._decoder.reset()
        if was_connected and channel is not None:
            await self._queue.put(Disconnected(endpoint=channel.endpoint, reason="stopped"))

    async def stream(self) -> AsyncIterator[TransportItem]:
        """Yield frames, corruption signals and connection markers in order."""
        while True:
            yield await self._queue.get()

    async def health(self) -> HealthStatus:
        if self._state is ConnectionState.CONNECTED:
            status = "healthy"
        elif self._stopping:
            status = "stopped"
        else:
            status = "degraded"
        return HealthStatus(
            status=status,
            details={
                "state": self._state.value,
                "connections_total": self._connections_total,
                "bytes_received": self._bytes_received,
                "pending_bytes": self._decoder.pending,
                "reconnect_pending": self.reconnect_pending,
            },
        )

    async def _read_loop(self, channel: IngestChannel) -> None:
        reason: str | None = None
        try:
            while True:
                chunk = await channel.read(self._read_size)
                if not chunk:
                    reason = "closed by peer"
                    break
                self._bytes_received += len(chunk)
                for item in self._decoder.write(chunk):
                    await self._queue.put(item)
        except asyncio.CancelledError:
            raise
        except (OSError, ConnectionError) as exc:
            reason = str(exc) or type(exc).__name__
            self._log_error(channel, exc)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.exception("Unexpected failure reading from %s", channel.endpoint)
        if self._channel is not channel:
            return
        self._channel = None
        self._read_task = None
        self._state = ConnectionState.DISCONNECTED
        self._decoder.reset()
        await self._close_quietly(channel)
        await self._queue.put(Disconnected(endpoint=channel.endpoint, reason=reason))
        self._schedule_reconnect()

    async def _abort_connect(self, channel: IngestChannel) -> None:
        self._channel = None
        self._state = ConnectionState.DISCONNECTED
        await self._close_quietly(channel)
        self._schedule_reconnect()

    async def _close_quietly(self, channel: IngestChannel) -> None:
        try:
            await channel.close()
        except Exception as exc:
            logger.debug("Closing %s failed: %s", channel.endpoint, exc)

    def _log_error(self, channel: IngestChannel, exc: BaseException) -> None:
        if not self._has_ever_connected and isinstance(exc, _NOT_YET_AVAILABLE):
            logger.debug("Kernel channel %s not available yet: %s", channel.endpoint, exc)
            return
        logger.error("Kernel channel %s error: %s", channel.endpoint, exc)

    def _schedule_reconnect(self) -> None:
        if self._stopping or self._reconnect_handle is not None:
            return
        delay = self._reconnect_delay if self._has_ever_connected else self._initial_reconnect_delay
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopping:
            return
        task = asyncio.get_running_loop().create_task(self.connect(), name=f"{self.name}-reconnect")
        self._connect_task = task
        task.add_done_callback(self._on_reconnect_done)

    def _on_reconnect_done(self, task: asyncio.Task[None]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reconnection attempt failed", exc_info=exc)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None


__all__ = [
    "ConnectionState",
    "Connected",
    "Disconnected",
    "IngestChannel",
    "TcpChannel",
    "TransportClient",
    "TransportItem",
    "UnixSocketChannel",
    "build_channel",
]
