import asyncio
import logging
from pathlib import Path

import pytest

from iris_inspector.core.contracts import CorruptionSignal, Frame, ModuleConfig
from iris_inspector.modules.input.kernel_socket import (
    Connected,
    ConnectionState,
    Disconnected,
    TcpChannel,
    TransportClient,
    UnixSocketChannel,
    _StreamChannel,
    build_channel,
)
from iris_inspector.protocol.framing import encode_frame
from iris_inspector.protocol.header import encode_header

FAST_RECONNECT = {"initial_reconnect_delay": 0.05, "reconnect_delay": 0.05}


class FakeChannel:
    def __init__(self, endpoint: str = "/tmp/fake.sock", *, fail_with: BaseException | None = None) -> None:
        self.endpoint = endpoint
        self.fail_with = fail_with
        self.incoming: asyncio.Queue[bytes | BaseException] = asyncio.Queue()
        self.closed = False

    async def connect(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def read(self, size: int) -> bytes:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class ChannelFactory:
    """Hands out prepared channels in order, then refuses connections."""

    def __init__(self, *channels: FakeChannel) -> None:
        self._channels = list(channels)
        self.calls = 0

    def __call__(self, options: dict) -> FakeChannel:
        self.calls += 1
        if self._channels:
            return self._channels.pop(0)
        return FakeChannel(fail_with=ConnectionRefusedError("refused"))


def _frame_bytes(event_type: int = 0x0100, payload: bytes = b"") -> bytes:
    return encode_frame(encode_header(5, event_type, 0) + payload)


async def _client(factory: ChannelFactory, **options) -> TransportClient:
    client = TransportClient(channel_factory=factory)
    await client.configure(ModuleConfig(options={**FAST_RECONNECT, **options}))
    return client


async def _next(stream) -> object:
    return await asyncio.wait_for(anext(stream), timeout=1.0)


@pytest.mark.asyncio
async def test_frames_flow_after_connect() -> None:
    channel = FakeChannel()
    client = await _client(ChannelFactory(channel))
    stream = client.stream()

    await client.connect()
    assert await _next(stream) == Connected(endpoint="/tmp/fake.sock", first=True)
    assert client.state is ConnectionState.CONNECTED

    channel.incoming.put_nowait(b"junk" + _frame_bytes(0x0100))
    first = await _next(stream)
    second = await _next(stream)

    assert isinstance(first, CorruptionSignal)
    assert first.discarded_length == 4
    assert isinstance(second, Frame)
    assert second.length_field == 18
    await client.disconnect()


@pytest.mark.asyncio
async def test_peer_close_resets_decoder_and_reconnects() -> None:
    first_channel, second_channel = FakeChannel(), FakeChannel()
    factory = ChannelFactory(first_channel, second_channel)
    client = await _client(factory)
    stream = client.stream()
    await client.connect()
    await _next(stream)

    partial = _frame_bytes(0x0101, bytes(16))[:10]
    first_channel.incoming.put_nowait(partial)
    await asyncio.sleep(0.01)
    assert client.decoder.pending == 10

    first_channel.incoming.put_nowait(b"")
    dropped = await _next(stream)
    assert dropped == Disconnected(endpoint="/tmp/fake.sock", reason="closed by peer")
    assert client.decoder.pending == 0
    assert first_channel.closed
    assert client.reconnect_pending

    reconnected = await _next(stream)
    assert reconnected == Connected(endpoint="/tmp/fake.sock", first=False)
    assert client.connections_total == 2
    assert factory.calls == 2
    await client.disconnect()


@pytest.mark.asyncio
async def test_not_yet_available_socket_is_quiet_and_retried(caplog: pytest.LogCaptureFixture) -> None:
    missing = FakeChannel(fail_with=FileNotFoundError("no such socket"))
    factory = ChannelFactory(missing, FakeChannel())
    client = await _client(factory)
    stream = client.stream()

    with caplog.at_level(logging.DEBUG, logger="iris_inspector.modules.input.kernel_socket"):
        await client.connect()
        assert client.state is ConnectionState.DISCONNECTED
        assert client.reconnect_pending
        connected = await _next(stream)

    assert connected == Connected(endpoint="/tmp/fake.sock", first=True)
    assert not [record for record in caplog.records if record.levelno >= logging.WARNING]
    assert "not available yet" in caplog.text
    await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect() -> None:
    factory = ChannelFactory()
    client = await _client(factory)

    await client.connect()
    assert client.reconnect_pending
    await client.disconnect()

    assert not client.reconnect_pending
    await asyncio.sleep(0.15)
    assert factory.calls == 1
    assert client.state is ConnectionState.DISCONNECTED
    assert (await client.health()).status == "stopped"


@pytest.mark.asyncio
async def test_only_one_reconnect_timer_is_armed() -> None:
    factory = ChannelFactory()
    client = await _client(factory, initial_reconnect_delay=0.1)

    await client.connect()
    client._schedule_reconnect()
    client._schedule_reconnect()
    await asyncio.sleep(0.15)

    # One timer fired once; the next attempt is rescheduled but not yet due.
    assert factory.calls == 2
    await client.disconnect()


@pytest.mark.asyncio
async def test_read_error_after_connection_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    channel = FakeChannel()
    client = await _client(ChannelFactory(channel), reconnect_delay=10.0)
    stream = client.stream()
    await client.connect()
    await _next(stream)

    with caplog.at_level(logging.ERROR, logger="iris_inspector.modules.input.kernel_socket"):
        channel.incoming.put_nowait(ConnectionResetError("reset by peer"))
        dropped = await _next(stream)

    assert isinstance(dropped, Disconnected)
    assert dropped.reason == "reset by peer"
    assert "reset by peer" in caplog.text
    await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_while_connected_emits_stopped_marker() -> None:
    channel = FakeChannel()
    client = await _client(ChannelFactory(channel))
    stream = client.stream()
    await client.connect()
    await _next(stream)

    await client.disconnect()

    assert await _next(stream) == Disconnected(endpoint="/tmp/fake.sock", reason="stopped")
    assert channel.closed
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_real_unix_socket_delivers_frames(tmp_path: Path) -> None:
    socket_path = tmp_path / "k.sock"
    payload = _frame_bytes(0x0001) + _frame_bytes(0x0100)

    async def on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.write(payload)
        await writer.drain()
        await reader.read()
        writer.close()

    server = await asyncio.start_unix_server(on_client, path=str(socket_path))
    client = TransportClient()
    await client.configure(
        ModuleConfig(options={"channel": "unix", "socket_path": str(socket_path), **FAST_RECONNECT})
    )
    stream = client.stream()
    try:
        await client.connect()
        assert isinstance(await _next(stream), Connected)
        frames = [await _next(stream), await _next(stream)]
        assert all(isinstance(item, Frame) for item in frames)
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()


def test_build_channel_variants() -> None:
    assert isinstance(build_channel({}), UnixSocketChannel)
    tcp = build_channel({"channel": "tcp", "host": "10.0.0.2", "port": "4555"})
    assert isinstance(tcp, TcpChannel)
    assert tcp.endpoint == "tcp://10.0.0.2:4555"
    with pytest.raises(ValueError):
        build_channel({"channel": "serial"})


@pytest.mark.asyncio
async def test_unexpected_read_failure_disconnects_and_reconnects(
    caplog: pytest.LogCaptureFixture,
) -> None:
    first_channel, second_channel = FakeChannel(), FakeChannel()
    factory = ChannelFactory(first_channel, second_channel)
    client = await _client(factory)
    stream = client.stream()
    await client.connect()
    await _next(stream)

    with caplog.at_level(logging.ERROR, logger="iris_inspector.modules.input.kernel_socket"):
        first_channel.incoming.put_nowait(RuntimeError("channel broke"))
        dropped = await _next(stream)

    assert dropped == Disconnected(endpoint="/tmp/fake.sock", reason="channel broke")
    assert first_channel.closed
    assert "Unexpected failure reading" in caplog.text
    assert await _next(stream) == Connected(endpoint="/tmp/fake.sock", first=False)
    assert client.state is ConnectionState.CONNECTED
    assert factory.calls == 2
    await client.disconnect()


@pytest.mark.asyncio
async def test_unexpected_connect_failure_is_retried() -> None:
    broken = FakeChannel(fail_with=ValueError("bad channel options"))
    factory = ChannelFactory(broken, FakeChannel())
    client = await _client(factory)
    stream = client.stream()

    await client.connect()

    assert client.state is ConnectionState.DISCONNECTED
    assert client.reconnect_pending
    assert broken.closed
    assert await _next(stream) == Connected(endpoint="/tmp/fake.sock", first=True)
    assert factory.calls == 2
    await client.disconnect()


def test_stream_channel_requires_open() -> None:
    with pytest.raises(TypeError):
        _StreamChannel()
