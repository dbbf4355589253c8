import pytest

from iris_inspector.core.contracts import CorruptionSignal, Frame
from iris_inspector.protocol.framing import (
    MAGIC_BYTES,
    MIN_FRAME_SIZE,
    REASON_NO_MARKER,
    REASON_RESYNCHRONIZED,
    FrameDecoder,
    encode_frame,
)
from iris_inspector.protocol.header import encode_header


def _frame_data(event_type: int, payload: bytes = b"", timestamp: int = 1_000) -> bytes:
    return encode_header(timestamp, event_type, 0) + payload


def _frames(emissions: list) -> list[Frame]:
    return [item for item in emissions if isinstance(item, Frame)]


def test_magic_is_iris_little_endian() -> None:
    assert MAGIC_BYTES == b"IRIS"
    assert int.from_bytes(MAGIC_BYTES, "little") == 0x53495249
    assert MIN_FRAME_SIZE == 24


def test_single_frame_is_extracted() -> None:
    decoder = FrameDecoder()
    data = _frame_data(0x0001, b"\x01\x02")

    emissions = decoder.write(encode_frame(data))

    assert emissions == [Frame(length_field=len(data), data=data)]
    assert decoder.pending == 0


def test_multiple_frames_in_one_chunk_keep_order() -> None:
    decoder = FrameDecoder()
    datas = [_frame_data(0x0100 + i, bytes([i]) * i) for i in range(5)]
    stream = b"".join(encode_frame(data) for data in datas)

    frames = _frames(decoder.write(stream))

    assert [frame.data for frame in frames] == datas


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 23, 24, 25, 64])
def test_chunk_boundaries_do_not_change_output(chunk_size: int) -> None:
    datas = [
        _frame_data(0x0001),
        _frame_data(0x0101, bytes(range(40))),
        _frame_data(0x0102, b"\xff" * 0x68),
        _frame_data(0x0100, b"x"),
    ]
    stream = b"".join(encode_frame(data) for data in datas)
    decoder = FrameDecoder()

    emissions = []
    for offset in range(0, len(stream), chunk_size):
        emissions.extend(decoder.write(stream[offset : offset + chunk_size]))

    assert emissions == [Frame(length_field=len(data), data=data) for data in datas]
    assert decoder.pending == 0


def test_garbage_before_frame_yields_one_signal() -> None:
    decoder = FrameDecoder()
    data = _frame_data(0x0100, b"abc")
    garbage = b"\x00\x11garbage-bytes\x7f"

    emissions = decoder.write(garbage + encode_frame(data))

    assert emissions == [
        CorruptionSignal(discarded_length=len(garbage), reason=REASON_RESYNCHRONIZED),
        Frame(length_field=len(data), data=data),
    ]


def test_marker_split_across_chunks_is_retained() -> None:
    decoder = FrameDecoder()
    data = _frame_data(0x0101, b"payload")
    wire = encode_frame(data)
    garbage = b"z" * 30

    first = decoder.write(garbage + wire[:3])
    assert first == [CorruptionSignal(discarded_length=30, reason=REASON_NO_MARKER)]
    assert decoder.pending == 3

    second = decoder.write(wire[3:])
    assert second == [Frame(length_field=len(data), data=data)]


def test_no_marker_keeps_trailing_three_bytes() -> None:
    decoder = FrameDecoder()

    emissions = decoder.write(b"\xaa" * 40)

    assert emissions == [CorruptionSignal(discarded_length=37, reason=REASON_NO_MARKER)]
    assert decoder.pending == 3


def test_short_buffer_waits_without_signal() -> None:
    decoder = FrameDecoder()

    assert decoder.write(b"\xaa" * (MIN_FRAME_SIZE - 1)) == []
    assert decoder.pending == MIN_FRAME_SIZE - 1


def test_truncated_frame_waits_for_remaining_bytes() -> None:
    decoder = FrameDecoder()
    data = _frame_data(0x0101, bytes(64))
    wire = encode_frame(data)

    assert decoder.write(wire[:40]) == []
    assert decoder.write(wire[40:]) == [Frame(length_field=len(data), data=data)]


def test_restart_mid_frame_resynchronizes_on_next_marker() -> None:
    decoder = FrameDecoder()
    lost = encode_frame(_frame_data(0x0101, bytes(100)))[:50]
    data = _frame_data(0x0001)

    assert decoder.write(lost) == []

    # The cut frame still claims 118 data bytes and swallows the start of the new stream.
    emissions = decoder.write(encode_frame(data) * 6)

    assert isinstance(emissions[0], Frame)
    assert emissions[0].length_field == 118
    assert emissions[1] == CorruptionSignal(discarded_length=22, reason=REASON_RESYNCHRONIZED)
    assert emissions[2:] == [Frame(length_field=len(data), data=data)] * 2
    assert decoder.pending == 0


def test_reset_clears_buffer() -> None:
    decoder = FrameDecoder()
    decoder.write(b"IRI")
    decoder.reset()
    assert decoder.pending == 0


def test_encode_frame_rejects_oversized_data() -> None:
    with pytest.raises(ValueError):
        encode_frame(bytes(0x10000))


def test_frame_enforces_length_invariant() -> None:
    with pytest.raises(ValueError):
        Frame(length_field=3, data=b"ab")
