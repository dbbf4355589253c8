"""
Decoder for the 64-bit Task State Segment dumped after `ltr`.

Offsets within the TSS (all little-endian):

    0x04  RSP0        0x24  IST1 ... 0x54  IST7 (8 bytes apart)
    0x0C  RSP1        0x66  I/O map base (u16)
    0x14  RSP2

The structure is only 4-byte aligned, so every 64-bit field is rebuilt from
two 32-bit halves. Fields beyond the end of a short payload read as zero.
"""

from __future__ import annotations

import struct
from typing import Literal

from pydantic import field_serializer

from ..core.contracts import WireModel
from .base import PayloadDecoder, hex64, read_u64_halves

RSP_OFFSETS = (0x04, 0x0C, 0x14)
IST_BASE = 0x24
IST_COUNT = 7
IO_MAP_OFFSET = 0x66
IO_MAP_MIN_LENGTH = 0x68
IO_MAP_DISABLED = 0xFFFF

_U16 = struct.Struct("<H")


class InterruptStackEntry(WireModel):
    index: int
    address: int
    configured: bool

    @field_serializer("address", when_used="json")
    def _render_address(self, value: int) -> str:
        return hex64(value)


class TssSummary(WireModel):
    kernel_stack_configured: bool
    ist_entries_configured: int
    io_permissions_enabled: bool


class TaskStateSegmentRecord(WireModel):
    kind: Literal["task_state_segment"] = "task_state_segment"
    rsp0: int
    rsp1: int
    rsp2: int
    ist: list[InterruptStackEntry]
    io_map_base: int
    summary: TssSummary

    @property
    def io_map_disabled(self) -> bool:
        return self.io_map_base == IO_MAP_DISABLED

    @field_serializer("rsp0", "rsp1", "rsp2", when_used="json")
    def _render_stack(self, value: int) -> str:
        return hex64(value)

    @field_serializer("io_map_base", when_used="json")
    def _render_io_map(self, value: int) -> str:
        if value == IO_MAP_DISABLED:
            return "disabled"
        return f"0x{value:X}"


class TaskStateSegmentDecoder(PayloadDecoder):
    kind = "task_state_segment"
    description = "Task State Segment decoder"

    def decode(self, payload: bytes) -> TaskStateSegmentRecord:
        rsp0, rsp1, rsp2 = (read_u64_halves(payload, offset) for offset in RSP_OFFSETS)
        ist = []
        for i in range(IST_COUNT):
            address = read_u64_halves(payload, IST_BASE + i * 8)
            ist.append(InterruptStackEntry(index=i + 1, address=address, configured=address != 0))

        io_map_base = 0
        if len(payload) >= IO_MAP_MIN_LENGTH:
            (io_map_base,) = _U16.unpack_from(payload, IO_MAP_OFFSET)

        return TaskStateSegmentRecord(
            rsp0=rsp0,
            rsp1=rsp1,
            rsp2=rsp2,
            ist=ist,
            io_map_base=io_map_base,
            summary=TssSummary(
                kernel_stack_configured=rsp0 != 0,
                ist_entries_configured=sum(1 for entry in ist if entry.configured),
                io_permissions_enabled=io_map_base not in (0, IO_MAP_DISABLED),
            ),
        )


__all__ = [
    "InterruptStackEntry",
    "TaskStateSegmentDecoder",
    "TaskStateSegmentRecord",
    "TssSummary",
]
