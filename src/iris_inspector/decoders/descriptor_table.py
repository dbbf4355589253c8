"""
Decoder for the descriptor table the kernel dumps once it is loaded.

The payload is the raw table: consecutive 8-byte x86 segment descriptors.

    byte 0-1  limit[15:0]
    byte 2-3  base[15:0]
    byte 4    base[23:16]
    byte 5    access   P | DPL(2) | S | type(4)
    byte 6    flags    G | D/B | L | AVL | limit[19:16]
    byte 7    base[31:24]

In long mode a TSS descriptor is 16 bytes wide: the second 8-byte slot holds
bits 63:32 of the base address, so it is merged into the preceding entry
instead of being decoded on its own.
"""

from __future__ import annotations

import struct
from typing import Annotated, Literal

from pydantic import Field, field_serializer

from ..core.contracts import WireModel
from .base import PayloadDecoder, hex32, hex64

ENTRY_SIZE = 8
TSS_AVAILABLE = 0x9
TSS_BUSY = 0xB
TSS_TYPES = frozenset({TSS_AVAILABLE, TSS_BUSY})

_ENTRY = struct.Struct("<HHBBBB")
_UPPER_BASE = struct.Struct("<I")

SegmentKind = Literal["null", "code", "data", "tss", "system"]


class SegmentDescriptor(WireModel):
    entry: Literal["segment"] = "segment"
    index: int
    base: int
    limit: int
    type: int
    is_system_segment: bool
    privilege_level: int
    present: bool
    is_64bit_mode: bool
    default_operand_size: bool
    granularity_is_pages: bool
    is_code: bool = False
    is_64bit_tss: bool = False
    segment_kind: SegmentKind
    ring: Literal["kernel", "user"] | None = None
    description: str = ""

    @field_serializer("base", when_used="json")
    def _render_base(self, value: int) -> str:
        return hex64(value) if self.is_64bit_tss else hex32(value)

    @field_serializer("limit", when_used="json")
    def _render_limit(self, value: int) -> str:
        return hex32(value)

    @field_serializer("type", when_used="json")
    def _render_type(self, value: int) -> str:
        return f"0x{value:X}"


class TssUpperHalf(WireModel):
    """Second slot of a 64-bit TSS descriptor."""

    entry: Literal["tss_upper_half"] = "tss_upper_half"
    index: int
    base: int
    reserved: bool = True
    description: str = "TSS Upper Half (64-bit)"

    @field_serializer("base", when_used="json")
    def _render_base(self, value: int) -> str:
        return hex32(value)


DescriptorEntry = Annotated[SegmentDescriptor | TssUpperHalf, Field(discriminator="entry")]


class DescriptorTableRecord(WireModel):
    kind: Literal["descriptor_table"] = "descriptor_table"
    entry_count: int
    entries: list[DescriptorEntry]
    code_segment_selector: str | None = None
    data_segment_selector: str | None = None
    tss_selector: str | None = None


def decode_descriptor(raw: bytes | memoryview, index: int) -> SegmentDescriptor:
    limit_low, base_low, base_mid, access, granularity, base_high = _ENTRY.unpack_from(raw)
    base = (base_low | (base_mid << 16) | (base_high << 24)) & 0xFFFFFFFF
    limit = limit_low | ((granularity & 0x0F) << 16)

    seg_type = access & 0x0F
    is_system = ((access >> 4) & 0x1) == 0
    dpl = (access >> 5) & 0x3
    present = bool((access >> 7) & 0x1)
    pages = bool((granularity >> 7) & 0x1)
    db = bool((granularity >> 6) & 0x1)
    long_mode = bool((granularity >> 5) & 0x1)

    if pages:
        limit = ((limit << 12) | 0xFFF) & 0xFFFFFFFF

    is_code = False
    ring: Literal["kernel", "user"] | None = None
    if not present and base == 0 and limit == 0:
        kind: SegmentKind = "null"
        description = "Null"
    elif not is_system:
        is_code = bool(seg_type & 0x8)
        kind = "code" if is_code else "data"
        ring = "kernel" if dpl == 0 else "user"
        description = f"{ring.capitalize()} {kind.capitalize()}"
    elif seg_type in TSS_TYPES:
        kind = "tss"
        description = "TSS (Task State Segment)"
    else:
        kind = "system"
        description = ""

    return SegmentDescriptor(
        index=index,
        base=base,
        limit=limit,
        type=seg_type,
        is_system_segment=is_system,
        privilege_level=dpl,
        present=present,
        is_64bit_mode=long_mode,
        default_operand_size=db,
        granularity_is_pages=pages,
        is_code=is_code,
        segment_kind=kind,
        ring=ring,
        description=description,
    )


def _selector(position: int) -> str:
    return f"0x{position * ENTRY_SIZE:02x}"


class DescriptorTableDecoder(PayloadDecoder):
    kind = "descriptor_table"
    description = "Global Descriptor Table decoder"

    def decode(self, payload: bytes) -> DescriptorTableRecord:
        if len(payload) % ENTRY_SIZE:
            raise ValueError(
                f"descriptor table length {len(payload)} is not a multiple of {ENTRY_SIZE}"
            )
        view = memoryview(payload)
        entry_count = len(payload) // ENTRY_SIZE
        entries: list[SegmentDescriptor | TssUpperHalf] = []
        index = 0
        while index < entry_count:
            offset = index * ENTRY_SIZE
            entry = decode_descriptor(view[offset : offset + ENTRY_SIZE], index)
            if entry.is_system_segment and entry.type in TSS_TYPES and index + 1 < entry_count:
                (upper,) = _UPPER_BASE.unpack_from(view, offset + ENTRY_SIZE)
                merged = entry.model_copy(
                    update={"base": (upper << 32) | entry.base, "is_64bit_tss": True}
                )
                entries.append(merged)
                entries.append(TssUpperHalf(index=index + 1, base=upper))
                index += 2
                continue
            entries.append(entry)
            index += 1

        return DescriptorTableRecord(
            entry_count=entry_count,
            entries=entries,
            code_segment_selector=self._find(entries, "code"),
            data_segment_selector=self._find(entries, "data"),
            tss_selector=self._find(entries, "tss"),
        )

    @staticmethod
    def _find(entries: list[SegmentDescriptor | TssUpperHalf], wanted: str) -> str | None:
        for position, entry in enumerate(entries):
            if not isinstance(entry, SegmentDescriptor) or not entry.present:
                continue
            if wanted == "tss":
                if entry.is_system_segment and entry.type in TSS_TYPES:
                    return _selector(position)
                continue
            if entry.is_system_segment:
                continue
            if entry.is_code == (wanted == "code"):
                return _selector(position)
        return None


__all__ = [
    "DescriptorEntry",
    "DescriptorTableDecoder",
    "DescriptorTableRecord",
    "SegmentDescriptor",
    "TssUpperHalf",
    "decode_descriptor",
]
