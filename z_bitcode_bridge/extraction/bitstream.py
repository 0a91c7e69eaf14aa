"""Minimal LLVM bitstream reader: enough to find where a module ends.

Only the top level of the stream is walked. Every top-level entry must be an
``ENTER_SUBBLOCK`` (abbrev id 1 at width 2), whose header carries the block
length in 32-bit words, so a block can be skipped without decoding it.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from z_bitcode_bridge.exceptions import MalformedModuleError
from z_bitcode_bridge.models.binary import BITCODE_MAGIC, WRAPPER_MAGIC

TOP_LEVEL_ABBREV_WIDTH = 2
ENTER_SUBBLOCK = 1

MODULE_BLOCK_ID = 8
IDENTIFICATION_BLOCK_ID = 13
STRTAB_BLOCK_ID = 23
SYMTAB_BLOCK_ID = 25

WRAPPER_HEADER = struct.Struct("<IIIII")  # magic, version, offset, size, cputype


class BitReader:
    """Reads little-endian bit fields from a byte buffer."""

    def __init__(self, data: bytes, bit_pos: int = 0) -> None:
        self.data = data
        self.bit_pos = bit_pos
        self._limit = len(data) * 8

    @property
    def byte_pos(self) -> int:
        return self.bit_pos >> 3

    def read(self, width: int) -> int:
        if width == 0:
            return 0
        if self.bit_pos + width > self._limit:
            raise MalformedModuleError("truncated bitstream", offset=self.byte_pos)
        start = self.bit_pos >> 3
        shift = self.bit_pos & 7
        nbytes = (shift + width + 7) >> 3
        chunk = int.from_bytes(self.data[start : start + nbytes], "little")
        self.bit_pos += width
        return (chunk >> shift) & ((1 << width) - 1)

    def read_vbr(self, width: int) -> int:
        hi_bit = 1 << (width - 1)
        result = 0
        shift = 0
        while True:
            piece = self.read(width)
            result |= (piece & (hi_bit - 1)) << shift
            if not piece & hi_bit:
                return result
            shift += width - 1
            if shift > 64:
                raise MalformedModuleError("VBR value overflows 64 bits", offset=self.byte_pos)

    def align32(self) -> None:
        self.bit_pos = (self.bit_pos + 31) & ~31


@dataclass
class StreamLayout:
    """Result of walking one module's top-level blocks."""

    start: int
    end: int  # structural end, exclusive
    block_ids: list[int] = field(default_factory=list)
    wrapped: bool = False

    @property
    def has_module_block(self) -> bool:
        return MODULE_BLOCK_ID in self.block_ids


def is_marker(data: bytes, pos: int) -> bool:
    head = data[pos : pos + 4]
    return head == BITCODE_MAGIC or head == WRAPPER_MAGIC


def walk_module(data: bytes, start: int = 0) -> StreamLayout:
    """Walk the module beginning at ``start`` and return its structural extent.

    The walk stops at a zero word (top-level END_BLOCK, i.e. padding), at
    the next magic marker, or when fewer than four bytes remain.

    Raises:
        MalformedModuleError: no marker at ``start``, a non-block entry at the
            top level, or a block running past the end of the buffer.
    """
    head = data[start : start + 4]
    if head == WRAPPER_MAGIC:
        return _walk_wrapped(data, start)
    if head != BITCODE_MAGIC:
        raise MalformedModuleError("missing bitcode magic", offset=start)

    layout = StreamLayout(start=start, end=start + 4)
    reader = BitReader(data, (start + 4) * 8)
    while True:
        pos = reader.byte_pos
        if pos + 4 > len(data):
            break
        word = data[pos : pos + 4]
        if word == b"\0\0\0\0" or is_marker(data, pos):
            break
        abbrev = reader.read(TOP_LEVEL_ABBREV_WIDTH)
        if abbrev != ENTER_SUBBLOCK:
            raise MalformedModuleError(
                f"unexpected abbrev id {abbrev} at top level", offset=pos
            )
        block_id = reader.read_vbr(8)
        reader.read_vbr(4)  # abbrev width inside the block
        reader.align32()
        num_words = reader.read(32)
        body_start = reader.byte_pos
        body_end = body_start + num_words * 4
        if body_end > len(data):
            raise MalformedModuleError(
                f"block {block_id} claims {num_words} words but the buffer ends first",
                offset=pos,
            )
        layout.block_ids.append(block_id)
        reader.bit_pos = body_end * 8
        layout.end = body_end
    return layout


def _walk_wrapped(data: bytes, start: int) -> StreamLayout:
    if start + WRAPPER_HEADER.size > len(data):
        raise MalformedModuleError("truncated bitcode wrapper header", offset=start)
    _, _, offset, size, _ = WRAPPER_HEADER.unpack_from(data, start)
    inner_start = start + offset
    inner_end = inner_start + size
    if offset < WRAPPER_HEADER.size or inner_end > len(data):
        raise MalformedModuleError(
            f"bitcode wrapper points outside the buffer (offset={offset}, size={size})",
            offset=start,
        )
    inner = walk_module(data[:inner_end], inner_start)
    return StreamLayout(start=start, end=inner_end, block_ids=inner.block_ids, wrapped=True)
