"""Test doubles for z_bitcode_bridge: use in unit and end-to-end tests.

Usage::

    from z_bitcode_bridge.testing import FakeDisassembler, build_elf, encode_module

    module = encode_module("foo")                         # synthetic bitcode bytes
    elf = build_elf({".llvmbc": module}, needed=["libbar.so"])
    dis = FakeDisassembler({module: FOO_LL})              # bytes -> textual IR

The encoded modules are structurally valid bitstreams (IDENTIFICATION and
MODULE blocks with correct word counts) but carry no real IR; pair them with
FakeDisassembler to give them meaning.
"""

from __future__ import annotations

import struct

from z_bitcode_bridge.extraction.bitstream import (
    ENTER_SUBBLOCK,
    IDENTIFICATION_BLOCK_ID,
    MODULE_BLOCK_ID,
    TOP_LEVEL_ABBREV_WIDTH,
    WRAPPER_HEADER,
)
from z_bitcode_bridge.models.binary import BITCODE_MAGIC, Binary, ModuleBuffer

# ── bitcode ──


class BitWriter:
    """Little-endian bit packer, the inverse of extraction.bitstream.BitReader."""

    def __init__(self) -> None:
        self._value = 0
        self._bits = 0

    def write(self, value: int, width: int) -> None:
        self._value |= (value & ((1 << width) - 1)) << self._bits
        self._bits += width

    def write_vbr(self, value: int, width: int) -> None:
        hi_bit = 1 << (width - 1)
        while value >= hi_bit:
            self.write((value & (hi_bit - 1)) | hi_bit, width)
            value >>= width - 1
        self.write(value, width)

    def align32(self) -> None:
        self._bits = (self._bits + 31) & ~31

    def write_bytes(self, data: bytes) -> None:
        assert self._bits % 8 == 0
        for b in data:
            self.write(b, 8)

    def getvalue(self) -> bytes:
        nbytes = (self._bits + 7) // 8
        return self._value.to_bytes(nbytes, "little")


def _block(writer: BitWriter, block_id: int, payload: bytes) -> None:
    body = payload + b"\0" * (-len(payload) % 4)
    body += b"\0\0\0\0"  # END_BLOCK at abbrev width 3, aligned
    writer.write(ENTER_SUBBLOCK, TOP_LEVEL_ABBREV_WIDTH)
    writer.write_vbr(block_id, 8)
    writer.write_vbr(3, 4)
    writer.align32()
    writer.write(len(body) // 4, 32)
    writer.write_bytes(body)


def encode_module(tag: str | bytes, with_module_block: bool = True) -> bytes:
    """A minimal well-formed bitcode module whose bytes are unique per ``tag``."""
    if isinstance(tag, str):
        tag = tag.encode()
    w = BitWriter()
    w.write_bytes(BITCODE_MAGIC)
    _block(w, IDENTIFICATION_BLOCK_ID, b"LLVM" + tag)
    if with_module_block:
        _block(w, MODULE_BLOCK_ID, b"\x01\x02\x03\x04" + tag)
    return w.getvalue()


def wrap_module(module: bytes, cputype: int = 0x01000007) -> bytes:
    """Prefix ``module`` with a bitcode wrapper header (as Darwin toolchains do)."""
    header = WRAPPER_HEADER.pack(0x0B17C0DE, 0, WRAPPER_HEADER.size, len(module), cputype)
    return header + module


def concat_modules(*modules: bytes, padding: int = 8) -> bytes:
    """Concatenate modules the way a linker concatenates ``.llvmbc`` inputs."""
    out = b""
    for m in modules:
        out += m
        out += b"\0" * (-len(out) % padding)
    return out


def module_buffer(tag: str, origin: str = "test", index: int = 0) -> ModuleBuffer:
    return ModuleBuffer(data=encode_module(tag), origin=origin, index=index)


class FakeDisassembler:
    """Maps module bytes to canned textual IR."""

    def __init__(self, texts: dict[bytes, str] | None = None) -> None:
        self.texts: dict[bytes, str] = dict(texts or {})
        self.calls: list[str] = []

    def register(self, data: bytes, text: str) -> bytes:
        self.texts[data] = text
        return data

    def disassemble(self, buffer: ModuleBuffer) -> str:
        self.calls.append(buffer.identifier)
        return self.texts[buffer.data]

    def check_prerequisites(self) -> list[str]:
        return []


# ── containers ──

_SHT_PROGBITS = 1
_SHT_STRTAB = 3
_SHT_DYNAMIC = 6
_DT_NULL = 0
_DT_NEEDED = 1
_DT_RPATH = 15
_DT_RUNPATH = 29


def build_elf(
    sections: dict[str, bytes] | None = None,
    needed: list[str] | None = None,
    runpath: str | None = None,
    rpath: str | None = None,
) -> bytes:
    """A minimal ELF64 little-endian shared object with the given sections.

    ``needed``/``runpath``/``rpath`` produce ``.dynstr`` and ``.dynamic``.
    """
    sections = dict(sections or {})
    entries: list[tuple[str, int, bytes, int, int]] = []  # name, type, data, link, entsize
    for name, data in sections.items():
        entries.append((name, _SHT_PROGBITS, data, 0, 0))

    if needed or runpath or rpath:
        dynstr = b"\0"
        tags: list[tuple[int, int]] = []

        def _str(s: str) -> int:
            nonlocal dynstr
            off = len(dynstr)
            dynstr += s.encode() + b"\0"
            return off

        for lib in needed or []:
            tags.append((_DT_NEEDED, _str(lib)))
        if runpath:
            tags.append((_DT_RUNPATH, _str(runpath)))
        if rpath:
            tags.append((_DT_RPATH, _str(rpath)))
        tags.append((_DT_NULL, 0))
        dynstr_index = len(entries) + 1  # +1 for the null section
        entries.append((".dynstr", _SHT_STRTAB, dynstr, 0, 0))
        dynamic = b"".join(struct.pack("<qQ", t, v) for t, v in tags)
        entries.append((".dynamic", _SHT_DYNAMIC, dynamic, dynstr_index, 16))

    shstrtab = b"\0"
    name_offsets = []
    for name, *_ in entries:
        name_offsets.append(len(shstrtab))
        shstrtab += name.encode() + b"\0"
    shstrtab_name = len(shstrtab)
    shstrtab += b".shstrtab\0"
    entries.append((".shstrtab", _SHT_STRTAB, shstrtab, 0, 0))
    name_offsets.append(shstrtab_name)

    body = b""
    offsets = []
    pos = 64
    for _, _, data, _, _ in entries:
        pad = -pos % 8
        body += b"\0" * pad
        pos += pad
        offsets.append(pos)
        body += data
        pos += len(data)
    pad = -pos % 8
    body += b"\0" * pad
    shoff = pos + pad

    shdrs = b"\0" * 64
    for (name, sh_type, data, link, entsize), off, name_off in zip(entries, offsets, name_offsets):
        shdrs += struct.pack(
            "<IIQQQQIIQQ", name_off, sh_type, 0, 0, off, len(data), link, 0, 8 if entsize else 1, entsize
        )

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\0" * 8
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH",
        3,  # ET_DYN
        62,  # EM_X86_64
        1,
        0,
        0,
        shoff,
        0,
        64,
        56,
        0,
        64,
        len(entries) + 1,
        len(entries),  # .shstrtab is last
    )
    return header + body + shdrs


def _ar_header(name: str, size: int) -> bytes:
    return (
        name.ljust(16).encode()
        + "0".ljust(12).encode()
        + "0".ljust(6).encode()
        + "0".ljust(6).encode()
        + "644".ljust(8).encode()
        + str(size).ljust(10).encode()
        + b"`\n"
    )


def build_archive(members: list[tuple[str, bytes]], bsd: bool = False) -> bytes:
    """An ``ar`` archive; GNU style (symbol table, ``//`` long names) or BSD ``#1/N`` names."""
    out = b"!<arch>\n"

    def _add(name: str, data: bytes) -> None:
        nonlocal out
        out += _ar_header(name, len(data)) + data
        if len(data) % 2:
            out += b"\n"

    if bsd:
        _add("__.SYMDEF", b"\0" * 8)
        for name, data in members:
            raw = name.encode()
            _add(f"#1/{len(raw)}", raw + data)
        return out

    _add("/", b"\0\0\0\0")
    long_names = b""
    names = []
    for name, _ in members:
        if len(name) > 15:
            names.append(f"/{len(long_names)}")
            long_names += name.encode() + b"/\n"
        else:
            names.append(name + "/")
    if long_names:
        _add("//", long_names)
    for ar_name, (_, data) in zip(names, members):
        _add(ar_name, data)
    return out


class FakeDependencyOracle:
    """Dependency oracle driven by dicts keyed by binary file name."""

    def __init__(
        self,
        needed: dict[str, list[str]] | None = None,
        search_paths: dict[str, list[str]] | None = None,
    ) -> None:
        self._needed = needed or {}
        self._search = search_paths or {}
        self.queries: list[str] = []

    def needed(self, binary: Binary) -> list[str]:
        self.queries.append(binary.name)
        return list(self._needed.get(binary.name, []))

    def search_paths(self, binary: Binary) -> list[str]:
        return list(self._search.get(binary.name, []))
