"""Data models for binaries, embedded sections and module buffers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Raw bitcode magic: 'B' 'C' 0xC0DE
BITCODE_MAGIC = b"BC\xc0\xde"
# Bitcode wrapper magic 0x0B17C0DE, little-endian on disk
WRAPPER_MAGIC = b"\xde\xc0\x17\x0b"

_MACHO_MAGICS = {
    b"\xfe\xed\xfa\xce",
    b"\xce\xfa\xed\xfe",
    b"\xfe\xed\xfa\xcf",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",  # fat
    b"\xbe\xba\xfe\xca",
}

# IMAGE_FILE_MACHINE_* values seen in bare COFF objects
_COFF_MACHINES = {0x014C, 0x8664, 0x01C4, 0xAA64}


class BinaryFormat(Enum):
    """Object-file container formats."""

    ELF = "elf"
    MACHO = "macho"
    COFF = "coff"
    ARCHIVE = "archive"
    BITCODE = "bitcode"
    UNKNOWN = "unknown"


def detect_format(head: bytes) -> BinaryFormat:
    """Classify a container from its first bytes."""
    if head.startswith(b"\x7fELF"):
        return BinaryFormat.ELF
    if head.startswith(b"!<arch>\n"):
        return BinaryFormat.ARCHIVE
    if head.startswith(BITCODE_MAGIC) or head.startswith(WRAPPER_MAGIC):
        return BinaryFormat.BITCODE
    if head[:4] in _MACHO_MAGICS:
        return BinaryFormat.MACHO
    if head.startswith(b"MZ"):
        return BinaryFormat.COFF
    if len(head) >= 2 and int.from_bytes(head[:2], "little") in _COFF_MACHINES:
        return BinaryFormat.COFF
    return BinaryFormat.UNKNOWN


@dataclass(frozen=True)
class Binary:
    """A compiled artifact identified by path."""

    path: str
    format: BinaryFormat = BinaryFormat.UNKNOWN

    @classmethod
    def from_path(cls, path: str | Path) -> Binary:
        p = Path(path)
        with open(p, "rb") as f:
            head = f.read(16)
        return cls(path=str(p), format=detect_format(head))

    @property
    def name(self) -> str:
        return Path(self.path).name


@dataclass(frozen=True)
class Section:
    """A named byte region of a binary (read-only once extracted)."""

    name: str
    offset: int
    length: int
    data: bytes = field(repr=False)
    binary: str = ""
    member: str | None = None  # archive member name

    @property
    def origin(self) -> str:
        if self.member:
            return f"{self.binary}({self.member})"
        return self.binary


@dataclass(frozen=True)
class ModuleBuffer:
    """One well-formed bitcode module cut out of a section."""

    data: bytes = field(repr=False)
    origin: str = ""
    index: int = 0
    offset: int = 0  # byte offset within the section

    def __post_init__(self) -> None:
        if not (self.data.startswith(BITCODE_MAGIC) or self.data.startswith(WRAPPER_MAGIC)):
            raise ValueError("ModuleBuffer must begin with a bitcode magic marker")

    @property
    def identifier(self) -> str:
        return f"{self.origin}#{self.index}"

    def __len__(self) -> int:
        return len(self.data)
