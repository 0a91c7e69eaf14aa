"""Reader for ``ar`` static archives (GNU and BSD variants)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator

from z_bitcode_bridge.exceptions import MalformedModuleError

logger = logging.getLogger(__name__)

AR_MAGIC = b"!<arch>\n"
THIN_AR_MAGIC = b"!<thin>\n"
_HEADER_SIZE = 60
_SYMBOL_TABLES = frozenset({"/", "/SYM64/", "__.SYMDEF", "__.SYMDEF SORTED", "__.SYMDEF_64"})


@dataclass(frozen=True)
class ArchiveMember:
    name: str
    offset: int  # offset of the member's data within the archive
    data: bytes = field(repr=False)


def iter_members(data: bytes, archive: str = "") -> Iterator[ArchiveMember]:
    """Yield regular members of an archive, skipping symbol and name tables.

    Raises:
        MalformedModuleError: thin archives, or a header that runs off the end.
    """
    if data.startswith(THIN_AR_MAGIC):
        raise MalformedModuleError("thin archives are not supported", binary=archive or None)
    if not data.startswith(AR_MAGIC):
        raise MalformedModuleError("not an ar archive", binary=archive or None)

    long_names = b""
    pos = len(AR_MAGIC)
    while pos + _HEADER_SIZE <= len(data):
        header = data[pos : pos + _HEADER_SIZE]
        if header[58:60] != b"`\n":
            raise MalformedModuleError("bad archive member header", binary=archive or None, offset=pos)
        raw_name = header[0:16].decode("ascii", errors="replace").rstrip(" ")
        try:
            size = int(header[48:58].decode("ascii").strip() or "0")
        except ValueError:
            raise MalformedModuleError(
                "bad archive member size", binary=archive or None, offset=pos
            ) from None
        body_start = pos + _HEADER_SIZE
        body_end = body_start + size
        if body_end > len(data):
            raise MalformedModuleError(
                f"archive member '{raw_name}' is truncated", binary=archive or None, offset=pos
            )
        body = data[body_start:body_end]
        pos = body_end + (size & 1)  # members are 2-byte aligned

        if raw_name == "//":
            long_names = body
            continue

        name = raw_name
        if raw_name.startswith("#1/"):
            # BSD: name length in the header, name bytes lead the data
            name_len = int(raw_name[3:])
            name = body[:name_len].rstrip(b"\0").decode("utf-8", errors="replace")
            body = body[name_len:]
            body_start += name_len
        elif raw_name.startswith("/") and raw_name[1:].isdigit():
            idx = int(raw_name[1:])
            end = long_names.find(b"\n", idx)
            entry = long_names[idx:end if end >= 0 else len(long_names)]
            name = entry.decode("utf-8", errors="replace").rstrip("/")
        elif raw_name.endswith("/") and raw_name != "/":
            name = raw_name[:-1]

        if name in _SYMBOL_TABLES or raw_name in _SYMBOL_TABLES:
            continue
        yield ArchiveMember(name=name, offset=body_start, data=body)
