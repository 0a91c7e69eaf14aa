"""Dependency oracles: where a binary's dynamic dependencies come from."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Protocol

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile

from z_bitcode_bridge.models.binary import Binary, BinaryFormat

logger = logging.getLogger(__name__)


class DependencyOracle(Protocol):
    """Answers which libraries a binary needs and where the loader looks."""

    def needed(self, binary: Binary) -> list[str]:
        """Needed library names, in load order."""
        ...

    def search_paths(self, binary: Binary) -> list[str]:
        """Directories embedded in the binary itself (runpath/rpath)."""
        ...


@dataclass
class DynamicInfo:
    needed: list[str] = field(default_factory=list)
    runpath: list[str] = field(default_factory=list)
    rpath: list[str] = field(default_factory=list)


class ElfDynamicOracle:
    """Reads ``DT_NEEDED``, ``DT_RUNPATH`` and ``DT_RPATH`` with pyelftools.

    ``$ORIGIN`` is expanded to the binary's directory. RUNPATH takes
    precedence over RPATH, as in the dynamic loader.
    """

    def __init__(self) -> None:
        self._cache: dict[str, DynamicInfo] = {}

    def _info(self, binary: Binary) -> DynamicInfo:
        if binary.path in self._cache:
            return self._cache[binary.path]
        info = DynamicInfo()
        if binary.format is BinaryFormat.ELF:
            try:
                with open(binary.path, "rb") as f:
                    elf = ELFFile(f)
                    for section in elf.iter_sections():
                        if not isinstance(section, DynamicSection):
                            continue
                        for tag in section.iter_tags():
                            if tag.entry.d_tag == "DT_NEEDED":
                                info.needed.append(tag.needed)
                            elif tag.entry.d_tag == "DT_RUNPATH":
                                info.runpath.extend(_split_path(tag.runpath, binary.path))
                            elif tag.entry.d_tag == "DT_RPATH":
                                info.rpath.extend(_split_path(tag.rpath, binary.path))
            except ELFError as e:
                logger.warning("Cannot read dynamic section of %s: %s", binary.path, e)
        self._cache[binary.path] = info
        return info

    def needed(self, binary: Binary) -> list[str]:
        return list(self._info(binary).needed)

    def search_paths(self, binary: Binary) -> list[str]:
        info = self._info(binary)
        return list(info.runpath or info.rpath)


def _split_path(value: str, binary_path: str) -> list[str]:
    origin = os.path.dirname(os.path.abspath(binary_path))
    out = []
    for entry in value.split(":"):
        if not entry:
            continue
        entry = entry.replace("${ORIGIN}", origin).replace("$ORIGIN", origin)
        out.append(entry)
    return out
