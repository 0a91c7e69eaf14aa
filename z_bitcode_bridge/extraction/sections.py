"""Locate the embedded bitcode section(s) of a binary.

``clang -fembed-bitcode`` stores the module in ``.llvmbc`` on ELF and COFF
and in ``__LLVM,__bitcode`` on Mach-O. ELF (including ELF archive members)
is read in-process with pyelftools; Mach-O and COFF sections are dumped with
``llvm-objcopy``.
"""

from __future__ import annotations

import io
import logging
import tempfile
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from z_bitcode_bridge.exceptions import SectionNotFoundError
from z_bitcode_bridge.extraction.archive import iter_members
from z_bitcode_bridge.models.binary import Binary, BinaryFormat, Section, detect_format
from z_bitcode_bridge.toolchain import LLVM_OBJCOPY, LLVMToolchain, stderr_tail

logger = logging.getLogger(__name__)

ELF_SECTION = ".llvmbc"
COFF_SECTION = ".llvmbc"
MACHO_SECTION = "__LLVM,__bitcode"


class SectionExtractor:
    """Read embedded bitcode sections out of binaries. Pure read, no side effects."""

    def __init__(self, toolchain: LLVMToolchain | None = None) -> None:
        self.toolchain = toolchain or LLVMToolchain()

    def extract(self, binary: Binary | str) -> list[Section]:
        """Return every embedded bitcode section of ``binary``.

        An archive yields one section per member that carries one.

        Raises:
            SectionNotFoundError: nothing embedded, or the container is not
                a recognized format.
        """
        if isinstance(binary, str):
            binary = Binary.from_path(binary)
        data = Path(binary.path).read_bytes()
        fmt = binary.format if binary.format is not BinaryFormat.UNKNOWN else detect_format(data[:16])

        if fmt is BinaryFormat.ELF:
            sections = self._from_elf(data, binary.path)
        elif fmt is BinaryFormat.ARCHIVE:
            sections = self._from_archive(data, binary.path)
        elif fmt is BinaryFormat.BITCODE:
            sections = [Section(name="<bitcode>", offset=0, length=len(data), data=data, binary=binary.path)]
        elif fmt is BinaryFormat.MACHO:
            sections = self._dump_section(binary.path, MACHO_SECTION)
        elif fmt is BinaryFormat.COFF:
            sections = self._dump_section(binary.path, COFF_SECTION)
        else:
            raise SectionNotFoundError("unrecognized container format", binary=binary.path)

        if not sections:
            raise SectionNotFoundError("no embedded bitcode section", binary=binary.path)
        logger.info(
            "Extracted %d bitcode section(s) from %s (%d bytes)",
            len(sections),
            binary.path,
            sum(s.length for s in sections),
        )
        return sections

    def _from_elf(self, data: bytes, path: str, member: str | None = None) -> list[Section]:
        try:
            elf = ELFFile(io.BytesIO(data))
            sec = elf.get_section_by_name(ELF_SECTION)
            if sec is None or sec["sh_type"] == "SHT_NOBITS":
                return []
            payload = sec.data()
        except ELFError as e:
            origin = f"{path}({member})" if member else path
            raise SectionNotFoundError(f"unreadable ELF: {e}", binary=origin) from e
        return [
            Section(
                name=ELF_SECTION,
                offset=sec["sh_offset"],
                length=len(payload),
                data=payload,
                binary=path,
                member=member,
            )
        ]

    def _from_archive(self, data: bytes, path: str) -> list[Section]:
        sections: list[Section] = []
        for m in iter_members(data, path):
            fmt = detect_format(m.data[:16])
            if fmt is BinaryFormat.ELF:
                sections.extend(self._from_elf(m.data, path, member=m.name))
            elif fmt is BinaryFormat.BITCODE:
                sections.append(
                    Section(
                        name="<bitcode>",
                        offset=m.offset,
                        length=len(m.data),
                        data=m.data,
                        binary=path,
                        member=m.name,
                    )
                )
            else:
                logger.debug("Skipping archive member %s(%s): %s", path, m.name, fmt.value)
        return sections

    def _dump_section(self, path: str, section: str) -> list[Section]:
        with tempfile.TemporaryDirectory(prefix="zbb-objcopy-") as tmp:
            out = Path(tmp) / "section.bin"
            scratch = Path(tmp) / "scratch.o"
            result = self.toolchain.run(
                LLVM_OBJCOPY, [f"--dump-section={section}={out}", path, str(scratch)]
            )
            if result.returncode != 0 or not out.exists():
                logger.debug("llvm-objcopy could not dump %s from %s: %s", section, path, stderr_tail(result, 300))
                return []
            payload = out.read_bytes()
        # llvm-objcopy does not report the file offset
        return [Section(name=section, offset=0, length=len(payload), data=payload, binary=path)]
