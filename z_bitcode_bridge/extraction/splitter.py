"""Split a raw embedded-bitcode stream into individual module buffers.

Linkers concatenate the ``.llvmbc`` sections of every input object, padding
each one with zeros for alignment. Each module's structural end is found by
walking its top-level blocks; whatever sits between that end and the next
magic marker must be zero padding.
"""

from __future__ import annotations

import logging
from typing import Iterator, Protocol

from z_bitcode_bridge.exceptions import MalformedModuleError
from z_bitcode_bridge.extraction.bitstream import is_marker, walk_module
from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.toolchain import LLVM_BCANALYZER, LLVMToolchain, stderr_tail

logger = logging.getLogger(__name__)


class ModuleValidator(Protocol):
    """Well-formedness check applied to each candidate buffer."""

    name: str

    def validate(self, buffer: ModuleBuffer) -> None:
        """Raise MalformedModuleError if ``buffer`` is not a loadable module."""
        ...


class BitstreamValidator:
    """Native check: the top-level walk covers the buffer and finds a MODULE_BLOCK."""

    name = "bitstream"

    def validate(self, buffer: ModuleBuffer) -> None:
        layout = walk_module(buffer.data, 0)
        if not layout.has_module_block:
            raise MalformedModuleError(
                f"{buffer.identifier} has no MODULE_BLOCK", offset=buffer.offset
            )
        if layout.end != len(buffer.data):
            raise MalformedModuleError(
                f"{buffer.identifier} has {len(buffer.data) - layout.end} trailing bytes",
                offset=buffer.offset + layout.end,
            )


class LlvmBcanalyzerValidator:
    """Delegates to ``llvm-bcanalyzer``, which reads the full bitstream."""

    name = "llvm-bcanalyzer"

    def __init__(self, toolchain: LLVMToolchain | None = None) -> None:
        self.toolchain = toolchain or LLVMToolchain()

    def validate(self, buffer: ModuleBuffer) -> None:
        result = self.toolchain.run(LLVM_BCANALYZER, ["-"], input=buffer.data)
        if result.returncode != 0:
            raise MalformedModuleError(
                f"{buffer.identifier} rejected by llvm-bcanalyzer: {stderr_tail(result, 500)}",
                offset=buffer.offset,
            )


def create_validator(name: str, toolchain: LLVMToolchain | None = None) -> ModuleValidator:
    if name == "bitstream":
        return BitstreamValidator()
    if name == "llvm-bcanalyzer":
        return LlvmBcanalyzerValidator(toolchain)
    raise ValueError(f"Unknown validator: {name}")


class ModuleSplitter:
    """Cut a section's bytes into ModuleBuffers.

    Args:
        validator: Applied to every candidate; defaults to BitstreamValidator.
    """

    def __init__(self, validator: ModuleValidator | None = None) -> None:
        self.validator = validator or BitstreamValidator()

    def split(self, data: bytes, origin: str = "") -> Iterator[ModuleBuffer]:
        """Yield module buffers lazily, in stream order.

        Empty or all-zero input yields nothing. Non-zero bytes that are
        neither part of a module nor zero padding raise MalformedModuleError.
        """
        pos = _skip_zeros(data, 0)
        index = 0
        while pos < len(data):
            if not is_marker(data, pos):
                raise MalformedModuleError(
                    "non-zero bytes outside any module", binary=origin or None, offset=pos
                )
            try:
                layout = walk_module(data, pos)
            except MalformedModuleError as e:
                raise MalformedModuleError(
                    e.reason, binary=origin or None, offset=pos if e.offset is None else e.offset
                ) from e
            buffer = ModuleBuffer(
                data=bytes(data[layout.start : layout.end]),
                origin=origin,
                index=index,
                offset=layout.start,
            )
            try:
                self.validator.validate(buffer)
            except MalformedModuleError as e:
                raise MalformedModuleError(
                    f"validation failed ({self.validator.name}): {e.reason}",
                    binary=origin or None,
                    offset=layout.start,
                ) from e
            logger.debug(
                "Module %s: bytes %d-%d, blocks %s",
                buffer.identifier,
                layout.start,
                layout.end,
                layout.block_ids,
            )
            yield buffer
            index += 1
            pos = _skip_zeros(data, layout.end)


def _skip_zeros(data: bytes, pos: int) -> int:
    while pos < len(data) and data[pos] == 0:
        pos += 1
    return pos
