"""Bitcode -> textual IR conversion."""

from __future__ import annotations

import logging
from typing import Protocol

from z_bitcode_bridge.exceptions import MalformedModuleError
from z_bitcode_bridge.ir.parser import parse_module
from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.models.ir import IRModule
from z_bitcode_bridge.toolchain import LLVM_DIS, LLVMToolchain, stderr_tail

logger = logging.getLogger(__name__)


class Disassembler(Protocol):
    def disassemble(self, buffer: ModuleBuffer) -> str:
        """Return the textual IR of ``buffer``."""
        ...

    def check_prerequisites(self) -> list[str]:
        ...


class LlvmDisassembler:
    """Runs ``llvm-dis`` over stdin/stdout."""

    def __init__(self, toolchain: LLVMToolchain | None = None) -> None:
        self.toolchain = toolchain or LLVMToolchain()

    def disassemble(self, buffer: ModuleBuffer) -> str:
        result = self.toolchain.run(LLVM_DIS, ["-", "-o", "-"], input=buffer.data)
        if result.returncode != 0:
            raise MalformedModuleError(
                f"llvm-dis failed on {buffer.identifier}: {stderr_tail(result, 500)}",
                binary=buffer.origin or None,
                offset=buffer.offset,
            )
        return result.stdout.decode("utf-8", errors="replace")

    def check_prerequisites(self) -> list[str]:
        return self.toolchain.missing([LLVM_DIS])


def load_module(buffer: ModuleBuffer, disassembler: Disassembler) -> IRModule:
    """Disassemble and parse one module buffer."""
    text = disassembler.disassemble(buffer)
    try:
        module = parse_module(text, identifier=buffer.identifier)
    except ValueError as e:
        raise MalformedModuleError(
            f"cannot parse disassembly of {buffer.identifier}: {e}",
            binary=buffer.origin or None,
            offset=buffer.offset,
        ) from e
    module.identifier = buffer.identifier
    return module
