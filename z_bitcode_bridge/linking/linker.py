"""BitcodeLinker: ordered module buffers in, one owned module out."""

from __future__ import annotations

import logging

from z_bitcode_bridge.exceptions import LinkError
from z_bitcode_bridge.ir.disassembler import Disassembler, LlvmDisassembler
from z_bitcode_bridge.linking.base import LinkerBackend
from z_bitcode_bridge.linking.registry import LinkerRegistry, create_default_registry
from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.module import BitcodeModule
from z_bitcode_bridge.toolchain import LLVMToolchain

logger = logging.getLogger(__name__)


class BitcodeLinker:
    """Links module buffers with a registered backend.

    Args:
        backend: Backend instance, or a registered name (``auto`` picks the
            most precise backend whose prerequisites are met).
        toolchain: LLVM tools for the backend and default disassembler.
        disassembler: Bitcode -> text converter used by the textual backend.
        registry: Backend registry; defaults to ``create_default_registry()``.
    """

    def __init__(
        self,
        backend: LinkerBackend | str = "auto",
        toolchain: LLVMToolchain | None = None,
        disassembler: Disassembler | None = None,
        registry: LinkerRegistry | None = None,
    ) -> None:
        self.toolchain = toolchain or LLVMToolchain()
        self.disassembler = disassembler or LlvmDisassembler(self.toolchain)
        self.registry = registry or create_default_registry()
        self._backend_spec = backend
        self._backend: LinkerBackend | None = backend if isinstance(backend, LinkerBackend) else None

    @property
    def backend(self) -> LinkerBackend:
        if self._backend is None:
            self._backend = self.registry.create(
                str(self._backend_spec), self.toolchain, self.disassembler
            )
        return self._backend

    def link(self, buffers: list[ModuleBuffer], identifier: str = "") -> BitcodeModule:
        """Merge ``buffers`` (in order) into one module.

        Raises:
            LinkError: no buffers, or structurally incompatible modules.
            DuplicateSymbolError: two strong definitions of one name.
        """
        if not buffers:
            raise LinkError("nothing to link", binary=identifier or None)
        ir = self.backend.link(list(buffers))
        ir.identifier = identifier or buffers[0].identifier
        logger.debug(
            "Linked %s from %s with %s",
            ir.identifier,
            [b.identifier for b in buffers],
            self.backend.name,
        )
        return BitcodeModule(ir, sources=[b.identifier for b in buffers])
