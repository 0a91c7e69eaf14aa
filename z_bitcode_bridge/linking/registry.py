"""Linker registry: plugin-style backend discovery and selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from z_bitcode_bridge.exceptions import ConfigError, ToolchainError
from z_bitcode_bridge.ir.disassembler import Disassembler
from z_bitcode_bridge.linking.base import LinkerBackend
from z_bitcode_bridge.toolchain import LLVMToolchain

logger = logging.getLogger(__name__)


@dataclass
class LinkerDescriptor:
    """Linker backend capability declaration."""

    name: str
    precision_score: float  # 0.0-1.0, fidelity to the system linker's semantics
    speed_score: float  # 0.0-1.0 (higher = faster)
    prerequisites: list[str]
    factory: Callable[[LLVMToolchain, Disassembler], LinkerBackend]


class LinkerRegistry:
    """Linker backend registration center."""

    def __init__(self) -> None:
        self._backends: dict[str, LinkerDescriptor] = {}

    def register(self, descriptor: LinkerDescriptor) -> None:
        self._backends[descriptor.name] = descriptor
        logger.debug("Registered linker backend: %s", descriptor.name)

    def get(self, name: str) -> LinkerDescriptor | None:
        return self._backends.get(name)

    def list_all(self) -> list[LinkerDescriptor]:
        """All descriptors, sorted by precision_score descending."""
        return sorted(self._backends.values(), key=lambda d: d.precision_score, reverse=True)

    def find_best_backend(
        self,
        toolchain: LLVMToolchain,
        disassembler: Disassembler,
    ) -> LinkerBackend | None:
        """
        Find the best available linker.
        Tries backends in precision order, checking prerequisites.
        """
        for desc in self.list_all():
            backend = desc.factory(toolchain, disassembler)
            missing = backend.check_prerequisites()
            if not missing:
                logger.info(
                    "Selected linker: %s (precision=%.2f)", desc.name, desc.precision_score
                )
                return backend
            logger.info("Linker %s prerequisites not met: %s", desc.name, missing)
        return None

    def create(
        self,
        name: str,
        toolchain: LLVMToolchain,
        disassembler: Disassembler,
    ) -> LinkerBackend:
        """Instantiate ``name``, or the best available backend for ``auto``."""
        if name == "auto":
            backend = self.find_best_backend(toolchain, disassembler)
            if backend is None:
                raise ToolchainError("No linker backend has its prerequisites met")
            return backend
        desc = self.get(name)
        if desc is None:
            raise ConfigError(f"Unknown linker backend '{name}' (known: {sorted(self._backends)})")
        return desc.factory(toolchain, disassembler)


def create_default_registry() -> LinkerRegistry:
    """Create registry with llvm-link and the in-process textual linker."""
    from z_bitcode_bridge.linking.llvm_link import LlvmLinkBackend
    from z_bitcode_bridge.linking.textual import TextualLinker

    registry = LinkerRegistry()
    registry.register(
        LinkerDescriptor(
            name="llvm-link",
            precision_score=0.99,
            speed_score=0.70,
            prerequisites=["llvm-link"],
            factory=lambda toolchain, _dis: LlvmLinkBackend(toolchain),
        )
    )
    registry.register(
        LinkerDescriptor(
            name="textual",
            precision_score=0.85,
            speed_score=0.50,
            prerequisites=["llvm-dis"],
            factory=lambda _toolchain, dis: TextualLinker(dis),
        )
    )
    return registry
