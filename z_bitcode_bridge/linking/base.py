"""Abstract base class for linker backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.models.ir import IRModule


class LinkerBackend(ABC):
    """
    Merges an ordered list of module buffers into one IR module.
    Backends differ in how they merge; all produce an IRModule.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier, e.g. 'llvm-link', 'textual'."""
        ...

    @abstractmethod
    def link(self, buffers: list[ModuleBuffer]) -> IRModule:
        """
        Link ``buffers`` in order.

        Raises:
            LinkError: modules are structurally incompatible.
            DuplicateSymbolError: two strong definitions of one name.
        """
        ...

    def get_descriptor(self) -> Any:
        """Registered LinkerDescriptor, or None for unregistered backends."""
        return None

    def check_prerequisites(self) -> list[str]:
        """
        Check prerequisites.
        Returns list of missing items (empty = can run).
        """
        return []
