"""Single-owner handle around a linked IR module."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from z_bitcode_bridge.exceptions import StaleModuleError
from z_bitcode_bridge.models.ir import IRModule


class BitcodeModule:
    """Owns one IRModule for the duration of a root's pipeline.

    A stage acquires the handle, works on ``ir`` and releases it. Reading
    ``ir`` while nobody holds the handle, acquiring it while another stage
    holds it, or touching it after ``close()`` raises StaleModuleError.
    The holding stage may acquire again (nested walks of one scan); the
    handle is free once every acquire has been released.
    """

    def __init__(self, ir: IRModule, sources: list[str] | None = None) -> None:
        self._ir: IRModule | None = ir
        self.identifier = ir.identifier
        self.sources = list(sources or [])  # identifiers of the linked buffers
        self._owner: str | None = None
        self._holds = 0
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._ir is None

    @property
    def owner(self) -> str | None:
        return self._owner

    def acquire(self, stage: str) -> IRModule:
        with self._lock:
            if self._ir is None:
                raise StaleModuleError(f"{self.identifier}: module already discarded")
            if self._owner is not None and self._owner != stage:
                raise StaleModuleError(
                    f"{self.identifier}: held by '{self._owner}', cannot acquire for '{stage}'"
                )
            if self._owner == stage:
                self._holds += 1
            else:
                self._owner = stage
                self._holds = 1
            return self._ir

    def release(self, stage: str) -> None:
        with self._lock:
            if self._owner != stage:
                raise StaleModuleError(
                    f"{self.identifier}: '{stage}' released a handle it does not hold"
                )
            self._holds -= 1
            if self._holds == 0:
                self._owner = None

    @contextmanager
    def owned(self, stage: str) -> Iterator[IRModule]:
        ir = self.acquire(stage)
        try:
            yield ir
        finally:
            self.release(stage)

    @property
    def ir(self) -> IRModule:
        """The module, for the stage currently holding the handle."""
        if self._ir is None:
            raise StaleModuleError(f"{self.identifier}: module already discarded")
        if self._owner is None:
            raise StaleModuleError(f"{self.identifier}: accessed without acquiring")
        return self._ir

    def close(self) -> None:
        with self._lock:
            self._ir = None
            self._owner = None
            self._holds = 0

    def __repr__(self) -> str:
        state = "closed" if self.closed else (self._owner or "released")
        return f"BitcodeModule({self.identifier!r}, {state})"
