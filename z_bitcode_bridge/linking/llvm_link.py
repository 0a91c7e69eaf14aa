"""Linker backend delegating to ``llvm-link``."""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path

from z_bitcode_bridge.exceptions import DuplicateSymbolError, LinkError
from z_bitcode_bridge.ir.parser import parse_module
from z_bitcode_bridge.linking.base import LinkerBackend
from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.models.ir import IRModule
from z_bitcode_bridge.toolchain import LLVM_LINK, LLVMToolchain, stderr_tail

logger = logging.getLogger(__name__)

_MULTIPLY_DEFINED_RE = re.compile(r"Linking globals named '([^']+)': symbol multiply defined")
# llvm-link only warns on these; they are hard errors here
_TARGET_MISMATCH_RE = re.compile(
    r"warning: Linking two modules of different (target triples|data layouts)[^\n]*"
)


class LlvmLinkBackend(LinkerBackend):
    """Writes the buffers to disk and runs ``llvm-link -S``."""

    def __init__(self, toolchain: LLVMToolchain | None = None) -> None:
        self.toolchain = toolchain or LLVMToolchain()

    @property
    def name(self) -> str:
        return "llvm-link"

    def link(self, buffers: list[ModuleBuffer]) -> IRModule:
        with tempfile.TemporaryDirectory(prefix="zbb-link-") as tmp:
            inputs = []
            for i, buf in enumerate(buffers):
                path = Path(tmp) / f"{i:04d}.bc"
                path.write_bytes(buf.data)
                inputs.append(str(path))
            out = Path(tmp) / "linked.ll"
            result = self.toolchain.run(LLVM_LINK, ["-S", "-o", str(out), *inputs])
            stderr = stderr_tail(result, 4000)
            names = {str(Path(tmp) / f"{i:04d}.bc"): b.identifier for i, b in enumerate(buffers)}

            if result.returncode != 0:
                m = _MULTIPLY_DEFINED_RE.search(stderr)
                if m:
                    # llvm-link does not say which inputs collided
                    raise DuplicateSymbolError(
                        m.group(1),
                        "an earlier input",
                        _last_mentioned(stderr, names) or buffers[-1].identifier,
                    )
                raise LinkError(f"llvm-link failed: {stderr}")

            m = _TARGET_MISMATCH_RE.search(stderr)
            if m:
                raise LinkError(m.group(0).replace("warning: ", ""))

            text = out.read_text(errors="replace")

        try:
            module = parse_module(text)
        except ValueError as e:
            raise LinkError(f"cannot parse llvm-link output: {e}") from e
        logger.info(
            "llvm-link merged %d modules: %d functions, %d globals",
            len(buffers),
            len(module.functions),
            len(module.globals),
        )
        return module

    def get_descriptor(self):
        from z_bitcode_bridge.linking.registry import create_default_registry

        return create_default_registry().get(self.name)

    def check_prerequisites(self) -> list[str]:
        return self.toolchain.missing([LLVM_LINK])


def _last_mentioned(stderr: str, names: dict[str, str]) -> str | None:
    last_pos, last = -1, None
    for path, ident in names.items():
        pos = stderr.rfind(path)
        if pos > last_pos:
            last_pos, last = pos, ident
    return last
