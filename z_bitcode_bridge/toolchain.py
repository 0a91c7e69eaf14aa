"""LLVM command-line tool discovery and invocation."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from z_bitcode_bridge.exceptions import ToolchainError

logger = logging.getLogger(__name__)

LLVM_LINK = "llvm-link"
LLVM_DIS = "llvm-dis"
LLVM_BCANALYZER = "llvm-bcanalyzer"
LLVM_OBJCOPY = "llvm-objcopy"

DEFAULT_TOOL_TIMEOUT = 600
# Versioned names tried last (llvm-link-20, llvm-link-19, ...)
_VERSION_RANGE = range(21, 10, -1)


class LLVMToolchain:
    """Locate and run LLVM tools.

    Lookup order for a tool: the explicit bin dir, the configured suffix
    (e.g. ``-18``), the plain name on PATH, then versioned names.

    Args:
        bin_dir: Directory holding the tools. Defaults to ``$ZBB_LLVM_BIN``.
        suffix: Name suffix such as ``-18``. Defaults to ``$ZBB_LLVM_SUFFIX``.
        timeout: Per-invocation timeout in seconds. Defaults to
            ``$ZBB_TOOL_TIMEOUT`` or 600.
    """

    def __init__(
        self,
        bin_dir: str | None = None,
        suffix: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.bin_dir = bin_dir if bin_dir is not None else os.environ.get("ZBB_LLVM_BIN")
        self.suffix = suffix if suffix is not None else os.environ.get("ZBB_LLVM_SUFFIX", "")
        if timeout is None:
            timeout = float(os.environ.get("ZBB_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT))
        self.timeout = timeout
        self._found: dict[str, str | None] = {}

    def find(self, tool: str) -> str | None:
        if tool in self._found:
            return self._found[tool]
        path = self._search(tool)
        self._found[tool] = path
        if path:
            logger.debug("Using %s at %s", tool, path)
        return path

    def _search(self, tool: str) -> str | None:
        if self.bin_dir:
            for name in (tool + self.suffix, tool):
                candidate = Path(self.bin_dir) / name
                if candidate.is_file() and os.access(candidate, os.X_OK):
                    return str(candidate)
            return None
        names = [tool + self.suffix] if self.suffix else []
        names.append(tool)
        names.extend(f"{tool}-{v}" for v in _VERSION_RANGE)
        for name in names:
            found = shutil.which(name)
            if found:
                return found
        return None

    def require(self, tool: str) -> str:
        path = self.find(tool)
        if path is None:
            where = self.bin_dir or "PATH"
            raise ToolchainError(f"{tool} not found in {where}")
        return path

    def missing(self, tools: list[str]) -> list[str]:
        """Tools from ``tools`` that cannot be located (empty = all present)."""
        return [t for t in tools if self.find(t) is None]

    def run(
        self,
        tool: str,
        args: list[str],
        input: bytes | None = None,
    ) -> subprocess.CompletedProcess:
        """Run ``tool`` with ``args``; the caller inspects the return code.

        Raises:
            ToolchainError: the tool is missing, cannot start, or times out.
        """
        cmd = [self.require(tool), *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            return subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ToolchainError(f"{tool} timed out after {self.timeout}s")
        except OSError as e:
            raise ToolchainError(f"Failed to start {tool}: {e}") from e


def stderr_tail(result: subprocess.CompletedProcess, limit: int = 2000) -> str:
    stderr = result.stderr or b""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return stderr[-limit:].strip()
