"""Custom exceptions for z-bitcode-bridge.

Errors are grouped by the scope they abort:

- ``RunScopedError``: the dependency model itself is wrong, the whole run stops.
- ``BinaryScopedError``: one root binary's pipeline stops, other roots continue.
- ``CallSiteScopedError``: one call site is skipped, scanning continues.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    kind = "error"


# ── infrastructure ──


class ToolchainError(BridgeError):
    """Raised when an LLVM tool is missing, times out or cannot be started."""

    kind = "toolchain-error"


class ConfigError(BridgeError):
    """Raised when a work order or runtime option is invalid."""

    kind = "config-error"


class PipelineConfigError(ConfigError):
    """Raised when an optimizer pass pipeline is malformed."""

    kind = "pipeline-config-error"


class StaleModuleError(BridgeError):
    """Raised when a released or foreign-owned BitcodeModule handle is used."""

    kind = "stale-module"


# ── run-scoped ──


class RunScopedError(BridgeError):
    """Dependency-graph errors. They abort the whole run."""


class CyclicDependencyError(RunScopedError):
    """Raised when dependency resolution walks back into a binary on the current path."""

    kind = "cyclic-dependency"

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Dependency cycle: " + " -> ".join(cycle))


class UnresolvedDependencyError(RunScopedError):
    """Raised when a needed library cannot be located on the search path."""

    kind = "unresolved-dependency"

    def __init__(self, name: str, requester: str, searched: list[str]):
        self.name = name
        self.requester = requester
        self.searched = searched
        super().__init__(
            f"Cannot locate '{name}' needed by {requester} (searched: {searched})"
        )


# ── binary-scoped ──


class BinaryScopedError(BridgeError):
    """Errors that abort one root binary's pipeline."""

    def __init__(self, message: str, binary: str | None = None):
        self.binary = binary
        super().__init__(f"{binary}: {message}" if binary else message)


class SectionNotFoundError(BinaryScopedError):
    """Raised when a binary carries no embedded bitcode section. The binary is skipped."""

    kind = "section-not-found"


class MalformedModuleError(BinaryScopedError):
    """Raised when a candidate module buffer fails the well-formedness check."""

    kind = "malformed-module"

    def __init__(self, message: str, binary: str | None = None, offset: int | None = None):
        self.offset = offset
        self.reason = message
        if offset is not None:
            message = f"{message} (at byte offset {offset})"
        super().__init__(message, binary)


class LinkError(BinaryScopedError):
    """Raised when modules are structurally incompatible (e.g. target triples)."""

    kind = "link-error"


class DuplicateSymbolError(LinkError):
    """Raised when two modules both define the same non-weak symbol."""

    kind = "duplicate-symbol"

    def __init__(
        self,
        symbol: str,
        first_module: str,
        second_module: str,
        binary: str | None = None,
    ):
        self.symbol = symbol
        self.first_module = first_module
        self.second_module = second_module
        super().__init__(
            f"Symbol '{symbol}' defined in both {first_module} and {second_module}",
            binary,
        )


class OptimizationFailedError(BinaryScopedError):
    """Raised when the configured pass pipeline cannot run to completion."""

    kind = "optimization-failed"

    def __init__(self, message: str, binary: str | None = None, pass_name: str | None = None):
        self.pass_name = pass_name
        super().__init__(f"[{pass_name}] {message}" if pass_name else message, binary)


# ── call-site-scoped ──


class CallSiteScopedError(BridgeError):
    """Errors that skip a single call site."""

    def __init__(self, message: str, file: str | None = None, line: int | None = None):
        self.file = file
        self.line = line
        super().__init__(message)


class NoCompileEntryError(CallSiteScopedError):
    """Raised when the compilation database has no entry for a source path."""

    kind = "no-compile-entry"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No compile command for {path}", file=path)


class UnresolvedSourceError(CallSiteScopedError):
    """Raised when a call site cannot be turned into an AST query."""

    kind = "unresolved-source"
