"""Call sites, their debug locations and the AST query descriptor."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DebugLocation:
    """Source position recovered from a ``!DILocation`` (lookup key only)."""

    source_file: str  # normalized, absolute when the compile dir is known
    line: int
    column: int = 0
    compilation_directory: str = ""
    inlined_at: DebugLocation | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.source_file, self.line)


@dataclass(frozen=True)
class CallSite:
    """A call or invoke instruction inside the optimized module."""

    caller: str
    callee: str | None  # None: indirect call or inline asm
    opcode: str = "call"
    block: str = ""
    index: int = 0  # instruction index within the caller
    location: DebugLocation | None = None

    @property
    def is_indirect(self) -> bool:
        return self.callee is None


@dataclass(frozen=True)
class AstQuery:
    """What the external AST matcher needs: where to look and how to parse it."""

    source_file: str
    line: int
    compile_arguments: list[str] = field(default_factory=list, hash=False)
    directory: str = ""
    column: int = 0
    caller: str = ""
    callee: str | None = None

    def to_dict(self) -> dict:
        return {
            "source_file": self.source_file,
            "line": self.line,
            "column": self.column,
            "directory": self.directory,
            "compile_arguments": list(self.compile_arguments),
            "caller": self.caller,
            "callee": self.callee,
        }
