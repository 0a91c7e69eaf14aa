"""Compilation database entries and merge conflicts."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CompileCommand:
    """One ``compile_commands.json`` entry, keyed by normalized source path."""

    file: str
    arguments: tuple[str, ...]
    directory: str = ""
    output: str | None = None
    database: str = ""  # which compile_commands.json it came from


@dataclass(frozen=True)
class CompileDbConflict:
    """A later entry for an already indexed path with different arguments."""

    file: str
    kept: CompileCommand
    ignored: CompileCommand = field(repr=False)

    @property
    def databases(self) -> tuple[str, str]:
        return (self.kept.database, self.ignored.database)
