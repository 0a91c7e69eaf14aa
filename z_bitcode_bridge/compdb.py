"""Merged index over one or more ``compile_commands.json`` documents."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Iterator

from z_bitcode_bridge.diagnostics import COMPDB_CONFLICT, Diagnostic, DiagnosticsCollector
from z_bitcode_bridge.exceptions import ConfigError, NoCompileEntryError
from z_bitcode_bridge.models.compdb import CompileCommand, CompileDbConflict

logger = logging.getLogger(__name__)

# Flags that take the next token as argument and only matter to the build
_STRIP_WITH_ARG = frozenset(["-o", "-MF", "-MT", "-MQ", "-MJ"])
_STRIP_STANDALONE = frozenset(["-c", "-S", "-E", "-MD", "-MMD", "-MP", "-MG", "-M", "-MM", "-pipe", "-save-temps"])
_STRIP_PREFIXES = (
    "-fcrash-diagnostics-dir",
    "--serialize-diagnostics",
    "-fmodules-cache-path=",
    "-fprofile-generate",
    "-fprofile-use=",
    "-fprofile-instr-generate",
    "-fprofile-instr-use=",
)
_STRIP_ATTACHED_RE = re.compile(r"^(?:-o|-MF|-MT|-MQ|-MJ)(?:=?.+)$")
_SOURCE_EXTS = frozenset({".c", ".cc", ".cpp", ".cxx", ".c++", ".m", ".mm", ".i", ".ii", ".s", ".S"})


def _split_command(command: str) -> list[str]:
    try:
        return shlex.split(command)
    except ValueError as exc:
        logger.warning("shlex.split failed (%s), falling back to whitespace split", exc)
        return command.split()


def _load_document(path: str) -> tuple[str, list[dict[str, Any]]]:
    try:
        doc = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read compilation database {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in compilation database {path}: {e}") from e
    if not isinstance(doc, list):
        raise ConfigError(f"Compilation database {path} is not a JSON array")
    return path, doc


class CompilationDatabaseIndex:
    """Lookup of compile commands keyed by normalized absolute source path.

    The first entry seen for a path wins. A later entry with different
    arguments is recorded in ``conflicts`` (and reported as a
    ``compdb-conflict`` diagnostic); an identical one is only counted.

    Args:
        path_prefix_map: ``{old_prefix: new_prefix}`` applied to every
            indexed and looked-up path, for databases generated in another
            checkout or container.
        diagnostics: Optional sink for conflict diagnostics.
    """

    def __init__(
        self,
        path_prefix_map: dict[str, str] | None = None,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> None:
        # longest prefix first
        self.path_prefix_map = dict(
            sorted((path_prefix_map or {}).items(), key=lambda kv: len(kv[0]), reverse=True)
        )
        self.diagnostics = diagnostics
        self._entries: dict[str, CompileCommand] = {}
        self.conflicts: list[CompileDbConflict] = []
        self.duplicates = 0

    @classmethod
    def from_files(
        cls,
        paths: list[str],
        max_workers: int | None = None,
        path_prefix_map: dict[str, str] | None = None,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> CompilationDatabaseIndex:
        """Load documents in parallel, then merge them in input order."""
        index = cls(path_prefix_map=path_prefix_map, diagnostics=diagnostics)
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            documents = list(pool.map(_load_document, paths))
        for path, entries in documents:
            index.add_document(entries, database=path)
        logger.info(
            "Indexed %d source files from %d database(s): %d conflicts, %d duplicates",
            len(index),
            len(paths),
            len(index.conflicts),
            index.duplicates,
        )
        return index

    def normalize(self, path: str, directory: str = "") -> str:
        joined = os.path.normpath(os.path.join(directory, path)) if directory else os.path.normpath(path)
        for old, new in self.path_prefix_map.items():
            old_n = os.path.normpath(old)
            if joined == old_n or joined.startswith(old_n.rstrip(os.sep) + os.sep):
                return os.path.normpath(new + joined[len(old_n) :])
        return joined

    def add_document(self, entries: list[dict[str, Any]], database: str = "") -> None:
        for raw in entries:
            cmd = self._entry(raw, database)
            if cmd is not None:
                self.add(cmd)

    def _entry(self, raw: Any, database: str) -> CompileCommand | None:
        if not isinstance(raw, dict) or "file" not in raw:
            logger.warning("Skipping malformed entry in %s: %r", database, raw)
            return None
        directory = raw.get("directory", "")
        arguments = raw.get("arguments")
        if arguments is None:
            arguments = _split_command(raw.get("command", ""))
        return CompileCommand(
            file=self.normalize(raw["file"], directory),
            arguments=tuple(arguments),
            directory=self.normalize(directory) if directory else "",
            output=raw.get("output"),
            database=database,
        )

    def add(self, cmd: CompileCommand) -> None:
        existing = self._entries.get(cmd.file)
        if existing is None:
            self._entries[cmd.file] = cmd
            return
        if existing.arguments == cmd.arguments:
            self.duplicates += 1
            return
        conflict = CompileDbConflict(file=cmd.file, kept=existing, ignored=cmd)
        self.conflicts.append(conflict)
        logger.debug("Conflicting compile commands for %s (%s vs %s)", cmd.file, *conflict.databases)
        if self.diagnostics is not None:
            self.diagnostics.report(
                Diagnostic(
                    kind=COMPDB_CONFLICT,
                    message=f"differing compile commands for {cmd.file}; keeping the first",
                    severity="info",
                    file=cmd.file,
                    detail={"kept": existing.database, "ignored": cmd.database},
                )
            )

    def lookup(self, path: str) -> CompileCommand:
        key = self.normalize(path)
        cmd = self._entries.get(key)
        if cmd is None:
            raise NoCompileEntryError(key)
        return cmd

    def flags_for(self, path: str) -> list[str]:
        """Arguments for single-file AST tooling: no compiler, source or output flags."""
        cmd = self.lookup(path)
        source_names = {cmd.file, os.path.basename(cmd.file)}
        result: list[str] = []
        skip_next = False
        for token in cmd.arguments[1:]:
            if skip_next:
                skip_next = False
                continue
            if token in _STRIP_WITH_ARG:
                skip_next = True
                continue
            if token in _STRIP_STANDALONE or _STRIP_ATTACHED_RE.match(token):
                continue
            if any(token.startswith(p) for p in _STRIP_PREFIXES):
                continue
            if not token.startswith("-") and os.path.splitext(token)[1] in _SOURCE_EXTS:
                if token in source_names or self.normalize(token, cmd.directory) == cmd.file:
                    continue
            result.append(token)
        return result

    def files(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, path: str) -> bool:
        return self.normalize(path) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CompileCommand]:
        return iter(list(self._entries.values()))
