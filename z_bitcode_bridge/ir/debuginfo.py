"""Resolve ``!dbg`` attachments to source locations.

A DILocation names a scope; the scope chain (lexical blocks, lexical block
files) ends at a DISubprogram. The source file is taken from the innermost
scope that carries a ``file:`` field, and the compilation directory from the
subprogram's DICompileUnit.
"""

from __future__ import annotations

import logging
import os

from z_bitcode_bridge.ir.syntax import unescape
from z_bitcode_bridge.models.callsite import DebugLocation
from z_bitcode_bridge.models.ir import IRModule, MetadataNode

logger = logging.getLogger(__name__)

_SCOPE_KINDS = frozenset(
    {"DILexicalBlock", "DILexicalBlockFile", "DISubprogram", "DINamespace", "DIModule"}
)
_MAX_SCOPE_DEPTH = 256


class DebugInfoResolver:
    """Per-module DILocation resolver with memoization."""

    def __init__(self, module: IRModule) -> None:
        self._metadata = module.metadata
        self._locations: dict[int, DebugLocation | None] = {}
        self._files: dict[int, tuple[str, str] | None] = {}

    def resolve(self, location_id: int | None) -> DebugLocation | None:
        """Return the DebugLocation for DILocation ``!location_id`` (None if unusable)."""
        if location_id is None:
            return None
        if location_id in self._locations:
            return self._locations[location_id]
        # Placeholder guards against inlinedAt chains that loop back
        self._locations[location_id] = None
        loc = self._build(location_id)
        self._locations[location_id] = loc
        return loc

    def _node(self, node_id: int | None) -> MetadataNode | None:
        if node_id is None:
            return None
        return self._metadata.get(node_id)

    def _build(self, location_id: int) -> DebugLocation | None:
        node = self._node(location_id)
        if node is None or node.kind != "DILocation":
            logger.debug("!%d is not a DILocation", location_id)
            return None

        line = node.field_int("line") or 0
        column = node.field_int("column") or 0
        scope_id = node.field_ref("scope")

        file_info = None
        unit_dir = None
        seen: set[int] = set()
        current = self._node(scope_id)
        while current is not None and current.id not in seen and len(seen) < _MAX_SCOPE_DEPTH:
            seen.add(current.id)
            if file_info is None:
                file_info = self._file(current.field_ref("file"))
            if current.kind == "DISubprogram":
                unit_dir = self._unit_directory(current.field_ref("unit"))
                break
            if current.kind not in _SCOPE_KINDS:
                break
            current = self._node(current.field_ref("scope"))

        if file_info is None:
            return None
        filename, directory = file_info
        source = os.path.normpath(os.path.join(directory, filename)) if directory else os.path.normpath(filename)

        inlined_at = None
        inlined_id = node.field_ref("inlinedAt")
        if inlined_id is not None:
            inlined_at = self.resolve(inlined_id)

        return DebugLocation(
            source_file=source,
            line=line,
            column=column,
            compilation_directory=unit_dir if unit_dir is not None else directory,
            inlined_at=inlined_at,
        )

    def _file(self, file_id: int | None) -> tuple[str, str] | None:
        if file_id is None:
            return None
        if file_id in self._files:
            return self._files[file_id]
        node = self._node(file_id)
        info = None
        if node is not None and node.kind == "DIFile":
            filename = node.field_str("filename")
            if filename:
                info = (unescape(filename), unescape(node.field_str("directory") or ""))
        self._files[file_id] = info
        return info

    def _unit_directory(self, unit_id: int | None) -> str | None:
        unit = self._node(unit_id)
        if unit is None or unit.kind != "DICompileUnit":
            return None
        info = self._file(unit.field_ref("file"))
        return info[1] if info else None
