"""Parse LLVM textual IR (``llvm-dis`` output) into an IRModule."""

from __future__ import annotations

import logging
import re

from z_bitcode_bridge.ir.syntax import GLOBAL_REF_RE, unescape
from z_bitcode_bridge.models.ir import (
    BasicBlock,
    Function,
    GlobalValue,
    Instruction,
    IRModule,
    MetadataNode,
)

logger = logging.getLogger(__name__)

_NAME = r'(?:"((?:[^"\\]|\\.)*)"|([-a-zA-Z$._0-9]+))'

_MODULE_ID_RE = re.compile(r"^; ModuleID = '(.*)'")
_SOURCE_FILENAME_RE = re.compile(r'^source_filename\s*=\s*"(.*)"')
_DATALAYOUT_RE = re.compile(r'^target datalayout\s*=\s*"(.*)"')
_TRIPLE_RE = re.compile(r'^target triple\s*=\s*"(.*)"')
_GLOBAL_RE = re.compile(r"^@" + _NAME + r"\s*=\s*(.*)$")
_TYPE_RE = re.compile(r"^%" + _NAME + r"\s*=\s*type\s+(.*)$")
_COMDAT_RE = re.compile(r"^\$" + _NAME + r"\s*=\s*comdat\s+(\w+)")
_ATTR_GROUP_RE = re.compile(r"^attributes #(\d+)\s*=\s*(.*)$")
_NUMBERED_MD_RE = re.compile(r"^!(\d+)\s*=\s*(.*)$")
_NAMED_MD_RE = re.compile(r"^!([-a-zA-Z$._][-a-zA-Z$._0-9]*)\s*=\s*!\{(.*)\}\s*$")
_LABEL_RE = re.compile(r"^" + _NAME + r":(\s*;.*)?$")
_MD_REF_RE = re.compile(r"!(\d+)")


def _name(m: re.Match, first_group: int = 1) -> str:
    quoted = m.group(first_group)
    return unescape(quoted) if quoted is not None else m.group(first_group + 1)


def _bracket_delta(text: str) -> int:
    """Net '[' minus ']' outside string literals."""
    depth = 0
    in_string = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        i += 1
    return depth


class _FunctionBuilder:
    """Accumulates the body of one ``define`` until its closing brace."""

    def __init__(self, fn: Function) -> None:
        self.fn = fn
        self.block: BasicBlock | None = None
        self.current: Instruction | None = None
        self.depth = 0

    def label(self, label: str, line: str) -> None:
        self.block = BasicBlock(label=label, label_line=line)
        self.fn.blocks.append(self.block)
        self.current = None
        self.depth = 0

    def instruction(self, line: str) -> None:
        indent = len(line) - len(line.lstrip(" "))
        if self.current is not None and (self.depth > 0 or indent > 2):
            self.current.text += "\n" + line
            self.depth += _bracket_delta(line)
            return
        if self.block is None:
            # unlabeled entry block
            self.block = BasicBlock(label="entry")
            self.fn.blocks.append(self.block)
        self.current = Instruction(text=line)
        self.block.instructions.append(self.current)
        self.depth = _bracket_delta(line)


def parse_module(text: str, identifier: str = "") -> IRModule:
    """Parse textual IR.

    Args:
        text: Contents of a ``.ll`` file.
        identifier: Module identifier to record; defaults to the
            ``; ModuleID`` comment.

    Returns:
        IRModule holding every top-level entity in source order.
    """
    module = IRModule(identifier=identifier)
    builder: _FunctionBuilder | None = None

    for line in text.splitlines():
        if builder is not None:
            if line.startswith("}"):
                builder = None
                continue
            stripped = line.strip()
            if not stripped or stripped.startswith(";"):
                continue
            if not line.startswith(" "):
                m = _LABEL_RE.match(line)
                if m:
                    builder.label(_name(m), line)
                    continue
            builder.instruction(line)
            continue

        if not line.strip():
            continue

        if line.startswith(";"):
            m = _MODULE_ID_RE.match(line)
            if m and not module.identifier:
                module.identifier = m.group(1)
            continue

        if line.startswith("define "):
            fn = _function_from_header(line)
            module.functions[fn.name] = fn
            if line.rstrip().endswith("{"):
                builder = _FunctionBuilder(fn)
            continue

        if line.startswith("declare "):
            fn = _function_from_header(line)
            module.functions[fn.name] = fn
            continue

        if line.startswith("@"):
            m = _GLOBAL_RE.match(line)
            if m:
                name = _name(m)
                module.globals[name] = GlobalValue(name=name, segment=m.group(3))
                continue

        if line.startswith("%"):
            m = _TYPE_RE.match(line)
            if m:
                module.types[_name(m)] = m.group(3)
                continue

        if line.startswith("$"):
            m = _COMDAT_RE.match(line)
            if m:
                module.comdats[_name(m)] = m.group(3)
                continue

        if line.startswith("attributes #"):
            m = _ATTR_GROUP_RE.match(line)
            if m:
                module.attribute_groups[int(m.group(1))] = m.group(2)
                continue

        if line.startswith("!"):
            m = _NUMBERED_MD_RE.match(line)
            if m:
                node_id = int(m.group(1))
                module.metadata[node_id] = MetadataNode(id=node_id, text=m.group(2))
                continue
            m = _NAMED_MD_RE.match(line)
            if m:
                module.named_metadata[m.group(1)] = [int(x) for x in _MD_REF_RE.findall(m.group(2))]
                continue

        m = _SOURCE_FILENAME_RE.match(line)
        if m:
            module.source_filename = m.group(1)
            continue
        m = _DATALAYOUT_RE.match(line)
        if m:
            module.data_layout = m.group(1)
            continue
        m = _TRIPLE_RE.match(line)
        if m:
            module.target_triple = m.group(1)
            continue

        module.extra_lines.append(line)

    if builder is not None:
        logger.warning("Unterminated function body for @%s in %s", builder.fn.name, identifier)

    logger.debug(
        "Parsed module %s: %d functions, %d globals, %d metadata nodes",
        module.identifier,
        len(module.functions),
        len(module.globals),
        len(module.metadata),
    )
    return module


def _function_from_header(header: str) -> Function:
    m = GLOBAL_REF_RE.search(header)
    if not m:
        raise ValueError(f"Function header without a name: {header[:120]}")
    name = unescape(m.group(1)) if m.group(1) is not None else m.group(2)
    return Function(name=name, header=header.rstrip())
