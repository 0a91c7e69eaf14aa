"""In-memory model of one LLVM module, built from its textual form.

Every entity keeps its original text so the module can be written back out
(``IRModule.to_text``) after the linker and optimizer have rewritten it.
Derived facts (callee, debug attachment, linkage) are read from that text on
demand, so a rename never leaves them stale.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from z_bitcode_bridge.ir.syntax import (
    COMDAT_REF_RE,
    DBG_ATTACHMENT_RE,
    GLOBAL_REF_RE,
    LOCAL_LINKAGES,
    global_refs,
    linkage_of,
    matching_paren,
    quote_name,
    split_fields,
    split_leading_keywords,
    with_linkage,
)

CALL_OPCODES = frozenset({"call", "invoke"})

_RESULT_RE = re.compile(r'^\s*(%(?:"(?:[^"\\]|\\.)*"|[-\w$.]+))\s*=\s*')
_TAIL_MARKERS = frozenset({"tail", "musttail", "notail"})
_CALLEE_RE = re.compile(r'([@%])(?:"((?:[^"\\]|\\.)*)"|([-\w$.]+))\s*\(')
_MD_KIND_RE = re.compile(r"^(distinct\s+)?!(\w+)\(")


@dataclass
class Instruction:
    """One instruction; ``text`` may span several source lines (switch, landingpad)."""

    text: str

    @property
    def result(self) -> str | None:
        m = _RESULT_RE.match(self.text)
        return m.group(1) if m else None

    def _body(self) -> str:
        m = _RESULT_RE.match(self.text)
        return self.text[m.end() :] if m else self.text.strip()

    @property
    def opcode(self) -> str:
        tokens = self._body().split(None, 2)
        if not tokens:
            return ""
        if tokens[0] in _TAIL_MARKERS and len(tokens) > 1:
            return tokens[1]
        return tokens[0]

    @property
    def is_call(self) -> bool:
        return self.opcode in CALL_OPCODES

    def _call_target(self) -> tuple[str | None, bool]:
        body = self._body()
        op_idx = body.find(self.opcode)
        tail = body[op_idx + len(self.opcode) :] if op_idx >= 0 else body
        if re.match(r"\s+(?:[^@%]*?\s)?asm\s", tail):
            return None, True
        m = _CALLEE_RE.search(tail)
        while m and m.group(1) == "%":
            # a named return type followed by the explicit function type
            close = matching_paren(tail, m.end() - 1)
            if close < 0 or not re.match(r"\s*[@%]", tail[close + 1 :]):
                break
            m = _CALLEE_RE.search(tail, close + 1)
        if m:
            name = m.group(2) if m.group(2) is not None else m.group(3)
            if m.group(1) == "%":
                return None, True
            return name, False
        # constant-expression callee, e.g. bitcast (ptr @f to ptr)(...)
        g = GLOBAL_REF_RE.search(tail)
        if g:
            return (g.group(1) if g.group(1) is not None else g.group(2)), False
        return None, True

    @property
    def callee(self) -> str | None:
        """Directly called symbol; ``None`` for indirect calls and inline asm."""
        if not self.is_call:
            return None
        return self._call_target()[0]

    @property
    def is_indirect(self) -> bool:
        return self.is_call and self._call_target()[1]

    @property
    def dbg(self) -> int | None:
        m = DBG_ATTACHMENT_RE.search(self.text)
        return int(m.group(1)) if m else None


@dataclass
class BasicBlock:
    label: str
    instructions: list[Instruction] = field(default_factory=list)
    label_line: str | None = None  # None for an implicit entry block

    def to_lines(self) -> list[str]:
        lines = [self.label_line] if self.label_line is not None else []
        lines.extend(i.text for i in self.instructions)
        return lines


def _header_split(header: str, keyword: str) -> tuple[str, str]:
    """Split 'define <segment>' into ('define', '<segment>')."""
    return keyword, header[len(keyword) :].lstrip()


@dataclass
class Function:
    """A function definition (with blocks) or declaration."""

    name: str
    header: str  # 'define ... {' or 'declare ...'
    blocks: list[BasicBlock] = field(default_factory=list)

    @property
    def is_declaration(self) -> bool:
        return self.header.startswith("declare")

    @property
    def _keyword(self) -> str:
        return "declare" if self.is_declaration else "define"

    @property
    def linkage(self) -> str:
        _, segment = _header_split(self.header, self._keyword)
        keywords, _ = split_leading_keywords(segment)
        return linkage_of(keywords)

    def set_linkage(self, linkage: str) -> None:
        keyword, segment = _header_split(self.header, self._keyword)
        self.header = f"{keyword} {with_linkage(segment, linkage)}"

    @property
    def is_local(self) -> bool:
        return self.linkage in LOCAL_LINKAGES

    @property
    def dbg(self) -> int | None:
        m = DBG_ATTACHMENT_RE.search(self.header)
        return int(m.group(1)) if m else None

    @property
    def comdat(self) -> str | None:
        return _comdat_of(self.header, self.name)

    def drop_comdat(self) -> None:
        self.header = COMDAT_REF_RE.sub("", self.header).replace("  ", " ")

    def references(self) -> set[str]:
        refs = global_refs(self.header)
        for block in self.blocks:
            for inst in block.instructions:
                refs |= global_refs(inst.text)
        refs.discard(self.name)
        return refs

    def iter_instructions(self):
        for block in self.blocks:
            yield from block.instructions

    def to_lines(self) -> list[str]:
        if self.is_declaration:
            return [self.header]
        lines = [self.header]
        for block in self.blocks:
            lines.extend(block.to_lines())
        lines.append("}")
        return lines


@dataclass
class GlobalValue:
    """A global variable, alias or ifunc: ``@name = <segment>``."""

    name: str
    segment: str  # everything after '='

    @property
    def kind(self) -> str:
        _, rest = split_leading_keywords(self.segment)
        for tok in rest.split():
            if tok in ("global", "constant", "alias", "ifunc"):
                return tok
        return "global"

    @property
    def linkage(self) -> str:
        keywords, _ = split_leading_keywords(self.segment)
        return linkage_of(keywords)

    def set_linkage(self, linkage: str) -> None:
        self.segment = with_linkage(self.segment, linkage)

    @property
    def is_local(self) -> bool:
        return self.linkage in LOCAL_LINKAGES

    @property
    def is_declaration(self) -> bool:
        # the 'external' keyword is only printed on declarations
        keywords, _ = split_leading_keywords(self.segment)
        return self.kind in ("global", "constant") and (
            "external" in keywords or "extern_weak" in keywords
        )

    @property
    def comdat(self) -> str | None:
        return _comdat_of(self.segment, self.name)

    def drop_comdat(self) -> None:
        self.segment = re.sub(r",\s*" + COMDAT_REF_RE.pattern, "", self.segment)

    def references(self) -> set[str]:
        refs = global_refs(self.segment)
        refs.discard(self.name)
        return refs

    def to_line(self) -> str:
        return f"{quote_name(self.name)} = {self.segment}"


def _comdat_of(text: str, own_name: str) -> str | None:
    m = COMDAT_REF_RE.search(text)
    if not m:
        return None
    if m.group(1):
        return m.group(1).strip('"')
    return own_name


@dataclass
class MetadataNode:
    """A numbered metadata node ``!N = <text>``."""

    id: int
    text: str

    @property
    def distinct(self) -> bool:
        return self.text.startswith("distinct")

    @property
    def kind(self) -> str:
        m = _MD_KIND_RE.match(self.text)
        if m:
            return m.group(2)
        return "tuple" if "!{" in self.text[:12] else "other"

    @property
    def fields(self) -> dict[str, str]:
        m = _MD_KIND_RE.match(self.text)
        if not m:
            return {}
        body = self.text[m.end() : self.text.rfind(")")]
        out: dict[str, str] = {}
        for item in split_fields(body):
            key, sep, value = item.partition(":")
            if sep:
                out[key.strip()] = value.strip()
        return out

    def field_str(self, name: str) -> str | None:
        value = self.fields.get(name)
        if value is None or not value.startswith('"'):
            return None
        return value[1:-1]

    def field_ref(self, name: str) -> int | None:
        value = self.fields.get(name)
        if value and value.startswith("!") and value[1:].isdigit():
            return int(value[1:])
        return None

    def field_int(self, name: str) -> int | None:
        value = self.fields.get(name)
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    def to_line(self) -> str:
        return f"!{self.id} = {self.text}"


@dataclass
class IRModule:
    """One LLVM module: globals, functions, metadata and module-level strings."""

    identifier: str = ""
    source_filename: str = ""
    target_triple: str = ""
    data_layout: str = ""
    extra_lines: list[str] = field(default_factory=list)  # module asm, etc.
    types: dict[str, str] = field(default_factory=dict)  # name -> body after '= type'
    comdats: dict[str, str] = field(default_factory=dict)  # name -> selection kind
    globals: dict[str, GlobalValue] = field(default_factory=dict)
    functions: dict[str, Function] = field(default_factory=dict)
    attribute_groups: dict[int, str] = field(default_factory=dict)
    metadata: dict[int, MetadataNode] = field(default_factory=dict)
    named_metadata: dict[str, list[int]] = field(default_factory=dict)

    # ── symbol table ──

    def symbol(self, name: str) -> Function | GlobalValue | None:
        return self.functions.get(name) or self.globals.get(name)

    def symbol_names(self) -> set[str]:
        return set(self.functions) | set(self.globals)

    def definitions(self) -> list[Function | GlobalValue]:
        out: list[Function | GlobalValue] = [
            g for g in self.globals.values() if not g.is_declaration
        ]
        out.extend(f for f in self.functions.values() if not f.is_declaration)
        return out

    def remove_symbol(self, name: str) -> None:
        self.functions.pop(name, None)
        self.globals.pop(name, None)

    def references_of(self, name: str) -> set[str]:
        sym = self.symbol(name)
        return sym.references() if sym is not None else set()

    def max_metadata_id(self) -> int:
        return max(self.metadata, default=-1)

    def max_attribute_group(self) -> int:
        return max(self.attribute_groups, default=-1)

    # ── output ──

    def to_text(self) -> str:
        lines: list[str] = []
        if self.identifier:
            lines.append(f"; ModuleID = '{self.identifier}'")
        if self.source_filename:
            lines.append(f'source_filename = "{self.source_filename}"')
        if self.data_layout:
            lines.append(f'target datalayout = "{self.data_layout}"')
        if self.target_triple:
            lines.append(f'target triple = "{self.target_triple}"')
        lines.extend(self.extra_lines)
        if self.types:
            lines.append("")
            lines.extend(f"{quote_name(n, '%')} = type {body}" for n, body in self.types.items())
        if self.comdats:
            lines.append("")
            lines.extend(f"{quote_name(n, '$')} = comdat {kind}" for n, kind in self.comdats.items())
        if self.globals:
            lines.append("")
            lines.extend(g.to_line() for g in self.globals.values())
        for fn in self.functions.values():
            lines.append("")
            lines.extend(fn.to_lines())
        if self.attribute_groups:
            lines.append("")
            lines.extend(f"attributes #{n} = {body}" for n, body in sorted(self.attribute_groups.items()))
        if self.named_metadata or self.metadata:
            lines.append("")
            for name, ids in self.named_metadata.items():
                ops = ", ".join(f"!{i}" for i in ids)
                lines.append(f"!{name} = !{{{ops}}}")
            lines.extend(n.to_line() for _, n in sorted(self.metadata.items()))
        return "\n".join(lines) + "\n"
