"""In-process linker working on parsed textual IR.

Merge rules, applied module by module in link order:

- target triple and data layout must agree
- metadata and attribute-group ids of the incoming module are shifted past
  the ones already present
- identical named struct types are unified, differing ones renamed ``name.N``
- colliding local symbols are renamed ``name.N``
- a declaration is replaced by a definition; weak/linkonce/common
  definitions yield to a strong one, the first wins among equals; two strong
  definitions are a DuplicateSymbolError
- appending globals are concatenated
- named metadata lists are merged; ``llvm.module.flags`` and ``llvm.ident``
  are de-duplicated by node text
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from z_bitcode_bridge.exceptions import DuplicateSymbolError, LinkError
from z_bitcode_bridge.ir.disassembler import Disassembler, load_module
from z_bitcode_bridge.ir.syntax import (
    OVERRIDABLE_LINKAGES,
    matching_paren,
    rename_globals,
    rename_types,
    shift_numbered,
    split_fields,
)
from z_bitcode_bridge.linking.base import LinkerBackend
from z_bitcode_bridge.models.binary import ModuleBuffer
from z_bitcode_bridge.models.ir import Function, GlobalValue, IRModule, MetadataNode

logger = logging.getLogger(__name__)

_DEDUP_NAMED_METADATA = frozenset({"llvm.module.flags", "llvm.ident"})
_ARRAY_TYPE_RE = re.compile(r"\[\s*(\d+)\s+x\s+")


def _fresh(name: str, taken: set[str]) -> str:
    n = 1
    while f"{name}.{n}" in taken:
        n += 1
    fresh = f"{name}.{n}"
    taken.add(fresh)
    return fresh


def rewrite_module(module: IRModule, transform: Callable[[str], str]) -> None:
    """Apply a text transform to every entity that can reference symbols or ids."""
    for fn in module.functions.values():
        fn.header = transform(fn.header)
        for inst in fn.iter_instructions():
            inst.text = transform(inst.text)
    for gv in module.globals.values():
        gv.segment = transform(gv.segment)
    for node in module.metadata.values():
        node.text = transform(node.text)
    module.types = {name: transform(body) for name, body in module.types.items()}


def rename_symbols(module: IRModule, mapping: dict[str, str]) -> None:
    """Rename globals/functions in ``module`` and every reference to them."""
    if not mapping:
        return
    rewrite_module(module, lambda text: rename_globals(text, mapping))
    functions: dict[str, Function] = {}
    for name, fn in module.functions.items():
        fn.name = mapping.get(name, name)
        functions[fn.name] = fn
    module.functions = functions
    globals_: dict[str, GlobalValue] = {}
    for name, gv in module.globals.items():
        gv.name = mapping.get(name, name)
        globals_[gv.name] = gv
    module.globals = globals_


class ModuleMerger:
    """Accumulates modules into one destination module."""

    def __init__(self, identifier: str = "") -> None:
        self.dest = IRModule(identifier=identifier)
        self._definer: dict[str, str] = {}  # symbol -> module that supplied its definition
        self._merged = 0

    def merge(self, src: IRModule) -> None:
        dest = self.dest
        self._check_target(src)
        if self._merged == 0:
            dest.source_filename = src.source_filename

        md_offset = dest.max_metadata_id() + 1
        attr_offset = dest.max_attribute_group() + 1
        if md_offset or attr_offset:
            rewrite_module(src, lambda text: shift_numbered(text, md_offset, attr_offset))

        self._unify_types(src)
        self._rename_locals(src)

        for gv in list(src.globals.values()):
            self._merge_symbol(gv, src.identifier)
        for fn in list(src.functions.values()):
            self._merge_symbol(fn, src.identifier)

        for name, kind in src.comdats.items():
            dest.comdats.setdefault(name, kind)
        for num, body in src.attribute_groups.items():
            dest.attribute_groups[num + attr_offset] = body
        for num, node in src.metadata.items():
            dest.metadata[num + md_offset] = MetadataNode(id=num + md_offset, text=node.text)
        self._merge_named_metadata(src, md_offset)
        for line in src.extra_lines:
            if line not in dest.extra_lines:
                dest.extra_lines.append(line)
        self._merged += 1

    # ── steps ──

    def _check_target(self, src: IRModule) -> None:
        dest = self.dest
        if src.target_triple:
            if dest.target_triple and dest.target_triple != src.target_triple:
                raise LinkError(
                    f"target triple mismatch: '{dest.target_triple}' vs "
                    f"'{src.target_triple}' ({src.identifier})"
                )
            dest.target_triple = src.target_triple
        if src.data_layout:
            if dest.data_layout and dest.data_layout != src.data_layout:
                raise LinkError(
                    f"data layout mismatch: '{dest.data_layout}' vs "
                    f"'{src.data_layout}' ({src.identifier})"
                )
            dest.data_layout = src.data_layout

    def _unify_types(self, src: IRModule) -> None:
        taken = set(self.dest.types) | set(src.types)
        mapping: dict[str, str] = {}
        for name, body in src.types.items():
            existing = self.dest.types.get(name)
            if existing is None:
                continue
            if existing == rename_types(body, mapping):
                continue
            mapping[name] = _fresh(name, taken)
        if mapping:
            logger.debug("Renaming types of %s: %s", src.identifier, mapping)
            rewrite_module(src, lambda text: rename_types(text, mapping))
            src.types = {mapping.get(n, n): body for n, body in src.types.items()}
        for name, body in src.types.items():
            self.dest.types.setdefault(name, body)

    def _rename_locals(self, src: IRModule) -> None:
        dest = self.dest
        taken = dest.symbol_names() | src.symbol_names()
        src_mapping: dict[str, str] = {}
        dest_mapping: dict[str, str] = {}
        for name in src.symbol_names() & dest.symbol_names():
            incoming = src.symbol(name)
            present = dest.symbol(name)
            if incoming.is_local:
                src_mapping[name] = _fresh(name, taken)
            elif present.is_local:
                dest_mapping[name] = _fresh(name, taken)
        if dest_mapping:
            logger.debug("Renaming local symbols already linked: %s", dest_mapping)
            rename_symbols(dest, dest_mapping)
            for old, new in dest_mapping.items():
                if old in self._definer:
                    self._definer[new] = self._definer.pop(old)
        if src_mapping:
            logger.debug("Renaming local symbols of %s: %s", src.identifier, src_mapping)
            rename_symbols(src, src_mapping)

    def _merge_symbol(self, sym: Function | GlobalValue, origin: str) -> None:
        dest = self.dest
        existing = dest.symbol(sym.name)
        if existing is None:
            self._put(sym)
            if not sym.is_declaration:
                self._definer[sym.name] = origin
            return
        if sym.is_declaration:
            return
        if existing.is_declaration:
            self._replace(existing, sym)
            self._definer[sym.name] = origin
            return

        if isinstance(existing, GlobalValue) and isinstance(sym, GlobalValue):
            if existing.linkage == "appending" and sym.linkage == "appending":
                existing.segment = _concat_appending(existing.segment, sym.segment, sym.name)
                return

        existing_weak = existing.linkage in OVERRIDABLE_LINKAGES
        incoming_weak = sym.linkage in OVERRIDABLE_LINKAGES
        if existing_weak and not incoming_weak:
            self._replace(existing, sym)
            self._definer[sym.name] = origin
        elif incoming_weak:
            return
        else:
            raise DuplicateSymbolError(
                sym.name, self._definer.get(sym.name, "<unknown>"), origin
            )

    def _put(self, sym: Function | GlobalValue) -> None:
        if isinstance(sym, Function):
            self.dest.functions[sym.name] = sym
        else:
            self.dest.globals[sym.name] = sym

    def _replace(self, existing: Function | GlobalValue, sym: Function | GlobalValue) -> None:
        if type(existing) is not type(sym):
            self.dest.remove_symbol(existing.name)
        self._put(sym)

    def _merge_named_metadata(self, src: IRModule, md_offset: int) -> None:
        dest = self.dest
        for name, ids in src.named_metadata.items():
            shifted = [i + md_offset for i in ids]
            target = dest.named_metadata.setdefault(name, [])
            if name in _DEDUP_NAMED_METADATA:
                seen = {dest.metadata[i].text for i in target if i in dest.metadata}
                for i in shifted:
                    node = dest.metadata.get(i)
                    if node is not None and node.text in seen:
                        continue
                    if node is not None:
                        seen.add(node.text)
                    target.append(i)
            else:
                target.extend(shifted)


def _concat_appending(first: str, second: str, name: str) -> str:
    """Concatenate two ``appending global [N x T] [...]`` initializers."""
    a = _split_array(first, name)
    b = _split_array(second, name)
    prefix, count_a, elem_type, elems_a, suffix = a
    _, count_b, _, elems_b, _ = b
    elems = ", ".join(elems_a + elems_b)
    return f"{prefix}[{count_a + count_b} x {elem_type}] [{elems}]{suffix}"


def _split_array(segment: str, name: str) -> tuple[str, int, str, list[str], str]:
    m = _ARRAY_TYPE_RE.search(segment)
    if not m:
        raise LinkError(f"appending global @{name} is not an array: {segment[:120]}")
    type_end = matching_paren(segment, m.start())
    init_start = segment.find("[", type_end + 1)
    init_end = matching_paren(segment, init_start) if init_start >= 0 else -1
    if type_end < 0 or init_end < 0:
        raise LinkError(f"cannot parse initializer of appending global @{name}")
    elem_type = segment[m.end() : type_end].strip()
    elems = split_fields(segment[init_start + 1 : init_end])
    return segment[: m.start()], int(m.group(1)), elem_type, elems, segment[init_end + 1 :]


class TextualLinker(LinkerBackend):
    """Links modules in-process after disassembling each buffer."""

    def __init__(self, disassembler: Disassembler) -> None:
        self.disassembler = disassembler

    @property
    def name(self) -> str:
        return "textual"

    def link(self, buffers: list[ModuleBuffer]) -> IRModule:
        merger = ModuleMerger()
        for buf in buffers:
            module = load_module(buf, self.disassembler)
            try:
                merger.merge(module)
            except LinkError as e:
                if e.binary is None:
                    e.binary = buf.origin or None
                raise
        logger.info(
            "Linked %d modules in-process: %d functions, %d globals",
            len(buffers),
            len(merger.dest.functions),
            len(merger.dest.globals),
        )
        return merger.dest

    def get_descriptor(self):
        from z_bitcode_bridge.linking.registry import create_default_registry

        return create_default_registry().get(self.name)

    def check_prerequisites(self) -> list[str]:
        return self.disassembler.check_prerequisites()
