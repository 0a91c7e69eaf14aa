"""Module passes run by the Optimizer.

Each pass mutates an IRModule in place and returns how many entities it
changed. Passes never consult anything but the module and the preserve list.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from z_bitcode_bridge.exceptions import OptimizationFailedError
from z_bitcode_bridge.ir.syntax import DISCARDABLE_LINKAGES
from z_bitcode_bridge.models.ir import IRModule

logger = logging.getLogger(__name__)

PreserveList = frozenset  # frozenset[str] of symbol names


def is_reserved(name: str) -> bool:
    """``llvm.*`` names (intrinsics, ctor lists, llvm.used) are never internalized."""
    return name.startswith("llvm.")


class ModulePass(ABC):
    name: str = ""

    @abstractmethod
    def run(self, ir: IRModule, preserve: frozenset[str]) -> int:
        ...


class InternalizePass(ModulePass):
    """Give internal linkage to every exported definition outside the preserve list."""

    name = "internalize"

    def run(self, ir: IRModule, preserve: frozenset[str]) -> int:
        changed = 0
        for sym in ir.definitions():
            if sym.is_local or sym.name in preserve or is_reserved(sym.name):
                continue
            if sym.linkage in ("available_externally", "appending"):
                continue
            sym.set_linkage("internal")
            changed += 1
        logger.debug("internalize: %d symbols internalized, %d preserved", changed, len(preserve))
        return changed


class GlobalDCEPass(ModulePass):
    """Remove functions, variables and aliases unreachable from the live roots.

    Roots are non-local definitions (except discardable linkages), preserved
    names, and everything ``llvm.*`` (llvm.used, llvm.compiler.used,
    constructor/destructor lists). A live comdat member keeps its whole
    comdat alive. Unused declarations and comdats are dropped as well.
    """

    name = "globaldce"

    def run(self, ir: IRModule, preserve: frozenset[str]) -> int:
        names = ir.symbol_names()
        comdat_members: dict[str, list[str]] = {}
        for name in names:
            sym = ir.symbol(name)
            if sym.comdat:
                comdat_members.setdefault(sym.comdat, []).append(name)

        worklist = [
            sym.name
            for sym in ir.definitions()
            if sym.name in preserve
            or is_reserved(sym.name)
            or (not sym.is_local and sym.linkage not in DISCARDABLE_LINKAGES)
        ]
        worklist.extend(n for n in preserve if n in names)
        live: set[str] = set()
        while worklist:
            name = worklist.pop()
            if name in live:
                continue
            live.add(name)
            sym = ir.symbol(name)
            if sym is None:
                continue
            worklist.extend(r for r in sym.references() if r in names and r not in live)
            if sym.comdat:
                worklist.extend(m for m in comdat_members.get(sym.comdat, []) if m not in live)

        dead = names - live
        for name in dead:
            ir.remove_symbol(name)
        used_comdats = {s.comdat for s in (ir.symbol(n) for n in ir.symbol_names()) if s.comdat}
        for comdat in list(ir.comdats):
            if comdat not in used_comdats:
                del ir.comdats[comdat]
        logger.debug("globaldce: removed %d of %d symbols", len(dead), len(names))
        return len(dead)


class StripDeadPrototypesPass(ModulePass):
    """Drop function declarations nothing refers to."""

    name = "strip-dead-prototypes"

    def run(self, ir: IRModule, preserve: frozenset[str]) -> int:
        referenced: set[str] = set()
        for name in ir.symbol_names():
            referenced |= ir.references_of(name)
        dead = [
            fn.name
            for fn in ir.functions.values()
            if fn.is_declaration and fn.name not in referenced and fn.name not in preserve
        ]
        for name in dead:
            del ir.functions[name]
        logger.debug("strip-dead-prototypes: removed %d declarations", len(dead))
        return len(dead)


class VerifyPass(ModulePass):
    """Every referenced global and debug attachment must resolve."""

    name = "verify"

    def run(self, ir: IRModule, preserve: frozenset[str]) -> int:
        names = ir.symbol_names()
        problems: list[str] = []
        for name in sorted(names):
            missing = ir.references_of(name) - names
            if missing:
                problems.append(f"@{name} references undefined {sorted(missing)}")
        if ir.metadata:
            for fn in ir.functions.values():
                for inst in fn.iter_instructions():
                    dbg = inst.dbg
                    if dbg is not None and dbg not in ir.metadata:
                        problems.append(f"@{fn.name} has a !dbg !{dbg} with no node")
                        break
        if problems:
            raise OptimizationFailedError(
                "; ".join(problems[:10]) + (" ..." if len(problems) > 10 else ""),
                pass_name=self.name,
            )
        return 0


PASS_REGISTRY: dict[str, type[ModulePass]] = {
    p.name: p for p in (InternalizePass, GlobalDCEPass, StripDeadPrototypesPass, VerifyPass)
}
