"""Enumerate call sites of an optimized module with their source locations."""

from __future__ import annotations

import fnmatch
import logging
import os
from typing import Iterable, Iterator

from z_bitcode_bridge.diagnostics import MISSING_DEBUG_INFO, Diagnostic, DiagnosticsCollector
from z_bitcode_bridge.ir.debuginfo import DebugInfoResolver
from z_bitcode_bridge.models.callsite import CallSite
from z_bitcode_bridge.models.ir import IRModule
from z_bitcode_bridge.module import BitcodeModule

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


def callee_matcher(targets: Iterable[str]):
    """Predicate over callee names: exact names and fnmatch globs."""
    exact = {t for t in targets if not _GLOB_CHARS & set(t)}
    globs = [t for t in targets if _GLOB_CHARS & set(t)]

    def _match(callee: str | None) -> bool:
        if callee is None:
            return False
        return callee in exact or any(fnmatch.fnmatchcase(callee, g) for g in globs)

    return _match


class CallSiteScan:
    """Lazy, restartable sequence of call sites.

    Each iteration walks the module again: functions in module order, blocks
    in order, instructions in order. Call sites without a usable ``!dbg``
    get ``location=None`` and are reported once as ``missing-debug-info``.
    """

    def __init__(
        self,
        module: BitcodeModule | IRModule,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> None:
        self._module = module
        self.diagnostics = diagnostics
        self._resolver: DebugInfoResolver | None = None
        self._reported: set[tuple[str, int]] = set()

    def __iter__(self) -> Iterator[CallSite]:
        if isinstance(self._module, BitcodeModule):
            with self._module.owned("scan") as ir:
                yield from self._walk(ir)
        else:
            yield from self._walk(self._module)

    def _walk(self, ir: IRModule) -> Iterator[CallSite]:
        if self._resolver is None:
            self._resolver = DebugInfoResolver(ir)
        for fn in list(ir.functions.values()):
            if fn.is_declaration:
                continue
            index = 0
            for block in fn.blocks:
                for inst in block.instructions:
                    if inst.is_call:
                        location = self._resolver.resolve(inst.dbg)
                        site = CallSite(
                            caller=fn.name,
                            callee=inst.callee,
                            opcode=inst.opcode,
                            block=block.label,
                            index=index,
                            location=location,
                        )
                        if location is None:
                            self._report_missing(site, ir.identifier)
                        yield site
                    index += 1

    def _report_missing(self, site: CallSite, binary: str) -> None:
        key = (site.caller, site.index)
        if self.diagnostics is None or key in self._reported:
            return
        self._reported.add(key)
        self.diagnostics.report(
            Diagnostic(
                kind=MISSING_DEBUG_INFO,
                message=f"call in @{site.caller} (instruction {site.index}) has no debug location",
                severity="warning",
                binary=binary or None,
                symbol=site.caller,
                detail={"callee": site.callee, "block": site.block},
            )
        )

    # ── helpers ──

    def filter(self, targets: Iterable[str]) -> Iterator[CallSite]:
        """Call sites whose callee equals one of ``targets`` or matches a glob in it."""
        match = callee_matcher(list(targets))
        return (site for site in self if match(site.callee))

    def by_location(self) -> dict[tuple[str, int], list[CallSite]]:
        """Group located call sites by normalized ``(file, line)``."""
        table: dict[tuple[str, int], list[CallSite]] = {}
        for site in self:
            if site.location is not None:
                table.setdefault(site.location.key, []).append(site)
        return table

    def lookup(self, source_file: str, line: int) -> list[CallSite]:
        return self.by_location().get((os.path.normpath(source_file), line), [])


class CallSiteScanner:
    """Produces CallSiteScan views over modules."""

    def __init__(self, diagnostics: DiagnosticsCollector | None = None) -> None:
        self.diagnostics = diagnostics

    def scan(self, module: BitcodeModule | IRModule) -> CallSiteScan:
        return CallSiteScan(module, self.diagnostics)
