"""Tests for CallSiteScanner."""

from __future__ import annotations

import pytest

from z_bitcode_bridge.diagnostics import MISSING_DEBUG_INFO, DiagnosticsCollector
from z_bitcode_bridge.exceptions import StaleModuleError
from z_bitcode_bridge.ir.parser import parse_module
from z_bitcode_bridge.module import BitcodeModule
from z_bitcode_bridge.scanner import CallSiteScanner, callee_matcher

MIXED_LL = """\
define void @driver(ptr %fp) !dbg !3 {
entry:
  call void @alpha(), !dbg !5
  %c = icmp eq ptr %fp, null
  br i1 %c, label %skip, label %go
go:
  call void %fp()
  call void @alpha_extra(), !dbg !6
  br label %skip
skip:
  tail call void @beta()
  ret void
}

declare void @alpha()
declare void @alpha_extra()
declare void @beta()

!0 = !DIFile(filename: "driver.c", directory: "/src")
!1 = distinct !DICompileUnit(language: DW_LANG_C99, file: !0, emissionKind: FullDebug)
!3 = distinct !DISubprogram(name: "driver", scope: !0, file: !0, line: 1, unit: !1)
!5 = !DILocation(line: 3, column: 3, scope: !3)
!6 = !DILocation(line: 7, column: 5, scope: !3)
"""


class TestCallSiteScanner:
    def test_enumeration_order_and_indices(self):
        sites = list(CallSiteScanner().scan(parse_module(MIXED_LL)))
        assert [(s.callee, s.block, s.index) for s in sites] == [
            ("alpha", "entry", 0),
            (None, "go", 3),
            ("alpha_extra", "go", 4),
            ("beta", "skip", 6),
        ]
        assert all(s.caller == "driver" for s in sites)
        assert sites[1].is_indirect
        assert sites[3].opcode == "call"

    def test_locations(self):
        sites = list(CallSiteScanner().scan(parse_module(MIXED_LL)))
        assert sites[0].location.key == ("/src/driver.c", 3)
        assert sites[0].location.column == 3
        assert sites[2].location.line == 7
        assert sites[1].location is None

    def test_missing_debug_info_reported_once(self):
        diagnostics = DiagnosticsCollector()
        scan = CallSiteScanner(diagnostics).scan(parse_module(MIXED_LL, identifier="drv"))
        list(scan)
        list(scan)
        missing = diagnostics.by_kind(MISSING_DEBUG_INFO)
        assert len(missing) == 2
        assert {d.detail["callee"] for d in missing} == {None, "beta"}
        assert all(d.binary == "drv" and d.symbol == "driver" for d in missing)

    def test_restartable(self, foo_ll):
        scan = CallSiteScanner().scan(parse_module(foo_ll))
        assert list(scan) == list(scan)
        assert [s.caller for s in scan] == ["legacy_setup"]

    def test_lazy(self):
        it = iter(CallSiteScanner().scan(parse_module(MIXED_LL)))
        assert next(it).callee == "alpha"

    def test_filter_exact_and_glob(self):
        scan = CallSiteScanner().scan(parse_module(MIXED_LL))
        assert [s.callee for s in scan.filter(["beta"])] == ["beta"]
        assert [s.callee for s in scan.filter(["alpha*"])] == ["alpha", "alpha_extra"]
        assert list(scan.filter(["gamma"])) == []

    def test_by_location_and_lookup(self):
        scan = CallSiteScanner().scan(parse_module(MIXED_LL))
        table = scan.by_location()
        assert set(table) == {("/src/driver.c", 3), ("/src/driver.c", 7)}
        (site,) = scan.lookup("/src/./driver.c", 7)
        assert site.callee == "alpha_extra"
        assert scan.lookup("/src/driver.c", 99) == []

    def test_bitcode_module_handle(self, bar_ll):
        module = BitcodeModule(parse_module(bar_ll, identifier="libbar"))
        sites = list(CallSiteScanner().scan(module))
        assert [(s.caller, s.callee) for s in sites] == [("init", "register_opt")]
        assert sites[0].location.key == ("/src/libbar/bar.c", 12)
        assert module.owner is None

    def test_nested_walks_of_one_handle(self, foo_ll):
        module = BitcodeModule(parse_module(foo_ll, identifier="libfoo"))
        scan = CallSiteScanner().scan(module)
        seen = []
        for site in scan:
            seen.append((site.caller, [s.caller for s in scan.lookup("/src/libfoo/foo.c", 8)]))
            assert module.owner == "scan"
        assert seen == [("legacy_setup", ["legacy_setup"])]
        assert module.owner is None
        assert [(a.index, b.index) for a, b in zip(scan, scan)] == [(0, 0)]

    def test_closed_handle(self, bar_ll):
        module = BitcodeModule(parse_module(bar_ll))
        module.close()
        with pytest.raises(StaleModuleError):
            list(CallSiteScanner().scan(module))


class TestCalleeMatcher:
    def test_matching(self):
        match = callee_matcher(["exact", "pre_*", "x?"])
        assert match("exact")
        assert match("pre_fix")
        assert match("xy")
        assert not match("exactly")
        assert not match("xyz")
        assert not match(None)
