"""Integration test against real clang / LLVM tools (skipped when absent)."""

from __future__ import annotations

import subprocess

import pytest

from z_bitcode_bridge.extraction.sections import SectionExtractor
from z_bitcode_bridge.extraction.splitter import ModuleSplitter
from z_bitcode_bridge.ir.disassembler import LlvmDisassembler
from z_bitcode_bridge.linking.linker import BitcodeLinker
from z_bitcode_bridge.optimize.optimizer import Optimizer
from z_bitcode_bridge.scanner import CallSiteScanner

pytestmark = pytest.mark.llvm

MAIN_C = """\
void init(void);
int main(void) {
  init();
  return 0;
}
"""

INIT_C = """\
static int counter;
void register_opt(const char *name) { counter++; }
void unused(void) { register_opt("never"); }
void init(void) {
  register_opt("verbose");
}
"""


def _compile(tmp_path, name, source):
    src = tmp_path / f"{name}.c"
    src.write_text(source)
    obj = tmp_path / f"{name}.o"
    subprocess.run(
        ["clang", "-c", "-g", "-O0", "-fembed-bitcode=all", str(src), "-o", str(obj)],
        check=True,
        capture_output=True,
    )
    return str(obj)


class TestRealToolchain:
    def test_link_optimize_scan(self, tmp_path, llvm_tools):
        objects = [_compile(tmp_path, "main", MAIN_C), _compile(tmp_path, "init", INIT_C)]
        extractor = SectionExtractor(llvm_tools)
        splitter = ModuleSplitter()
        buffers = [
            buf
            for obj in objects
            for section in extractor.extract(obj)
            for buf in splitter.split(section.data, origin=section.origin)
        ]
        assert len(buffers) == 2

        for backend in ("llvm-link", "textual"):
            linker = BitcodeLinker(
                backend=backend, toolchain=llvm_tools, disassembler=LlvmDisassembler(llvm_tools)
            )
            module = linker.link(buffers, identifier="app")
            Optimizer().run(module, frozenset({"main"}))
            sites = list(CallSiteScanner().scan(module).filter(["register_opt"]))
            assert [s.caller for s in sites] == ["init"], backend
            assert sites[0].location.source_file == str(tmp_path / "init.c")
            assert sites[0].location.line == 5
            module.close()
