"""Shared pytest fixtures for z-bitcode-bridge tests."""

import json
import shutil
from types import SimpleNamespace

import pytest

from z_bitcode_bridge.testing import FakeDisassembler, build_elf, encode_module

TRIPLE = "x86_64-unknown-linux-gnu"
DATALAYOUT = "e-m:e-p270:32:32-p271:32:32-p272:64:64-i64:64-i128:128-f80:128-n8:16:32:64-S128"

APP_LL = f"""; ModuleID = 'main.c'
source_filename = "main.c"
target datalayout = "{DATALAYOUT}"
target triple = "{TRIPLE}"

define dso_local i32 @main() #0 !dbg !10 {{
entry:
  call void @init(), !dbg !14
  ret i32 0, !dbg !15
}}

declare void @init() #1

attributes #0 = {{ noinline nounwind optnone uwtable }}
attributes #1 = {{ "frame-pointer"="all" }}

!llvm.dbg.cu = !{{!0}}
!llvm.module.flags = !{{!2, !3}}
!llvm.ident = !{{!4}}

!0 = distinct !DICompileUnit(language: DW_LANG_C11, file: !1, producer: "clang version 18.1.8", isOptimized: false, runtimeVersion: 0, emissionKind: FullDebug)
!1 = !DIFile(filename: "main.c", directory: "/src/app")
!2 = !{{i32 7, !"Dwarf Version", i32 5}}
!3 = !{{i32 2, !"Debug Info Version", i32 3}}
!4 = !{{!"clang version 18.1.8"}}
!10 = distinct !DISubprogram(name: "main", scope: !1, file: !1, line: 3, type: !11, scopeLine: 3, spFlags: DISPFlagDefinition, unit: !0, retainedNodes: !12)
!11 = !DISubroutineType(types: !12)
!12 = !{{}}
!14 = !DILocation(line: 4, column: 3, scope: !10)
!15 = !DILocation(line: 5, column: 3, scope: !10)
"""

BAR_LL = f"""; ModuleID = 'bar.c'
source_filename = "bar.c"
target datalayout = "{DATALAYOUT}"
target triple = "{TRIPLE}"

@.str = private unnamed_addr constant [8 x i8] c"verbose\\00", align 1

define dso_local void @init() #0 !dbg !10 {{
entry:
  call void @register_opt(ptr noundef @.str), !dbg !14
  ret void, !dbg !15
}}

declare void @register_opt(ptr noundef) #1

attributes #0 = {{ noinline nounwind optnone uwtable }}
attributes #1 = {{ "frame-pointer"="all" }}

!llvm.dbg.cu = !{{!0}}
!llvm.module.flags = !{{!2, !3}}
!llvm.ident = !{{!4}}

!0 = distinct !DICompileUnit(language: DW_LANG_C11, file: !1, producer: "clang version 18.1.8", isOptimized: false, runtimeVersion: 0, emissionKind: FullDebug)
!1 = !DIFile(filename: "bar.c", directory: "/src/libbar")
!2 = !{{i32 7, !"Dwarf Version", i32 5}}
!3 = !{{i32 2, !"Debug Info Version", i32 3}}
!4 = !{{!"clang version 18.1.8"}}
!10 = distinct !DISubprogram(name: "init", scope: !1, file: !1, line: 11, type: !11, scopeLine: 11, spFlags: DISPFlagDefinition, unit: !0, retainedNodes: !12)
!11 = !DISubroutineType(types: !12)
!12 = !{{}}
!14 = !DILocation(line: 12, column: 3, scope: !10)
!15 = !DILocation(line: 13, column: 1, scope: !10)
"""

FOO_LL = f"""; ModuleID = 'foo.c'
source_filename = "foo.c"
target datalayout = "{DATALAYOUT}"
target triple = "{TRIPLE}"

@counter = dso_local global i32 0, align 4

define dso_local void @register_opt(ptr noundef %name) #0 !dbg !10 {{
entry:
  %0 = load i32, ptr @counter, align 4, !dbg !14
  %inc = add nsw i32 %0, 1, !dbg !14
  store i32 %inc, ptr @counter, align 4, !dbg !14
  ret void, !dbg !15
}}

define dso_local void @legacy_setup() #0 !dbg !16 {{
entry:
  call void @register_opt(ptr noundef null), !dbg !17
  ret void, !dbg !18
}}

attributes #0 = {{ noinline nounwind optnone uwtable }}

!llvm.dbg.cu = !{{!0}}
!llvm.module.flags = !{{!2, !3}}
!llvm.ident = !{{!4}}

!0 = distinct !DICompileUnit(language: DW_LANG_C11, file: !1, producer: "clang version 18.1.8", isOptimized: false, runtimeVersion: 0, emissionKind: FullDebug)
!1 = !DIFile(filename: "foo.c", directory: "/src/libfoo")
!2 = !{{i32 7, !"Dwarf Version", i32 5}}
!3 = !{{i32 2, !"Debug Info Version", i32 3}}
!4 = !{{!"clang version 18.1.8"}}
!10 = distinct !DISubprogram(name: "register_opt", scope: !1, file: !1, line: 3, type: !11, scopeLine: 3, spFlags: DISPFlagDefinition, unit: !0, retainedNodes: !12)
!11 = !DISubroutineType(types: !12)
!12 = !{{}}
!14 = !DILocation(line: 4, column: 10, scope: !10)
!15 = !DILocation(line: 5, column: 1, scope: !10)
!16 = distinct !DISubprogram(name: "legacy_setup", scope: !1, file: !1, line: 7, type: !11, scopeLine: 7, spFlags: DISPFlagDefinition, unit: !0, retainedNodes: !12)
!17 = !DILocation(line: 8, column: 3, scope: !16)
!18 = !DILocation(line: 9, column: 1, scope: !16)
"""


@pytest.fixture
def app_ll():
    return APP_LL


@pytest.fixture
def bar_ll():
    return BAR_LL


@pytest.fixture
def foo_ll():
    return FOO_LL


@pytest.fixture
def sample_tree(tmp_path):
    """app -> libbar.so -> libfoo.so, each ELF carrying one embedded module.

    app:    main() calls init()
    libbar: init() calls register_opt()
    libfoo: register_opt(), plus legacy_setup() which nothing calls
    """
    bin_dir = tmp_path / "bin"
    lib_dir = tmp_path / "lib"
    bin_dir.mkdir()
    lib_dir.mkdir()

    modules = {
        "app": encode_module("app"),
        "bar": encode_module("bar"),
        "foo": encode_module("foo"),
    }
    dis = FakeDisassembler(
        {modules["app"]: APP_LL, modules["bar"]: BAR_LL, modules["foo"]: FOO_LL}
    )

    app = bin_dir / "app"
    app.write_bytes(
        build_elf(
            {".llvmbc": modules["app"]},
            needed=["libbar.so", "libc.so.6"],
            runpath="$ORIGIN/../lib",
        )
    )
    libbar = lib_dir / "libbar.so"
    libbar.write_bytes(
        build_elf({".llvmbc": modules["bar"]}, needed=["libfoo.so", "libc.so.6"], runpath="$ORIGIN")
    )
    libfoo = lib_dir / "libfoo.so"
    libfoo.write_bytes(build_elf({".llvmbc": modules["foo"]}, needed=["libc.so.6"]))

    compdb = tmp_path / "compile_commands.json"
    compdb.write_text(
        json.dumps(
            [
                {
                    "directory": "/src/app",
                    "file": "main.c",
                    "arguments": ["clang", "-c", "-g", "main.c", "-o", "main.o"],
                },
                {
                    "directory": "/src/libbar",
                    "file": "bar.c",
                    "arguments": ["clang", "-c", "-g", "-fPIC", "-DBAR=1", "bar.c", "-o", "bar.o"],
                },
                {
                    "directory": "/src/libfoo",
                    "file": "foo.c",
                    "command": "clang -c -g -fPIC -I include foo.c -o foo.o",
                },
            ]
        )
    )

    return SimpleNamespace(
        root=tmp_path,
        app=str(app),
        libbar=str(libbar),
        libfoo=str(libfoo),
        compdb=str(compdb),
        modules=modules,
        disassembler=dis,
    )


@pytest.fixture
def llvm_tools():
    """Skip unless the real LLVM command-line tools are on PATH."""
    from z_bitcode_bridge.toolchain import LLVM_DIS, LLVM_LINK, LLVMToolchain

    toolchain = LLVMToolchain()
    missing = toolchain.missing([LLVM_LINK, LLVM_DIS])
    if missing or shutil.which("clang") is None:
        pytest.skip(f"LLVM tools not available: {missing or ['clang']}")
    return toolchain
