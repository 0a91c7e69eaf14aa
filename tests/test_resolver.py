"""Tests for DependencyResolver and the ELF dynamic-section oracle."""

from __future__ import annotations

import os
import threading
import time

import pytest

from z_bitcode_bridge.deps.oracle import ElfDynamicOracle
from z_bitcode_bridge.deps.resolver import DependencyResolver
from z_bitcode_bridge.exceptions import CyclicDependencyError, UnresolvedDependencyError
from z_bitcode_bridge.models.binary import Binary
from z_bitcode_bridge.testing import FakeDependencyOracle, build_elf


def _touch(directory, *names):
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(build_elf())
    return str(directory)


class TestDependencyResolver:
    def test_breadth_first_order(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so", "libB.so", "libC.so", "libD.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={
                "app": ["libA.so", "libB.so"],
                "libA.so": ["libC.so"],
                "libB.so": ["libD.so", "libC.so"],
            }
        )
        order = DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert [b.name for b in order] == ["libA.so", "libB.so", "libC.so", "libD.so"]

    def test_root_is_excluded(self, tmp_path):
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        assert DependencyResolver(FakeDependencyOracle()).resolve(str(app)) == []

    def test_static_deps_precede_dynamic(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libdyn.so", "libutil.a", "libcore.a")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libdyn.so"]})
        resolver = DependencyResolver(
            oracle,
            search_paths=[lib],
            static_link_order={"app": ["libutil.a", "libcore.a"]},
        )
        assert [b.name for b in resolver.resolve(str(app))] == ["libutil.a", "libcore.a", "libdyn.so"]

    def test_static_order_keyed_by_path(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libutil.a")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        resolver = DependencyResolver(
            FakeDependencyOracle(),
            static_link_order={str(app): [os.path.join(lib, "libutil.a")]},
        )
        assert [b.name for b in resolver.resolve(str(app))] == ["libutil.a"]

    def test_relative_static_path_from_working_directory(self, tmp_path, monkeypatch):
        _touch(tmp_path / "build" / "lib", "libutil.a")
        _touch(tmp_path / "build" / "bin", "app")
        monkeypatch.chdir(tmp_path)
        resolver = DependencyResolver(
            FakeDependencyOracle(),
            static_link_order={"app": ["./build/lib/libutil.a"]},
        )
        (dep,) = resolver.resolve("./build/bin/app")
        assert dep.path == os.path.join("build", "lib", "libutil.a")

    def test_missing_static_path(self, tmp_path, monkeypatch):
        _touch(tmp_path / "bin", "app")
        monkeypatch.chdir(tmp_path)
        resolver = DependencyResolver(
            FakeDependencyOracle(), static_link_order={"app": ["./lib/libutil.a"]}
        )
        with pytest.raises(UnresolvedDependencyError) as exc:
            resolver.resolve("bin/app")
        assert exc.value.searched == ["lib"]

    def test_system_libraries_skipped(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libfoo.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={"app": ["libc.so.6", "libfoo.so", "ld-linux-x86-64.so.2", "libstdc++.so.6"]}
        )
        order = DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert [b.name for b in order] == ["libfoo.so"]

    def test_custom_system_library_list(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libfoo.so", "libz.so.1")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libz.so.1", "libfoo.so"]})
        resolver = DependencyResolver(oracle, search_paths=[lib], system_libraries=["libz.so*"])
        assert [b.name for b in resolver.resolve(str(app))] == ["libfoo.so"]

    def test_cycle(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so", "libB.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={"app": ["libA.so"], "libA.so": ["libB.so"], "libB.so": ["libA.so"]}
        )
        resolver = DependencyResolver(oracle, search_paths=[lib])
        with pytest.raises(CyclicDependencyError) as exc:
            resolver.resolve(str(app))
        names = [os.path.basename(p) for p in exc.value.cycle]
        assert names == ["libA.so", "libB.so", "libA.so"]
        assert resolver._cache == {}

    def test_diamond_is_not_a_cycle(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so", "libB.so", "libC.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={"app": ["libA.so", "libB.so"], "libA.so": ["libC.so"], "libB.so": ["libC.so"]}
        )
        order = DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert [b.name for b in order] == ["libA.so", "libB.so", "libC.so"]

    def test_layered_diamonds_resolve_quickly(self, tmp_path):
        layers = 24
        names = [[f"libL{i}a.so", f"libL{i}b.so"] for i in range(layers)]
        lib = _touch(tmp_path / "lib", *[n for layer in names for n in layer])
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        needed = {"app": names[0]}
        for upper, lower in zip(names, names[1:]):
            for name in upper:
                needed[name] = list(lower)
        oracle = FakeDependencyOracle(needed=needed)
        started = time.monotonic()
        order = DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert time.monotonic() - started < 2.0
        assert len(order) == 2 * layers
        assert [b.name for b in order[:4]] == ["libL0a.so", "libL0b.so", "libL1a.so", "libL1b.so"]

    def test_cycle_below_shared_dependency(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so", "libB.so", "libC.so", "libD.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={
                "app": ["libA.so", "libB.so"],
                "libA.so": ["libC.so"],
                "libB.so": ["libC.so"],
                "libC.so": ["libD.so"],
                "libD.so": ["libC.so"],
            }
        )
        with pytest.raises(CyclicDependencyError) as exc:
            DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert [os.path.basename(p) for p in exc.value.cycle] == ["libC.so", "libD.so", "libC.so"]

    def test_unresolved(self, tmp_path):
        lib = _touch(tmp_path / "lib")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libmissing.so"]})
        with pytest.raises(UnresolvedDependencyError) as exc:
            DependencyResolver(oracle, search_paths=[lib]).resolve(str(app))
        assert exc.value.name == "libmissing.so"
        assert exc.value.requester == str(app)
        assert exc.value.searched == [lib]

    def test_runpath_searched_before_search_paths(self, tmp_path):
        first = _touch(tmp_path / "first", "libfoo.so")
        second = _touch(tmp_path / "second", "libfoo.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libfoo.so"]}, search_paths={"app": [first]})
        (dep,) = DependencyResolver(oracle, search_paths=[second]).resolve(str(app))
        assert os.path.dirname(dep.path) == first

    def test_results_are_cached(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libA.so"]})
        resolver = DependencyResolver(oracle, search_paths=[lib])
        first = resolver.resolve(str(app))
        queries = len(oracle.queries)
        second = resolver.resolve(Binary.from_path(app))
        assert first == second
        assert len(oracle.queries) == queries

    def test_concurrent_resolution(self, tmp_path):
        lib = _touch(tmp_path / "lib", "libA.so", "libB.so")
        app = tmp_path / "app"
        app.write_bytes(build_elf())
        oracle = FakeDependencyOracle(needed={"app": ["libA.so"], "libA.so": ["libB.so"]})
        resolver = DependencyResolver(oracle, search_paths=[lib])
        results = []

        def worker():
            results.append([b.name for b in resolver.resolve(str(app))])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results == [["libA.so", "libB.so"]] * 8


class TestElfDynamicOracle:
    def test_needed_in_order(self, tmp_path):
        p = tmp_path / "app"
        p.write_bytes(build_elf(needed=["libfoo.so", "libbar.so.1"]))
        oracle = ElfDynamicOracle()
        assert oracle.needed(Binary.from_path(p)) == ["libfoo.so", "libbar.so.1"]

    def test_runpath_with_origin(self, tmp_path):
        p = tmp_path / "bin" / "app"
        p.parent.mkdir()
        p.write_bytes(build_elf(needed=["libx.so"], runpath="$ORIGIN/../lib:${ORIGIN}:/opt/lib"))
        paths = ElfDynamicOracle().search_paths(Binary.from_path(p))
        origin = str(p.parent)
        assert paths == [f"{origin}/../lib", origin, "/opt/lib"]

    def test_runpath_preferred_over_rpath(self, tmp_path):
        p = tmp_path / "app"
        p.write_bytes(build_elf(needed=["libx.so"], runpath="/run", rpath="/rpath"))
        assert ElfDynamicOracle().search_paths(Binary.from_path(p)) == ["/run"]

    def test_rpath_fallback(self, tmp_path):
        p = tmp_path / "app"
        p.write_bytes(build_elf(needed=["libx.so"], rpath="/legacy"))
        assert ElfDynamicOracle().search_paths(Binary.from_path(p)) == ["/legacy"]

    def test_static_binary(self, tmp_path):
        p = tmp_path / "static"
        p.write_bytes(build_elf({".text": b"\xc3"}))
        oracle = ElfDynamicOracle()
        binary = Binary.from_path(p)
        assert oracle.needed(binary) == []
        assert oracle.search_paths(binary) == []

    def test_non_elf_has_no_dependencies(self, tmp_path):
        p = tmp_path / "foo.bc"
        p.write_bytes(b"BC\xc0\xde" + b"\0" * 8)
        assert ElfDynamicOracle().needed(Binary.from_path(p)) == []

    def test_resolver_with_real_oracle(self, tmp_path):
        lib = tmp_path / "lib"
        lib.mkdir()
        (lib / "libfoo.so").write_bytes(build_elf(needed=["libc.so.6"]))
        (lib / "libbar.so").write_bytes(build_elf(needed=["libfoo.so"], runpath="$ORIGIN"))
        app = tmp_path / "bin" / "app"
        app.parent.mkdir()
        app.write_bytes(build_elf(needed=["libbar.so", "libc.so.6"], runpath="$ORIGIN/../lib"))
        order = DependencyResolver().resolve(str(app))
        assert [b.name for b in order] == ["libbar.so", "libfoo.so"]
