"""Transitive dependency resolution for root binaries."""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
from collections import deque

from z_bitcode_bridge.deps.oracle import DependencyOracle, ElfDynamicOracle
from z_bitcode_bridge.exceptions import CyclicDependencyError, UnresolvedDependencyError
from z_bitcode_bridge.models.binary import Binary

logger = logging.getLogger(__name__)

# libc, the loader and the compiler runtimes never carry embedded bitcode
DEFAULT_SYSTEM_LIBRARIES = (
    "libc.so*",
    "libm.so*",
    "libdl.so*",
    "librt.so*",
    "libpthread.so*",
    "ld-linux*.so*",
    "libgcc_s.so*",
    "libstdc++.so*",
    "libc++.so*",
    "libc++abi.so*",
    "linux-vdso.so*",
)


class DependencyResolver:
    """Ordered, cached transitive dependency lists.

    Args:
        oracle: Source of dynamic dependencies. Defaults to ElfDynamicOracle.
        search_paths: Directories searched after the binary's own runpath.
        static_link_order: Fixed static dependencies per binary, keyed by path
            or file name. They precede the binary's dynamic dependencies.
        system_libraries: fnmatch patterns of library names to ignore.
    """

    def __init__(
        self,
        oracle: DependencyOracle | None = None,
        search_paths: list[str] | None = None,
        static_link_order: dict[str, list[str]] | None = None,
        system_libraries: list[str] | tuple[str, ...] | None = None,
    ) -> None:
        self.oracle = oracle or ElfDynamicOracle()
        self.search_paths = list(search_paths or [])
        self.static_link_order = dict(static_link_order or {})
        self.system_libraries = tuple(
            DEFAULT_SYSTEM_LIBRARIES if system_libraries is None else system_libraries
        )
        self._lock = threading.Lock()
        self._cache: dict[str, list[Binary]] = {}
        self._direct: dict[str, list[Binary]] = {}

    def resolve(self, root: Binary | str) -> list[Binary]:
        """Dependencies of ``root`` in breadth-first loader order, root excluded.

        Raises:
            CyclicDependencyError: a dependency leads back to a binary on the
                current path.
            UnresolvedDependencyError: a needed name is not on any search path.
        """
        if isinstance(root, str):
            root = Binary.from_path(root)
        key = os.path.normpath(root.path)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return list(cached)
            self._check_cycles(root, [], set())
            order = self._breadth_first(root)
            self._cache[key] = order
        logger.info(
            "Resolved %d dependencies for %s: %s",
            len(order),
            root.path,
            [b.name for b in order],
        )
        return list(order)

    def _check_cycles(self, binary: Binary, path: list[str], done: set[str]) -> None:
        key = os.path.normpath(binary.path)
        if key in done:
            return
        if key in path:
            cycle = path[path.index(key) :] + [key]
            raise CyclicDependencyError(cycle)
        path.append(key)
        for dep in self._dependencies(binary):
            self._check_cycles(dep, path, done)
        path.pop()
        done.add(key)

    def _breadth_first(self, root: Binary) -> list[Binary]:
        root_key = os.path.normpath(root.path)
        seen = {root_key}
        order: list[Binary] = []
        queue = deque([root])
        while queue:
            current = queue.popleft()
            for dep in self._dependencies(current):
                key = os.path.normpath(dep.path)
                if key in seen:
                    continue
                seen.add(key)
                order.append(dep)
                queue.append(dep)
        return order

    def _dependencies(self, binary: Binary) -> list[Binary]:
        key = os.path.normpath(binary.path)
        if key in self._direct:
            return self._direct[key]

        runpath = self.oracle.search_paths(binary)
        deps: list[Binary] = []
        names = list(self._static_for(binary))
        names.extend(self.oracle.needed(binary))
        for name in names:
            if self._is_system(name):
                logger.debug("Skipping system library %s (needed by %s)", name, binary.name)
                continue
            path = self._locate(name, binary, runpath)
            if all(os.path.normpath(d.path) != os.path.normpath(path) for d in deps):
                deps.append(Binary.from_path(os.path.normpath(path)))
        self._direct[key] = deps
        return deps

    def _static_for(self, binary: Binary) -> list[str]:
        for key in (binary.path, os.path.normpath(binary.path), binary.name):
            if key in self.static_link_order:
                return self.static_link_order[key]
        return []

    def _is_system(self, name: str) -> bool:
        base = os.path.basename(name)
        return any(fnmatch.fnmatch(base, pat) for pat in self.system_libraries)

    def _locate(self, name: str, requester: Binary, runpath: list[str]) -> str:
        # explicit paths are taken as given, relative to the working directory like roots
        if os.sep in name:
            candidate = os.path.normpath(name)
            if os.path.isfile(candidate):
                return candidate
            raise UnresolvedDependencyError(name, requester.path, [os.path.dirname(candidate)])
        searched = [*runpath, *self.search_paths]
        for directory in searched:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                return candidate
        raise UnresolvedDependencyError(name, requester.path, searched)
