"""Bridge orchestrator: per-root pipeline from binaries to AST queries.

For every root binary:

    deps      DependencyResolver.resolve()
    extract   SectionExtractor.extract() + ModuleSplitter.split(), per binary,
              in parallel, cached by path for the whole run
    link      BitcodeLinker.link()        (root first, then loader order)
    optimize  Optimizer.run()
    scan      CallSiteScanner.scan()       (filtered by the target callees)
    bridge    ASTBridge.stream()

Run-scoped errors abort the run. Binary-scoped errors, and toolchain or
handle failures met while processing a root, abort that root only: they are
recorded as diagnostics and the other roots continue.
"""

from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from z_bitcode_bridge.bridge import ASTBridge
from z_bitcode_bridge.compdb import CompilationDatabaseIndex
from z_bitcode_bridge.config import WorkOrder
from z_bitcode_bridge.deps.oracle import DependencyOracle
from z_bitcode_bridge.deps.resolver import DependencyResolver
from z_bitcode_bridge.diagnostics import Diagnostic, DiagnosticsCollector
from z_bitcode_bridge.exceptions import (
    BinaryScopedError,
    RunScopedError,
    SectionNotFoundError,
    StaleModuleError,
    ToolchainError,
)
from z_bitcode_bridge.extraction.sections import SectionExtractor
from z_bitcode_bridge.extraction.splitter import ModuleSplitter, create_validator
from z_bitcode_bridge.ir.disassembler import Disassembler, LlvmDisassembler
from z_bitcode_bridge.linking.base import LinkerBackend
from z_bitcode_bridge.linking.linker import BitcodeLinker
from z_bitcode_bridge.logging.base import LogStore
from z_bitcode_bridge.models.binary import Binary, ModuleBuffer
from z_bitcode_bridge.models.callsite import AstQuery
from z_bitcode_bridge.optimize.optimizer import Optimizer
from z_bitcode_bridge.progress import PhaseProgress, ProgressTracker
from z_bitcode_bridge.scanner import CallSiteScanner
from z_bitcode_bridge.toolchain import LLVMToolchain

log = structlog.get_logger("z_bitcode_bridge.pipeline")


@dataclass
class RootOutcome:
    root: str
    status: str = "pending"  # "completed" | "failed"
    binaries: list[str] = field(default_factory=list)
    module_count: int = 0
    call_sites: int = 0
    queries: list[AstQuery] = field(default_factory=list)
    error: str | None = None


@dataclass
class RunResult:
    """Orchestrator return value."""

    run_id: str
    outcomes: list[RootOutcome]
    diagnostics: list[Diagnostic]

    @property
    def queries(self) -> list[AstQuery]:
        return [q for o in self.outcomes for q in o.queries]

    @property
    def failed_roots(self) -> list[str]:
        return [o.root for o in self.outcomes if o.status == "failed"]


class BridgeOrchestrator:
    """Run a WorkOrder end to end.

    Collaborators default to the real implementations; tests inject a fake
    oracle, disassembler or linker backend.
    """

    def __init__(
        self,
        work: WorkOrder,
        toolchain: LLVMToolchain | None = None,
        oracle: DependencyOracle | None = None,
        disassembler: Disassembler | None = None,
        linker_backend: LinkerBackend | None = None,
        log_store: LogStore | None = None,
    ) -> None:
        self.work = work
        self.toolchain = toolchain or work.toolchain()
        self.disassembler = disassembler or LlvmDisassembler(self.toolchain)
        self.extractor = SectionExtractor(self.toolchain)
        self.splitter = ModuleSplitter(create_validator(work.validator, self.toolchain))
        self.resolver = DependencyResolver(
            oracle=oracle,
            search_paths=work.search_paths,
            static_link_order=work.static_link_order,
            system_libraries=work.system_libraries,
        )
        self.linker = BitcodeLinker(
            backend=linker_backend or work.linker,
            toolchain=self.toolchain,
            disassembler=self.disassembler,
        )
        # PipelineConfigError surfaces here, before any work is done
        self.optimizer = Optimizer(work.passes)
        self.log_store = log_store
        self.progress = ProgressTracker()
        self.diagnostics = DiagnosticsCollector()
        self._run_id = ""
        self._cache: dict[str, list[ModuleBuffer]] = {}
        self._cache_lock = threading.Lock()

    def _log_phase_callback(self, phase: PhaseProgress) -> None:
        """Write phase status transitions to the LogStore."""
        if not self.log_store:
            return
        try:
            with self.log_store.get_writer(self._run_id, f"{phase.root}.{phase.phase}") as writer:
                duration_str = f" ({phase.duration}s)" if phase.duration is not None else ""
                detail_str = f" - {phase.detail}" if phase.detail else ""
                error_str = f" ERROR: {phase.error}" if phase.error else ""
                writer.write(f"[{phase.status}]{duration_str}{detail_str}{error_str}\n")
        except OSError:
            log.debug("pipeline.phase_log_failed", phase=phase.phase, exc_info=True)

    def run(self) -> RunResult:
        """Process every root.

        Raises:
            RunScopedError: a dependency cycle or an unresolvable dependency.
            ConfigError: a compilation database cannot be read.
        """
        self._run_id = uuid.uuid4().hex[:12]
        self._cache = {}
        self.progress = ProgressTracker()
        if self.log_store:
            self.progress.callbacks.append(self._log_phase_callback)
        structlog.contextvars.bind_contextvars(run_id=self._run_id)
        try:
            index = CompilationDatabaseIndex.from_files(
                self.work.compile_databases,
                max_workers=self.work.max_workers,
                path_prefix_map=self.work.path_prefix_map,
                diagnostics=self.diagnostics,
            )
            bridge = ASTBridge(index)
            log.info(
                "pipeline.start",
                roots=len(self.work.roots),
                compile_entries=len(index),
                linker=self.linker.backend.name,
                passes=self.optimizer.pass_names,
            )

            with ThreadPoolExecutor(max_workers=self.work.max_in_flight_roots) as pool:
                futures = [pool.submit(self._run_root, root, bridge) for root in self.work.roots]
                try:
                    outcomes = [f.result() for f in futures]
                except RunScopedError:
                    for f in futures:
                        f.cancel()
                    raise

            result = RunResult(
                run_id=self._run_id,
                outcomes=outcomes,
                diagnostics=self.diagnostics.items,
            )
            log.info(
                "pipeline.done",
                queries=len(result.queries),
                failed_roots=len(result.failed_roots),
                diagnostics=self.diagnostics.counts(),
            )
            return result
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

    # ── per root ──

    def _run_root(self, root: str, bridge: ASTBridge) -> RootOutcome:
        outcome = RootOutcome(root=root)
        # worker threads do not see the run_id bound in run()
        rlog = log.bind(run_id=self._run_id, root=root)
        progress = self.progress
        phase = "deps"
        module = None
        try:
            progress.start_phase("deps", root=root)
            try:
                binary = Binary.from_path(root)
            except OSError as e:
                raise SectionNotFoundError(f"cannot read binary: {e}", binary=root) from e
            deps = self.resolver.resolve(binary)
            outcome.binaries = [binary.path] + [d.path for d in deps]
            progress.complete_phase("deps", detail=f"{len(deps)} dependencies", root=root)

            phase = "extract"
            progress.start_phase("extract", root=root)
            buffers = self._extract_all([binary, *deps])
            outcome.module_count = len(buffers)
            progress.complete_phase("extract", detail=f"{len(buffers)} modules", root=root)

            phase = "link"
            progress.start_phase("link", root=root)
            module = self.linker.link(buffers, identifier=root)
            progress.complete_phase("link", detail=self.linker.backend.name, root=root)

            phase = "optimize"
            progress.start_phase("optimize", root=root)
            self.optimizer.run(module, self.work.preserve_list)
            progress.complete_phase("optimize", detail=",".join(self.optimizer.pass_names), root=root)

            phase = "scan"
            progress.start_phase("scan", root=root)
            scan = CallSiteScanner(self.diagnostics).scan(module)
            sites = list(scan.filter(self.work.targets)) if self.work.targets else list(scan)
            outcome.call_sites = len(sites)
            progress.complete_phase("scan", detail=f"{len(sites)} call sites", root=root)

            phase = "bridge"
            progress.start_phase("bridge", root=root)
            outcome.queries = list(bridge.stream(sites, self.diagnostics))
            progress.complete_phase("bridge", detail=f"{len(outcome.queries)} queries", root=root)

            outcome.status = "completed"
            rlog.info(
                "pipeline.root_done",
                modules=outcome.module_count,
                call_sites=outcome.call_sites,
                queries=len(outcome.queries),
            )
        except RunScopedError as e:
            progress.fail_phase(phase, str(e), root=root)
            rlog.error("pipeline.run_aborted", phase=phase, kind=e.kind, error=str(e))
            raise
        except (BinaryScopedError, ToolchainError, StaleModuleError) as e:
            progress.fail_phase(phase, str(e), root=root)
            outcome.status = "failed"
            outcome.error = str(e)
            binary = getattr(e, "binary", None) or root
            self.diagnostics.report(Diagnostic.from_error(e, binary=binary, phase=phase))
            rlog.warning("pipeline.root_failed", phase=phase, kind=e.kind, error=str(e))
        finally:
            if module is not None:
                module.close()
        return outcome

    def _extract_all(self, binaries: list[Binary]) -> list[ModuleBuffer]:
        with ThreadPoolExecutor(max_workers=self.work.max_workers) as pool:
            per_binary = list(pool.map(self._buffers_for, binaries))
        return [buf for buffers in per_binary for buf in buffers]

    def _buffers_for(self, binary: Binary) -> list[ModuleBuffer]:
        key = os.path.normpath(binary.path)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            sections = self.extractor.extract(binary)
        except SectionNotFoundError as e:
            self.diagnostics.report(Diagnostic.from_error(e, severity="warning"))
            log.info("pipeline.binary_skipped", binary=binary.path, reason=str(e))
            buffers: list[ModuleBuffer] = []
        else:
            buffers = []
            for section in sections:
                buffers.extend(self.splitter.split(section.data, origin=section.origin))
        with self._cache_lock:
            self._cache.setdefault(key, buffers)
        return buffers
