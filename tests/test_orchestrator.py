"""Tests for BridgeOrchestrator.

End-to-end over a synthetic app -> libbar.so -> libfoo.so tree: real ELF
parsing, dependency resolution, splitting, textual linking, optimization and
scanning, with only the bitcode disassembler faked.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from z_bitcode_bridge.config import WorkOrder
from z_bitcode_bridge.exceptions import CyclicDependencyError, PipelineConfigError, ToolchainError
from z_bitcode_bridge.logging.local import LocalLogStore
from z_bitcode_bridge.orchestrator import BridgeOrchestrator
from z_bitcode_bridge.progress import PHASES
from z_bitcode_bridge.testing import FakeDependencyOracle, FakeDisassembler, build_elf, encode_module


def _work(tree, **overrides) -> WorkOrder:
    fields = {
        "roots": [tree.app],
        "compile_databases": [tree.compdb],
        "targets": ["register_opt"],
        "linker": "textual",
    }
    fields.update(overrides)
    return WorkOrder(**fields)


class TestEndToEnd:
    def test_register_opt_call_site(self, sample_tree):
        orch = BridgeOrchestrator(_work(sample_tree), disassembler=sample_tree.disassembler)
        result = orch.run()

        (outcome,) = result.outcomes
        assert outcome.status == "completed"
        assert outcome.binaries == [sample_tree.app, sample_tree.libbar, sample_tree.libfoo]
        assert outcome.module_count == 3
        assert outcome.call_sites == 1

        (query,) = result.queries
        assert query.source_file == "/src/libbar/bar.c"
        assert query.line == 12
        assert query.column == 3
        assert query.directory == "/src/libbar"
        assert query.compile_arguments == ["-g", "-fPIC", "-DBAR=1"]
        assert query.caller == "init"
        assert query.callee == "register_opt"
        assert result.failed_roots == []
        assert result.diagnostics == []

    def test_all_call_sites_without_targets(self, sample_tree):
        orch = BridgeOrchestrator(
            _work(sample_tree, targets=[]), disassembler=sample_tree.disassembler
        )
        queries = orch.run().queries
        assert [(q.source_file, q.line, q.callee) for q in queries] == [
            ("/src/app/main.c", 4, "init"),
            ("/src/libbar/bar.c", 12, "register_opt"),
        ]
        assert queries[0].compile_arguments == ["-g"]

    def test_glob_targets(self, sample_tree):
        orch = BridgeOrchestrator(
            _work(sample_tree, targets=["register_*"]), disassembler=sample_tree.disassembler
        )
        assert [q.callee for q in orch.run().queries] == ["register_opt"]

    def test_progress_phases(self, sample_tree):
        orch = BridgeOrchestrator(_work(sample_tree), disassembler=sample_tree.disassembler)
        orch.run()
        phases = orch.progress.get_summary()["phases"]
        assert tuple(p["phase"] for p in phases) == PHASES
        assert all(p["status"] == "completed" for p in phases)
        assert all(p["root"] == sample_tree.app for p in phases)
        assert phases[0]["detail"] == "2 dependencies"
        assert phases[1]["detail"] == "3 modules"
        assert phases[2]["detail"] == "textual"

    def test_phase_logs_written(self, sample_tree, tmp_path):
        store = LocalLogStore(str(tmp_path / "logs"))
        orch = BridgeOrchestrator(
            _work(sample_tree), disassembler=sample_tree.disassembler, log_store=store
        )
        result = orch.run()
        content = store.read_log(result.run_id, f"{sample_tree.app}.deps")
        assert "[running]" in content
        assert "[completed]" in content
        assert "2 dependencies" in content
        assert "1 queries" in store.read_log(result.run_id, f"{sample_tree.app}.bridge")

    def test_fresh_run_id_per_run(self, sample_tree):
        orch = BridgeOrchestrator(_work(sample_tree), disassembler=sample_tree.disassembler)
        assert orch.run().run_id != orch.run().run_id

    def test_root_events_carry_run_id(self, sample_tree):
        orch = BridgeOrchestrator(_work(sample_tree), disassembler=sample_tree.disassembler)
        with patch("z_bitcode_bridge.orchestrator.log") as mock_log:
            result = orch.run()
        mock_log.bind.assert_called_once_with(run_id=result.run_id, root=sample_tree.app)
        root_log = mock_log.bind.return_value
        assert root_log.info.call_args.args == ("pipeline.root_done",)


class TestFailureScopes:
    def test_failed_root_does_not_stop_others(self, sample_tree, tmp_path):
        plain = tmp_path / "plain"
        plain.write_bytes(build_elf({".text": b"\xc3"}))
        orch = BridgeOrchestrator(
            _work(sample_tree, roots=[str(plain), sample_tree.app]),
            disassembler=sample_tree.disassembler,
        )
        result = orch.run()

        failed, ok = result.outcomes
        assert failed.status == "failed"
        assert "nothing to link" in failed.error
        assert ok.status == "completed"
        assert len(result.queries) == 1
        assert result.failed_roots == [str(plain)]
        kinds = [d.kind for d in result.diagnostics]
        assert kinds == ["section-not-found", "link-error"]
        link_failure = result.diagnostics[1]
        assert link_failure.binary == str(plain)
        assert link_failure.detail == {"phase": "link"}

    def test_missing_root(self, sample_tree, tmp_path):
        orch = BridgeOrchestrator(
            _work(sample_tree, roots=[str(tmp_path / "absent")]),
            disassembler=sample_tree.disassembler,
        )
        (outcome,) = orch.run().outcomes
        assert outcome.status == "failed"
        assert "cannot read binary" in outcome.error

    def test_cycle_aborts_run(self, sample_tree, tmp_path):
        lib = tmp_path / "cyc"
        lib.mkdir()
        for name in ("libA.so", "libB.so"):
            (lib / name).write_bytes(build_elf())
        oracle = FakeDependencyOracle(
            needed={"app": ["libA.so"], "libA.so": ["libB.so"], "libB.so": ["libA.so"]}
        )
        orch = BridgeOrchestrator(
            _work(sample_tree, search_paths=[str(lib)]),
            oracle=oracle,
            disassembler=sample_tree.disassembler,
        )
        with pytest.raises(CyclicDependencyError):
            orch.run()
        (phase,) = orch.progress.get_summary()["phases"]
        assert phase["phase"] == "deps"
        assert phase["status"] == "failed"

    def test_toolchain_failure_stays_with_its_root(self, sample_tree, tmp_path):
        other_module = encode_module("other")
        other = tmp_path / "other"
        other.write_bytes(build_elf({".llvmbc": other_module}))

        class TimingOutDisassembler(FakeDisassembler):
            def disassemble(self, buffer):
                if buffer.data == other_module:
                    raise ToolchainError("llvm-dis timed out after 600s")
                return super().disassemble(buffer)

        orch = BridgeOrchestrator(
            _work(sample_tree, roots=[str(other), sample_tree.app]),
            disassembler=TimingOutDisassembler(sample_tree.disassembler.texts),
        )
        result = orch.run()

        failed, ok = result.outcomes
        assert failed.status == "failed"
        assert "timed out" in failed.error
        assert ok.status == "completed"
        assert len(result.queries) == 1
        (diag,) = result.diagnostics
        assert diag.kind == "toolchain-error"
        assert diag.binary == str(other)
        assert diag.detail == {"phase": "link"}

    def test_unparsable_disassembly_stays_with_its_root(self, sample_tree, tmp_path):
        broken_module = sample_tree.disassembler.register(
            encode_module("broken"), "define void (i32) {\nentry:\n  ret void\n}\n"
        )
        broken = tmp_path / "broken"
        broken.write_bytes(build_elf({".llvmbc": broken_module}))
        orch = BridgeOrchestrator(
            _work(sample_tree, roots=[str(broken), sample_tree.app]),
            disassembler=sample_tree.disassembler,
        )
        result = orch.run()

        assert result.failed_roots == [str(broken)]
        assert "Function header without a name" in result.outcomes[0].error
        assert [d.kind for d in result.diagnostics] == ["malformed-module"]
        assert len(result.queries) == 1

    def test_bad_pipeline_rejected_up_front(self, sample_tree):
        with pytest.raises(PipelineConfigError):
            BridgeOrchestrator(
                _work(sample_tree, passes=["globaldce", "internalize"]),
                disassembler=sample_tree.disassembler,
            )


class TestExtractionCache:
    def test_each_binary_extracted_once(self, sample_tree):
        orch = BridgeOrchestrator(
            _work(sample_tree, roots=[sample_tree.app, sample_tree.libbar], preserve=["main", "init"]),
            disassembler=sample_tree.disassembler,
        )
        with patch.object(orch.extractor, "extract", wraps=orch.extractor.extract) as spy:
            result = orch.run()
        extracted = sorted(call.args[0].path for call in spy.call_args_list)
        assert extracted == sorted([sample_tree.app, sample_tree.libbar, sample_tree.libfoo])
        assert [o.module_count for o in result.outcomes] == [3, 2]
        assert [(q.source_file, q.line) for q in result.queries] == [
            ("/src/libbar/bar.c", 12),
            ("/src/libbar/bar.c", 12),
        ]
