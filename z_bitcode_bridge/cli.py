"""CLI entry point for standalone usage: z-bridge.

Subcommands:
    z-bridge create-work -o work.json     # Generate work order template
    z-bridge run work.json                # Run the full pipeline, emit JSONL queries
    z-bridge extract ./app -o modules/    # Dump embedded bitcode modules
    z-bridge deps ./app                   # Show the resolved dependency order
    z-bridge scan linked.ll               # List call sites of a textual IR module
    z-bridge compdb a.json b.json         # Merge compilation databases
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from z_bitcode_bridge.config import WORK_ORDER_TEMPLATE
from z_bitcode_bridge.exceptions import BridgeError, ConfigError, RunScopedError


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """Z-Bitcode-Bridge: map call sites in embedded bitcode back to source."""
    from z_bitcode_bridge.logging.config import setup_logging

    setup_logging(level="DEBUG" if verbose else None)


@main.command("create-work")
@click.option("-o", "--output", default="work.json", help="Output file path")
def create_work(output: str) -> None:
    """Generate a work order template JSON file."""
    Path(output).write_text(json.dumps(WORK_ORDER_TEMPLATE, indent=2) + "\n")
    click.echo(f"Work order template written to {output}")
    click.echo("Edit the file, then run: z-bridge run " + output)


@main.command("run")
@click.argument("work_file", type=click.Path(exists=True))
@click.option("-o", "--output", default=None, help="JSONL output (overrides the work order)")
@click.option("--log-dir", default=None, help="Write per-phase logs under this directory")
def run(work_file: str, output: str | None, log_dir: str | None) -> None:
    """Execute the pipeline from a work order JSON file."""
    from z_bitcode_bridge.bridge import write_jsonl
    from z_bitcode_bridge.config import load_work_order
    from z_bitcode_bridge.logging.local import LocalLogStore
    from z_bitcode_bridge.orchestrator import BridgeOrchestrator

    log_store = LocalLogStore(log_dir) if log_dir else None
    try:
        work = load_work_order(work_file)
        orchestrator = BridgeOrchestrator(work, log_store=log_store)
        result = orchestrator.run()
    except ConfigError as e:
        _fail(str(e))
    except RunScopedError as e:
        _fail(f"run aborted ({e.kind}): {e}")
    except BridgeError as e:
        _fail(f"{e.kind}: {e}")

    out_path = output or work.output
    if out_path:
        with open(out_path, "w") as f:
            count = write_jsonl(result.queries, f)
        click.echo(f"{count} queries written to {out_path}", err=True)
    else:
        write_jsonl(result.queries, sys.stdout)

    summary = orchestrator.progress.get_summary()
    click.echo(f"\nPipeline summary (total: {summary['total_duration']}s):", err=True)
    for p in summary["phases"]:
        status_icon = {
            "completed": "+",
            "failed": "!",
            "skipped": "-",
            "running": "~",
            "pending": ".",
        }.get(p["status"], "?")
        duration = f" ({p['duration']}s)" if p["duration"] else ""
        detail = f" - {p['detail']}" if p["detail"] else ""
        error = f" ERROR: {p['error']}" if p["error"] else ""
        click.echo(f"  [{status_icon}] {Path(p['root']).name}:{p['phase']}{duration}{detail}{error}", err=True)

    counts = orchestrator.diagnostics.counts()
    if counts:
        click.echo("Diagnostics: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())), err=True)
    if result.failed_roots:
        sys.exit(2)


@main.command("extract")
@click.argument("binary", type=click.Path(exists=True))
@click.option("-o", "--output-dir", default=None, help="Write each module as a .bc file here")
@click.option(
    "--validator",
    type=click.Choice(["bitstream", "llvm-bcanalyzer"]),
    default="bitstream",
    help="Module well-formedness check",
)
def extract(binary: str, output_dir: str | None, validator: str) -> None:
    """List (and optionally dump) the bitcode modules embedded in BINARY."""
    from z_bitcode_bridge.extraction.sections import SectionExtractor
    from z_bitcode_bridge.extraction.splitter import ModuleSplitter, create_validator
    from z_bitcode_bridge.toolchain import LLVMToolchain

    toolchain = LLVMToolchain()
    splitter = ModuleSplitter(create_validator(validator, toolchain))
    try:
        sections = SectionExtractor(toolchain).extract(binary)
        buffers = [b for s in sections for b in splitter.split(s.data, origin=s.origin)]
    except BridgeError as e:
        _fail(f"{e.kind}: {e}")

    out = Path(output_dir) if output_dir else None
    if out:
        out.mkdir(parents=True, exist_ok=True)
    for i, buf in enumerate(buffers):
        line = f"  {buf.identifier}  offset={buf.offset}  size={len(buf)}"
        if out:
            path = out / f"module_{i:04d}.bc"
            path.write_bytes(buf.data)
            line += f"  -> {path}"
        click.echo(line)
    click.echo(f"{len(buffers)} module(s) in {len(sections)} section(s)")


@main.command("deps")
@click.argument("binary", type=click.Path(exists=True))
@click.option("--search-path", "search_paths", multiple=True, help="Library search directory")
def deps(binary: str, search_paths: tuple[str, ...]) -> None:
    """Print BINARY's transitive dependencies in loader order."""
    from z_bitcode_bridge.deps.resolver import DependencyResolver

    try:
        order = DependencyResolver(search_paths=list(search_paths)).resolve(binary)
    except BridgeError as e:
        _fail(f"{e.kind}: {e}")
    for dep in order:
        click.echo(dep.path)


@main.command("scan")
@click.argument("ir_file", type=click.Path(exists=True))
@click.option("--target", "targets", multiple=True, help="Callee name or glob (repeatable)")
def scan(ir_file: str, targets: tuple[str, ...]) -> None:
    """List call sites of a textual IR module (e.g. llvm-link -S output)."""
    from z_bitcode_bridge.diagnostics import DiagnosticsCollector
    from z_bitcode_bridge.ir.parser import parse_module
    from z_bitcode_bridge.scanner import CallSiteScanner

    ir = parse_module(Path(ir_file).read_text(), identifier=ir_file)
    diagnostics = DiagnosticsCollector()
    result = CallSiteScanner(diagnostics).scan(ir)
    sites = result.filter(targets) if targets else iter(result)
    for site in sites:
        where = f"{site.location.source_file}:{site.location.line}" if site.location else "<no debug info>"
        click.echo(f"  {site.caller} -> {site.callee or '<indirect>'}  {where}")
    if len(diagnostics):
        click.echo(f"{len(diagnostics)} call site(s) without debug info", err=True)


@main.command("compdb")
@click.argument("databases", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--lookup", "lookup_path", default=None, help="Print the cleaned flags for FILE")
def compdb(databases: tuple[str, ...], lookup_path: str | None) -> None:
    """Merge compilation databases and report conflicts."""
    from z_bitcode_bridge.compdb import CompilationDatabaseIndex

    try:
        index = CompilationDatabaseIndex.from_files(list(databases))
    except ConfigError as e:
        _fail(str(e))

    if lookup_path:
        try:
            flags = index.flags_for(lookup_path)
        except BridgeError as e:
            _fail(str(e))
        click.echo(json.dumps(flags))
        return

    click.echo(f"Entries: {len(index)}")
    click.echo(f"Identical duplicates: {index.duplicates}")
    click.echo(f"Conflicts: {len(index.conflicts)}")
    for c in index.conflicts:
        kept, ignored = c.databases
        click.echo(f"  {c.file}  (kept {kept}, ignored {ignored})")


if __name__ == "__main__":
    main()
