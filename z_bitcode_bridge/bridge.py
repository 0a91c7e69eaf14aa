"""Turn call sites into queries for the external AST matcher."""

from __future__ import annotations

import json
import logging
from typing import IO, Iterable, Iterator

from z_bitcode_bridge.compdb import CompilationDatabaseIndex
from z_bitcode_bridge.diagnostics import Diagnostic, DiagnosticsCollector
from z_bitcode_bridge.exceptions import (
    CallSiteScopedError,
    NoCompileEntryError,
    UnresolvedSourceError,
)
from z_bitcode_bridge.models.callsite import AstQuery, CallSite

logger = logging.getLogger(__name__)


class ASTBridge:
    """Joins call sites with the compilation database.

    Args:
        index: Merged compilation database.
        clean_flags: Emit ``flags_for`` output (compiler, source and output
            flags stripped) instead of the raw argument list.
    """

    def __init__(self, index: CompilationDatabaseIndex, clean_flags: bool = True) -> None:
        self.index = index
        self.clean_flags = clean_flags

    def resolve(self, site: CallSite) -> AstQuery:
        """Build the AST query for one call site.

        Raises:
            UnresolvedSourceError: the call site has no debug location, or the
                compilation database has no entry for its file.
        """
        loc = site.location
        if loc is None:
            raise UnresolvedSourceError(
                f"call in @{site.caller} to {site.callee or '<indirect>'} has no debug location"
            )
        try:
            cmd = self.index.lookup(loc.source_file)
            arguments = self.index.flags_for(loc.source_file) if self.clean_flags else list(cmd.arguments)
        except NoCompileEntryError as e:
            raise UnresolvedSourceError(
                f"no compile command for {e.path}", file=loc.source_file, line=loc.line
            ) from e
        return AstQuery(
            source_file=cmd.file,
            line=loc.line,
            compile_arguments=arguments,
            directory=cmd.directory,
            column=loc.column,
            caller=site.caller,
            callee=site.callee,
        )

    def stream(
        self,
        sites: Iterable[CallSite],
        diagnostics: DiagnosticsCollector | None = None,
    ) -> Iterator[AstQuery]:
        """Yield a query per resolvable call site; report and skip the rest."""
        for site in sites:
            try:
                yield self.resolve(site)
            except CallSiteScopedError as e:
                logger.debug("Skipping call site in @%s: %s", site.caller, e)
                if diagnostics is not None:
                    diagnostics.report(
                        Diagnostic.from_error(
                            e,
                            severity="warning",
                            symbol=site.caller,
                            callee=site.callee,
                        )
                    )


def write_jsonl(queries: Iterable[AstQuery], out: IO[str]) -> int:
    """Write one JSON object per query; returns the number written."""
    count = 0
    for q in queries:
        out.write(json.dumps(q.to_dict(), sort_keys=True) + "\n")
        count += 1
    return count
