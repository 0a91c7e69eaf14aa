"""Structured, non-fatal diagnostics collected during a run."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator

from z_bitcode_bridge.exceptions import BridgeError

logger = logging.getLogger(__name__)

MISSING_DEBUG_INFO = "missing-debug-info"
COMPDB_CONFLICT = "compdb-conflict"


@dataclass(frozen=True)
class Diagnostic:
    kind: str
    message: str
    severity: str = "warning"  # "info" | "warning" | "error"
    binary: str | None = None
    symbol: str | None = None
    file: str | None = None
    line: int | None = None
    detail: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_error(cls, error: BridgeError, severity: str = "error", **context: Any) -> Diagnostic:
        """Build a diagnostic from a caught bridge error, keeping its context fields."""
        return cls(
            kind=error.kind,
            message=str(error),
            severity=severity,
            binary=context.pop("binary", None) or getattr(error, "binary", None),
            symbol=context.pop("symbol", None) or getattr(error, "symbol", None),
            file=context.pop("file", None) or getattr(error, "file", None),
            line=context.pop("line", None) or getattr(error, "line", None),
            detail=context,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "binary": self.binary,
            "symbol": self.symbol,
            "file": self.file,
            "line": self.line,
            "detail": dict(self.detail),
        }


class DiagnosticsCollector:
    """Thread-safe sink for Diagnostic records."""

    def __init__(self) -> None:
        self._items: list[Diagnostic] = []
        self._lock = threading.Lock()

    def report(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._items.append(diagnostic)
        logger.debug("[%s] %s: %s", diagnostic.severity, diagnostic.kind, diagnostic.message)

    @property
    def items(self) -> list[Diagnostic]:
        with self._lock:
            return list(self._items)

    def by_kind(self, kind: str) -> list[Diagnostic]:
        return [d for d in self.items if d.kind == kind]

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for d in self.items:
            out[d.kind] = out.get(d.kind, 0) + 1
        return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.items)
