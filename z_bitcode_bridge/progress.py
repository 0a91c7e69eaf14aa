"""Progress tracking for the per-root pipeline."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

PHASES = ("deps", "extract", "link", "optimize", "scan", "bridge")


@dataclass
class PhaseProgress:
    phase: str
    root: str = ""
    status: str = "pending"  # "pending" | "running" | "completed" | "failed" | "skipped"
    start_time: float | None = None
    end_time: float | None = None
    detail: str = ""
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.start_time and self.end_time:
            return round(self.end_time - self.start_time, 2)
        return None


class ProgressTracker:
    """Track pipeline phases, keyed by (root, phase). Safe across root threads."""

    def __init__(self) -> None:
        self.phases: list[PhaseProgress] = []
        self._by_key: dict[tuple[str, str], PhaseProgress] = {}
        self._lock = threading.Lock()
        self.callbacks: list[Callable[[PhaseProgress], None]] = []

    def start_phase(self, phase: str, root: str = "") -> None:
        p = PhaseProgress(phase=phase, root=root, status="running", start_time=time.monotonic())
        with self._lock:
            self.phases.append(p)
            self._by_key[(root, phase)] = p
        self._notify(p)

    def complete_phase(self, phase: str, detail: str = "", root: str = "") -> None:
        p = self._by_key.get((root, phase))
        if p:
            p.status = "completed"
            p.end_time = time.monotonic()
            p.detail = detail
            self._notify(p)

    def fail_phase(self, phase: str, error: str, root: str = "") -> None:
        p = self._by_key.get((root, phase))
        if p:
            p.status = "failed"
            p.end_time = time.monotonic()
            p.error = error
            self._notify(p)

    def skip_phase(self, phase: str, reason: str, root: str = "") -> None:
        p = PhaseProgress(phase=phase, root=root, status="skipped", detail=reason)
        with self._lock:
            self.phases.append(p)
            self._by_key[(root, phase)] = p
        self._notify(p)

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            phases = list(self.phases)
        total_duration = sum(p.duration or 0 for p in phases)
        return {
            "phases": [
                {
                    "phase": p.phase,
                    "root": p.root,
                    "status": p.status,
                    "duration": p.duration,
                    "detail": p.detail,
                    "error": p.error,
                }
                for p in phases
            ],
            "total_duration": round(total_duration, 2),
        }

    def _notify(self, p: PhaseProgress) -> None:
        for cb in self.callbacks:
            try:
                cb(p)
            except Exception:
                logger.debug("Progress callback error for phase %s", p.phase, exc_info=True)
