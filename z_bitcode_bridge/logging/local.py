"""Local file log storage implementation."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import IO

from z_bitcode_bridge.logging.base import LogStore

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(part: str) -> str:
    """Phase names may embed a root path; flatten it into one file name."""
    return _UNSAFE_RE.sub("_", part).strip("_") or "_"


class LocalLogStore(LogStore):
    """Writes ``<base_dir>/<run_id>/<phase>.log``."""

    def __init__(self, base_dir: str = "logs/runs") -> None:
        self.base_dir = Path(base_dir)

    def get_writer(self, run_id: str, phase: str) -> IO:
        log_dir = self.base_dir / _safe(run_id)
        log_dir.mkdir(parents=True, exist_ok=True)
        return open(log_dir / f"{_safe(phase)}.log", "a")

    def read_log(self, run_id: str, phase: str) -> str:
        log_file = self.base_dir / _safe(run_id) / f"{_safe(phase)}.log"
        if log_file.exists():
            return log_file.read_text()
        return ""

    def delete_logs(self, run_id: str) -> None:
        log_dir = self.base_dir / _safe(run_id)
        if log_dir.exists():
            shutil.rmtree(log_dir)
