"""Log storage abstract interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import IO


class LogStore(ABC):
    """Per-run phase log storage, one log per (run, root, phase)."""

    @abstractmethod
    def get_writer(self, run_id: str, phase: str) -> IO:
        """Get an append handle for a phase log."""
        ...

    @abstractmethod
    def read_log(self, run_id: str, phase: str) -> str:
        """Read log content for debugging."""
        ...

    @abstractmethod
    def delete_logs(self, run_id: str) -> None:
        """Delete all logs of a run."""
        ...
