"""Work order: the JSON document describing one run."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from z_bitcode_bridge.exceptions import ConfigError
from z_bitcode_bridge.toolchain import LLVMToolchain


class WorkOrder(BaseModel):
    roots: list[str]
    search_paths: list[str] = Field(default_factory=list)
    static_link_order: dict[str, list[str]] = Field(default_factory=dict)
    system_libraries: list[str] | None = None  # None: built-in skip list
    compile_databases: list[str] = Field(default_factory=list)
    path_prefix_map: dict[str, str] = Field(default_factory=dict)
    preserve: list[str] = Field(default_factory=lambda: ["main"])
    targets: list[str] = Field(default_factory=list)  # callee names or globs; empty = all
    passes: list[str] = Field(default_factory=lambda: ["internalize", "globaldce"])
    linker: Literal["auto", "llvm-link", "textual"] = "auto"
    validator: Literal["bitstream", "llvm-bcanalyzer"] = "bitstream"
    max_workers: int | None = Field(default=None, ge=1)
    max_in_flight_roots: int = Field(default=1, ge=1)
    llvm_bin_dir: str | None = None
    output: str | None = None  # JSONL path; None = stdout

    @field_validator("roots")
    @classmethod
    def _roots_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one root binary is required")
        return v

    @property
    def preserve_list(self) -> frozenset[str]:
        return frozenset(self.preserve)

    def toolchain(self) -> LLVMToolchain:
        return LLVMToolchain(bin_dir=self.llvm_bin_dir)


def load_work_order(path: str | Path) -> WorkOrder:
    """Read and validate a work order file.

    Raises:
        ConfigError: unreadable file, invalid JSON or schema violations.
    """
    try:
        raw = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read work order {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    try:
        return WorkOrder.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid work order {path}: {e}") from e


WORK_ORDER_TEMPLATE = {
    "roots": ["./build/bin/app"],
    "search_paths": ["./build/lib"],
    "static_link_order": {"app": ["./build/lib/libutil.a"]},
    "compile_databases": ["./build/compile_commands.json"],
    "path_prefix_map": {},
    "preserve": ["main"],
    "targets": ["register_opt*"],
    "passes": ["internalize", "globaldce"],
    "linker": "auto",
    "validator": "bitstream",
    "max_workers": 4,
    "max_in_flight_roots": 1,
    "llvm_bin_dir": None,
    "output": "queries.jsonl",
}
