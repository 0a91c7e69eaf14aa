"""Ordered, configurable module pass pipeline."""

from __future__ import annotations

import logging

from z_bitcode_bridge.exceptions import OptimizationFailedError, PipelineConfigError
from z_bitcode_bridge.module import BitcodeModule
from z_bitcode_bridge.optimize.passes import PASS_REGISTRY, ModulePass, VerifyPass

logger = logging.getLogger(__name__)

DEFAULT_PASSES = ("internalize", "globaldce")


class Optimizer:
    """Runs named passes in order; a verification always closes the pipeline.

    Raises:
        PipelineConfigError: an unknown pass name, or ``globaldce`` listed
            before ``internalize``.
    """

    def __init__(self, passes: list[str] | tuple[str, ...] = DEFAULT_PASSES) -> None:
        self.pass_names = list(passes)
        self._validate()
        self.passes: list[ModulePass] = [PASS_REGISTRY[n]() for n in self.pass_names]

    def _validate(self) -> None:
        unknown = [n for n in self.pass_names if n not in PASS_REGISTRY]
        if unknown:
            raise PipelineConfigError(
                f"Unknown pass(es) {unknown}; available: {sorted(PASS_REGISTRY)}"
            )
        if "globaldce" in self.pass_names and "internalize" in self.pass_names:
            if self.pass_names.index("globaldce") < self.pass_names.index("internalize"):
                raise PipelineConfigError(
                    "globaldce must run after internalize, otherwise nothing is removable"
                )

    def run(self, module: BitcodeModule, preserve: frozenset[str]) -> BitcodeModule:
        """Optimize ``module`` in place and return it.

        Raises:
            OptimizationFailedError: a pass failed; the module is left as the
                failing pass found it.
        """
        passes = list(self.passes)
        if not passes or not isinstance(passes[-1], VerifyPass):
            passes.append(VerifyPass())

        with module.owned("optimize") as ir:
            before = len(ir.functions) + len(ir.globals)
            for p in passes:
                try:
                    changed = p.run(ir, preserve)
                except OptimizationFailedError as e:
                    if e.binary is None:
                        e.binary = module.identifier
                    raise
                except (KeyError, ValueError, AttributeError) as e:
                    raise OptimizationFailedError(
                        f"{type(e).__name__}: {e}", binary=module.identifier, pass_name=p.name
                    ) from e
                logger.debug("Pass %s on %s: %d changes", p.name, module.identifier, changed)
            after = len(ir.functions) + len(ir.globals)

        logger.info(
            "Optimized %s with %s: %d -> %d symbols",
            module.identifier,
            [p.name for p in passes],
            before,
            after,
        )
        return module
