"""Z-Bitcode-Bridge: embedded-bitcode extraction, linking and call-site-to-source resolution."""

__version__ = "0.1.0"

from z_bitcode_bridge.bridge import ASTBridge
from z_bitcode_bridge.compdb import CompilationDatabaseIndex
from z_bitcode_bridge.config import WorkOrder, load_work_order
from z_bitcode_bridge.deps.resolver import DependencyResolver
from z_bitcode_bridge.diagnostics import Diagnostic, DiagnosticsCollector
from z_bitcode_bridge.extraction.sections import SectionExtractor
from z_bitcode_bridge.extraction.splitter import ModuleSplitter
from z_bitcode_bridge.linking.linker import BitcodeLinker
from z_bitcode_bridge.models.binary import Binary, ModuleBuffer, Section
from z_bitcode_bridge.models.callsite import AstQuery, CallSite, DebugLocation
from z_bitcode_bridge.module import BitcodeModule
from z_bitcode_bridge.optimize.optimizer import Optimizer
from z_bitcode_bridge.orchestrator import BridgeOrchestrator
from z_bitcode_bridge.scanner import CallSiteScanner

__all__ = [
    "ASTBridge",
    "AstQuery",
    "Binary",
    "BitcodeLinker",
    "BitcodeModule",
    "BridgeOrchestrator",
    "CallSite",
    "CallSiteScanner",
    "CompilationDatabaseIndex",
    "DebugLocation",
    "DependencyResolver",
    "Diagnostic",
    "DiagnosticsCollector",
    "ModuleBuffer",
    "ModuleSplitter",
    "Optimizer",
    "Section",
    "SectionExtractor",
    "WorkOrder",
    "load_work_order",
]
