"""
stackslice: Symbolic Naming, Use-Def Chains and Slicing for Stack Bytecode
===========================================================================

This package analyses the control flow graph of one stack-machine
function: it names every value of the abstract machine state with a
symbolic variable, derives exact use-def chains from that naming, and
computes backward slices that stay structurally valid.

Core modules
------------
errors
    Fatal analysis errors.
variables
    Symbolic value identifiers (``Var``).
instructions
    Labels, opcodes and labelled instructions.
ctrlflow_graph
    The CFG consumed by every analysis.
spec_state
    Abstract states and the analysis configuration.
spec_inference
    Transfer functions and merge engine.
dataflow_engine
    Sequential fixpoint driver.
control_deps
    Post-dominators and control dependences.
use_def
    Use-def chain builder.
slicing
    Backward slicer.

Quick start
-----------
>>> from stackslice import analyze, slice_cfg, lab
>>> annotated = analyze(cfg)
>>> sliced = slice_cfg(annotated, lab(10))
>>> analyze(sliced)          # the slice can be analysed again
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__author__ = "stackslice contributors"
__license__ = "MIT"
__all__: List[str] = []          # populated below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "AnalysisError",
        "StackUnderflowError",
        "ShapeMismatchError",
        "InvalidMergeError",
        "DuplicateDefinitionError",
        "MissingDefinitionError",
        "UnsupportedInstructionError",
        "InconsistentAnnotationError",
        "UnknownLabelError",
    ],
    "variables": [
        "StackOrigin",
        "Local",
        "Global",
        "Constant",
        "MergeVar",
        "MemoryCell",
        "FunctionResult",
        "RETURN",
    ],
    "instructions": [
        "Label",
        "LabelSection",
        "lab",
        "merge_label",
        "ValueType",
        "PrimValue",
        "DataOp",
        "ControlOp",
        "DataInstr",
        "ControlInstr",
    ],
    "ctrlflow_graph": [
        "BlockKind",
        "BasicBlock",
        "FunctionSignature",
        "CFG",
    ],
    "spec_state": [
        "AnalysisConfig",
        "DEFAULT_CONFIG",
        "State",
        "vars_of",
        "extract_different_vars",
    ],
    "spec_inference": [
        "SpecInference",
        "Simple",
        "Branch",
    ],
    "dataflow_engine": [
        "IntraproceduralSolver",
        "AnalysisResult",
        "analyze",
    ],
    "control_deps": [
        "ControlDependencies",
    ],
    "use_def": [
        "InstructionUse",
        "MergeUse",
        "InstructionDef",
        "MergeDef",
        "EntryDef",
        "ConstantDef",
        "UseDefChains",
        "count_vars",
        "store_sites",
        "label_stores",
    ],
    "slicing": [
        "instructions_to_keep",
        "slice_cfg",
        "find_call_indirect_instructions",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"stackslice: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"stackslice.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)

    # stackslice.use_def.make as well as stackslice.count_vars
    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all submodules in the package."""
    return sorted(_CORE_MODULES)


_log.debug("stackslice %s loaded (%d public names)", __version__, len(__all__))
