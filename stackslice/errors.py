"""
stackslice/errors.py
════════════════════

Fatal error types for the stackslice analyses.

Every condition raised here signals a violated structural invariant of the
analysed CFG or of the SSA property of its annotations.  None of them is
transient: the current analysis run is aborted and no partial result is
returned.

Error Hierarchy
───────────────

    AnalysisError (base)
    ├── StackUnderflowError          - fewer operands than an instruction needs
    ├── ShapeMismatchError           - locals/globals/vstack shapes disagree at a join
    ├── InvalidMergeError            - wrong number of analysed predecessors
    ├── DuplicateDefinitionError     - a second Def for the same Var
    ├── MissingDefinitionError       - a Use whose Var has no Def
    ├── UnsupportedInstructionError  - instruction kind not handled by a pass
    ├── InconsistentAnnotationError  - annotations contradict the instruction
    └── UnknownLabelError            - label / block index not in the CFG

Error Codes
───────────
Each class carries a stable ``code`` of the form ``SSL-XXXX`` so that
callers can filter diagnostics without matching on message text:

  - 1000-1999: abstract state / transfer errors
  - 2000-2999: merge errors
  - 3000-3999: use-def errors
  - 4000-4999: CFG lookups and annotations
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional


class AnalysisError(Exception):
    """Base class of every fatal analysis error.

    Parameters
    ----------
    message : str
        Human-readable description.
    **context :
        Extra key/value pairs (block index, label, ...) kept for
        diagnostics and rendered after the message.
    """

    code: ClassVar[str] = "SSL-0000"

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(self._format())

    def _format(self) -> str:
        if not self.context:
            return f"[{self.code}] {self.message}"
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"[{self.code}] {self.message} ({details})"


class StackUnderflowError(AnalysisError):
    """An instruction requires more operands than the value stack holds."""

    code = "SSL-1001"

    def __init__(self, needed: int, available: int, where: Optional[str] = None) -> None:
        self.needed = needed
        self.available = available
        super().__init__(
            "not enough elements in stack",
            needed=needed,
            available=available,
            where=where or "?",
        )


class ShapeMismatchError(AnalysisError):
    """Two analysed states disagree on the length of a component."""

    code = "SSL-2001"


class InvalidMergeError(AnalysisError):
    """A block received an impossible set of predecessor states."""

    code = "SSL-2002"


class DuplicateDefinitionError(AnalysisError):
    """A variable received a second definition."""

    code = "SSL-3001"


class MissingDefinitionError(AnalysisError):
    """A used variable has no recorded definition."""

    code = "SSL-3002"


class UnsupportedInstructionError(AnalysisError):
    """An instruction kind reached a pass that does not handle it."""

    code = "SSL-1002"


class InconsistentAnnotationError(AnalysisError):
    """The state annotations of an instruction contradict its semantics."""

    code = "SSL-4001"


class UnknownLabelError(AnalysisError, KeyError):
    """A label or block index was looked up but is not part of the CFG."""

    code = "SSL-4002"

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self._format()
