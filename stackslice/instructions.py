"""
stackslice/instructions.py
══════════════════════════

Labelled stack-machine instructions as they appear inside CFG blocks.

Instructions are split in two families, following the block kinds of the
CFG (see :mod:`stackslice.ctrlflow_graph`):

    DataInstr      never branches; grouped into *data* blocks
    ControlInstr   may branch or call; alone in a *control* block

Each instruction carries a unique :class:`Label` and two optional
annotations, the abstract state before and after it.  Instructions are
immutable: annotating one returns a copy (:meth:`DataInstr.annotate`).

Instruction Set
───────────────

  Data op          arg                      stack effect
  ───────────────  ───────────────────────  ─────────────
  NOP                                        0
  MEMORY_SIZE                                +1
  MEMORY_GROW                                -1 +1
  DROP                                       -1
  SELECT                                     -3 +1
  LOCAL_GET        local index               +1
  LOCAL_SET        local index               -1
  LOCAL_TEE        local index               0
  GLOBAL_GET       global index              +1
  GLOBAL_SET       global index              -1
  CONST            PrimValue                 +1
  UNARY/TEST/CONVERT                         -1 +1
  BINARY/COMPARE                             -2 +1
  LOAD             byte offset               -1 +1
  STORE            byte offset               -2

  Control op       arity (in, out) / arg
  ───────────────  ──────────────────────────────────────────
  BLOCK, LOOP      structural markers, never transferred
  IF, BR_IF        pops the condition, two successors
  BR                                         unconditional
  BR_TABLE                                   pops the selector
  CALL             (in, out), callee index
  CALL_INDIRECT    (in, out), type index     pops one extra operand
  RETURN
  UNREACHABLE
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Optional, Tuple, Union

if TYPE_CHECKING:
    from stackslice.spec_state import State


# ═══════════════════════════════════════════════════════════════════════════
# 1. LABELS AND PRIMITIVE VALUES
# ═══════════════════════════════════════════════════════════════════════════


class LabelSection(enum.IntEnum):
    """Namespace of a label."""

    FUNCTION = 0
    MERGE = 1
    DUMMY = 2


@dataclass(frozen=True, order=True)
class Label:
    """Identifier of an instruction (or of a merge block).

    Merge blocks are addressed by ``Label(block_idx, LabelSection.MERGE)``
    so that they can take part in slices; placeholder instructions created
    by the slicer live in the ``DUMMY`` section.
    """

    id: int
    section: LabelSection = LabelSection.FUNCTION

    def __str__(self) -> str:
        if self.section is LabelSection.MERGE:
            return f"merge({self.id})"
        if self.section is LabelSection.DUMMY:
            return f"dummy({self.id})"
        return str(self.id)


def lab(n: int) -> Label:
    """Shorthand for a function-section label."""
    return Label(n)


def merge_label(block_idx: int) -> Label:
    """Label of the merge block with index *block_idx*."""
    return Label(block_idx, LabelSection.MERGE)


class ValueType(enum.Enum):
    I32 = "i32"
    I64 = "i64"
    F32 = "f32"
    F64 = "f64"


@dataclass(frozen=True)
class PrimValue:
    """A typed literal as pushed by a ``const`` instruction."""

    type: ValueType
    value: Union[int, float]

    @classmethod
    def i32(cls, n: int) -> "PrimValue":
        return cls(ValueType.I32, n)

    @classmethod
    def i64(cls, n: int) -> "PrimValue":
        return cls(ValueType.I64, n)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.value}"


# ═══════════════════════════════════════════════════════════════════════════
# 2. OPCODES
# ═══════════════════════════════════════════════════════════════════════════


class DataOp(enum.Enum):
    NOP = "nop"
    MEMORY_SIZE = "memory.size"
    MEMORY_GROW = "memory.grow"
    DROP = "drop"
    SELECT = "select"
    LOCAL_GET = "local.get"
    LOCAL_SET = "local.set"
    LOCAL_TEE = "local.tee"
    GLOBAL_GET = "global.get"
    GLOBAL_SET = "global.set"
    CONST = "const"
    UNARY = "unary"
    TEST = "test"
    CONVERT = "convert"
    BINARY = "binary"
    COMPARE = "compare"
    LOAD = "load"
    STORE = "store"


class ControlOp(enum.Enum):
    BLOCK = "block"
    LOOP = "loop"
    IF = "if"
    BR = "br"
    BR_IF = "br_if"
    BR_TABLE = "br_table"
    CALL = "call"
    CALL_INDIRECT = "call_indirect"
    RETURN = "return"
    UNREACHABLE = "unreachable"


#: Control ops that end a block with more than one successor.
BRANCHING_OPS = frozenset({ControlOp.IF, ControlOp.BR_IF, ControlOp.BR_TABLE})


# ═══════════════════════════════════════════════════════════════════════════
# 3. LABELLED INSTRUCTIONS
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DataInstr:
    """A non-branching instruction.

    Attributes
    ----------
    label : Label
        Unique label within the function.
    op : DataOp
        The instruction class.
    arg : Any
        Local/global index, :class:`PrimValue` for ``CONST``, or byte
        offset for ``LOAD``/``STORE``.
    mnemonic : str
        Concrete opcode name (``"i32.add"``), informative only.
    annotation_before, annotation_after : Optional[State]
        Abstract states around the instruction; ``None`` when the CFG has
        not been analysed.
    """

    label: Label
    op: DataOp
    arg: Any = None
    mnemonic: str = ""
    annotation_before: Optional["State"] = None
    annotation_after: Optional["State"] = None

    @property
    def offset(self) -> int:
        return self.arg or 0

    def annotate(self, before: "State", after: "State") -> "DataInstr":
        return replace(self, annotation_before=before, annotation_after=after)

    def clear_annotation(self) -> "DataInstr":
        return replace(self, annotation_before=None, annotation_after=None)

    def __str__(self) -> str:
        name = self.mnemonic or self.op.value
        if self.arg is None:
            return f"{self.label}: {name}"
        return f"{self.label}: {name} {self.arg}"


@dataclass(frozen=True)
class ControlInstr:
    """A branching (or calling) instruction, alone in its control block.

    ``arity`` is the ``(consumed, produced)`` operand count of calls; it
    is ignored for other ops.  ``arg`` holds the branch depth, the callee
    index or the branch table, depending on ``op``.
    """

    label: Label
    op: ControlOp
    arity: Tuple[int, int] = (0, 0)
    arg: Any = None
    annotation_before: Optional["State"] = None
    annotation_after: Optional["State"] = None

    def annotate(self, before: "State", after: "State") -> "ControlInstr":
        return replace(self, annotation_before=before, annotation_after=after)

    def clear_annotation(self) -> "ControlInstr":
        return replace(self, annotation_before=None, annotation_after=None)

    def __str__(self) -> str:
        if self.op in (ControlOp.CALL, ControlOp.CALL_INDIRECT):
            return f"{self.label}: {self.op.value} {self.arg} {self.arity}"
        if self.arg is None:
            return f"{self.label}: {self.op.value}"
        return f"{self.label}: {self.op.value} {self.arg}"


Instr = Union[DataInstr, ControlInstr]
