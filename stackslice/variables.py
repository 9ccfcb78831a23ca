"""
stackslice/variables.py
═══════════════════════

Symbolic value identifiers ("Vars") naming every abstract value of the
stack machine.

    StackOrigin(label)          value pushed by the instruction ``label``
    Local(i) / Global(i)        initial value of a local / global at entry
    Constant(value)             a literal; equal literals share one Var
    MergeVar(block, n)          phi value synthesised at join block ``block``
    MemoryCell(address, offset) unknown contents of a memory cell
    FunctionResult              the value returned by the function
    Hole                        placeholder used while merging states only

All variants are frozen dataclasses: they compare and hash structurally
and can be used as dictionary keys (use-def maps, memory maps).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from stackslice.instructions import Label, PrimValue


@dataclass(frozen=True)
class StackOrigin:
    label: Label

    def __str__(self) -> str:
        return f"i{self.label}"


@dataclass(frozen=True)
class Local:
    index: int

    def __str__(self) -> str:
        return f"l{self.index}"


@dataclass(frozen=True)
class Global:
    index: int

    def __str__(self) -> str:
        return f"g{self.index}"


@dataclass(frozen=True)
class Constant:
    value: PrimValue

    def __str__(self) -> str:
        return f"c{self.value}"


@dataclass(frozen=True)
class MergeVar:
    block: int
    n: int

    def __str__(self) -> str:
        return f"m{self.block}_{self.n}"


@dataclass(frozen=True)
class MemoryCell:
    """Value stored at ``address + offset`` when nothing is known about it."""

    address: "Var"
    offset: int

    def __str__(self) -> str:
        return f"mem[{self.address}+{self.offset}]"


@dataclass(frozen=True)
class FunctionResult:
    def __str__(self) -> str:
        return "ret"


@dataclass(frozen=True)
class Hole:
    """Disagreement marker of the merge engine; never stored in a State."""

    def __str__(self) -> str:
        return "_"


Var = Union[StackOrigin, Local, Global, Constant, MergeVar, MemoryCell, FunctionResult, Hole]

#: Memory map key: symbolic address and constant byte offset.
MemoryKey = Tuple[Var, int]

RETURN = FunctionResult()
HOLE = Hole()
