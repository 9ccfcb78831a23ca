"""
stackslice.ctrlflow_graph
=========================

Intraprocedural Control Flow Graphs over labelled stack-machine
instructions.

The graph is *consumed* by the analyses of this package: building it from
a raw instruction sequence is the job of a front-end.  A CFG holds

* basic blocks of three kinds::

      DATA     straight-line run of DataInstr
      CONTROL  exactly one ControlInstr (branch, call, return, ...)
      MERGE    control-flow join point, no instruction

* a forward and a backward edge map, ``block -> ((target, cond), ...)``
  where ``cond`` is ``True``/``False`` for the two outgoing edges of a
  conditional branch and ``None`` otherwise,
* the entry and exit block indices and the function signature.

CFGs are treated as values: annotating or slicing one returns a new CFG.

Public API
----------
    BlockKind           - kind of a basic block
    BasicBlock          - a single basic block
    FunctionSignature   - argument / local / global / return types
    CFG                 - the control flow graph for one function
    edges_from, add_edge, remove_edge, remove_from
                        - copy-on-write helpers over edge maps

Typical usage::

    cfg = CFG.from_edges(
        signature,
        [BasicBlock.data_block(0, instrs), BasicBlock.merge_block(1)],
        [(0, 1, None)],
        entry_block=0,
        exit_block=1,
    )
    for label, instr in cfg.all_instructions().items():
        print(label, instr)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from stackslice.errors import InconsistentAnnotationError, UnknownLabelError
from stackslice.instructions import (
    ControlInstr,
    DataInstr,
    Instr,
    Label,
    ValueType,
    merge_label,
)
from stackslice.spec_state import State

# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

#: ``(target block, branch condition)``
Edge = Tuple[int, Optional[bool]]
Edges = Dict[int, Tuple[Edge, ...]]


def edges_from(edges: Mapping[int, Sequence[Edge]], idx: int) -> List[Edge]:
    """Edges leaving *idx* in the given direction."""
    return list(edges.get(idx, ()))


def add_edge(edges: Mapping[int, Sequence[Edge]], src: int, edge: Edge) -> Edges:
    """Return a copy of *edges* with *edge* added from *src* (no duplicates)."""
    result: Edges = {k: tuple(v) for k, v in edges.items()}
    current = result.get(src, ())
    if edge not in current:
        result[src] = current + (edge,)
    return result


def remove_edge(edges: Mapping[int, Sequence[Edge]], src: int, dst: int) -> Edges:
    """Return a copy of *edges* without any edge ``src -> dst``."""
    result: Edges = {k: tuple(v) for k, v in edges.items()}
    if src in result:
        result[src] = tuple(e for e in result[src] if e[0] != dst)
    return result


def remove_from(edges: Mapping[int, Sequence[Edge]], src: int) -> Edges:
    """Return a copy of *edges* without the entry for *src*."""
    return {k: tuple(v) for k, v in edges.items() if k != src}


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


class BlockKind(enum.Enum):
    """Classification of a basic block."""

    DATA = "data"
    CONTROL = "control"
    MERGE = "merge"


@dataclass(frozen=True)
class BasicBlock:
    """A basic block.

    Attributes
    ----------
    idx : int
        Block index, unique within the CFG.
    kind : BlockKind
    instrs : tuple of DataInstr
        Content of a DATA block (empty otherwise).
    control : Optional[ControlInstr]
        The instruction of a CONTROL block.
    annotation_before, annotation_after : Optional[State]
        Abstract states at block entry and exit.
    """

    idx: int
    kind: BlockKind
    instrs: Tuple[DataInstr, ...] = ()
    control: Optional[ControlInstr] = None
    annotation_before: Optional[State] = None
    annotation_after: Optional[State] = None

    @classmethod
    def data_block(cls, idx: int, instrs: Iterable[DataInstr]) -> "BasicBlock":
        return cls(idx, BlockKind.DATA, instrs=tuple(instrs))

    @classmethod
    def control_block(cls, idx: int, instr: ControlInstr) -> "BasicBlock":
        return cls(idx, BlockKind.CONTROL, control=instr)

    @classmethod
    def merge_block(cls, idx: int) -> "BasicBlock":
        return cls(idx, BlockKind.MERGE)

    @property
    def is_merge(self) -> bool:
        return self.kind is BlockKind.MERGE

    @property
    def label(self) -> Optional[Label]:
        """Label of a control instruction or of a merge block."""
        if self.kind is BlockKind.CONTROL:
            return self.control.label
        if self.kind is BlockKind.MERGE:
            return merge_label(self.idx)
        return None

    def all_direct_instructions(self) -> List[Instr]:
        if self.kind is BlockKind.CONTROL:
            return [self.control]
        return list(self.instrs)

    def annotate(self, before: State, after: State) -> "BasicBlock":
        return replace(self, annotation_before=before, annotation_after=after)

    def clear_annotation(self) -> "BasicBlock":
        return replace(
            self,
            instrs=tuple(i.clear_annotation() for i in self.instrs),
            control=self.control.clear_annotation() if self.control else None,
            annotation_before=None,
            annotation_after=None,
        )

    def __str__(self) -> str:
        if self.kind is BlockKind.MERGE:
            return f"block {self.idx} (merge)"
        body = "; ".join(str(i) for i in self.all_direct_instructions())
        return f"block {self.idx} ({self.kind.value}): {body}"


# ---------------------------------------------------------------------------
# Control flow graph
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionSignature:
    arg_types: Tuple[ValueType, ...] = ()
    local_types: Tuple[ValueType, ...] = ()
    global_types: Tuple[ValueType, ...] = ()
    return_types: Tuple[ValueType, ...] = ()

    @property
    def nlocals(self) -> int:
        """Number of local slots: parameters followed by declared locals."""
        return len(self.arg_types) + len(self.local_types)


@dataclass(frozen=True)
class CFG:
    """The control flow graph for one function."""

    signature: FunctionSignature
    basic_blocks: Dict[int, BasicBlock]
    edges: Edges
    back_edges: Edges
    entry_block: int
    exit_block: int
    name: str = ""
    idx: int = 0
    exported: bool = False
    loop_heads: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def from_edges(
        cls,
        signature: FunctionSignature,
        blocks: Iterable[BasicBlock],
        edges: Iterable[Tuple[int, int, Optional[bool]]],
        entry_block: int,
        exit_block: int,
        **kwargs,
    ) -> "CFG":
        """Build a CFG from ``(src, dst, cond)`` triples; back edges are derived."""
        forward: Edges = {}
        backward: Edges = {}
        for src, dst, cond in edges:
            forward = add_edge(forward, src, (dst, cond))
            backward = add_edge(backward, dst, (src, cond))
        return cls(
            signature=signature,
            basic_blocks={b.idx: b for b in blocks},
            edges=forward,
            back_edges=backward,
            entry_block=entry_block,
            exit_block=exit_block,
            **kwargs,
        )

    # ── lookups ──────────────────────────────────────────────────────────

    @cached_property
    def _instructions(self) -> Dict[Label, Instr]:
        result: Dict[Label, Instr] = {}
        for block in self.basic_blocks.values():
            for instr in block.all_direct_instructions():
                result[instr.label] = instr
        return result

    @cached_property
    def _block_of_label(self) -> Dict[Label, int]:
        result: Dict[Label, int] = {}
        for block in self.basic_blocks.values():
            if block.is_merge:
                result[block.label] = block.idx
            for instr in block.all_direct_instructions():
                result[instr.label] = block.idx
        return result

    def find_block(self, idx: int) -> BasicBlock:
        try:
            return self.basic_blocks[idx]
        except KeyError:
            raise UnknownLabelError("no such block", block=idx) from None

    def find_instr(self, label: Label) -> Instr:
        try:
            return self._instructions[label]
        except KeyError:
            raise UnknownLabelError("no such instruction", label=label) from None

    def block_of(self, label: Label) -> BasicBlock:
        """The block holding the instruction *label* (or the merge block)."""
        try:
            return self.basic_blocks[self._block_of_label[label]]
        except KeyError:
            raise UnknownLabelError("label not in any block", label=label) from None

    def successors(self, idx: int) -> List[int]:
        return [dst for dst, _ in edges_from(self.edges, idx)]

    def predecessors(self, idx: int) -> List[Edge]:
        return edges_from(self.back_edges, idx)

    def all_instructions(self) -> Dict[Label, Instr]:
        """All instructions keyed by label (merge blocks are not included)."""
        return dict(self._instructions)

    def all_instruction_labels(self) -> Set[Label]:
        return set(self._instructions)

    def all_merge_blocks(self) -> List[BasicBlock]:
        return [b for b in self.basic_blocks.values() if b.is_merge]

    def all_block_indices(self) -> Set[int]:
        return set(self.basic_blocks)

    # ── annotations ──────────────────────────────────────────────────────

    def state_before_block(self, idx: int) -> State:
        state = self.find_block(idx).annotation_before
        if state is None:
            raise InconsistentAnnotationError("block is not annotated", block=idx)
        return state

    def state_after_block(self, idx: int) -> State:
        state = self.find_block(idx).annotation_after
        if state is None:
            raise InconsistentAnnotationError("block is not annotated", block=idx)
        return state

    def annotate(
        self,
        block_annotations: Mapping[int, Tuple[State, State]],
        instr_annotations: Mapping[Label, Tuple[State, State]],
    ) -> "CFG":
        """Return a copy where every block/instruction carries its states.

        Blocks or instructions missing from the maps are left unannotated.
        """
        blocks: Dict[int, BasicBlock] = {}
        for idx, block in self.basic_blocks.items():
            instrs = tuple(
                i.annotate(*instr_annotations[i.label]) if i.label in instr_annotations else i
                for i in block.instrs
            )
            control = block.control
            if control is not None and control.label in instr_annotations:
                control = control.annotate(*instr_annotations[control.label])
            new_block = replace(block, instrs=instrs, control=control)
            if idx in block_annotations:
                new_block = new_block.annotate(*block_annotations[idx])
            blocks[idx] = new_block
        return replace(self, basic_blocks=blocks)

    def clear_annotations(self) -> "CFG":
        return replace(
            self,
            basic_blocks={i: b.clear_annotation() for i, b in self.basic_blocks.items()},
        )

    # ── rendering ────────────────────────────────────────────────────────

    def to_string(self) -> str:
        lines = [f"CFG {self.name or self.idx} entry={self.entry_block} exit={self.exit_block}"]
        for idx in sorted(self.basic_blocks):
            lines.append(f"  {self.basic_blocks[idx]}")
            for dst, cond in edges_from(self.edges, idx):
                tag = "" if cond is None else f" [{str(cond).lower()}]"
                lines.append(f"    -> {dst}{tag}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"CFG(name={self.name!r}, blocks={len(self.basic_blocks)}, "
            f"edges={sum(len(v) for v in self.edges.values())})"
        )
