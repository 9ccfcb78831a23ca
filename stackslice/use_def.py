"""
stackslice/use_def.py
═════════════════════

Exact use-def chains over an analysed CFG.

Because the symbolic naming of :mod:`stackslice.spec_inference` mints one
Var per produced value, every Var has exactly one definition and the
use-def relation is a plain lookup, no reaching-definitions fixpoint is
needed.  The builder walks the annotations once:

    [] i32.const 0 [x]         defines x
    [x, y] i32.add [z]         defines z, uses x and y
    merge block k              defines its merge variables, uses the
                               predecessor values they replace
    function entry             defines every local and global

and then folds the uses into a total map ``Use -> Def``.

Occurrences
───────────

    InstructionUse(label, var)   MergeUse(block, var)
    InstructionDef(label, var)   MergeDef(block, var)
    EntryDef(var)                ConstantDef(var)

An instruction only *defines* Vars that are absent from its before-state:
a propagated ``local.set`` or a ``store`` re-exposes a Var that already
has a definition.  A literal pushed by a single instruction is defined by
that instruction; a literal pushed by several instructions has no single
producer and is defined by ``ConstantDef``.

Memory slots
────────────

A ``store`` defines the memory slot it writes rather than a Var.  When a
merge block renames a slot, the value it reads there was put in place by
every store recorded for that ``(slot, value)`` pair in
:func:`store_sites`; :func:`label_stores` returns them so that a slice
keeps the stores a memory merge variable depends on.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from stackslice.ctrlflow_graph import CFG, BasicBlock
from stackslice.errors import (
    DuplicateDefinitionError,
    InconsistentAnnotationError,
    MissingDefinitionError,
)
from stackslice.instructions import (
    ControlOp,
    DataInstr,
    DataOp,
    Instr,
    Label,
    LabelSection,
    merge_label,
)
from stackslice.spec_state import State, extract_different_vars, iter_vars, vars_of
from stackslice.variables import Constant, MemoryKey, Var

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# USES AND DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class InstructionUse:
    label: Label
    var: Var

    def __str__(self) -> str:
        return f"iuse({self.label}, {self.var})"


@dataclass(frozen=True)
class MergeUse:
    block: int
    var: Var

    @property
    def label(self) -> Label:
        return merge_label(self.block)

    def __str__(self) -> str:
        return f"muse({self.block}, {self.var})"


Use = Union[InstructionUse, MergeUse]


@dataclass(frozen=True)
class InstructionDef:
    label: Label
    var: Var

    def __str__(self) -> str:
        return f"idef({self.label}, {self.var})"


@dataclass(frozen=True)
class MergeDef:
    block: int
    var: Var

    def __str__(self) -> str:
        return f"mdef({self.block}, {self.var})"


@dataclass(frozen=True)
class EntryDef:
    var: Var

    def __str__(self) -> str:
        return f"edef({self.var})"


@dataclass(frozen=True)
class ConstantDef:
    var: Var

    def __str__(self) -> str:
        return f"cdef({self.var})"


Def = Union[InstructionDef, MergeDef, EntryDef, ConstantDef]


def use_at(label: Label, var: Var) -> Use:
    """The use of *var* at *label* (an instruction or a merge block)."""
    if label.section is LabelSection.MERGE:
        return MergeUse(label.id, var)
    return InstructionUse(label, var)


def def_label(definition: Def) -> Union[Label, None]:
    """Label of the instruction or merge block behind *definition*, if any."""
    if isinstance(definition, InstructionDef):
        return definition.label
    if isinstance(definition, MergeDef):
        return merge_label(definition.block)
    return None


class UseDefChains:
    """Total mapping from each use to its unique definition."""

    def __init__(self) -> None:
        self._chains: Dict[Use, Def] = {}

    def add(self, use: Use, definition: Def) -> None:
        if use in self._chains:
            raise DuplicateDefinitionError(
                "cannot have more than one definition for a use",
                use=use, existing=self._chains[use], new=definition,
            )
        self._chains[use] = definition

    def get(self, use: Use) -> Def:
        try:
            return self._chains[use]
        except KeyError:
            raise MissingDefinitionError(
                "use-def lookup did not find a definition for a use", use=use
            ) from None

    def items(self) -> Iterator[Tuple[Use, Def]]:
        return iter(self._chains.items())

    def as_dict(self) -> Dict[Use, Def]:
        return dict(self._chains)

    def __contains__(self, use: object) -> bool:
        return use in self._chains

    def __len__(self) -> int:
        return len(self._chains)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UseDefChains):
            return self._chains == other._chains
        if isinstance(other, dict):
            return self._chains == other
        return NotImplemented

    def to_string(self) -> str:
        return ", ".join(f"{u} -> {d}" for u, d in self._chains.items())

    def __repr__(self) -> str:
        return f"UseDefChains({len(self._chains)} chains)"


# ═══════════════════════════════════════════════════════════════════════════
# PER-INSTRUCTION USES AND DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════


def _annotations(instr: Instr) -> Tuple[State, State]:
    if instr.annotation_before is None or instr.annotation_after is None:
        raise InconsistentAnnotationError("instruction is not annotated", label=instr.label)
    return instr.annotation_before, instr.annotation_after


def _top(state: State, n: int) -> List[Var]:
    return list(state.vstack[:n])


_DATA_USE_ARITY: Dict[DataOp, int] = {
    DataOp.NOP: 0,
    DataOp.DROP: 1,
    DataOp.SELECT: 3,
    DataOp.MEMORY_SIZE: 0,
    DataOp.MEMORY_GROW: 1,
    DataOp.CONST: 0,
    DataOp.UNARY: 1,
    DataOp.TEST: 1,
    DataOp.CONVERT: 1,
    DataOp.BINARY: 2,
    DataOp.COMPARE: 2,
    DataOp.LOCAL_SET: 1,
    DataOp.LOCAL_TEE: 1,
    DataOp.GLOBAL_SET: 1,
    DataOp.LOAD: 1,
    DataOp.STORE: 2,
}

_DATA_PUSHES = frozenset({
    DataOp.SELECT, DataOp.MEMORY_SIZE, DataOp.MEMORY_GROW, DataOp.CONST,
    DataOp.UNARY, DataOp.TEST, DataOp.CONVERT, DataOp.BINARY, DataOp.COMPARE,
    DataOp.LOAD, DataOp.LOCAL_GET, DataOp.GLOBAL_GET,
})


def instr_use(instr: Instr) -> List[Var]:
    """Vars consumed by *instr*, read from its before-state."""
    before, _ = _annotations(instr)
    if isinstance(instr, DataInstr):
        if instr.op is DataOp.LOCAL_GET:
            return [before.locals[instr.arg]]
        if instr.op is DataOp.GLOBAL_GET:
            return [before.globals[instr.arg]]
        return _top(before, _DATA_USE_ARITY[instr.op])

    op = instr.op
    if op in (ControlOp.IF, ControlOp.BR_IF, ControlOp.BR_TABLE):
        # the branch taken depends on the top value
        return _top(before, 1)
    if op is ControlOp.CALL:
        return _top(before, instr.arity[0])
    if op is ControlOp.CALL_INDIRECT:
        return _top(before, instr.arity[0] + 1)
    return []


def instr_exposed(instr: Instr) -> List[Var]:
    """Vars written by *instr* into its after-state, fresh or not."""
    before, after = _annotations(instr)
    if isinstance(instr, DataInstr):
        op = instr.op
        if op in _DATA_PUSHES:
            return _top(after, 1)
        if op in (DataOp.LOCAL_SET, DataOp.LOCAL_TEE):
            return [after.locals[instr.arg]]
        if op is DataOp.GLOBAL_SET:
            return [after.globals[instr.arg]]
        if op is DataOp.STORE:
            address = before.vstack[1]
            key = (address, instr.offset)
            if key not in after.memory:
                raise InconsistentAnnotationError(
                    "wrong memory annotation",
                    label=instr.label, address=address, offset=instr.offset,
                )
            return [after.memory[key]]
        return []

    if instr.op in (ControlOp.CALL, ControlOp.CALL_INDIRECT):
        return _top(after, instr.arity[1])
    return []


def instr_def(instr: Instr) -> List[Var]:
    """Vars introduced by *instr*: written by it and absent before it."""
    before, _ = _annotations(instr)
    if instr.op is DataOp.CONST:
        # equal literals are shared, every const produces its literal
        return instr_exposed(instr)
    known = vars_of(before)
    return [v for v in instr_exposed(instr) if v not in known]


def merge_uses(cfg: CFG, block: BasicBlock) -> List[Tuple[Var, Var]]:
    """``(old, new)`` pairs of the positions a merge block renames.

    The after-state of the block is compared with its before-state and
    with the after-state of every annotated predecessor, so that each
    incoming value of a merge variable is reported.
    """
    pairs: List[Tuple[Var, Var]] = []
    seen: Set[Tuple[Var, Var]] = set()
    for source in _merge_sources(cfg, block):
        for pair in extract_different_vars(source, block.annotation_after):
            if pair not in seen:
                seen.add(pair)
                pairs.append(pair)
    return pairs


def merge_memory_uses(cfg: CFG, block: BasicBlock) -> List[Tuple[MemoryKey, Var]]:
    """``(slot, old)`` pairs of the memory slots a merge block renames."""
    sources = _merge_sources(cfg, block)
    pairs: List[Tuple[MemoryKey, Var]] = []
    for source in sources:
        for key, new in block.annotation_after.memory.items():
            old = source.memory.get(key)
            if old is not None and old != new and (key, old) not in pairs:
                pairs.append((key, old))
    return pairs


def _merge_sources(cfg: CFG, block: BasicBlock) -> List[State]:
    if block.annotation_before is None or block.annotation_after is None:
        raise InconsistentAnnotationError("merge block is not annotated", block=block.idx)
    sources = [block.annotation_before]
    for pred, _cond in cfg.predecessors(block.idx):
        pred_state = cfg.find_block(pred).annotation_after
        if pred_state is not None:
            sources.append(pred_state)
    return sources


def store_sites(cfg: CFG) -> Dict[Tuple[MemoryKey, Var], Set[Label]]:
    """Labels of the stores that write each value Var into each memory slot."""
    sites: Dict[Tuple[MemoryKey, Var], Set[Label]] = defaultdict(set)
    for label, instr in cfg.all_instructions().items():
        if instr.op is not DataOp.STORE:
            continue
        before, _ = _annotations(instr)
        value, address = before.vstack[:2]
        sites[((address, instr.offset), value)].add(label)
    return dict(sites)


def label_stores(
    cfg: CFG,
    label: Label,
    sites: Optional[Dict[Tuple[MemoryKey, Var], Set[Label]]] = None,
) -> Set[Label]:
    """Stores whose memory slot is read by the merge block at *label*.

    Empty for an instruction label.
    """
    if label.section is not LabelSection.MERGE:
        return set()
    if sites is None:
        sites = store_sites(cfg)
    found: Set[Label] = set()
    for pair in merge_memory_uses(cfg, cfg.find_block(label.id)):
        found |= sites.get(pair, set())
    return found


def label_uses(cfg: CFG, label: Label) -> List[Var]:
    """Vars used at *label*, an instruction or a merge block."""
    if label.section is LabelSection.MERGE:
        return [old for old, _ in merge_uses(cfg, cfg.find_block(label.id))]
    return instr_use(cfg.find_instr(label))


# ═══════════════════════════════════════════════════════════════════════════
# BUILDER
# ═══════════════════════════════════════════════════════════════════════════


def make(cfg: CFG) -> Tuple[Dict[Var, Def], Dict[Var, Set[Use]], UseDefChains]:
    """Compute data dependences of an analysed CFG.

    Returns
    -------
    defs : Dict[Var, Def]
        The unique definition of every Var.
    uses : Dict[Var, Set[Use]]
        Every use of every Var.
    chains : UseDefChains
        Use → Def for every use.

    Raises
    ------
    DuplicateDefinitionError
        A Var is defined twice.
    MissingDefinitionError
        A used Var has no definition.
    """
    defs: Dict[Var, Def] = {}
    uses: Dict[Var, Set[Use]] = defaultdict(set)

    def add_def(var: Var, definition: Def) -> None:
        if var in defs:
            raise DuplicateDefinitionError(
                "more than one definition for a variable",
                var=var, existing=defs[var], new=definition,
            )
        defs[var] = definition

    # function entry: locals and globals
    entry_state = cfg.state_before_block(cfg.entry_block)
    for var in sorted(vars_of(entry_state), key=str):
        add_def(var, EntryDef(var))

    for block in sorted(cfg.all_merge_blocks(), key=lambda b: b.idx):
        defined_here: Set[Var] = set()
        for old, new in merge_uses(cfg, block):
            if new not in defined_here:
                defined_here.add(new)
                add_def(new, MergeDef(block.idx, new))
            uses[old].add(MergeUse(block.idx, old))

    producers: Dict[Var, List[Label]] = defaultdict(list)
    for label, instr in sorted(cfg.all_instructions().items()):
        for var in instr_def(instr):
            if isinstance(var, Constant):
                producers[var].append(label)
            else:
                add_def(var, InstructionDef(label, var))
        for var in instr_use(instr):
            uses[var].add(InstructionUse(label, var))

    for var, labels in producers.items():
        if var in defs:
            continue
        if len(set(labels)) == 1:
            defs[var] = InstructionDef(labels[0], var)
        else:
            defs[var] = ConstantDef(var)

    chains = UseDefChains()
    for var, var_uses in uses.items():
        if var not in defs:
            raise MissingDefinitionError(
                "use-def chain incorrect: could not find def of variable", var=var
            )
        for use in var_uses:
            chains.add(use, defs[var])

    logger.debug(
        "%s: %d definitions, %d chains", cfg.name or cfg.idx, len(defs), len(chains)
    )
    return defs, dict(uses), chains


def count_vars(cfg: CFG) -> int:
    """Number of distinct Vars appearing in the annotations of *cfg*."""
    seen: Set[Var] = set()
    for block in cfg.basic_blocks.values():
        for state in (block.annotation_before, block.annotation_after):
            if state is not None:
                seen.update(iter_vars(state))
        for instr in block.all_direct_instructions():
            for state in (instr.annotation_before, instr.annotation_after):
                if state is not None:
                    seen.update(iter_vars(state))
    return len(seen)
