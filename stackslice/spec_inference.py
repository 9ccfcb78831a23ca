"""
stackslice/spec_inference.py
════════════════════════════

Abstract state, transfer functions and merge engine that turn a
stack-based instruction stream into an SSA-like symbolic program.

Every instruction that produces a value mints exactly one fresh Var,
``StackOrigin(label)``; every join point that receives disagreeing
predecessor states mints one ``MergeVar(block, n)`` per disagreeing
position.  Everything else is shared, so two program points holding the
same Var are guaranteed to hold the same runtime value.

Driver contract
───────────────

The transfer engine is driven by a sequential fixpoint driver (see
:mod:`stackslice.dataflow_engine`) through

    init_state, bottom_state, transfer_data, transfer_control,
    merge_flows, join_state, widen_state

``join_state`` is *not* a lattice join: it keeps the most recently
computed state.  Which fixpoint is reached on cyclic code therefore
depends on the driver's visiting order (reverse postorder with revisits
on back edges); running these functions under another order must be
validated separately.

Merge construction
──────────────────

Merging is done in two passes.  The first pass folds the predecessor
states position-wise, keeping a Var where all predecessors agree and
putting a :data:`~stackslice.variables.HOLE` where they do not; memory
keys missing from some predecessor are dropped.  The second pass replaces
every hole, in positional order (vstack, locals, globals, memory), by a
fresh merge variable.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple, Union

from stackslice.ctrlflow_graph import CFG, BasicBlock
from stackslice.errors import (
    InvalidMergeError,
    ShapeMismatchError,
    UnsupportedInstructionError,
)
from stackslice.instructions import ControlInstr, ControlOp, DataInstr, DataOp
from stackslice.spec_state import DEFAULT_CONFIG, AnalysisConfig, State
from stackslice.variables import (
    HOLE,
    RETURN,
    Constant,
    Global,
    Local,
    MemoryKey,
    MergeVar,
    StackOrigin,
    Var,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Simple:
    """Single successor state of a control instruction."""

    state: State


@dataclass(frozen=True)
class Branch:
    """Successor states of a conditional branch (taken, not taken)."""

    true_state: State
    false_state: State


ControlResult = Union[Simple, Branch]

# Operand counts of the data ops that pop n values and push one fresh value.
_POP_PUSH: Dict[DataOp, int] = {
    DataOp.MEMORY_SIZE: 0,
    DataOp.MEMORY_GROW: 1,
    DataOp.SELECT: 3,
    DataOp.UNARY: 1,
    DataOp.TEST: 1,
    DataOp.CONVERT: 1,
    DataOp.LOAD: 1,
    DataOp.BINARY: 2,
    DataOp.COMPARE: 2,
}


class SpecInference:
    """Transfer functions and merge engine of the symbolic naming analysis.

    Parameters
    ----------
    config : AnalysisConfig
        Precision knobs, held fixed for the whole analysis run.
    """

    def __init__(self, config: AnalysisConfig = DEFAULT_CONFIG) -> None:
        for warning in config.validate():
            logger.warning("AnalysisConfig: %s", warning)
        self.config = config

    # ── states ───────────────────────────────────────────────────────────

    def init_state(self, cfg: CFG) -> State:
        """State at function entry: every local and global is its own Var."""
        sig = cfg.signature
        return State(
            vstack=(),
            locals=tuple(Local(i) for i in range(sig.nlocals)),
            globals=tuple(Global(i) for i in range(len(sig.global_types))),
            memory={},
        )

    def bottom_state(self, cfg: CFG) -> State:
        return State.bottom()

    def join_state(self, old: State, new: State) -> State:
        # only keep the most recent state
        return new

    def widen_state(self, old: State, new: State) -> State:
        return new

    # ── data instructions ────────────────────────────────────────────────

    def transfer_data(self, cfg: CFG, instr: DataInstr, state: State) -> State:
        ret = StackOrigin(instr.label)
        op = instr.op
        where = str(instr)
        cfg_ = self.config

        if op is DataOp.NOP:
            return state
        if op in _POP_PUSH:
            return state.drop(_POP_PUSH[op], where).push(ret)
        if op is DataOp.DROP:
            return state.drop(1, where)

        if op is DataOp.LOCAL_GET:
            return state.push(state.locals[instr.arg] if cfg_.propagate_locals else ret)
        if op in (DataOp.LOCAL_SET, DataOp.LOCAL_TEE):
            (top,) = state.top(1, where)
            if op is DataOp.LOCAL_SET:
                state = state.drop(1, where)
            return state.with_local(instr.arg, top if cfg_.propagate_locals else ret)

        if op is DataOp.GLOBAL_GET:
            return state.push(state.globals[instr.arg] if cfg_.propagate_globals else ret)
        if op is DataOp.GLOBAL_SET:
            (top,) = state.top(1, where)
            state = state.drop(1, where)
            return state.with_global(instr.arg, top if cfg_.propagate_globals else ret)

        if op is DataOp.CONST:
            return state.push(Constant(instr.arg) if cfg_.use_constants else ret)

        if op is DataOp.STORE:
            value, address = state.top(2, where)
            return state.drop(2, where).with_memory(address, instr.offset, value)

        raise UnsupportedInstructionError("unsupported data instruction", instr=where)

    # ── control instructions ─────────────────────────────────────────────

    def transfer_control(self, cfg: CFG, instr: ControlInstr, state: State) -> ControlResult:
        ret = StackOrigin(instr.label)
        op = instr.op
        where = str(instr)

        if op in (ControlOp.CALL, ControlOp.CALL_INDIRECT):
            arity_in, arity_out = instr.arity
            if op is ControlOp.CALL_INDIRECT:
                # the callee index sits on top of the arguments
                arity_in += 1
            state = state.drop(arity_in, where)
            return Simple(state.push(ret) if arity_out == 1 else state)
        if op is ControlOp.BR:
            return Simple(state)
        if op in (ControlOp.BR_IF, ControlOp.IF):
            popped = state.drop(1, where)
            return Branch(popped, popped)
        if op is ControlOp.BR_TABLE:
            return Simple(state.drop(1, where))
        if op is ControlOp.RETURN:
            if len(cfg.signature.return_types) == 1:
                return Simple(replace(state, vstack=state.top(1, where)))
            return Simple(replace(state, vstack=()))
        if op is ControlOp.UNREACHABLE:
            return Simple(replace(state, vstack=()))

        raise UnsupportedInstructionError("unsupported control instruction", instr=where)

    # ── merge engine ─────────────────────────────────────────────────────

    def merge_flows(
        self,
        cfg: CFG,
        block: BasicBlock,
        states: Sequence[Tuple[int, State]],
    ) -> State:
        """Check that *block* may receive *states* and dispatch to :meth:`merge`.

        *states* pairs each predecessor index with its outgoing state.
        """
        if len(states) > 1 and not block.is_merge:
            raise InvalidMergeError(
                "invalid block with multiple input states", block=block.idx
            )
        return self.merge(cfg, block, [s for _, s in states])

    def merge(self, cfg: CFG, block: BasicBlock, states: Sequence[State]) -> State:
        if not block.is_merge:
            # not a join point: one predecessor, or none at the entry
            if not states:
                return self.init_state(cfg)
            if len(states) == 1:
                return states[0]
            raise InvalidMergeError(
                "invalid block with multiple input states", block=block.idx
            )

        result = self._merge_join(cfg, block, states)
        if cfg.exit_block == block.idx and result.vstack:
            result = replace(result, vstack=(RETURN,) + result.vstack[1:])
        return result

    def _merge_join(self, cfg: CFG, block: BasicBlock, states: Sequence[State]) -> State:
        if not states:
            return self.init_state(cfg)
        if len(states) == 1:
            return states[0]
        analyzed = [s for s in states if not s.is_bottom()]
        if not analyzed:
            raise InvalidMergeError(
                "no predecessor of a merge block has been analyzed", block=block.idx
            )
        if len(analyzed) == 1:
            return analyzed[0]
        _check_shapes(block.idx, analyzed)

        with_holes = analyzed[0]
        for other in analyzed[1:]:
            with_holes = _mark_holes(with_holes, other)

        counter = itertools.count(1)
        created: List[MergeVar] = []

        def plug(var: Var) -> Var:
            if var != HOLE:
                return var
            fresh = MergeVar(block.idx, next(counter))
            created.append(fresh)
            return fresh

        merged = State(
            vstack=tuple(plug(v) for v in with_holes.vstack),
            locals=tuple(plug(v) for v in with_holes.locals),
            globals=tuple(plug(v) for v in with_holes.globals),
            memory={k: plug(v) for k, v in with_holes.memory.items()},
        )
        logger.debug(
            "merge block %d: %d predecessors, %d merge variables",
            block.idx, len(analyzed), len(created),
        )
        return merged


def _check_shapes(block_idx: int, states: Sequence[State]) -> None:
    first = states[0]
    for other in states[1:]:
        for part in ("vstack", "locals", "globals"):
            if len(getattr(first, part)) != len(getattr(other, part)):
                raise ShapeMismatchError(
                    f"predecessor states disagree on {part} length",
                    block=block_idx,
                    lengths=(len(getattr(first, part)), len(getattr(other, part))),
                )


def _mark_holes(acc: State, other: State) -> State:
    def same(a: Var, b: Var) -> Var:
        return a if a == b else HOLE

    memory: Dict[MemoryKey, Var] = {}
    for key, value in acc.memory.items():
        # a binding missing on one path is lost at the join
        if key in other.memory:
            memory[key] = same(value, other.memory[key])
    return State(
        vstack=tuple(map(same, acc.vstack, other.vstack)),
        locals=tuple(map(same, acc.locals, other.locals)),
        globals=tuple(map(same, acc.globals, other.globals)),
        memory=memory,
    )
