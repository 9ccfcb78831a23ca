"""
stackslice.dataflow_engine
==========================

Sequential fixpoint driver attaching a ``(before, after)`` state pair to
every instruction and block of a CFG.

The driver is deliberately simple and *ordered*: the analyses of
:mod:`stackslice.spec_inference` use a "most recent wins" join, so the
fixpoint reached on loops depends on the visiting order.  Blocks are
processed in reverse postorder from the entry; whenever the out-state of
a block changes, its successors are re-queued and the worklist always
yields the pending block that comes first in reverse postorder.

Per visited block:

1.  collect ``(pred, state)`` for every predecessor edge: an unanalysed
    predecessor contributes ``bottom_state``, a conditional edge takes
    the state of the matching branch;
2.  ``merge_flows`` the incoming states, then ``join_state`` the result
    with the previously recorded in-state;
3.  run the block: data instructions in order, the single control
    instruction, or nothing for a merge block;
4.  record the before/after states.

For a merge block the recorded *before* state is the incoming state of
the most recently analysed predecessor and the *after* state is the
reconciled one, so that the merge variables it introduces show up as
differences between the two.

Public API
----------
    AnalysisResult          - states per block / instruction, iteration stats
    IntraproceduralSolver   - the fixpoint engine
    analyze                 - convenience function returning an annotated CFG
"""

from __future__ import annotations

import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from stackslice.ctrlflow_graph import CFG, BasicBlock, BlockKind
from stackslice.instructions import Label
from stackslice.spec_inference import Branch, ControlResult, Simple, SpecInference
from stackslice.spec_state import DEFAULT_CONFIG, AnalysisConfig, State

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Container for the states computed by :class:`IntraproceduralSolver`.

    Attributes
    ----------
    block_states : dict
        Block index → ``(before, after)``.
    instr_states : dict
        Instruction label → ``(before, after)``.
    iterations : int
        Number of block visits performed.
    converged : bool
        Whether the worklist was emptied before the iteration bound.
    elapsed_seconds : float
        Wall-clock time.
    """

    block_states: Dict[int, Tuple[State, State]] = field(default_factory=dict)
    instr_states: Dict[Label, Tuple[State, State]] = field(default_factory=dict)
    iterations: int = 0
    converged: bool = False
    elapsed_seconds: float = 0.0


class IntraproceduralSolver:
    """Fixpoint engine for the symbolic naming analysis of one function.

    Parameters
    ----------
    cfg : CFG
        The control flow graph to annotate.
    transfer : SpecInference
        Transfer functions and merge engine.
    max_iterations : int
        Safety bound on block visits.
    """

    def __init__(
        self,
        cfg: CFG,
        transfer: SpecInference,
        max_iterations: int = 100_000,
    ) -> None:
        self.cfg = cfg
        self.transfer = transfer
        self.max_iterations = max_iterations
        self._order: List[int] = self._reverse_postorder()
        self._rank: Dict[int, int] = {b: i for i, b in enumerate(self._order)}
        self._in: Dict[int, State] = {}
        self._out: Dict[int, ControlResult] = {}

    def solve(self) -> AnalysisResult:
        """Run the analysis to fixpoint."""
        t0 = time.monotonic()
        result = AnalysisResult()

        worklist: List[int] = [self._rank[b] for b in self._order]
        heapq.heapify(worklist)
        pending: Set[int] = set(self._order)

        while worklist and result.iterations < self.max_iterations:
            block_idx = self._order[heapq.heappop(worklist)]
            pending.discard(block_idx)
            result.iterations += 1

            block = self.cfg.find_block(block_idx)
            changed = self._visit(block, result)
            if not changed:
                continue
            for succ in self.cfg.successors(block_idx):
                if succ not in pending and succ in self._rank:
                    pending.add(succ)
                    heapq.heappush(worklist, self._rank[succ])

        result.converged = not worklist
        if not result.converged:
            logger.warning(
                "%s: stopped after %d iterations without reaching a fixpoint",
                self.cfg.name or self.cfg.idx, result.iterations,
            )
        result.elapsed_seconds = time.monotonic() - t0
        logger.debug(
            "%s: fixpoint after %d block visits",
            self.cfg.name or self.cfg.idx, result.iterations,
        )
        return result

    def annotated_cfg(self) -> CFG:
        """Solve and return a copy of the CFG carrying every state."""
        result = self.solve()
        return self.cfg.annotate(result.block_states, result.instr_states)

    # ----- Internal helpers -------------------------------------------------

    def _visit(self, block: BasicBlock, result: AnalysisResult) -> bool:
        cfg, tf = self.cfg, self.transfer
        incoming = [
            (pred, self._out_state(pred, cond))
            for pred, cond in cfg.predecessors(block.idx)
        ]
        entry_state = tf.merge_flows(cfg, block, incoming)
        if block.idx in self._in:
            entry_state = tf.join_state(self._in[block.idx], entry_state)
        self._in[block.idx] = entry_state

        if block.kind is BlockKind.MERGE:
            before = entry_state
            for _, state in incoming:
                if not state.is_bottom():
                    before = tf.join_state(before, state)
            out: ControlResult = Simple(entry_state)
        elif block.kind is BlockKind.CONTROL:
            before = entry_state
            out = tf.transfer_control(cfg, block.control, entry_state)
            result.instr_states[block.control.label] = (before, _main_state(out))
        else:
            before = entry_state
            state = entry_state
            for instr in block.instrs:
                after = tf.transfer_data(cfg, instr, state)
                result.instr_states[instr.label] = (state, after)
                state = after
            out = Simple(state)

        result.block_states[block.idx] = (before, _main_state(out))
        previous = self._out.get(block.idx)
        self._out[block.idx] = out
        return previous != out

    def _out_state(self, pred: int, cond: Optional[bool]) -> State:
        out = self._out.get(pred)
        if out is None:
            return self.transfer.bottom_state(self.cfg)
        if isinstance(out, Branch):
            return out.false_state if cond is False else out.true_state
        return out.state

    def _reverse_postorder(self) -> List[int]:
        """Reverse postorder from the entry, unreachable blocks appended."""
        visited: Set[int] = set()
        order: List[int] = []

        def dfs(idx: int) -> None:
            stack = [(idx, iter(self.cfg.successors(idx)))]
            visited.add(idx)
            while stack:
                node, succs = stack[-1]
                for succ in succs:
                    if succ not in visited and succ in self.cfg.basic_blocks:
                        visited.add(succ)
                        stack.append((succ, iter(self.cfg.successors(succ))))
                        break
                else:
                    stack.pop()
                    order.append(node)

        if self.cfg.entry_block in self.cfg.basic_blocks:
            dfs(self.cfg.entry_block)
        reachable = list(reversed(order))
        order.clear()
        for idx in sorted(self.cfg.basic_blocks):
            if idx not in visited:
                dfs(idx)
        return reachable + list(reversed(order))


def _main_state(out: ControlResult) -> State:
    if isinstance(out, Branch):
        return out.true_state
    return out.state


def analyze(
    cfg: CFG,
    config: AnalysisConfig = DEFAULT_CONFIG,
    **solver_kwargs,
) -> CFG:
    """Annotate *cfg* with the symbolic naming analysis.

    Parameters
    ----------
    cfg : CFG
        Input CFG; existing annotations are ignored and replaced.
    config : AnalysisConfig
        Precision knobs for this run.
    **solver_kwargs :
        Forwarded to :class:`IntraproceduralSolver`.
    """
    solver = IntraproceduralSolver(cfg, SpecInference(config), **solver_kwargs)
    return solver.annotated_cfg()
