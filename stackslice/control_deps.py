"""
stackslice/control_deps.py
══════════════════════════

Control dependences of an analysed CFG, used by the slicer as an oracle.

Block-level dependences follow Ferrante, Ottenstein & Warren: for every
edge ``A -> B`` leaving a predicate block A, every block on the
post-dominator tree path from B up to (excluding) ``ipdom(A)`` is control
dependent on A.  Post-dominators are computed with the Cooper, Harvey &
Kennedy iterative algorithm on the reversed graph.

Predicates are CONTROL blocks whose instruction decides between several
successors (``if``, ``br_if``, ``br_table``).  Blocks from which the exit
cannot be reached have no post-dominator and depend on nothing.

Queries are phrased in terms of uses:

    InstructionUse(label, _)  -> labels of the branches the instruction's
                                 block depends on
    MergeUse(block, _)        -> the branches the merge block and its
                                 predecessors depend on, plus every
                                 predecessor that is itself a branch
"""

from __future__ import annotations

import logging
from typing import Dict, List, Set

from stackslice.ctrlflow_graph import CFG, BlockKind
from stackslice.instructions import BRANCHING_OPS, Label
from stackslice.use_def import InstructionUse, MergeUse, Use

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# POST-DOMINATORS
# ═══════════════════════════════════════════════════════════════════════════


def _reverse_postorder(start: int, succs: Dict[int, List[int]]) -> List[int]:
    """Reverse postorder traversal from *start*."""
    visited: Set[int] = {start}
    post_order: List[int] = []
    stack = [(start, iter(succs.get(start, [])))]
    while stack:
        node, it = stack[-1]
        for s in it:
            if s not in visited:
                visited.add(s)
                stack.append((s, iter(succs.get(s, []))))
                break
        else:
            stack.pop()
            post_order.append(node)
    post_order.reverse()
    return post_order


def compute_post_dominators(
    succs: Dict[int, List[int]],
    preds: Dict[int, List[int]],
    exit_id: int,
) -> Dict[int, int]:
    """Immediate post-dominator of every block that reaches *exit_id*.

    Parameters
    ----------
    succs, preds : Dict[int, List[int]]
        Forward successor and predecessor maps.
    exit_id : int
        The unique exit block; it maps to itself.
    """
    # reverse graph: walk predecessors from the exit
    rpo = _reverse_postorder(exit_id, preds)
    rpo_number = {nid: i for i, nid in enumerate(rpo)}
    ipdom: Dict[int, int] = {exit_id: exit_id}

    def intersect(b1: int, b2: int) -> int:
        while b1 != b2:
            while rpo_number[b1] > rpo_number[b2]:
                b1 = ipdom[b1]
            while rpo_number[b2] > rpo_number[b1]:
                b2 = ipdom[b2]
        return b1

    changed = True
    while changed:
        changed = False
        for nid in rpo:
            if nid == exit_id:
                continue
            processed = [s for s in succs.get(nid, []) if s in ipdom]
            if not processed:
                continue
            new_ipdom = processed[0]
            for s in processed[1:]:
                new_ipdom = intersect(new_ipdom, s)
            if ipdom.get(nid) != new_ipdom:
                ipdom[nid] = new_ipdom
                changed = True
    return ipdom


def compute_control_dependence(
    succs: Dict[int, List[int]],
    ipdom: Dict[int, int],
    predicates: Set[int],
) -> Dict[int, Set[int]]:
    """Map each block to the predicate blocks it is control dependent on."""
    deps: Dict[int, Set[int]] = {}
    for a in predicates:
        if a not in ipdom:
            continue
        stop = ipdom[a]
        for b in succs.get(a, []):
            runner = b
            seen: Set[int] = set()
            while runner != stop and runner in ipdom and runner not in seen:
                seen.add(runner)
                deps.setdefault(runner, set()).add(a)
                if ipdom[runner] == runner:
                    break
                runner = ipdom[runner]
    return deps


# ═══════════════════════════════════════════════════════════════════════════
# ORACLE
# ═══════════════════════════════════════════════════════════════════════════


class ControlDependencies:
    """Control-dependence oracle over the blocks of one CFG.

    Build it with :meth:`build`; query it with :meth:`find`.
    """

    def __init__(self, cfg: CFG, block_deps: Dict[int, Set[int]]) -> None:
        self.cfg = cfg
        self._block_deps = block_deps

    @classmethod
    def build(cls, cfg: CFG) -> "ControlDependencies":
        succs: Dict[int, List[int]] = {}
        preds: Dict[int, List[int]] = {}
        for idx in cfg.basic_blocks:
            succs[idx] = [s for s in cfg.successors(idx) if s in cfg.basic_blocks]
            preds[idx] = [p for p, _ in cfg.predecessors(idx) if p in cfg.basic_blocks]
        predicates = {
            idx for idx, block in cfg.basic_blocks.items() if _is_predicate(block)
        }
        ipdom = compute_post_dominators(succs, preds, cfg.exit_block)
        deps = compute_control_dependence(succs, ipdom, predicates)
        logger.debug(
            "%s: %d predicate blocks, %d control dependent blocks",
            cfg.name or cfg.idx, len(predicates), len(deps),
        )
        return cls(cfg, deps)

    def block_dependencies(self, idx: int) -> Set[int]:
        """Predicate blocks that block *idx* is control dependent on."""
        return set(self._block_deps.get(idx, ()))

    def _branch_labels(self, blocks: Set[int]) -> Set[Label]:
        return {self.cfg.find_block(b).control.label for b in blocks}

    def find(self, use: Use) -> Set[Label]:
        """Labels of the branch instructions *use* is control dependent on."""
        if isinstance(use, InstructionUse):
            block = self.cfg.block_of(use.label)
            return self._branch_labels(self.block_dependencies(block.idx))
        if isinstance(use, MergeUse):
            blocks = self.block_dependencies(use.block)
            for pred, _cond in self.cfg.predecessors(use.block):
                blocks |= self.block_dependencies(pred)
                if pred in self.cfg.basic_blocks and _is_predicate(self.cfg.find_block(pred)):
                    blocks.add(pred)
            return self._branch_labels(blocks)
        raise TypeError(f"not a use: {use!r}")


def _is_predicate(block) -> bool:
    return block.kind is BlockKind.CONTROL and block.control.op in BRANCHING_OPS
