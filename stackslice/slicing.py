"""
stackslice/slicing.py
═════════════════════

Backward slicing of an analysed CFG.

Two phases:

1.  :func:`instructions_to_keep`: reachability over the union of data
    dependences (use → def, from :mod:`stackslice.use_def`) and control
    dependences (use → governing branch, from
    :mod:`stackslice.control_deps`), starting at the criterion.

2.  :func:`slice_cfg`: rewrite the CFG so that only the kept
    instructions remain, while every block keeps its net effect on the
    operand stack height:

        merge block               kept as is
        control block, kept       kept as is
        control block, not kept   placeholder data block (drops / pushes)
        data block                kept instructions, each discarded run
                                  replaced by placeholders
        empty, not structural     deleted, incoming edges spliced onto
                                  outgoing edges

    A block is *structural* when it is the entry, the exit, or has more
    than one predecessor.  Placeholders are ``drop`` and ``i32.const 0``
    instructions labelled in the DUMMY section.

Adjacent placeholder blocks are not coalesced; the result is larger than
minimal but control and stack equivalent, and ready for re-analysis.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Sequence, Set

from stackslice.control_deps import ControlDependencies
from stackslice.ctrlflow_graph import (
    CFG,
    BasicBlock,
    BlockKind,
    Edges,
    add_edge,
    edges_from,
    remove_edge,
    remove_from,
)
from stackslice.instructions import (
    ControlOp,
    DataInstr,
    DataOp,
    Label,
    LabelSection,
    PrimValue,
)
from stackslice.use_def import (
    UseDefChains,
    def_label,
    label_stores,
    label_uses,
    make,
    store_sites,
    use_at,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# CRITERION SEARCH
# ═══════════════════════════════════════════════════════════════════════════


def instructions_to_keep(
    cfg: CFG,
    criterion: Label,
    control_deps: Optional[ControlDependencies] = None,
    chains: Optional[UseDefChains] = None,
) -> Set[Label]:
    """Labels (instructions and merge blocks) the criterion depends on.

    A merge block that renames a memory slot also pulls in the stores
    that wrote the incoming values into that slot.

    Parameters
    ----------
    cfg : CFG
        An analysed CFG.
    criterion : Label
        The instruction (or merge block) whose effect must be reproduced.
    control_deps : Optional[ControlDependencies]
        Control-dependence oracle; built from *cfg* when omitted.
    chains : Optional[UseDefChains]
        Use-def chains; built from *cfg* when omitted.

    Returns
    -------
    Set[Label]
        Always contains *criterion*.
    """
    if chains is None:
        _, _, chains = make(cfg)
    if control_deps is None:
        control_deps = ControlDependencies.build(cfg)

    sites = store_sites(cfg)

    visited: Set[Label] = set()
    worklist: List[Label] = [criterion]
    while worklist:
        label = worklist.pop()
        if label in visited:
            continue
        visited.add(label)
        for var in label_uses(cfg, label):
            use = use_at(label, var)
            source = def_label(chains.get(use))
            if source is not None and source not in visited:
                worklist.append(source)
            for branch in control_deps.find(use):
                if branch not in visited:
                    worklist.append(branch)
        for store in label_stores(cfg, label, sites):
            if store not in visited:
                worklist.append(store)

    logger.debug("slice of %s keeps %d labels", criterion, len(visited))
    return visited


# ═══════════════════════════════════════════════════════════════════════════
# STACK HEIGHT BOOKKEEPING
# ═══════════════════════════════════════════════════════════════════════════


def block_effect_on_stack_size(cfg: CFG, block: BasicBlock) -> int:
    """Net change of the stack height across *block*."""
    before = cfg.state_before_block(block.idx)
    after = cfg.state_after_block(block.idx)
    return len(after.vstack) - len(before.vstack)


def instrs_effect_on_stack_size(instrs: Sequence[DataInstr]) -> int:
    """Net change of the stack height across a run of annotated instructions."""
    if not instrs:
        return 0
    return len(instrs[-1].annotation_after.vstack) - len(instrs[0].annotation_before.vstack)


def dummy_instrs(net: int, labels: Iterator[int]) -> List[DataInstr]:
    """Placeholders reproducing a stack height change of *net*.

    *labels* supplies fresh ids for the DUMMY section.
    """
    if net < 0:
        return [
            DataInstr(Label(next(labels), LabelSection.DUMMY), DataOp.DROP, mnemonic="drop")
            for _ in range(-net)
        ]
    return [
        DataInstr(
            Label(next(labels), LabelSection.DUMMY),
            DataOp.CONST,
            PrimValue.i32(0),
            mnemonic="i32.const",
        )
        for _ in range(net)
    ]


def _slice_data_instrs(
    instrs: Sequence[DataInstr], keep: Set[Label], labels: Iterator[int]
) -> List[DataInstr]:
    result: List[DataInstr] = []
    run: List[DataInstr] = []
    for instr in instrs:
        if instr.label in keep:
            result.extend(dummy_instrs(instrs_effect_on_stack_size(run), labels))
            run = []
            result.append(instr.clear_annotation())
        else:
            run.append(instr)
    result.extend(dummy_instrs(instrs_effect_on_stack_size(run), labels))
    return result


# ═══════════════════════════════════════════════════════════════════════════
# CFG REWRITE
# ═══════════════════════════════════════════════════════════════════════════


def _splice_out(edges: Edges, back_edges: Edges, idx: int):
    """Remove block *idx*, connecting each predecessor to each successor."""
    preds = edges_from(back_edges, idx)
    succs = edges_from(edges, idx)
    for pred, cond in preds:
        edges = remove_edge(edges, pred, idx)
        for succ, _ in succs:
            if succ == pred:
                continue
            edges = add_edge(edges, pred, (succ, cond))
            back_edges = add_edge(back_edges, succ, (pred, cond))
    for succ, _ in succs:
        back_edges = remove_edge(back_edges, succ, idx)
    return remove_from(edges, idx), remove_from(back_edges, idx)


def _reachable(edges: Edges, entry: int) -> Set[int]:
    seen = {entry}
    stack = [entry]
    while stack:
        for dst, _ in edges_from(edges, stack.pop()):
            if dst not in seen:
                seen.add(dst)
                stack.append(dst)
    return seen


def slice_cfg(
    cfg: CFG,
    criterion: Label,
    control_deps: Optional[ControlDependencies] = None,
) -> CFG:
    """Return an unannotated CFG holding only what *criterion* depends on.

    Raises
    ------
    UnknownLabelError
        *criterion* is not an instruction or merge block of *cfg*.
    """
    cfg.block_of(criterion)
    keep = instructions_to_keep(cfg, criterion, control_deps)
    labels = itertools.count()

    blocks: Dict[int, BasicBlock] = {}
    edges: Edges = {k: tuple(v) for k, v in cfg.edges.items()}
    back_edges: Edges = {k: tuple(v) for k, v in cfg.back_edges.items()}
    deleted: Set[int] = set()

    for idx in sorted(cfg.basic_blocks):
        block = cfg.basic_blocks[idx]
        structural = (
            idx in (cfg.entry_block, cfg.exit_block)
            or len(edges_from(back_edges, idx)) > 1
        )

        if block.kind is BlockKind.MERGE:
            blocks[idx] = block.clear_annotation()
            continue
        if block.kind is BlockKind.CONTROL:
            if block.control.label in keep:
                blocks[idx] = block.clear_annotation()
                continue
            instrs = dummy_instrs(block_effect_on_stack_size(cfg, block), labels)
        else:
            instrs = _slice_data_instrs(block.instrs, keep, labels)

        if instrs or structural:
            blocks[idx] = BasicBlock.data_block(idx, instrs)
        else:
            deleted.add(idx)
            edges, back_edges = _splice_out(edges, back_edges, idx)
            logger.debug("slice of %s: block %d removed", criterion, idx)

    reachable = _reachable(edges, cfg.entry_block)
    for src, _ in edges_from(back_edges, cfg.exit_block):
        if src in deleted or src not in reachable:
            edges = remove_edge(edges, src, cfg.exit_block)
            back_edges = remove_edge(back_edges, cfg.exit_block, src)

    sliced = replace(cfg, basic_blocks=blocks, edges=edges, back_edges=back_edges)
    logger.debug(
        "slice of %s: %d of %d blocks, %d instructions",
        criterion, len(blocks), len(cfg.basic_blocks), len(sliced.all_instruction_labels()),
    )
    return sliced


def find_call_indirect_instructions(cfg: CFG) -> List[Label]:
    """Labels of every ``call_indirect`` in *cfg*, in label order."""
    return sorted(
        label
        for label, instr in cfg.all_instructions().items()
        if instr.op is ControlOp.CALL_INDIRECT
    )
