# tests/conftest.py
"""
Shared CFG builders for the stackslice test-suite.

Every builder returns an *unannotated* CFG; run
:func:`stackslice.dataflow_engine.analyze` on it to get the annotated one.
Block layouts follow the usual front-end conventions: straight-line code
in data blocks, one control instruction per control block, a merge block
at every join and a merge block as the function exit.
"""

from __future__ import annotations

import pytest

from stackslice.ctrlflow_graph import CFG, BasicBlock, FunctionSignature
from stackslice.dataflow_engine import analyze
from stackslice.instructions import (
    ControlInstr,
    ControlOp,
    DataInstr,
    DataOp,
    PrimValue,
    ValueType,
    lab,
)

I32 = ValueType.I32


# ── instruction helpers ─────────────────────────────────────────────


def memsize(n):
    return DataInstr(lab(n), DataOp.MEMORY_SIZE, mnemonic="memory.size")


def add(n):
    return DataInstr(lab(n), DataOp.BINARY, mnemonic="i32.add")


def drop(n):
    return DataInstr(lab(n), DataOp.DROP, mnemonic="drop")


def nop(n):
    return DataInstr(lab(n), DataOp.NOP, mnemonic="nop")


def const(n, value):
    return DataInstr(lab(n), DataOp.CONST, PrimValue.i32(value), mnemonic="i32.const")


def local_get(n, idx):
    return DataInstr(lab(n), DataOp.LOCAL_GET, idx, mnemonic="local.get")


def local_set(n, idx):
    return DataInstr(lab(n), DataOp.LOCAL_SET, idx, mnemonic="local.set")


def store(n, offset=0):
    return DataInstr(lab(n), DataOp.STORE, offset, mnemonic="i32.store")


def ctrl(n, op, arity=(0, 0), arg=None):
    return ControlInstr(lab(n), op, arity=arity, arg=arg)


def signature(nparams=1, nglobals=0, results=1):
    return FunctionSignature(
        arg_types=(I32,) * nparams,
        global_types=(I32,) * nglobals,
        return_types=(I32,) * results,
    )


def straight_line(instrs, sig=None):
    """One data block followed by the exit merge block."""
    return CFG.from_edges(
        sig or signature(),
        [BasicBlock.data_block(0, instrs), BasicBlock.merge_block(1)],
        [(0, 1, None)],
        entry_block=0,
        exit_block=1,
    )


# ── example programs ────────────────────────────────────────────────


def example_a():
    """``i32.const 0; i32.const 1; i32.add``"""
    return straight_line([const(0, 0), const(1, 1), add(2)])


def example_b():
    """``memory.size; memory.size; add; drop; memory.size; memory.size; add``"""
    return straight_line([
        memsize(0), memsize(1), add(2), drop(3), memsize(4), memsize(5), add(6),
    ])


def example_c():
    """``block { memory.size; br_if 0; memory.size; drop }; local.get 0``"""
    blocks = [
        BasicBlock.data_block(0, [memsize(1)]),
        BasicBlock.control_block(1, ctrl(2, ControlOp.BR_IF, arg=0)),
        BasicBlock.data_block(2, [memsize(3), drop(4)]),
        BasicBlock.merge_block(3),
        BasicBlock.data_block(4, [local_get(5, 0)]),
        BasicBlock.merge_block(5),
    ]
    edges = [
        (0, 1, None),
        (1, 3, True),
        (1, 2, False),
        (2, 3, None),
        (3, 4, None),
        (4, 5, None),
    ]
    return CFG.from_edges(signature(), blocks, edges, entry_block=0, exit_block=5)


def example_d():
    """``memory.size; if { memory.size } else { memory.size }; ...; add``"""
    blocks = [
        BasicBlock.data_block(0, [memsize(0)]),
        BasicBlock.control_block(1, ctrl(1, ControlOp.IF)),
        BasicBlock.data_block(2, [memsize(2)]),
        BasicBlock.data_block(3, [memsize(3)]),
        BasicBlock.merge_block(4),
        BasicBlock.data_block(5, [
            memsize(5), memsize(6), add(7), drop(8), memsize(9), add(10),
        ]),
        BasicBlock.merge_block(6),
    ]
    edges = [
        (0, 1, None),
        (1, 2, True),
        (1, 3, False),
        (2, 4, None),
        (3, 4, None),
        (4, 5, None),
        (5, 6, None),
    ]
    return CFG.from_edges(signature(), blocks, edges, entry_block=0, exit_block=6)


def counting_loop():
    """``l0 = 0; loop { l0 = l0 + 1; br_if 0 (l0) }``"""
    blocks = [
        BasicBlock.data_block(0, [const(0, 0), local_set(1, 0)]),
        BasicBlock.merge_block(1),
        BasicBlock.data_block(2, [
            local_get(2, 0), const(3, 1), add(4), local_set(5, 0), local_get(6, 0),
        ]),
        BasicBlock.control_block(3, ctrl(7, ControlOp.BR_IF, arg=0)),
        BasicBlock.merge_block(4),
    ]
    edges = [
        (0, 1, None),
        (1, 2, None),
        (2, 3, None),
        (3, 1, True),
        (3, 4, False),
    ]
    return CFG.from_edges(
        signature(results=0), blocks, edges, entry_block=0, exit_block=4,
        loop_heads=frozenset({1}),
    )


def balanced_middle():
    """Three chained data blocks, the middle one leaves the stack height as is."""
    blocks = [
        BasicBlock.data_block(0, [memsize(0)]),
        BasicBlock.data_block(1, [memsize(1), drop(2)]),
        BasicBlock.data_block(2, [drop(3)]),
        BasicBlock.merge_block(3),
    ]
    edges = [(0, 1, None), (1, 2, None), (2, 3, None)]
    return CFG.from_edges(
        signature(results=0), blocks, edges, entry_block=0, exit_block=3
    )


def no_locals_if_else():
    """``memory.size; if { nop } else { nop }`` with no locals, globals or results."""
    blocks = [
        BasicBlock.data_block(0, [memsize(0)]),
        BasicBlock.control_block(1, ctrl(1, ControlOp.IF)),
        BasicBlock.data_block(2, [nop(2)]),
        BasicBlock.data_block(3, [nop(3)]),
        BasicBlock.merge_block(4),
    ]
    edges = [(0, 1, None), (1, 2, True), (1, 3, False), (2, 4, None), (3, 4, None)]
    return CFG.from_edges(FunctionSignature(), blocks, edges, entry_block=0, exit_block=4)


def no_locals_loop():
    """``nop; loop { memory.size; br_if 0 }`` with no locals, globals or results."""
    blocks = [
        BasicBlock.data_block(0, [nop(0)]),
        BasicBlock.merge_block(1),
        BasicBlock.data_block(2, [memsize(1)]),
        BasicBlock.control_block(3, ctrl(2, ControlOp.BR_IF, arg=0)),
        BasicBlock.merge_block(4),
    ]
    edges = [(0, 1, None), (1, 2, None), (2, 3, None), (3, 1, True), (3, 4, False)]
    return CFG.from_edges(
        FunctionSignature(), blocks, edges, entry_block=0, exit_block=4,
        loop_heads=frozenset({1}),
    )


def stores_in_both_arms():
    """``memory.size; if { l0[0] = memory.size } else { l0[0] = memory.size }``"""
    blocks = [
        BasicBlock.data_block(0, [memsize(0)]),
        BasicBlock.control_block(1, ctrl(1, ControlOp.IF)),
        BasicBlock.data_block(2, [local_get(2, 0), memsize(3), store(4)]),
        BasicBlock.data_block(3, [local_get(5, 0), memsize(6), store(7)]),
        BasicBlock.merge_block(4),
    ]
    edges = [(0, 1, None), (1, 2, True), (1, 3, False), (2, 4, None), (3, 4, None)]
    return CFG.from_edges(
        signature(results=0), blocks, edges, entry_block=0, exit_block=4
    )


# ── fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def cfg_a():
    return analyze(example_a())


@pytest.fixture
def cfg_b():
    return analyze(example_b())


@pytest.fixture
def cfg_c():
    return analyze(example_c())


@pytest.fixture
def cfg_d():
    return analyze(example_d())


@pytest.fixture
def cfg_loop():
    return analyze(counting_loop())
