# tests/test_use_def.py
"""
Tests for the use-def chain builder.
"""

import pytest

from stackslice.dataflow_engine import analyze
from stackslice.errors import (
    DuplicateDefinitionError,
    InconsistentAnnotationError,
    MissingDefinitionError,
)
from stackslice.instructions import DataInstr, DataOp, PrimValue, lab, merge_label
from stackslice.spec_state import AnalysisConfig, State
from stackslice.use_def import (
    ConstantDef,
    EntryDef,
    InstructionDef,
    InstructionUse,
    MergeDef,
    MergeUse,
    UseDefChains,
    count_vars,
    instr_def,
    instr_use,
    label_stores,
    make,
    merge_memory_uses,
    merge_uses,
    store_sites,
)
from stackslice.variables import RETURN, Constant, Local, MergeVar, StackOrigin
from tests.conftest import (
    add,
    const,
    counting_loop,
    drop,
    example_a,
    example_b,
    example_c,
    example_d,
    local_get,
    memsize,
    stores_in_both_arms,
    straight_line,
)

C0 = Constant(PrimValue.i32(0))
C1 = Constant(PrimValue.i32(1))


def _hand_annotated(instrs, annotations):
    """Straight-line CFG carrying the given (before, after) states."""
    entry = State(locals=(Local(0),))
    last = annotations[instrs[-1].label][1]
    return straight_line(instrs).annotate({0: (entry, last), 1: (last, last)}, annotations)


class TestExampleA:

    def test_chain_of_add(self, cfg_a):
        _, _, chains = make(cfg_a)
        assert chains.get(InstructionUse(lab(2), C0)) == InstructionDef(lab(0), C0)
        assert chains.get(InstructionUse(lab(2), C1)) == InstructionDef(lab(1), C1)

    def test_defs(self, cfg_a):
        defs, _, _ = make(cfg_a)
        assert defs[StackOrigin(lab(2))] == InstructionDef(lab(2), StackOrigin(lab(2)))
        assert defs[RETURN] == MergeDef(1, RETURN)
        assert defs[Local(0)] == EntryDef(Local(0))

    def test_exit_uses_result(self, cfg_a):
        _, uses, _ = make(cfg_a)
        assert uses[StackOrigin(lab(2))] == {MergeUse(1, StackOrigin(lab(2)))}


class TestTotality:

    @pytest.mark.parametrize("build", [
        example_a, example_b, example_c, example_d, counting_loop,
    ])
    def test_every_var_has_one_def(self, build):
        cfg = analyze(build())
        defs, uses, chains = make(cfg)
        assert len(defs) == count_vars(cfg)
        assert len(chains) == sum(len(u) for u in uses.values())

    def test_second_producer_fails(self):
        x = StackOrigin(lab(9))
        empty = State(locals=(Local(0),))
        pushed = State(vstack=(x,), locals=(Local(0),))
        both = State(vstack=(x, x), locals=(Local(0),))
        cfg = _hand_annotated(
            [memsize(0), memsize(1)],
            {lab(0): (empty, pushed), lab(1): (empty, both)},
        )
        with pytest.raises(DuplicateDefinitionError):
            make(cfg)

    def test_unresolved_use_fails(self):
        ghost = StackOrigin(lab(42))
        before = State(vstack=(ghost,), locals=(Local(0),))
        after = State(locals=(Local(0),))
        cfg = _hand_annotated([drop(0)], {lab(0): (before, after)})
        with pytest.raises(MissingDefinitionError):
            make(cfg)

    def test_chains_reject_second_def(self):
        chains = UseDefChains()
        use = InstructionUse(lab(1), C0)
        chains.add(use, InstructionDef(lab(0), C0))
        with pytest.raises(DuplicateDefinitionError):
            chains.add(use, ConstantDef(C0))

    def test_chains_missing_lookup(self):
        with pytest.raises(MissingDefinitionError):
            UseDefChains().get(InstructionUse(lab(1), C0))


class TestMergeUses:

    def test_if_else_operands(self, cfg_d):
        pairs = merge_uses(cfg_d, cfg_d.find_block(4))
        m = MergeVar(4, 1)
        assert set(pairs) == {(StackOrigin(lab(2)), m), (StackOrigin(lab(3)), m)}

    def test_if_else_chains(self, cfg_d):
        defs, _, chains = make(cfg_d)
        m = MergeVar(4, 1)
        assert defs[m] == MergeDef(4, m)
        assert chains.get(MergeUse(4, StackOrigin(lab(2)))) == InstructionDef(
            lab(2), StackOrigin(lab(2))
        )
        assert chains.get(InstructionUse(lab(10), m)) == MergeDef(4, m)

    def test_loop_header_operands(self, cfg_loop):
        pairs = merge_uses(cfg_loop, cfg_loop.find_block(1))
        m = MergeVar(1, 1)
        assert set(pairs) == {(C0, m), (StackOrigin(lab(4)), m)}

    def test_agreeing_merge_has_no_uses(self, cfg_c):
        assert merge_uses(cfg_c, cfg_c.find_block(3)) == []


class TestMemoryMerges:

    @pytest.fixture
    def cfg(self):
        return analyze(stores_in_both_arms())

    def test_merge_renames_slot(self, cfg):
        slot = (Local(0), 0)
        assert cfg.state_after_block(4).memory == {slot: MergeVar(4, 1)}
        assert set(merge_memory_uses(cfg, cfg.find_block(4))) == {
            (slot, StackOrigin(lab(3))), (slot, StackOrigin(lab(6))),
        }

    def test_store_sites(self, cfg):
        slot = (Local(0), 0)
        assert store_sites(cfg) == {
            (slot, StackOrigin(lab(3))): {lab(4)},
            (slot, StackOrigin(lab(6))): {lab(7)},
        }

    def test_merge_reaches_both_stores(self, cfg):
        assert label_stores(cfg, merge_label(4)) == {lab(4), lab(7)}
        assert label_stores(cfg, lab(3)) == set()

    def test_merge_var_chains(self, cfg):
        defs, _, chains = make(cfg)
        m = MergeVar(4, 1)
        assert defs[m] == MergeDef(4, m)
        assert chains.get(MergeUse(4, StackOrigin(lab(3)))) == InstructionDef(
            lab(3), StackOrigin(lab(3))
        )


class TestInstructionUseDef:

    def test_binary(self, cfg_a):
        add_instr = cfg_a.find_instr(lab(2))
        assert instr_use(add_instr) == [C1, C0]
        assert instr_def(add_instr) == [StackOrigin(lab(2))]

    def test_propagated_local_get_defines_nothing(self, cfg_c):
        get = cfg_c.find_instr(lab(5))
        assert instr_use(get) == [Local(0)]
        assert instr_def(get) == []

    def test_local_get_without_propagation(self):
        cfg = analyze(
            straight_line([local_get(0, 0), drop(1)]),
            AnalysisConfig(propagate_locals=False),
        )
        defs, _, chains = make(cfg)
        v = StackOrigin(lab(0))
        assert defs[v] == InstructionDef(lab(0), v)
        assert chains.get(InstructionUse(lab(0), Local(0))) == EntryDef(Local(0))

    def test_propagated_local_set_keeps_def(self, cfg_loop):
        defs, _, _ = make(cfg_loop)
        # l0 = 0 re-exposes the literal, which stays defined by the const
        assert defs[C0] == InstructionDef(lab(0), C0)
        assert instr_def(cfg_loop.find_instr(lab(1))) == []

    def test_shared_constant(self):
        cfg = analyze(straight_line([const(0, 5), const(1, 5), add(2)]))
        c5 = Constant(PrimValue.i32(5))
        defs, _, chains = make(cfg)
        assert defs[c5] == ConstantDef(c5)
        assert chains.get(InstructionUse(lab(2), c5)) == ConstantDef(c5)

    def test_store_and_load(self):
        store = DataInstr(lab(2), DataOp.STORE, 0)
        load = DataInstr(lab(4), DataOp.LOAD, 0)
        cfg = analyze(straight_line([
            memsize(0), memsize(1), store, memsize(3), load,
        ]))
        _, _, chains = make(cfg)
        assert instr_use(cfg.find_instr(lab(2))) == [
            StackOrigin(lab(1)), StackOrigin(lab(0)),
        ]
        assert instr_def(cfg.find_instr(lab(2))) == []
        assert chains.get(InstructionUse(lab(2), StackOrigin(lab(1)))) == InstructionDef(
            lab(1), StackOrigin(lab(1))
        )

    def test_store_without_memory_entry(self):
        x, y = StackOrigin(lab(0)), StackOrigin(lab(1))
        base = State(locals=(Local(0),))
        store = DataInstr(lab(2), DataOp.STORE, 0)
        cfg = _hand_annotated(
            [memsize(0), memsize(1), store],
            {
                lab(0): (base, State(vstack=(x,), locals=(Local(0),))),
                lab(1): (State(vstack=(x,), locals=(Local(0),)),
                         State(vstack=(y, x), locals=(Local(0),))),
                lab(2): (State(vstack=(y, x), locals=(Local(0),)), base),
            },
        )
        with pytest.raises(InconsistentAnnotationError):
            instr_def(cfg.find_instr(lab(2)))

    def test_unannotated_instruction(self):
        with pytest.raises(InconsistentAnnotationError):
            instr_use(memsize(0))


class TestCountVars:

    def test_example_a(self, cfg_a):
        # l0, two literals, the sum and the result
        assert count_vars(cfg_a) == 5

    def test_unannotated(self):
        assert count_vars(example_a()) == 0

    def test_if_else(self, cfg_d):
        assert count_vars(cfg_d) == 11
