# tests/test_ctrlflow_graph.py
"""
Tests for the CFG abstraction, edge helpers, labels and errors.
"""

import pytest

from stackslice.ctrlflow_graph import (
    BlockKind,
    add_edge,
    edges_from,
    remove_edge,
    remove_from,
)
from stackslice.errors import (
    AnalysisError,
    InconsistentAnnotationError,
    UnknownLabelError,
)
from stackslice.instructions import Label, LabelSection, lab, merge_label
from tests.conftest import example_c, example_d


class TestEdgeHelpers:

    def test_add_edge_is_copy_on_write(self):
        edges = {0: ((1, None),)}
        new = add_edge(edges, 0, (2, True))
        assert edges == {0: ((1, None),)}
        assert new[0] == ((1, None), (2, True))

    def test_add_edge_no_duplicates(self):
        edges = {0: ((1, None),)}
        assert add_edge(edges, 0, (1, None)) == edges

    def test_remove_edge(self):
        edges = {0: ((1, True), (2, False))}
        assert remove_edge(edges, 0, 1) == {0: ((2, False),)}

    def test_remove_from(self):
        assert remove_from({0: ((1, None),), 1: ()}, 0) == {1: ()}

    def test_edges_from_missing(self):
        assert edges_from({}, 3) == []


class TestQueries:

    def test_successors_and_predecessors(self):
        cfg = example_c()
        assert sorted(cfg.successors(1)) == [2, 3]
        assert sorted(cfg.predecessors(3)) == [(1, True), (2, None)]

    def test_find_instr_and_block_of(self):
        cfg = example_c()
        assert cfg.find_instr(lab(3)).label == lab(3)
        assert cfg.block_of(lab(4)).idx == 2
        assert cfg.block_of(lab(2)).kind is BlockKind.CONTROL
        assert cfg.block_of(merge_label(3)).is_merge

    def test_all_instructions(self):
        cfg = example_d()
        assert cfg.all_instruction_labels() == {lab(i) for i in range(11) if i != 4}
        assert {b.idx for b in cfg.all_merge_blocks()} == {4, 6}
        assert cfg.all_block_indices() == set(range(7))

    def test_block_labels(self):
        cfg = example_d()
        assert cfg.find_block(1).label == lab(1)
        assert cfg.find_block(4).label == merge_label(4)
        assert cfg.find_block(0).label is None

    def test_unknown_block(self):
        with pytest.raises(UnknownLabelError):
            example_c().find_block(42)

    def test_unknown_label(self):
        cfg = example_c()
        with pytest.raises(UnknownLabelError) as exc:
            cfg.find_instr(lab(42))
        assert isinstance(exc.value, KeyError)
        assert isinstance(exc.value, AnalysisError)
        assert "SSL-4002" in str(exc.value)

    def test_unannotated_block_state(self):
        with pytest.raises(InconsistentAnnotationError):
            example_c().state_before_block(0)


class TestAnnotations:

    def test_clear_annotations(self, cfg_d):
        cleared = cfg_d.clear_annotations()
        for block in cleared.basic_blocks.values():
            assert block.annotation_after is None
            for instr in block.all_direct_instructions():
                assert instr.annotation_after is None

    def test_to_string(self, cfg_c):
        text = cfg_c.to_string()
        assert "entry=0 exit=5" in text
        assert "-> 3 [true]" in text
        assert "br_if" in text


class TestLabels:

    def test_sections_order_and_render(self):
        assert str(lab(3)) == "3"
        assert str(merge_label(3)) == "merge(3)"
        assert str(Label(3, LabelSection.DUMMY)) == "dummy(3)"
        assert lab(3) != merge_label(3)
        assert sorted([merge_label(1), lab(2), lab(1)]) == [lab(1), merge_label(1), lab(2)]
