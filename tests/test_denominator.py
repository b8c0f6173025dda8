"""Tests for denominator graph construction and the normalization adapter."""

import logging

import pytest
import torch

from torch_lfmmi import (
    Acceptor,
    ChainTrainingOptions,
    ContextDependency,
    DenominatorGraph,
    DenominatorGraphError,
    NormalizationGraph,
    compute_initial_probs,
    expand_phone_lm,
    minimize_denominator,
    select_anchor_state,
)


class TestExpansion:
    def test_mass_matches_phone_lm(self, small_phone_lm, monophone):
        # Each phone's duration distribution sums to one, so totals agree
        graph = expand_phone_lm(small_phone_lm, monophone, self_loop_prob=0.5)
        expected = small_phone_lm.to_acceptor().total_weight()
        assert graph.total_weight() == pytest.approx(expected, rel=1e-9)

    def test_states_are_stochastic(self, small_phone_lm, monophone):
        graph = expand_phone_lm(small_phone_lm, monophone, self_loop_prob=0.3)
        for state in graph.states():
            if state == graph.start:
                continue
            out = sum(arc.weight for arc in graph.arcs(state)) + graph.final(state)
            assert out == pytest.approx(1.0)

    def test_labels_are_class_ids_plus_one(self, small_phone_lm, monophone):
        graph = expand_phone_lm(small_phone_lm, monophone)
        assert graph.labels() <= set(range(1, monophone.num_classes + 1))
        assert 0 not in graph.labels()

    def test_self_loops_use_loop_class(self, small_phone_lm, monophone):
        graph = expand_phone_lm(small_phone_lm, monophone)
        loop_labels = {arc.label for arc in graph.arcs() if arc.src == arc.dst}
        # Loop classes of the monophone table are the odd ClassIds. Phone 1 may
        # follow itself, and without left context the repeated entry returns to
        # the same state on phone 1's entry class (label 1).
        assert loop_labels == {1, 2, 4, 6}

    def test_every_phone_state_has_one_loop_class_self_loop(self, small_phone_lm, monophone):
        graph = expand_phone_lm(small_phone_lm, monophone)
        for state in graph.states():
            if state == graph.start:
                continue
            loops = [a for a in graph.arcs(state) if a.dst == state and a.label % 2 == 0]
            assert len(loops) == 1

    def test_missing_phone_rejected(self, small_phone_lm):
        ctx = ContextDependency.monophone(num_phones=2)
        with pytest.raises(DenominatorGraphError, match="no classes for phones \\[3\\]"):
            expand_phone_lm(small_phone_lm, ctx)


class TestMinimization:
    def test_preserves_total_and_shrinks(self, small_phone_lm):
        ctx = ContextDependency.left_biphone(num_phones=3)
        expanded = expand_phone_lm(small_phone_lm, ctx)
        minimized = minimize_denominator(expanded)
        assert minimized.num_states <= expanded.num_states
        assert minimized.num_arcs <= expanded.num_arcs
        assert minimized.total_weight() == pytest.approx(expanded.total_weight(), rel=1e-4)

    @pytest.mark.parametrize("context", ["monophone", "left_biphone"])
    def test_rounds_never_grow_the_graph(self, small_phone_lm, context, caplog):
        ctx = getattr(ContextDependency, context)(num_phones=3)
        expanded = expand_phone_lm(small_phone_lm, ctx)
        with caplog.at_level(logging.DEBUG, logger="torch_lfmmi.denominator"):
            minimized = minimize_denominator(expanded)
        sizes = [(expanded.num_states, expanded.num_arcs)]
        sizes += [r.args[1:] for r in caplog.records if r.msg.startswith("minimization round")]
        sizes.append((minimized.num_states, minimized.num_arcs))
        assert len(sizes) == 6
        for (states, arcs), (next_states, next_arcs) in zip(sizes, sizes[1:]):
            assert next_states <= states
            assert next_arcs <= arcs

    def test_expanded_start_is_kept(self, small_phone_lm, monophone):
        # The start of the expansion has no incoming arcs, so no state is added
        expanded = expand_phone_lm(small_phone_lm, monophone)
        minimized = minimize_denominator(expanded)
        assert all(arc.dst != minimized.start for arc in minimized.arcs())
        assert minimized.final(minimized.start) == 0.0

    def test_preserves_weighted_language(self, small_phone_lm, monophone, enumerate_paths):
        expanded = expand_phone_lm(small_phone_lm, monophone)
        minimized = minimize_denominator(expanded)
        for length in (1, 2, 3):
            before = enumerate_paths(expanded, length)
            after = enumerate_paths(minimized, length)
            assert before.keys() == after.keys()
            for labels, weight in before.items():
                assert after[labels] == pytest.approx(weight, rel=1e-4)

    def test_even_rounds_rejected(self, small_phone_lm, monophone):
        expanded = expand_phone_lm(small_phone_lm, monophone)
        with pytest.raises(ValueError, match="must be odd"):
            minimize_denominator(expanded, rounds=2)


class TestInitialProbs:
    def test_distribution(self, phone_lm_den):
        probs = phone_lm_den.initial_probs
        assert probs.shape == (phone_lm_den.num_states,)
        assert probs.sum().item() == pytest.approx(1.0)
        assert (probs >= 0).all()

    def test_averaging_from_start(self, two_state_acceptor):
        # Step 1: (0.5, 0.5); step 2: (0.25, 0.75); average (0.375, 0.625)
        probs = compute_initial_probs(two_state_acceptor, num_iters=2)
        assert probs.tolist() == pytest.approx([0.375, 0.625])

    def test_mass_leaving_graph_raises(self):
        graph = Acceptor()
        a, b = graph.add_state(), graph.add_state(final=1.0)
        graph.set_start(a)
        graph.add_arc(a, b, label=1)
        with pytest.raises(DenominatorGraphError, match="left the denominator graph"):
            compute_initial_probs(graph, num_iters=3)

    def test_final_probs_are_ones(self, phone_lm_den):
        assert torch.equal(
            phone_lm_den.final_probs, torch.ones(phone_lm_den.num_states, dtype=torch.float64)
        )


class TestAnchorSelection:
    def test_max_initial(self, two_state_acceptor):
        probs = torch.tensor([0.2, 0.8], dtype=torch.float64)
        assert select_anchor_state(two_state_acceptor, probs, "max_initial") == 1

    def test_max_reach(self, two_state_acceptor):
        # B has predecessors {A, B}, A only {A}
        probs = torch.tensor([0.6, 0.4], dtype=torch.float64)
        assert select_anchor_state(two_state_acceptor, probs, "max_reach") == 1

    def test_explicit(self, two_state_acceptor):
        probs = torch.tensor([0.6, 0.4], dtype=torch.float64)
        assert select_anchor_state(two_state_acceptor, probs, 0) == 0

    def test_explicit_zero_probability_rejected(self, two_state_acceptor):
        probs = torch.tensor([1.0, 0.0], dtype=torch.float64)
        with pytest.raises(ValueError, match="zero initial probability"):
            select_anchor_state(two_state_acceptor, probs, 1)

    def test_unknown_policy(self, two_state_acceptor):
        probs = torch.tensor([0.5, 0.5], dtype=torch.float64)
        with pytest.raises(ValueError, match="Unknown anchor policy"):
            select_anchor_state(two_state_acceptor, probs, "random")

    def test_build_uses_options(self, small_phone_lm, monophone):
        options = ChainTrainingOptions(anchor_policy="max_reach")
        den = DenominatorGraph.build(small_phone_lm, monophone, options)
        assert den.initial_probs[den.anchor_state] > 0


class TestDenominatorGraph:
    def test_num_classes_from_context(self, phone_lm_den, monophone):
        assert phone_lm_den.num_classes == monophone.num_classes

    def test_dead_end_rejected(self):
        graph = Acceptor()
        a, b, c = graph.add_state(), graph.add_state(final=1.0), graph.add_state()
        graph.set_start(a)
        graph.add_arc(a, b, label=1, weight=0.5)
        graph.add_arc(a, c, label=2, weight=0.5)
        with pytest.raises(DenominatorGraphError, match="dead-end"):
            DenominatorGraph(graph, torch.tensor([1.0, 0.0, 0.0]), anchor_state=0)

    def test_shape_mismatch(self, two_state_acceptor):
        with pytest.raises(ValueError, match="initial_probs must have shape"):
            DenominatorGraph(two_state_acceptor, torch.tensor([1.0]), anchor_state=0)

    def test_with_anchor(self, two_state_den):
        other = two_state_den.with_anchor(1)
        assert other.anchor_state == 1
        assert other.acceptor is two_state_den.acceptor
        with pytest.raises(ValueError, match="out of range"):
            two_state_den.with_anchor(5)

    def test_arc_tensors_cached(self, two_state_den):
        first = two_state_den.arc_tensors(dtype=torch.float64)
        assert two_state_den.arc_tensors(dtype=torch.float64) is first
        assert two_state_den.arc_tensors(dtype=torch.float32).weight.dtype == torch.float32


class TestNormalizationGraph:
    def test_folds_initial_probs(self, two_state_den):
        norm = two_state_den.normalization_graph()
        assert norm.start == 2
        assert norm.num_states == 3
        start_arcs = {(arc.label, arc.dst): arc.weight for arc in norm.arcs(norm.start)}
        # A->A:1 from A (0.5 * 0.5); A->B:2 from A (0.5 * 0.5) plus B->B:2 from B (0.5 * 1.0)
        assert start_arcs == pytest.approx({(1, 0): 0.25, (2, 1): 0.75})
        assert norm.final(norm.start) == 0.0
        assert norm.final(0) == 1.0

    def test_base_not_modified(self, two_state_den):
        before = two_state_den.acceptor.num_arcs
        two_state_den.normalization_graph()
        assert two_state_den.acceptor.num_arcs == before
        assert two_state_den.acceptor.start == 0

    def test_shared_instance(self, two_state_den):
        assert two_state_den.normalization_graph() is two_state_den.normalization_graph()

    def test_shape_check(self, two_state_acceptor):
        with pytest.raises(ValueError, match="must have shape"):
            NormalizationGraph(two_state_acceptor, torch.ones(3), torch.ones(2))
