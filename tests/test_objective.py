"""Tests for the chain objective, its autograd function and the loss module."""

import math

import pytest
import torch

from torch_lfmmi import (
    ChainLoss,
    ChainObjectiveFunction,
    ChainTrainingOptions,
    ChunkBatch,
    DenominatorGraph,
    NumeratorChunk,
    NumeratorGraph,
    compute_chain_objective,
    normalize_chunk,
)
from torch_lfmmi.acceptor import Acceptor


def _random_log_probs(S, L, C, seed=0, dtype=torch.float64):
    gen = torch.Generator().manual_seed(seed)
    return torch.randn(S, L, C, generator=gen, dtype=dtype).log_softmax(-1)


@pytest.fixture
def chain_chunk(two_state_den):
    graph = Acceptor()
    states = [graph.add_state() for _ in range(4)]
    graph.set_start(states[0])
    graph.set_final(states[3])
    for i, label in enumerate([1, 2, 2]):
        graph.add_arc(states[i], states[i + 1], label)
    chunk = NumeratorChunk(graph, torch.arange(4), start_frame=0, length=3)
    return normalize_chunk(chunk, two_state_den.normalization_graph())


@pytest.fixture
def lm_batch(good_lattice, monophone, phone_lm_den):
    """Two chunks of three output frames from one utterance."""
    graph = NumeratorGraph.build(good_lattice, 12, monophone, ChainTrainingOptions())
    return ChunkBatch(graph.chunks(phone_lm_den, chunk_length=3, starts=[0, 1]))


def _reference_objective(den, batch, log_probs, reference_log_total, leaky=0.0):
    total = 0.0
    for s, chunk in enumerate(batch.chunks):
        initial = torch.zeros(chunk.num_states, dtype=torch.float64)
        initial[chunk.acceptor.start] = 1.0
        num = reference_log_total(
            chunk.acceptor, initial, chunk.acceptor.final_weights(), log_probs[s]
        )
        den_total = reference_log_total(
            den.acceptor, den.initial_probs, den.final_probs, log_probs[s], leaky=leaky
        )
        total = total + num - den_total
    return total


class TestComputeChainObjective:
    def test_hand_computed(self, two_state_den, chain_chunk, scenario_log_probs):
        result = compute_chain_objective(
            two_state_den, ChunkBatch([chain_chunk]), scenario_log_probs
        )
        assert result.objective.item() == pytest.approx(math.log(0.02625 / 0.1425), abs=1e-9)
        assert result.num_log_total.item() == pytest.approx(math.log(0.02625), abs=1e-9)
        assert result.den_log_total.item() == pytest.approx(math.log(0.1425), abs=1e-9)
        assert result.num_valid == 1
        # Each frame's gradient is a difference of two distributions
        assert torch.allclose(result.gradient.sum(-1), torch.zeros(1, 3, dtype=torch.float64))
        assert result.gradient[0, 0, 0].item() == pytest.approx(1.0 - 0.0375 / 0.1425)

    def test_never_positive(self, phone_lm_den, lm_batch):
        for seed in range(3):
            log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=seed)
            result = compute_chain_objective(phone_lm_den, lm_batch, log_probs)
            assert result.valid.all()
            assert (result.objective <= 1e-12).all()

    @pytest.mark.parametrize("leaky", [0.0, 0.1])
    def test_gradient_matches_autograd(
        self, phone_lm_den, lm_batch, reference_log_total, leaky
    ):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=11)
        options = ChainTrainingOptions(leaky_hmm_coefficient=leaky)
        result = compute_chain_objective(phone_lm_den, lm_batch, log_probs, options)

        leaf = log_probs.clone().requires_grad_()
        expected = _reference_objective(phone_lm_den, lm_batch, leaf, reference_log_total, leaky)
        (grad,) = torch.autograd.grad(expected, leaf)

        assert result.total.item() == pytest.approx(expected.item(), abs=1e-9)
        assert torch.allclose(result.gradient, grad, atol=1e-9)

    @pytest.mark.parametrize("semiring", ["prob", "log"])
    @pytest.mark.parametrize("layout", ["state_major", "sequence_major"])
    def test_options_agree(self, phone_lm_den, lm_batch, semiring, layout):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=12)
        baseline = compute_chain_objective(phone_lm_den, lm_batch, log_probs)
        options = ChainTrainingOptions(semiring=semiring, layout=layout)
        result = compute_chain_objective(phone_lm_den, lm_batch, log_probs, options)
        assert torch.allclose(result.objective, baseline.objective, atol=1e-9)
        assert torch.allclose(result.gradient, baseline.gradient, atol=1e-9)

    def test_float32(self, phone_lm_den, lm_batch):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=13)
        exact = compute_chain_objective(phone_lm_den, lm_batch, log_probs)
        single = compute_chain_objective(phone_lm_den, lm_batch, log_probs.float())
        assert single.objective.dtype == torch.float32
        assert torch.allclose(single.objective.double(), exact.objective, atol=1e-4)

    def test_float32_never_positive_when_languages_match(self):
        # Every denominator path of 40 frames is also a numerator path, so the
        # exact objective is zero and float32 rounding must not push it above
        graph = Acceptor()
        a, b = graph.add_state(), graph.add_state(final=1.0)
        graph.set_start(a)
        graph.add_arc(a, a, label=1, weight=0.5)
        graph.add_arc(a, b, label=1, weight=0.5)
        graph.add_arc(b, b, label=1, weight=1.0)
        den = DenominatorGraph(
            graph, torch.tensor([0.5, 0.5], dtype=torch.float64), anchor_state=0, num_classes=1
        )

        length = 40
        chain = Acceptor()
        states = [chain.add_state() for _ in range(length + 1)]
        chain.set_start(states[0])
        chain.set_final(states[-1])
        for i in range(length):
            chain.add_arc(states[i], states[i + 1], label=1)
        chunk = NumeratorChunk(chain, torch.arange(length + 1), start_frame=0, length=length)
        chunk = normalize_chunk(chunk, den.normalization_graph())

        num_sequences = 50
        gen = torch.Generator().manual_seed(0)
        log_probs = torch.randn(num_sequences, length, 1, generator=gen, dtype=torch.float32)
        options = ChainTrainingOptions(leaky_hmm_coefficient=0.0)
        batch = ChunkBatch([chunk] * num_sequences)
        result = compute_chain_objective(den, batch, log_probs, options)
        assert result.valid.all()
        assert (result.objective <= 0.0).all()
        assert result.objective.abs().max().item() < 1e-3

    def test_invalid_sequence_excluded(self, two_state_den, chain_chunk, scenario_log_probs):
        log_probs = scenario_log_probs.repeat(2, 1, 1)
        log_probs[1, 1, :] = float("-inf")
        batch = ChunkBatch([chain_chunk, chain_chunk])
        with pytest.warns(UserWarning, match="1 of 2 sequence\\(s\\) excluded"):
            result = compute_chain_objective(two_state_den, batch, log_probs)
        assert result.valid.tolist() == [True, False]
        assert result.objective[1].item() == 0.0
        assert torch.all(result.gradient[1] == 0)
        assert torch.isfinite(result.gradient).all()
        assert result.objective[0].item() == pytest.approx(math.log(0.02625 / 0.1425), abs=1e-9)

    def test_class_count_mismatch(self, phone_lm_den, lm_batch):
        with pytest.raises(ValueError, match="classes, expected"):
            compute_chain_objective(phone_lm_den, lm_batch, torch.zeros(2, 3, 2))


class TestChainObjectiveFunction:
    def test_backward_scales_gradient(self, phone_lm_den, lm_batch):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=14).requires_grad_()
        objective, valid = ChainObjectiveFunction.apply(log_probs, phone_lm_den, lm_batch, None)
        assert not valid.requires_grad
        weights = torch.tensor([2.0, -1.0], dtype=torch.float64)
        (objective * weights).sum().backward()

        expected = compute_chain_objective(phone_lm_den, lm_batch, log_probs.detach()).gradient
        assert torch.allclose(log_probs.grad, expected * weights.view(-1, 1, 1))

    def test_gradcheck(self, two_state_den, chain_chunk, scenario_log_probs):
        log_probs = scenario_log_probs.clone().requires_grad_()
        batch = ChunkBatch([chain_chunk])

        def objective(x):
            return ChainObjectiveFunction.apply(x, two_state_den, batch, None)[0]

        assert torch.autograd.gradcheck(objective, (log_probs,), eps=1e-6, atol=1e-5)


class TestChainLoss:
    def test_mean_reduction(self, phone_lm_den, lm_batch):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=15).requires_grad_()
        loss = ChainLoss(phone_lm_den)(log_probs, lm_batch)
        result = compute_chain_objective(phone_lm_den, lm_batch, log_probs.detach())
        assert loss.dim() == 0
        assert loss.item() == pytest.approx(-result.total.item() / 6, abs=1e-9)
        assert loss.item() >= 0

        loss.backward()
        assert torch.allclose(log_probs.grad, -result.gradient / 6)

    def test_sum_and_none(self, phone_lm_den, lm_batch):
        log_probs = _random_log_probs(2, 3, phone_lm_den.num_classes, seed=16)
        summed = ChainLoss(phone_lm_den, reduction="sum")(log_probs, lm_batch)
        per_seq = ChainLoss(phone_lm_den, reduction="none")(log_probs, lm_batch)
        assert per_seq.shape == (2,)
        assert summed.item() == pytest.approx(per_seq.sum().item())

    def test_mean_counts_valid_sequences_only(
        self, two_state_den, chain_chunk, scenario_log_probs
    ):
        log_probs = scenario_log_probs.repeat(2, 1, 1)
        log_probs[1, 1, :] = float("-inf")
        batch = ChunkBatch([chain_chunk, chain_chunk])
        with pytest.warns(UserWarning, match="excluded"):
            loss = ChainLoss(two_state_den)(log_probs, batch)
        assert loss.item() == pytest.approx(-math.log(0.02625 / 0.1425) / 3, abs=1e-9)

    def test_subsample(self, phone_lm_den, lm_batch):
        options = ChainTrainingOptions(frame_subsampling_factor=3, frame_shift=1)
        full_rate = _random_log_probs(2, 9, phone_lm_den.num_classes, seed=17).requires_grad_()
        loss = ChainLoss(phone_lm_den, options, reduction="sum", subsample=True)(
            full_rate, lm_batch
        )
        expected = ChainLoss(phone_lm_den, options, reduction="sum")(
            full_rate.detach()[:, 1::3], lm_batch
        )
        assert loss.item() == pytest.approx(expected.item(), abs=1e-12)

        loss.backward()
        skipped = [t for t in range(9) if t % 3 != 1]
        assert torch.all(full_rate.grad[:, skipped] == 0)

    def test_unknown_reduction(self, phone_lm_den):
        with pytest.raises(ValueError, match="Unknown reduction"):
            ChainLoss(phone_lm_den, reduction="max")

    def test_extra_repr(self, phone_lm_den):
        loss_fn = ChainLoss(phone_lm_den, subsample=True)
        text = repr(loss_fn)
        assert f"num_states={phone_lm_den.num_states}" in text
        assert "reduction='mean'" in text
        assert "subsample=3/shift=0" in text
