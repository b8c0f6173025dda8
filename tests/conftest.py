"""
Pytest configuration for torch-lfmmi tests.

CPU-ONLY TESTING
----------------
The suite runs on CPU only. Exactness checks use ``torch.float64``.

Shared fixtures:
- ``two_state_acceptor`` / ``two_state_den``: the hand-computable graph
  A->A:1/0.5, A->B:2/0.5, B->B:2/1.0 with initial probabilities (0.5, 0.5)
- ``scenario_log_probs``: three frames of fixed emissions for that graph
- ``small_phone_lm`` / ``monophone`` / ``phone_lm_den``: a 3-phone bigram model
  and the denominator graph built from it
- ``enumerate_paths`` / ``reference_log_total``: brute-force helpers
"""

import pytest
import torch

from torch_lfmmi import (
    BOS,
    Acceptor,
    ChainTrainingOptions,
    ContextDependency,
    DenominatorGraph,
    PhoneLanguageModel,
    PhoneLattice,
)


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Verify tests create CPU tensors by default."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


# =============================================================================
# Hand-computable two-state graph
# =============================================================================


@pytest.fixture
def two_state_acceptor():
    """States A=0 (start), B=1 (final). Classes: label 1 -> ClassId 0, label 2 -> ClassId 1."""
    graph = Acceptor()
    a = graph.add_state()
    b = graph.add_state(final=1.0)
    graph.set_start(a)
    graph.add_arc(a, a, label=1, weight=0.5)
    graph.add_arc(a, b, label=2, weight=0.5)
    graph.add_arc(b, b, label=2, weight=1.0)
    return graph


@pytest.fixture
def two_state_den(two_state_acceptor):
    return DenominatorGraph(
        two_state_acceptor,
        initial_probs=torch.tensor([0.5, 0.5], dtype=torch.float64),
        anchor_state=0,
        num_classes=2,
    )


@pytest.fixture
def scenario_log_probs():
    """Emission probabilities (class 0, class 1) for three frames, one sequence."""
    probs = torch.tensor([[0.6, 0.4], [0.3, 0.7], [0.5, 0.5]], dtype=torch.float64)
    return probs.log().unsqueeze(0)


# =============================================================================
# Phone LM fixtures
# =============================================================================


@pytest.fixture
def small_phone_lm():
    """Bigram over phones 1..3; phone 2 is never followed by phone 2."""
    return PhoneLanguageModel(
        probs={
            (BOS,): {1: 0.4, 2: 0.4, 3: 0.2},
            (1,): {1: 0.1, 2: 0.4, 3: 0.3},
            (2,): {1: 0.3, 3: 0.4},
            (3,): {1: 0.3, 2: 0.3},
        },
        final_probs={(1,): 0.2, (2,): 0.3, (3,): 0.4},
        order=2,
    )


@pytest.fixture
def monophone():
    return ContextDependency.monophone(num_phones=3)


@pytest.fixture
def phone_lm_den(small_phone_lm, monophone):
    return DenominatorGraph.build(small_phone_lm, monophone)


@pytest.fixture
def exact_options():
    """Subsampling 3, no alignment tolerance."""
    return ChainTrainingOptions(left_tolerance=0.0, right_tolerance=0.0)


@pytest.fixture
def good_lattice():
    """Phone 1 then phone 2, 6 input frames each (two output frames each)."""
    return PhoneLattice.from_alignment([(1, 0, 6), (2, 6, 12)])


@pytest.fixture
def bad_lattice():
    """Phone 2 twice in a row, which the phone LM never allows."""
    return PhoneLattice.from_alignment([(2, 0, 6), (2, 6, 12)])


# =============================================================================
# Brute-force helpers
# =============================================================================


@pytest.fixture
def enumerate_paths():
    """Factory: all ``(labels, weight)`` of successful paths with exactly ``length`` arcs.

    ``start_states`` defaults to the graph's start state.
    """

    def _enumerate(graph, length, start_states=None):
        if start_states is None:
            start_states = [graph.start]
        found = {}
        stack = [(s, (), 1.0) for s in start_states]
        while stack:
            state, labels, weight = stack.pop()
            if len(labels) == length:
                if graph.is_final(state):
                    found[labels] = found.get(labels, 0.0) + weight * graph.final(state)
                continue
            for arc in graph.arcs(state):
                stack.append((arc.dst, labels + (arc.label,), weight * arc.weight))
        return found

    return _enumerate


@pytest.fixture
def reference_log_total():
    """Factory: differentiable log total of an acceptor over ``(L, C)`` log-probs.

    Dense per-class transition matrices in float64 probability space; only
    suitable for tiny graphs and chunks. Optional leaky HMM coefficient.
    """

    def _reference(graph, initial, final, log_probs, leaky=0.0):
        n = graph.num_states
        num_classes = log_probs.shape[-1]
        mats = torch.zeros(num_classes, n, n, dtype=torch.float64)
        for arc in graph.arcs():
            mats[arc.label - 1, arc.src, arc.dst] += arc.weight
        alpha = torch.as_tensor(initial, dtype=torch.float64)
        final = torch.as_tensor(final, dtype=torch.float64)
        log_offset = 0.0
        for t in range(log_probs.shape[0]):
            step = torch.einsum("c,s,csd->d", log_probs[t].exp(), alpha, mats)
            if leaky > 0:
                step = step + leaky * step.sum() * torch.as_tensor(initial, dtype=torch.float64)
            norm = step.sum()
            alpha = step / norm
            log_offset = log_offset + torch.log(norm)
        return torch.log((alpha * final).sum()) + log_offset

    return _reference

