r"""Batched forward-backward over the denominator and numerator graphs.

Both computations consume the network's class log-probabilities of shape
:math:`(S, L, C)` and produce, per sequence, the log of the total path weight
and the per-frame class occupation probabilities.

Conventions for a chunk of :math:`L` frames (``t`` indexes the frame *boundary*,
so buffers have :math:`L + 1` entries):

- ``alpha[0]`` holds the initial probabilities.
- ``alpha[t + 1][d] = sum over arcs s -c/w-> d of alpha[t][s] * w * p_t(c)``.
- ``beta[L]`` holds the final probabilities (all ones for the denominator).
- ``sum_s alpha[t][s] * beta[t][s]`` is the same total for every ``t``.
- The occupation of class ``c`` at frame ``t`` sums
  ``alpha[t][src] * w * p_t(c) * beta[t + 1][dst] / total`` over arcs labeled ``c``.

With ``semiring="prob"`` the recursion runs on probabilities and is rescaled
every frame. The denominator multiplies the emissions of frame ``t`` by
``c_t = 1 / alpha[t][anchor]`` so that the anchor state's alpha stays at one;
the numerator (whose chunks are small and shift through their states frame by
frame) uses the reciprocal of each sequence's summed alpha instead. The scale
factors are accumulated in log space and removed from the reported totals.
With ``semiring="log"`` the same recursion runs on log-probabilities and
needs no rescaling.

Alpha/beta buffers of the denominator follow a configurable storage layout:
``"state_major"`` keeps the values of one state for all sequences contiguous
(:math:`(L + 1, N, S)`), ``"sequence_major"`` keeps one sequence's states
contiguous (:math:`(L + 1, S, N)`). Results are identical.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .batch import ChunkBatch
from .denominator import DenominatorGraph, select_anchor_state
from .options import ChainTrainingOptions
from .semirings import ProbSemiring, get_semiring
from .validation import validate_log_probs

logger = logging.getLogger(__name__)

__all__ = [
    "StorageLayout",
    "ForwardBackwardResult",
    "DenominatorComputation",
    "NumeratorComputation",
]


class StorageLayout:
    r"""Memory layout of the per-frame ``(state, sequence)`` buffers.

    Every helper takes and returns tensors in the layout's own orientation, so
    the recursion is written once for both layouts.

    Args:
        name (str): ``"state_major"`` or ``"sequence_major"``.
    """

    def __init__(self, name: str = "state_major"):
        if name not in ("state_major", "sequence_major"):
            raise ValueError(f"Unknown layout: {name}. Use 'state_major' or 'sequence_major'.")
        self.name = name
        self.state_dim = 0 if name == "state_major" else 1

    def __repr__(self):
        return f"StorageLayout({self.name!r})"

    def allocate(self, semiring, num_frames, num_states, num_sequences, dtype, device) -> Tensor:
        """Buffer for one value per frame, state and sequence, filled with zero."""
        if self.state_dim == 0:
            shape = (num_frames, num_states, num_sequences)
        else:
            shape = (num_frames, num_sequences, num_states)
        return semiring.zeros(*shape, dtype=dtype, device=device)

    def along_states(self, values: Tensor) -> Tensor:
        """Broadcast a per-state (or per-arc) vector across sequences."""
        return values.unsqueeze(1 - self.state_dim)

    def along_sequences(self, values: Tensor) -> Tensor:
        """Broadcast a per-sequence vector across states (or arcs)."""
        return values.unsqueeze(self.state_dim)

    def gather(self, frame: Tensor, index: Tensor) -> Tensor:
        return frame.index_select(self.state_dim, index)

    def scatter(self, semiring, values: Tensor, index: Tensor, size: int) -> Tensor:
        return semiring.scatter_sum(values, index, size, dim=self.state_dim)

    def state_sum(self, semiring, frame: Tensor) -> Tensor:
        return semiring.sum(frame, dim=self.state_dim)

    def select_state(self, frame: Tensor, state: int) -> Tensor:
        return frame.select(self.state_dim, state)

    def arc_emissions(self, emissions: Tensor, labels: Tensor) -> Tensor:
        """Emission of every arc for every sequence, from a ``(S, C)`` frame."""
        values = emissions.index_select(1, labels)
        return values.t() if self.state_dim == 0 else values

    def to_sequences(self, values: Tensor) -> Tensor:
        """``(..., S, X)`` view of a buffer, whatever the layout."""
        return values.transpose(-1, -2) if self.state_dim == 0 else values


@dataclass
class ForwardBackwardResult:
    r"""Output of one forward-backward computation.

    Attributes:
        log_total (Tensor): Log total path weight per sequence, scaling undone.
            Shape :math:`(S,)`.
        posteriors (Tensor): Class occupation probabilities, shape :math:`(S, L, C)`.
            Zero for invalid sequences.
        valid (Tensor): Boolean mask of sequences whose computation stayed finite.
        alphas (Tensor): Alpha buffers in semiring values, rescaled when
            ``semiring == "prob"``. :math:`(L + 1, S, N)` for the denominator,
            :math:`(L + 1, M)` for the numerator union graph.
        betas (Tensor): Beta buffers, same shape and scaling as ``alphas``.
        log_scales (Tensor): Log of the scale factor applied at every frame,
            shape :math:`(L, S)`. Zeros in the log semiring.
        semiring (str): ``"prob"`` or ``"log"``.
    """

    log_total: Tensor
    posteriors: Tensor
    valid: Tensor
    alphas: Tensor
    betas: Tensor
    log_scales: Tensor
    semiring: str

    def log_alpha_offset(self, t: int) -> Tensor:
        """Per-sequence log of the scale carried by ``alphas[t]``."""
        return self.log_scales[:t].sum(0)

    def log_beta_offset(self, t: int) -> Tensor:
        """Per-sequence log of the scale carried by ``betas[t]``."""
        return self.log_scales[t:].sum(0)


class DenominatorComputation:
    r"""Forward-backward over the shared denominator graph for :math:`S` sequences.

    All sequences start from the graph's initial probabilities and end with
    final probability one. With a positive ``leaky_hmm_coefficient`` :math:`\eta`,
    after every frame ``alpha += eta * sum(alpha) * initial_probs``, which lets
    any state be entered at any frame with a small probability.

    Args:
        den_graph (DenominatorGraph): Shared graph.
        log_probs (Tensor): Class log-probabilities :math:`(S, L, C)`.
        options (ChainTrainingOptions, optional): ``layout``, ``semiring`` and
            ``leaky_hmm_coefficient`` are used.
        anchor_state (int or str, optional): Override the graph's anchor state,
            either with a state id or with an anchor policy name. Validated
            like the graph's own anchor.

    Examples::

        >>> comp = DenominatorComputation(den, log_probs)
        >>> result = comp.compute()
        >>> result.log_total.shape
        torch.Size([S])
    """

    def __init__(
        self,
        den_graph: DenominatorGraph,
        log_probs: Tensor,
        options: Optional[ChainTrainingOptions] = None,
        anchor_state: Optional[int] = None,
    ):
        options = options or ChainTrainingOptions()
        validate_log_probs(log_probs, num_classes=den_graph.num_classes)
        self.den_graph = den_graph
        self.log_probs = log_probs.detach()
        self.semiring = get_semiring(options.semiring)
        self.layout = StorageLayout(options.layout)
        self.leaky_hmm_coefficient = options.leaky_hmm_coefficient
        if anchor_state is None:
            self.anchor_state = den_graph.anchor_state
        else:
            self.anchor_state = select_anchor_state(
                den_graph.acceptor, den_graph.initial_probs, anchor_state
            )

        self.num_sequences, self.num_frames, self.num_classes = log_probs.shape
        dtype, device = log_probs.dtype, log_probs.device
        self.arcs = den_graph.arc_tensors(dtype=dtype, device=device)
        sr = self.semiring
        self._weight = self.layout.along_states(sr.from_prob(self.arcs.weight))
        self._initial = self.layout.along_states(
            sr.from_prob(den_graph.initial_probs.to(dtype=dtype, device=device))
        )
        self._final = self.layout.along_states(
            sr.from_prob(den_graph.final_probs.to(dtype=dtype, device=device))
        )
        if self.leaky_hmm_coefficient > 0:
            self._leak = sr.from_prob(
                torch.tensor(self.leaky_hmm_coefficient, dtype=dtype, device=device)
            )

        self.alphas = None
        self.betas = None
        self.log_scales = None
        self.valid = None
        self._scaled_total = None

    def _emissions(self, t: int) -> Tensor:
        """Scaled emission value of every arc at frame ``t``."""
        emissions = self.semiring.from_log(self.log_probs[:, t, :])
        scale = self.semiring.from_log(self.log_scales[t])
        return self.semiring.mul(
            self.layout.arc_emissions(emissions, self.arcs.label),
            self.layout.along_sequences(scale),
        )

    def _leak_into(self, frame: Tensor) -> Tensor:
        sr, layout = self.semiring, self.layout
        mass = layout.along_sequences(layout.state_sum(sr, frame))
        return sr.plus(frame, sr.times(self._leak, mass, self._initial))

    def forward(self) -> Tensor:
        r"""forward() -> Tensor

        Run the alpha recursion.

        Returns:
            Tensor: Log total path weight per sequence, shape :math:`(S,)`.
        """
        sr, layout = self.semiring, self.layout
        S, L = self.num_sequences, self.num_frames
        N = self.den_graph.num_states
        dtype, device = self.log_probs.dtype, self.log_probs.device

        alphas = layout.allocate(sr, L + 1, N, S, dtype, device)
        alphas[0] = self._initial.expand_as(alphas[0])
        self.log_scales = torch.zeros(L, S, dtype=dtype, device=device)
        valid = torch.ones(S, dtype=torch.bool, device=device)

        for t in range(L):
            prev = alphas[t]
            if sr is ProbSemiring:
                anchor = layout.select_state(prev, self.anchor_state)
                ok = (anchor > 0) & torch.isfinite(anchor)
                valid &= ok
                self.log_scales[t] = torch.where(
                    ok, -torch.log(anchor), torch.zeros_like(anchor)
                )
            arc_values = sr.times(
                layout.gather(prev, self.arcs.src), self._weight, self._emissions(t)
            )
            nxt = layout.scatter(sr, arc_values, self.arcs.dst, N)
            if self.leaky_hmm_coefficient > 0:
                nxt = self._leak_into(nxt)
            alphas[t + 1] = nxt

        scaled_total = layout.state_sum(sr, sr.mul(alphas[L], self._final))
        log_total = torch.log(sr.to_prob(scaled_total)) if sr is ProbSemiring else scaled_total
        log_total = log_total - self.log_scales.sum(0)
        valid &= torch.isfinite(log_total)

        self.alphas = alphas
        self.valid = valid
        self._scaled_total = scaled_total
        logger.debug(
            "denominator forward: %d/%d valid sequence(s)", int(valid.sum().item()), S
        )
        return log_total

    def backward(self) -> Tensor:
        r"""backward() -> Tensor

        Run the beta recursion and collect class occupations.

        Must follow :meth:`forward`.

        Returns:
            Tensor: Class occupation probabilities :math:`(S, L, C)`, zero
            for invalid sequences.
        """
        if self.alphas is None:
            raise RuntimeError("backward() called before forward()")
        sr, layout = self.semiring, self.layout
        S, L, C = self.num_sequences, self.num_frames, self.num_classes
        N = self.den_graph.num_states
        dtype, device = self.log_probs.dtype, self.log_probs.device

        betas = layout.allocate(sr, L + 1, N, S, dtype, device)
        betas[L] = self._final.expand_as(betas[L])
        posteriors = torch.zeros(S, L, C, dtype=dtype, device=device)
        inv_total = layout.along_sequences(
            torch.where(
                self.valid,
                _inverse(sr, self._scaled_total),
                torch.full_like(self._scaled_total, sr.zero),
            )
        )

        for t in reversed(range(L)):
            nxt = betas[t + 1]
            if self.leaky_hmm_coefficient > 0:
                # Adjoint of the leak: every state also feeds eta * initial_probs
                leaked = layout.state_sum(sr, sr.mul(nxt, self._initial))
                leaked = sr.mul(self._leak, layout.along_sequences(leaked))
                nxt = sr.plus(nxt, leaked.expand_as(nxt))
            arc_out = sr.times(self._weight, self._emissions(t), layout.gather(nxt, self.arcs.dst))
            betas[t] = layout.scatter(sr, arc_out, self.arcs.src, N)

            occupation = sr.times(layout.gather(self.alphas[t], self.arcs.src), arc_out, inv_total)
            occupation = sr.to_prob(occupation)
            by_class = ProbSemiring.scatter_sum(
                occupation, self.arcs.label, C, dim=layout.state_dim
            )
            posteriors[:, t, :] = layout.to_sequences(by_class)

        self.betas = betas
        posteriors[~self.valid] = 0.0
        return posteriors

    def compute(self) -> ForwardBackwardResult:
        """Run :meth:`forward` and :meth:`backward`."""
        log_total = self.forward()
        posteriors = self.backward()
        return ForwardBackwardResult(
            log_total=log_total,
            posteriors=posteriors,
            valid=self.valid,
            alphas=self.layout.to_sequences(self.alphas),
            betas=self.layout.to_sequences(self.betas),
            log_scales=self.log_scales,
            semiring=self.semiring.name,
        )


def _inverse(semiring, values: Tensor) -> Tensor:
    if semiring is ProbSemiring:
        return 1.0 / values
    return -values


class NumeratorComputation:
    r"""Forward-backward over the numerator chunks of a batch.

    The chunks are processed together as one disjoint union graph. Each chunk
    starts in its own start state with weight one (the initial probabilities
    are already on its first arcs) and ends with its own final weights. Only
    the arcs leaving frame-``t`` states are visited at frame ``t``.

    Args:
        batch (ChunkBatch): Normalized chunks.
        log_probs (Tensor): Class log-probabilities :math:`(S, L, C)`.
        options (ChainTrainingOptions, optional): ``semiring`` is used.
    """

    def __init__(
        self,
        batch: ChunkBatch,
        log_probs: Tensor,
        options: Optional[ChainTrainingOptions] = None,
    ):
        options = options or ChainTrainingOptions()
        validate_log_probs(
            log_probs, num_sequences=batch.num_sequences, chunk_length=batch.chunk_length
        )
        self.batch = batch
        self.log_probs = log_probs.detach()
        self.semiring = get_semiring(options.semiring)
        self.num_sequences, self.num_frames, self.num_classes = log_probs.shape
        self.union = batch.union(dtype=log_probs.dtype, device=log_probs.device)
        max_class = int(self.union.label.max().item()) if self.union.label.numel() else -1
        if max_class >= self.num_classes:
            raise ValueError(
                f"numerator chunks use ClassId {max_class}, log_probs has "
                f"{self.num_classes} classes"
            )

        self.alphas = None
        self.betas = None
        self.log_scales = None
        self.valid = None
        self._scaled_total = None

    def _arc_values(self, t: int, arcs: Tensor) -> Tensor:
        """Weight times scaled emission of the given arcs at frame ``t``."""
        sr, union = self.semiring, self.union
        seq = union.arc_sequence[arcs]
        emissions = sr.from_log(self.log_probs[seq, t, union.label[arcs]])
        scale = sr.from_log(self.log_scales[t][seq])
        return sr.times(sr.from_prob(union.weight[arcs]), emissions, scale)

    def forward(self) -> Tensor:
        r"""forward() -> Tensor

        Run the alpha recursion.

        Returns:
            Tensor: Log numerator total per sequence, shape :math:`(S,)`.
        """
        sr, union = self.semiring, self.union
        S, L, M = self.num_sequences, self.num_frames, union.num_states
        dtype, device = self.log_probs.dtype, self.log_probs.device

        alphas = sr.zeros(L + 1, M, dtype=dtype, device=device)
        alphas[0, union.start_states] = sr.one
        self.log_scales = torch.zeros(L, S, dtype=dtype, device=device)
        valid = torch.ones(S, dtype=torch.bool, device=device)

        for t in range(L):
            prev = alphas[t]
            if sr is ProbSemiring:
                mass = sr.scatter_sum(prev, union.state_sequence, S)
                ok = (mass > 0) & torch.isfinite(mass)
                valid &= ok
                self.log_scales[t] = torch.where(ok, -torch.log(mass), torch.zeros_like(mass))
            arcs = union.arcs_by_frame[t]
            values = sr.mul(prev[union.src[arcs]], self._arc_values(t, arcs))
            alphas[t + 1] = sr.scatter_sum(values, union.dst[arcs], M)

        final = sr.from_prob(union.final_weights)
        scaled_total = sr.scatter_sum(sr.mul(alphas[L], final), union.state_sequence, S)
        log_total = torch.log(sr.to_prob(scaled_total)) if sr is ProbSemiring else scaled_total
        log_total = log_total - self.log_scales.sum(0)
        valid &= torch.isfinite(log_total)

        self.alphas = alphas
        self.valid = valid
        self._scaled_total = scaled_total
        return log_total

    def backward(self) -> Tensor:
        r"""backward() -> Tensor

        Run the beta recursion and collect class occupations.

        Returns:
            Tensor: Class occupation probabilities :math:`(S, L, C)`.
        """
        if self.alphas is None:
            raise RuntimeError("backward() called before forward()")
        sr, union = self.semiring, self.union
        S, L, C, M = self.num_sequences, self.num_frames, self.num_classes, union.num_states
        dtype, device = self.log_probs.dtype, self.log_probs.device

        betas = sr.zeros(L + 1, M, dtype=dtype, device=device)
        betas[L] = sr.from_prob(union.final_weights)
        posteriors = torch.zeros(S * L * C, dtype=dtype, device=device)
        inv_total = torch.where(
            self.valid,
            _inverse(sr, self._scaled_total),
            torch.full_like(self._scaled_total, sr.zero),
        )

        for t in reversed(range(L)):
            arcs = union.arcs_by_frame[t]
            src, dst, seq = union.src[arcs], union.dst[arcs], union.arc_sequence[arcs]
            arc_out = sr.mul(self._arc_values(t, arcs), betas[t + 1][dst])
            betas[t] = sr.scatter_sum(arc_out, src, M)

            occupation = sr.to_prob(sr.times(self.alphas[t][src], arc_out, inv_total[seq]))
            flat = (seq * L + t) * C + union.label[arcs]
            posteriors.index_add_(0, flat, occupation)

        self.betas = betas
        posteriors = posteriors.view(S, L, C)
        posteriors[~self.valid] = 0.0
        return posteriors

    def compute(self) -> ForwardBackwardResult:
        """Run :meth:`forward` and :meth:`backward`."""
        log_total = self.forward()
        posteriors = self.backward()
        return ForwardBackwardResult(
            log_total=log_total,
            posteriors=posteriors,
            valid=self.valid,
            alphas=self.alphas,
            betas=self.betas,
            log_scales=self.log_scales,
            semiring=self.semiring.name,
        )
