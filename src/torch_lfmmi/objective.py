r"""Chain (LF-MMI) objective and its gradient.

For every sequence the objective is

.. math::
    \mathcal{F} = \log P_{\text{num}} - \log P_{\text{den}}

which is never positive because every numerator path is a denominator path
with the same weight. Its derivative with respect to the class
log-probabilities at frame :math:`t` is the difference of class occupations,

.. math::
    \frac{\partial \mathcal{F}}{\partial \log p_t(c)} = \gamma^{\text{num}}_t(c) - \gamma^{\text{den}}_t(c),

so one forward-backward pass over each graph yields both the value and the
gradient, with no autograd graph through the recursion.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import torch
import torch.nn as nn
from torch import Tensor

from .batch import ChunkBatch, subsample_frames
from .denominator import DenominatorGraph
from .forward_backward import DenominatorComputation, NumeratorComputation
from .options import ChainTrainingOptions

logger = logging.getLogger(__name__)

__all__ = [
    "ChainObjective",
    "compute_chain_objective",
    "ChainObjectiveFunction",
    "ChainLoss",
]


@dataclass
class ChainObjective:
    r"""Per-sequence objective and gradient of a minibatch.

    Attributes:
        objective (Tensor): :math:`\log P_{\text{num}} - \log P_{\text{den}}`
            per sequence, shape :math:`(S,)`. Zero for invalid sequences.
        num_log_total (Tensor): Log numerator total, shape :math:`(S,)`.
        den_log_total (Tensor): Log denominator total, shape :math:`(S,)`.
        gradient (Tensor): ``num_posteriors - den_posteriors``, shape
            :math:`(S, L, C)`. Zero for invalid sequences.
        valid (Tensor): Sequences included in the objective.
    """

    objective: Tensor
    num_log_total: Tensor
    den_log_total: Tensor
    gradient: Tensor
    valid: Tensor

    @property
    def total(self) -> Tensor:
        """Batch objective: sum over the valid sequences."""
        return self.objective.sum()

    @property
    def num_valid(self) -> int:
        return int(self.valid.sum().item())


def compute_chain_objective(
    den_graph: DenominatorGraph,
    batch: ChunkBatch,
    log_probs: Tensor,
    options: Optional[ChainTrainingOptions] = None,
) -> ChainObjective:
    r"""compute_chain_objective(den_graph, batch, log_probs, options=None) -> ChainObjective

    Run both forward-backward passes and combine them.

    A sequence is excluded (objective and gradient zero) if either pass lost
    it to underflow or non-finite values; a ``UserWarning`` names how many.

    Args:
        den_graph (DenominatorGraph): Shared denominator graph.
        batch (ChunkBatch): Numerator chunks, one per sequence.
        log_probs (Tensor): Class log-probabilities :math:`(S, L, C)`.
        options (ChainTrainingOptions, optional): Engine options.

    Returns:
        ChainObjective: Objective, totals, gradient and validity mask.
    """
    options = options or ChainTrainingOptions()
    log_probs = log_probs.detach()
    den = DenominatorComputation(den_graph, log_probs, options).compute()
    num = NumeratorComputation(batch, log_probs, options).compute()

    valid = den.valid & num.valid
    objective = num.log_total - den.log_total
    valid &= torch.isfinite(objective)
    num_invalid = int((~valid).sum().item())
    if num_invalid:
        warnings.warn(
            f"{num_invalid} of {valid.numel()} sequence(s) excluded from the chain objective "
            "(numerical underflow or non-finite totals)",
            UserWarning,
            stacklevel=2,
        )
    # The numerator language is a subset of the denominator's, so anything
    # above zero is rounding error
    objective = torch.where(valid, objective.clamp_max(0.0), torch.zeros_like(objective))
    gradient = num.posteriors - den.posteriors
    gradient[~valid] = 0.0
    logger.debug(
        "chain objective %.4f over %d valid sequence(s)", objective.sum().item(), int(valid.sum())
    )
    return ChainObjective(
        objective=objective,
        num_log_total=num.log_total,
        den_log_total=den.log_total,
        gradient=gradient,
        valid=valid,
    )


class ChainObjectiveFunction(torch.autograd.Function):
    r"""Autograd function returning the per-sequence chain objective.

    Forward returns ``(objective, valid)``; ``valid`` is not differentiable.
    The gradient with respect to ``log_probs`` is computed during forward and
    scaled by the upstream gradient in backward.
    """

    @staticmethod
    def forward(
        ctx,
        log_probs: Tensor,
        den_graph: DenominatorGraph,
        batch: ChunkBatch,
        options: Optional[ChainTrainingOptions] = None,
    ):
        result = compute_chain_objective(den_graph, batch, log_probs, options)
        ctx.save_for_backward(result.gradient)
        ctx.mark_non_differentiable(result.valid)
        return result.objective, result.valid

    @staticmethod
    def backward(ctx, grad_output: Tensor, grad_valid: Optional[Tensor] = None):
        (gradient,) = ctx.saved_tensors

        # Catch NaN/Inf before they corrupt parameters
        if not torch.isfinite(gradient).all():
            nan_count = torch.isnan(gradient).sum().item()
            inf_count = torch.isinf(gradient).sum().item()
            raise RuntimeError(
                f"Non-finite values in chain objective backward: "
                f"{nan_count} NaN, {inf_count} Inf"
            )

        grad_log_probs = gradient * grad_output.view(-1, 1, 1)
        return grad_log_probs, None, None, None


class ChainLoss(nn.Module):
    r"""LF-MMI loss: the negated chain objective.

    Args:
        den_graph (DenominatorGraph): Shared denominator graph.
        options (ChainTrainingOptions, optional): Engine options.
        reduction (str, optional): ``"mean"`` divides the summed loss by the
            number of frames in valid sequences, ``"sum"`` sums it, ``"none"``
            returns it per sequence. Default: ``"mean"``
        subsample (bool, optional): If ``True``, network outputs arrive at the
            input frame rate and are subsampled with the configured factor and
            frame shift first. Default: ``False``

    Examples::

        >>> loss_fn = ChainLoss(den_graph)
        >>> loss = loss_fn(nnet_output.log_softmax(-1), batch)
        >>> loss.backward()
    """

    def __init__(
        self,
        den_graph: DenominatorGraph,
        options: Optional[ChainTrainingOptions] = None,
        reduction: str = "mean",
        subsample: bool = False,
    ):
        super().__init__()
        if reduction not in ("mean", "sum", "none"):
            raise ValueError(f"Unknown reduction: {reduction}. Use 'mean', 'sum', or 'none'.")
        self.den_graph = den_graph
        self.options = options or ChainTrainingOptions()
        self.reduction = reduction
        self.subsample = subsample

    def forward(self, log_probs: Tensor, batch: ChunkBatch) -> Tensor:
        r"""forward(log_probs, batch) -> Tensor

        Args:
            log_probs (Tensor): Class log-probabilities :math:`(S, L, C)`, or
                :math:`(S, T, C)` at the input frame rate when ``subsample=True``.
            batch (ChunkBatch): Numerator chunks, one per sequence.

        Returns:
            Tensor: Scalar if ``reduction`` is ``"mean"`` or ``"sum"``, shape
            :math:`(S,)` if ``"none"``.
        """
        if self.subsample:
            log_probs = subsample_frames(
                log_probs,
                self.options.frame_subsampling_factor,
                self.options.frame_shift,
            )
        objective, valid = ChainObjectiveFunction.apply(
            log_probs, self.den_graph, batch, self.options
        )
        loss = -objective
        if self.reduction == "mean":
            num_frames = valid.sum().clamp_min(1) * log_probs.shape[1]
            return loss.sum() / num_frames
        elif self.reduction == "sum":
            return loss.sum()
        return loss

    def extra_repr(self) -> str:
        parts = [
            f"num_states={self.den_graph.num_states}",
            f"num_classes={self.den_graph.num_classes}",
            f"reduction={self.reduction!r}",
        ]
        if self.subsample:
            parts.append(
                f"subsample={self.options.frame_subsampling_factor}"
                f"/shift={self.options.frame_shift}"
            )
        return ", ".join(parts)
