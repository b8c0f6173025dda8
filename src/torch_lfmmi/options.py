"""Configuration for graph building and chain objective computation."""

import math
from dataclasses import dataclass
from typing import Union

__all__ = ["ChainTrainingOptions"]

_ANCHOR_POLICIES = ("max_initial", "max_reach")
_LAYOUTS = ("state_major", "sequence_major")
_SEMIRINGS = ("prob", "log")


@dataclass
class ChainTrainingOptions:
    r"""Options shared by the graph builders and the forward-backward engine.

    Args:
        frame_subsampling_factor (int, optional): Ratio of the network's input
            frame rate to its output (label) frame rate. Default: ``3``
        frame_shift (int, optional): Which of the subsampled input frames the
            network output is evaluated at, in ``[0, frame_subsampling_factor)``.
            Changing it never changes the graphs. Default: ``0``
        chunk_length (int, optional): Chunk length :math:`L` in output frames.
            Default: ``50`` (1.5 s of 30 ms output frames)
        frame_duration (float, optional): Duration of one input frame in seconds.
            Default: ``0.01``
        left_tolerance (float, optional): How early a phone may start relative
            to its reference boundary, in seconds. Default: ``0.05``
        right_tolerance (float, optional): How late a phone may end relative to
            its reference boundary, in seconds. Default: ``0.05``
        anchor_policy (str or int, optional): ``"max_initial"`` picks the state
            with the highest initial probability, ``"max_reach"`` the state with
            the most distinct predecessors (ties broken by initial probability),
            an ``int`` names the state explicitly. Default: ``"max_initial"``
        initial_prob_iters (int, optional): Number of HMM steps averaged when
            deriving the denominator's initial-probability vector. Default: ``100``
        leaky_hmm_coefficient (float, optional): Fraction of the total alpha mass
            fed back into the initial distribution after every frame of the
            denominator recursion. ``0`` disables it. Default: ``0.0``
        layout (str, optional): Storage layout of the alpha/beta buffers,
            ``"state_major"`` or ``"sequence_major"``. Default: ``"state_major"``
        semiring (str, optional): ``"prob"`` for rescaled probability-space
            arithmetic, ``"log"`` for log-space arithmetic. Default: ``"prob"``
        self_loop_prob (float, optional): Self-loop weight :math:`p` of the
            two-state phone topology; the forward transition gets :math:`1 - p`.
            Default: ``0.5``
        push_delta (float, optional): Convergence tolerance for weight pushing
            and quantization step for state equivalence in minimization.
            Default: ``1e-6``

    Raises:
        ValueError: If any option is out of range.
    """

    frame_subsampling_factor: int = 3
    frame_shift: int = 0
    chunk_length: int = 50
    frame_duration: float = 0.01
    left_tolerance: float = 0.05
    right_tolerance: float = 0.05
    anchor_policy: Union[str, int] = "max_initial"
    initial_prob_iters: int = 100
    leaky_hmm_coefficient: float = 0.0
    layout: str = "state_major"
    semiring: str = "prob"
    self_loop_prob: float = 0.5
    push_delta: float = 1e-6

    def __post_init__(self):
        if self.frame_subsampling_factor < 1:
            raise ValueError(
                f"frame_subsampling_factor must be >= 1, got {self.frame_subsampling_factor}"
            )
        if not 0 <= self.frame_shift < self.frame_subsampling_factor:
            raise ValueError(
                f"frame_shift must be in [0, {self.frame_subsampling_factor}), "
                f"got {self.frame_shift}"
            )
        if self.chunk_length < 1:
            raise ValueError(f"chunk_length must be >= 1, got {self.chunk_length}")
        if self.frame_duration <= 0:
            raise ValueError(f"frame_duration must be positive, got {self.frame_duration}")
        if self.left_tolerance < 0 or self.right_tolerance < 0:
            raise ValueError(
                f"tolerances must be non-negative, got left={self.left_tolerance}, "
                f"right={self.right_tolerance}"
            )
        if isinstance(self.anchor_policy, str):
            if self.anchor_policy not in _ANCHOR_POLICIES:
                raise ValueError(
                    f"Unknown anchor_policy: {self.anchor_policy}. "
                    "Use 'max_initial', 'max_reach', or a state id."
                )
        elif isinstance(self.anchor_policy, bool) or not isinstance(self.anchor_policy, int):
            raise ValueError(f"anchor_policy must be a str or int, got {self.anchor_policy!r}")
        elif self.anchor_policy < 0:
            raise ValueError(f"anchor state id must be non-negative, got {self.anchor_policy}")
        if self.initial_prob_iters < 1:
            raise ValueError(f"initial_prob_iters must be >= 1, got {self.initial_prob_iters}")
        if not 0.0 <= self.leaky_hmm_coefficient < 1.0:
            raise ValueError(
                f"leaky_hmm_coefficient must be in [0, 1), got {self.leaky_hmm_coefficient}"
            )
        if self.layout not in _LAYOUTS:
            raise ValueError(
                f"Unknown layout: {self.layout}. Use 'state_major' or 'sequence_major'."
            )
        if self.semiring not in _SEMIRINGS:
            raise ValueError(f"Unknown semiring: {self.semiring}. Use 'prob' or 'log'.")
        if not 0.0 < self.self_loop_prob < 1.0:
            raise ValueError(f"self_loop_prob must be in (0, 1), got {self.self_loop_prob}")
        if self.push_delta <= 0:
            raise ValueError(f"push_delta must be positive, got {self.push_delta}")

    @property
    def output_frame_duration(self) -> float:
        """Duration of one output (label) frame in seconds."""
        return self.frame_duration * self.frame_subsampling_factor

    @property
    def left_tolerance_frames(self) -> int:
        """Left tolerance in input frames."""
        return int(math.floor(self.left_tolerance / self.frame_duration + 1e-9))

    @property
    def right_tolerance_frames(self) -> int:
        """Right tolerance in input frames."""
        return int(math.floor(self.right_tolerance / self.frame_duration + 1e-9))
