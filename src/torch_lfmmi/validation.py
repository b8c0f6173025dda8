"""Input validation utilities for the chain objective.

These functions raise informative errors early, preventing cryptic downstream
failures inside the forward-backward recursion.

Functions:
    validate_log_probs: Validate the network's per-frame class log-probabilities.
    validate_frame_subsampling: Validate subsampling factor and frame shift.
"""

import warnings
from typing import Optional

import torch
from torch import Tensor

__all__ = [
    "validate_log_probs",
    "validate_frame_subsampling",
]


def validate_log_probs(
    log_probs: Tensor,
    num_classes: Optional[int] = None,
    num_sequences: Optional[int] = None,
    chunk_length: Optional[int] = None,
    name: str = "log_probs",
    check_nan: bool = True,
    warn_dtype: bool = True,
) -> None:
    r"""validate_log_probs(log_probs, num_classes=None, num_sequences=None, chunk_length=None, name='log_probs', check_nan=True, warn_dtype=True) -> None

    Validates the network output fed to the forward-backward engine.

    ``-inf`` entries are allowed (class probability zero); ``+inf`` is not.

    Args:
        log_probs (Tensor): tensor to validate, expected shape
          :math:`(S, L, C)`
        num_classes (int, optional): expected :math:`C`. Default: ``None``
        num_sequences (int, optional): expected :math:`S`. Default: ``None``
        chunk_length (int, optional): expected :math:`L`. Default: ``None``
        name (str, optional): name to use in error messages. Default: ``"log_probs"``
        check_nan (bool, optional): whether to check for NaN values. Default: ``True``
        warn_dtype (bool, optional): whether to warn on half-precision input.
          Default: ``True``

    Raises:
        ValueError: If tensor is not 3D or a dimension doesn't match.
        ValueError: If tensor contains NaN (when ``check_nan=True``) or ``+inf``.

    Warns:
        UserWarning: If dtype is neither ``float32`` nor ``float64`` (when
          ``warn_dtype=True``).

    Examples::

        >>> validate_log_probs(torch.randn(4, 50, 12).log_softmax(-1), num_classes=12)  # OK

        >>> validate_log_probs(torch.zeros(50, 12))
        ValueError: log_probs must be 3D (S, L, C), got 2D
    """
    if log_probs.ndim != 3:
        raise ValueError(f"{name} must be 3D (S, L, C), got {log_probs.ndim}D")

    S, L, C = log_probs.shape
    if num_sequences is not None and S != num_sequences:
        raise ValueError(f"{name} has {S} sequences, expected {num_sequences}")
    if chunk_length is not None and L != chunk_length:
        raise ValueError(f"{name} has {L} frames, expected chunk length {chunk_length}")
    if num_classes is not None and C != num_classes:
        raise ValueError(f"{name} has {C} classes, expected {num_classes}")
    if L < 1:
        raise ValueError(f"{name} must have at least one frame")

    if check_nan and torch.isnan(log_probs).any():
        raise ValueError(f"{name} contains NaN values")

    if torch.isposinf(log_probs).any():
        raise ValueError(f"{name} contains +inf values")

    if warn_dtype and log_probs.dtype not in (torch.float32, torch.float64):
        warnings.warn(
            f"{name} should be float32 or float64, got {log_probs.dtype}; "
            "probability-space products underflow quickly at lower precision",
            UserWarning,
            stacklevel=3,
        )


def validate_frame_subsampling(num_frames: int, factor: int, shift: int) -> None:
    r"""validate_frame_subsampling(num_frames, factor, shift) -> None

    Validates a subsampling request against the number of input frames.

    Raises:
        ValueError: If ``factor < 1``, ``shift`` is outside ``[0, factor)``, or
          ``shift`` leaves no frame to select.
    """
    if factor < 1:
        raise ValueError(f"frame_subsampling_factor must be >= 1, got {factor}")
    if not 0 <= shift < factor:
        raise ValueError(f"frame_shift must be in [0, {factor}), got {shift}")
    if shift >= num_frames:
        raise ValueError(f"frame_shift={shift} leaves no frames out of {num_frames}")
