"""Tests for input validation utilities."""

import warnings

import pytest
import torch

from torch_lfmmi.validation import (
    validate_frame_subsampling,
    validate_log_probs,
)


class TestValidateLogProbs:
    """Tests for validate_log_probs."""

    def test_valid_tensor(self):
        log_probs = torch.randn(2, 10, 6).log_softmax(-1)
        validate_log_probs(log_probs, num_classes=6, num_sequences=2, chunk_length=10)

    def test_2d_tensor_raises(self):
        with pytest.raises(ValueError, match="must be 3D"):
            validate_log_probs(torch.zeros(10, 6))

    def test_class_mismatch(self):
        with pytest.raises(ValueError, match="has 6 classes, expected 8"):
            validate_log_probs(torch.zeros(2, 10, 6), num_classes=8)

    def test_sequence_mismatch(self):
        with pytest.raises(ValueError, match="has 2 sequences, expected 3"):
            validate_log_probs(torch.zeros(2, 10, 6), num_sequences=3)

    def test_chunk_length_mismatch(self):
        with pytest.raises(ValueError, match="has 10 frames, expected chunk length 5"):
            validate_log_probs(torch.zeros(2, 10, 6), chunk_length=5)

    def test_no_frames(self):
        with pytest.raises(ValueError, match="at least one frame"):
            validate_log_probs(torch.zeros(2, 0, 6))

    def test_nan_raises(self):
        log_probs = torch.zeros(2, 10, 6)
        log_probs[1, 3, 2] = float("nan")
        with pytest.raises(ValueError, match="contains NaN"):
            validate_log_probs(log_probs)

    def test_nan_check_disabled(self):
        log_probs = torch.zeros(2, 10, 6)
        log_probs[1, 3, 2] = float("nan")
        validate_log_probs(log_probs, check_nan=False)

    def test_negative_inf_allowed(self):
        """A class with probability zero is legal."""
        log_probs = torch.zeros(2, 10, 6)
        log_probs[0, 0, 0] = float("-inf")
        validate_log_probs(log_probs)

    def test_positive_inf_raises(self):
        log_probs = torch.zeros(2, 10, 6)
        log_probs[0, 0, 0] = float("inf")
        with pytest.raises(ValueError, match="contains \\+inf"):
            validate_log_probs(log_probs)

    def test_custom_name(self):
        with pytest.raises(ValueError, match="nnet_output must be 3D"):
            validate_log_probs(torch.zeros(6), name="nnet_output")

    def test_half_precision_warns(self):
        with pytest.warns(UserWarning, match="float32 or float64"):
            validate_log_probs(torch.zeros(1, 2, 3, dtype=torch.float16))

    def test_dtype_warning_disabled(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            validate_log_probs(torch.zeros(1, 2, 3, dtype=torch.float16), warn_dtype=False)


class TestValidateFrameSubsampling:
    """Tests for validate_frame_subsampling."""

    def test_valid(self):
        validate_frame_subsampling(30, factor=3, shift=2)

    def test_factor_zero(self):
        with pytest.raises(ValueError, match="must be >= 1"):
            validate_frame_subsampling(30, factor=0, shift=0)

    def test_shift_out_of_range(self):
        with pytest.raises(ValueError, match="must be in \\[0, 3\\)"):
            validate_frame_subsampling(30, factor=3, shift=3)

    def test_shift_past_end(self):
        with pytest.raises(ValueError, match="leaves no frames"):
            validate_frame_subsampling(1, factor=3, shift=1)
