"""Tests for frame subsampling and numerator chunk batches."""

import pytest
import torch

from torch_lfmmi import ChainTrainingOptions, ChunkBatch, NumeratorGraph, subsample_frames


@pytest.fixture
def chunks(good_lattice, monophone, phone_lm_den):
    graph = NumeratorGraph.build(good_lattice, 12, monophone, ChainTrainingOptions())
    return graph.chunks(phone_lm_den, chunk_length=2, starts=[0, 2])


class TestSubsampleFrames:
    def test_selects_every_factor_frame(self):
        x = torch.arange(7).view(1, 7, 1)
        assert subsample_frames(x, factor=3).flatten().tolist() == [0, 3, 6]
        assert subsample_frames(x, factor=3, shift=1).flatten().tolist() == [1, 4]

    def test_other_dim(self):
        x = torch.arange(12).view(3, 4)
        assert subsample_frames(x, factor=2, shift=1, dim=0).tolist() == [[4, 5, 6, 7]]

    def test_invalid_shift(self):
        with pytest.raises(ValueError, match="frame_shift"):
            subsample_frames(torch.zeros(1, 6, 2), factor=3, shift=3)


class TestChunkBatch:
    def test_empty_rejected(self):
        with pytest.raises(ValueError, match="at least one chunk"):
            ChunkBatch([])

    def test_unnormalized_rejected(self, good_lattice, monophone):
        graph = NumeratorGraph.build(good_lattice, 12, monophone)
        with pytest.raises(ValueError, match="normalization graph"):
            ChunkBatch(graph.split(2, [0]))

    def test_lengths_must_match(self, good_lattice, monophone, phone_lm_den):
        graph = NumeratorGraph.build(good_lattice, 12, monophone, ChainTrainingOptions())
        mixed = graph.chunks(phone_lm_den, 2, [0]) + graph.chunks(phone_lm_den, 3, [0])
        with pytest.raises(ValueError, match="same length"):
            ChunkBatch(mixed)

    def test_from_graphs_none_survive(self, bad_lattice, monophone, phone_lm_den, exact_options):
        graph = NumeratorGraph.build(bad_lattice, 12, monophone, exact_options)
        with pytest.raises(ValueError, match="at least one chunk"):
            ChunkBatch.from_graphs([graph], phone_lm_den, chunk_length=4)

    def test_union_layout(self, chunks):
        batch = ChunkBatch(chunks)
        union = batch.union(dtype=torch.float64)
        assert union.num_sequences == 2
        assert union.num_states == sum(c.num_states for c in chunks)
        assert union.start_states.tolist() == [
            chunks[0].acceptor.start,
            chunks[0].num_states + chunks[1].acceptor.start,
        ]
        assert union.weight.dtype == torch.float64
        # Labels become ClassIds
        assert int(union.label.min()) >= 0
        assert len(union.arcs_by_frame) == 2
        assert sum(len(a) for a in union.arcs_by_frame) == union.src.numel()
        for seq in (0, 1):
            arcs = union.arc_sequence == seq
            assert torch.all(union.state_sequence[union.src[arcs]] == seq)
            assert torch.all(union.state_sequence[union.dst[arcs]] == seq)

    def test_union_cached_per_dtype(self, chunks):
        batch = ChunkBatch(chunks)
        assert batch.union(dtype=torch.float64) is batch.union(dtype=torch.float64)
        assert batch.union(dtype=torch.float32).weight.dtype == torch.float32

    def test_repr(self, chunks):
        batch = ChunkBatch(chunks)
        assert len(batch) == 2
        assert repr(batch) == "ChunkBatch(num_sequences=2, chunk_length=2)"
