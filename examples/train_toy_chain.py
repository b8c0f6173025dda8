#!/usr/bin/env python3
"""Example: training a small acoustic model with ChainLoss.

This example builds a denominator graph from a toy phone bigram, turns random
phone alignments into numerator chunks, and trains an MLP on synthetic
features whose means depend on the current phone.

Key points:
1. The denominator graph is built once and shared by every minibatch
2. Numerator graphs are built per utterance, then cut into fixed-length chunks
3. The network runs at the input frame rate; ChainLoss(subsample=True) picks
   the output frames, so changing --frame-shift never touches the graphs

Usage:
    python train_toy_chain.py --steps 200
    python train_toy_chain.py --semiring log --layout sequence_major
"""

import argparse
import logging
import random

import torch
import torch.nn as nn

from torch_lfmmi import (
    BOS,
    ChainLoss,
    ChainTrainingOptions,
    ChunkBatch,
    ContextDependency,
    DenominatorGraph,
    NumeratorGraph,
    PhoneLanguageModel,
    PhoneLattice,
)

NUM_PHONES = 3


def toy_phone_lm():
    """Bigram over three phones; no phone directly repeats itself."""
    return PhoneLanguageModel(
        probs={
            (BOS,): {1: 0.4, 2: 0.4, 3: 0.2},
            (1,): {2: 0.5, 3: 0.3},
            (2,): {1: 0.3, 3: 0.4},
            (3,): {1: 0.3, 2: 0.3},
        },
        final_probs={(1,): 0.2, (2,): 0.3, (3,): 0.4},
        order=2,
    )


def random_alignment(num_phones, factor, rng):
    """Phone segments (phone, begin, end) in input frames."""
    segments, begin, prev = [], 0, None
    for _ in range(num_phones):
        phone = rng.choice([p for p in range(1, NUM_PHONES + 1) if p != prev])
        length = factor * rng.randint(2, 5)
        segments.append((phone, begin, begin + length))
        begin += length
        prev = phone
    return segments


def synthetic_features(segments, feat_dim, means):
    frames = []
    for phone, begin, end in segments:
        frames.append(means[phone] + 0.5 * torch.randn(end - begin, feat_dim))
    return torch.cat(frames)


class FrameClassifier(nn.Module):
    def __init__(self, feat_dim: int, hidden_dim: int, num_classes: int):
        super().__init__()
        self.layers = nn.Sequential(
            nn.Linear(feat_dim, hidden_dim),
            nn.ReLU(),
            nn.LayerNorm(hidden_dim),
            nn.Linear(hidden_dim, num_classes),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.layers(x).log_softmax(-1)


def make_minibatch(den_graph, context, options, means, feat_dim, num_utts, rng):
    """Chunk features of shape (S, L * factor, D) and the matching ChunkBatch."""
    factor = options.frame_subsampling_factor
    span = options.chunk_length * factor
    features, chunks = [], []
    for _ in range(num_utts):
        segments = random_alignment(rng.randint(4, 8), factor, rng)
        num_frames = segments[-1][2]
        feats = synthetic_features(segments, feat_dim, means)
        lattice = PhoneLattice.from_alignment(segments)
        graph = NumeratorGraph.build(lattice, num_frames, context, options)
        for chunk in graph.chunks(den_graph, options.chunk_length):
            # Segment lengths are multiples of `factor`, so every chunk is complete
            begin = chunk.start_frame * factor
            features.append(feats[begin : begin + span])
            chunks.append(chunk)
    return torch.stack(features), ChunkBatch(chunks)


def main():
    parser = argparse.ArgumentParser(description="Toy LF-MMI training loop")
    parser.add_argument("--steps", type=int, default=100)
    parser.add_argument("--utts-per-batch", type=int, default=8)
    parser.add_argument("--chunk-length", type=int, default=6)
    parser.add_argument("--frame-shift", type=int, default=0)
    parser.add_argument("--semiring", default="prob", choices=["prob", "log"])
    parser.add_argument("--layout", default="state_major", choices=["state_major", "sequence_major"])
    parser.add_argument("--leaky-hmm", type=float, default=1e-5)
    parser.add_argument("--lr", type=float, default=1e-2)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    torch.manual_seed(args.seed)
    rng = random.Random(args.seed)

    options = ChainTrainingOptions(
        chunk_length=args.chunk_length,
        frame_shift=args.frame_shift,
        semiring=args.semiring,
        layout=args.layout,
        leaky_hmm_coefficient=args.leaky_hmm,
    )
    context = ContextDependency.left_biphone(NUM_PHONES)
    den_graph = DenominatorGraph.build(toy_phone_lm(), context, options)
    print(den_graph)

    feat_dim = 8
    means = {p: 2.0 * torch.randn(feat_dim) for p in range(1, NUM_PHONES + 1)}
    model = FrameClassifier(feat_dim, hidden_dim=32, num_classes=den_graph.num_classes)
    loss_fn = ChainLoss(den_graph, options, subsample=True)
    optimizer = torch.optim.Adam(model.parameters(), lr=args.lr)
    print(loss_fn)

    for step in range(1, args.steps + 1):
        features, batch = make_minibatch(
            den_graph, context, options, means, feat_dim, args.utts_per_batch, rng
        )
        loss = loss_fn(model(features), batch)
        optimizer.zero_grad()
        loss.backward()
        optimizer.step()
        if step % 10 == 0 or step == 1:
            print(f"step {step:4d}  chunks {batch.num_sequences:3d}  loss/frame {loss.item():.4f}")


if __name__ == "__main__":
    main()
