r"""Minibatches of numerator chunks.

A :class:`ChunkBatch` holds :math:`S` normalized chunks of the same length
:math:`L`. For the numerator forward-backward they are laid out as one
disjoint union graph (:class:`ChunkUnion`) whose states and arcs carry the
index of the sequence they belong to, so all chunks advance through a frame
in one pass.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import torch
from torch import Tensor

from .acceptor import label_to_class
from .denominator import DenominatorGraph
from .numerator import NumeratorChunk, NumeratorGraph
from .validation import validate_frame_subsampling

logger = logging.getLogger(__name__)

__all__ = ["ChunkBatch", "ChunkUnion", "subsample_frames"]


def subsample_frames(x: Tensor, factor: int, shift: int = 0, dim: int = 1) -> Tensor:
    r"""subsample_frames(x, factor, shift=0, dim=1) -> Tensor

    Select frames ``shift, shift + factor, shift + 2 * factor, ...`` along ``dim``.

    Training repeatedly on the same data with different ``shift`` values
    augments it without touching any graph.

    Examples::

        >>> x = torch.arange(7).view(1, 7, 1)
        >>> subsample_frames(x, factor=3, shift=1).flatten()
        tensor([1, 4])
    """
    validate_frame_subsampling(x.shape[dim], factor, shift)
    index = torch.arange(shift, x.shape[dim], factor, device=x.device)
    return x.index_select(dim, index)


@dataclass
class ChunkUnion:
    r"""Disjoint union of a batch's chunk graphs as flat tensors.

    Attributes:
        src, dst, label, weight (Tensor): Arcs, shape :math:`(A,)`; ``label``
            holds ClassIds.
        arc_sequence (Tensor): Sequence index of every arc.
        state_sequence (Tensor): Sequence index of every state, shape :math:`(M,)`.
        start_states (Tensor): Start state of every sequence, shape :math:`(S,)`.
        final_weights (Tensor): Shape :math:`(M,)`.
        arcs_by_frame (list): For every local frame ``t``, the indices of the
            arcs leaving a state at frame ``t``.
    """

    src: Tensor
    dst: Tensor
    label: Tensor
    weight: Tensor
    arc_sequence: Tensor
    state_sequence: Tensor
    start_states: Tensor
    final_weights: Tensor
    arcs_by_frame: list
    num_states: int
    num_sequences: int


class ChunkBatch:
    r"""A minibatch of normalized numerator chunks of identical length.

    Args:
        chunks (Sequence[NumeratorChunk]): Chunks from
            :meth:`~torch_lfmmi.numerator.NumeratorGraph.chunks` or
            :func:`~torch_lfmmi.numerator.normalize_chunk`.

    Raises:
        ValueError: If ``chunks`` is empty, a chunk is not normalized, or the
            lengths differ.
    """

    def __init__(self, chunks: Sequence[NumeratorChunk]):
        chunks = list(chunks)
        if not chunks:
            raise ValueError("a batch needs at least one chunk")
        lengths = {chunk.length for chunk in chunks}
        if len(lengths) != 1:
            raise ValueError(f"all chunks must have the same length, got {sorted(lengths)}")
        for i, chunk in enumerate(chunks):
            if not chunk.normalized:
                raise ValueError(f"chunk {i} has not been composed with the normalization graph")
        self.chunks = chunks
        self.chunk_length = lengths.pop()
        self._union_cache = {}

    def __len__(self):
        return len(self.chunks)

    def __repr__(self):
        return f"ChunkBatch(num_sequences={self.num_sequences}, chunk_length={self.chunk_length})"

    @property
    def num_sequences(self) -> int:
        return len(self.chunks)

    @classmethod
    def from_graphs(
        cls,
        graphs: Sequence[NumeratorGraph],
        den_graph: DenominatorGraph,
        chunk_length: int,
    ) -> "ChunkBatch":
        r"""from_graphs(graphs, den_graph, chunk_length) -> ChunkBatch

        Chunk and normalize whole-utterance graphs, keeping every surviving chunk.

        Raises:
            ValueError: If no chunk survives.
        """
        chunks = []
        for graph in graphs:
            chunks.extend(graph.chunks(den_graph, chunk_length))
        logger.debug("batch of %d chunk(s) from %d utterance(s)", len(chunks), len(graphs))
        return cls(chunks)

    def union(self, dtype=torch.float32, device=None) -> ChunkUnion:
        key = (dtype, str(device))
        if key not in self._union_cache:
            self._union_cache[key] = self._build_union(dtype, device)
        return self._union_cache[key]

    def _build_union(self, dtype, device: Optional[torch.device]) -> ChunkUnion:
        src, dst, label, weight, arc_seq, arc_frame = [], [], [], [], [], []
        state_seq, final, starts = [], [], []
        offset = 0
        for seq, chunk in enumerate(self.chunks):
            graph = chunk.acceptor
            frames = chunk.frames.tolist()
            starts.append(offset + graph.start)
            for state in graph.states():
                state_seq.append(seq)
                final.append(graph.final(state))
            for arc in graph.arcs():
                src.append(offset + arc.src)
                dst.append(offset + arc.dst)
                label.append(label_to_class(arc.label))
                weight.append(arc.weight)
                arc_seq.append(seq)
                arc_frame.append(frames[arc.src])
            offset += graph.num_states

        def as_long(values):
            return torch.tensor(values, dtype=torch.long, device=device)

        frame_of_arc = as_long(arc_frame)
        arcs_by_frame = [
            torch.nonzero(frame_of_arc == t, as_tuple=True)[0] for t in range(self.chunk_length)
        ]
        return ChunkUnion(
            src=as_long(src),
            dst=as_long(dst),
            label=as_long(label),
            weight=torch.tensor(weight, dtype=dtype, device=device),
            arc_sequence=as_long(arc_seq),
            state_sequence=as_long(state_seq),
            start_states=as_long(starts),
            final_weights=torch.tensor(final, dtype=dtype, device=device),
            arcs_by_frame=arcs_by_frame,
            num_states=offset,
            num_sequences=self.num_sequences,
        )
