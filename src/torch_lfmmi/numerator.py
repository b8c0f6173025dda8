r"""Numerator graphs: class sequences consistent with an utterance's transcript.

An utterance arrives as a :class:`PhoneLattice` whose arcs carry a phone and
its reference time span in input frames; a plain alignment is the special
case of a linear lattice (:meth:`PhoneLattice.from_alignment`).
:meth:`NumeratorGraph.build` turns it into an unweighted, frame-indexed
acceptor in output frames: a phone may occupy any output frame whose input
frames overlap its reference span widened by the tolerance window.

Training uses fixed-length pieces of that graph. :meth:`NumeratorGraph.split`
cuts it at frame boundaries (no reweighting needed because nothing is weighted
yet), and :func:`normalize_chunk` composes each piece with the
:class:`~torch_lfmmi.denominator.NormalizationGraph` so that its paths carry
exactly the denominator's weights. Because every chunk is determinized first,
each class sequence is counted once and the numerator total can never exceed
the denominator total.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .acceptor import Acceptor, class_to_label
from .denominator import DenominatorGraph, NormalizationGraph
from .errors import NumeratorGraphError
from .ops import compose, determinize_unweighted
from .options import ChainTrainingOptions
from .topology import NO_CONTEXT, ContextDependency

logger = logging.getLogger(__name__)

__all__ = [
    "PhoneArc",
    "PhoneLattice",
    "NumeratorGraph",
    "NumeratorChunk",
    "normalize_chunk",
]


@dataclass(frozen=True)
class PhoneArc:
    """Lattice arc: ``phone`` with reference span ``[begin, end)`` in input frames."""

    src: int
    dst: int
    phone: int
    begin: int
    end: int


class PhoneLattice:
    r"""Acyclic lattice of time-annotated phones.

    State 0 is the start state. Alternative pronunciations are parallel paths.

    Examples::

        >>> lat = PhoneLattice()
        >>> s0, s1 = lat.add_state(), lat.add_state()
        >>> lat.add_arc(s0, s1, phone=3, begin=0, end=12)
        >>> lat.set_final(s1)
    """

    def __init__(self):
        self._arcs: list[list[PhoneArc]] = []
        self._final: set[int] = set()

    def __repr__(self):
        return f"PhoneLattice(num_states={self.num_states}, num_arcs={len(self.arcs())})"

    @property
    def num_states(self) -> int:
        return len(self._arcs)

    @property
    def start(self) -> int:
        return 0

    def add_state(self) -> int:
        self._arcs.append([])
        return len(self._arcs) - 1

    def set_final(self, state: int) -> None:
        self._check_state(state)
        self._final.add(state)

    def is_final(self, state: int) -> bool:
        return state in self._final

    def add_arc(self, src: int, dst: int, phone: int, begin: int, end: int) -> PhoneArc:
        self._check_state(src)
        self._check_state(dst)
        if phone < 1:
            raise ValueError(f"phones are numbered from 1, got {phone}")
        if not 0 <= begin < end:
            raise ValueError(f"phone span must satisfy 0 <= begin < end, got [{begin}, {end})")
        arc = PhoneArc(src, dst, phone, begin, end)
        self._arcs[src].append(arc)
        return arc

    def arcs(self, state: Optional[int] = None) -> list[PhoneArc]:
        if state is not None:
            return self._arcs[state]
        return [arc for arcs in self._arcs for arc in arcs]

    def _check_state(self, state: int) -> None:
        if not 0 <= state < self.num_states:
            raise ValueError(f"state {state} out of range [0, {self.num_states})")

    @classmethod
    def from_alignment(cls, segments) -> "PhoneLattice":
        r"""from_alignment(segments) -> PhoneLattice

        Linear lattice from ``(phone, begin, end)`` reference segments.
        """
        lattice = cls()
        prev = lattice.add_state()
        for phone, begin, end in segments:
            nxt = lattice.add_state()
            lattice.add_arc(prev, nxt, phone, begin, end)
            prev = nxt
        lattice.set_final(prev)
        return lattice


def _allowed_frames(arc: PhoneArc, num_input_frames: int, options: ChainTrainingOptions):
    # Output frame t covers input frames [t * f, (t + 1) * f)
    f = options.frame_subsampling_factor
    lo = max(0, arc.begin - options.left_tolerance_frames)
    hi = min(num_input_frames, arc.end + options.right_tolerance_frames)
    if lo >= hi:
        return range(0)
    return range(lo // f, (hi - 1) // f + 1)


@dataclass
class NumeratorChunk:
    r"""A chunk of a numerator graph.

    Attributes:
        acceptor (Acceptor): Chunk graph. Unweighted after
            :meth:`NumeratorGraph.split`, carrying denominator weights after
            :func:`normalize_chunk`.
        frames (Tensor): Local frame position ``0 .. length`` of every state.
        start_frame (int): First output frame of the chunk in its utterance.
        length (int): Number of frames :math:`L`.
        normalized (bool): Whether the chunk has been composed with the
            normalization graph.
    """

    acceptor: Acceptor
    frames: Tensor
    start_frame: int
    length: int
    normalized: bool = False

    @property
    def num_states(self) -> int:
        return self.acceptor.num_states

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.length


class NumeratorGraph:
    r"""Frame-indexed constraint acceptor for one utterance.

    Every state belongs to one output frame position ``t`` (the number of
    frames consumed so far); every arc goes from ``t`` to ``t + 1``. Final
    states sit at ``t = num_frames``. All weights are one.

    Args:
        acceptor (Acceptor): Trimmed, frame-synchronous acceptor.
        frames (list): Frame position of every state.
        num_frames (int): Number of output frames.
    """

    def __init__(self, acceptor: Acceptor, frames: list[int], num_frames: int):
        if len(frames) != acceptor.num_states:
            raise ValueError(
                f"expected {acceptor.num_states} frame indices, got {len(frames)}"
            )
        for arc in acceptor.arcs():
            if frames[arc.dst] != frames[arc.src] + 1:
                raise ValueError(
                    f"arc {arc.src}->{arc.dst} is not frame-synchronous "
                    f"({frames[arc.src]} -> {frames[arc.dst]})"
                )
        self.acceptor = acceptor
        self.frames = list(frames)
        self.num_frames = num_frames

    def __repr__(self):
        return (
            f"NumeratorGraph(num_frames={self.num_frames}, num_states={self.acceptor.num_states}, "
            f"num_arcs={self.acceptor.num_arcs})"
        )

    @classmethod
    def build(
        cls,
        lattice: PhoneLattice,
        num_input_frames: int,
        context: ContextDependency,
        options: Optional[ChainTrainingOptions] = None,
    ) -> "NumeratorGraph":
        r"""build(lattice, num_input_frames, context, options=None) -> NumeratorGraph

        Expand a time-annotated phone lattice into a frame-indexed class acceptor.

        Phones follow the same two-state topology as the denominator: one frame
        of the entry class, then any number of frames of the self-loop class.
        A phone may use output frame ``t`` if any of the input frames behind
        ``t`` lies within ``[begin - left_tolerance, end + right_tolerance)``.

        Args:
            lattice (PhoneLattice): Pronunciation lattice with reference spans.
            num_input_frames (int): Utterance length in input frames.
            context (ContextDependency): Phone-to-class mapping.
            options (ChainTrainingOptions, optional): Subsampling and tolerances.

        Raises:
            NumeratorGraphError: If no path through the lattice fits the
                frames, or the lattice uses a phone ``context`` does not know.
        """
        options = options or ChainTrainingOptions()
        if num_input_frames <= 0:
            raise NumeratorGraphError(f"utterance must have frames, got {num_input_frames}")
        f = options.frame_subsampling_factor
        num_frames = (num_input_frames + f - 1) // f

        missing = sorted({a.phone for a in lattice.arcs() if not context.has_phone(a.phone)})
        if missing:
            raise NumeratorGraphError(f"context dependency has no classes for phones {missing}")
        allowed = {arc: set(_allowed_frames(arc, num_input_frames, options)) for arc in lattice.arcs()}

        graph = Acceptor()
        frames = []
        ids = {}
        queue = []

        def state_of(key):
            if key not in ids:
                arc, t, _ = key
                final = t == num_frames and lattice.is_final(arc.dst)
                ids[key] = graph.add_state(1.0 if final else 0.0)
                frames.append(t)
                queue.append(key)
            return ids[key]

        start = graph.add_state()
        frames.append(0)
        graph.set_start(start)
        for arc in lattice.arcs(lattice.start):
            if 0 in allowed[arc]:
                entry, _ = context.classes(NO_CONTEXT, arc.phone)
                graph.add_arc(start, state_of((arc, 1, NO_CONTEXT)), class_to_label(entry))

        head = 0
        while head < len(queue):
            key = queue[head]
            head += 1
            arc, t, left = key
            if t >= num_frames:
                continue
            src = ids[key]
            if t in allowed[arc]:
                _, loop = context.classes(left, arc.phone)
                graph.add_arc(src, state_of((arc, t + 1, left)), class_to_label(loop))
            for nxt in lattice.arcs(arc.dst):
                if t in allowed[nxt]:
                    entry, _ = context.classes(arc.phone, nxt.phone)
                    graph.add_arc(src, state_of((nxt, t + 1, arc.phone)), class_to_label(entry))

        trimmed, old_to_new = graph.connect()
        if trimmed.start is None:
            raise NumeratorGraphError(
                f"no path through the lattice fits {num_frames} output frames"
            )
        kept = [0] * trimmed.num_states
        for old, new in enumerate(old_to_new):
            if new >= 0:
                kept[new] = frames[old]
        logger.debug(
            "numerator graph: %d frames, %d states, %d arcs",
            num_frames,
            trimmed.num_states,
            trimmed.num_arcs,
        )
        return cls(trimmed, kept, num_frames)

    def chunk_starts(self, chunk_length: int) -> list[int]:
        r"""chunk_starts(chunk_length) -> list

        Start frames of the chunks covering the utterance.

        Chunks are laid end to end from frame 0; if the utterance length is not
        a multiple of ``chunk_length`` one more chunk, aligned to the end of the
        utterance, covers the remainder (it overlaps its predecessor). An
        utterance shorter than ``chunk_length`` yields no chunks.
        """
        if chunk_length < 1:
            raise ValueError(f"chunk_length must be >= 1, got {chunk_length}")
        if self.num_frames < chunk_length:
            return []
        starts = list(range(0, self.num_frames - chunk_length + 1, chunk_length))
        if starts[-1] + chunk_length < self.num_frames:
            starts.append(self.num_frames - chunk_length)
        return starts

    def split(self, chunk_length: int, starts: Optional[list[int]] = None) -> list[NumeratorChunk]:
        r"""split(chunk_length, starts=None) -> list

        Cut the graph into unnormalized chunks.

        The chunk starting at frame ``t0`` keeps the states at frames
        ``t0 .. t0 + chunk_length``; the states at ``t0`` together form its
        start state and those at ``t0 + chunk_length`` its final states. The
        chunk is determinized, so it accepts exactly the class sequences the
        whole graph produces on those frames, each once.

        Args:
            chunk_length (int): Chunk length :math:`L`.
            starts (list, optional): Start frames. Default: :meth:`chunk_starts`

        Raises:
            ValueError: If a chunk would extend past the utterance.
        """
        if starts is None:
            starts = self.chunk_starts(chunk_length)
        by_frame = [[] for _ in range(self.num_frames + 1)]
        for state, t in enumerate(self.frames):
            by_frame[t].append(state)

        chunks = []
        for t0 in starts:
            t1 = t0 + chunk_length
            if t0 < 0 or t1 > self.num_frames:
                raise ValueError(
                    f"chunk [{t0}, {t1}) outside utterance of {self.num_frames} frames"
                )
            sub = Acceptor()
            local = {}
            for t in range(t0, t1 + 1):
                for state in by_frame[t]:
                    local[state] = sub.add_state(1.0 if t == t1 else 0.0)
            for t in range(t0, t1):
                for state in by_frame[t]:
                    for arc in self.acceptor.arcs(state):
                        sub.add_arc(local[state], local[arc.dst], arc.label)
            sub_frames = {local[s]: self.frames[s] - t0 for s in local}
            det, subsets = determinize_unweighted(sub, [local[s] for s in by_frame[t0]])
            frames = torch.tensor(
                [sub_frames[next(iter(subset))] for subset in subsets], dtype=torch.long
            )
            chunks.append(NumeratorChunk(det, frames, t0, chunk_length))
        return chunks

    def chunks(
        self,
        den_graph: DenominatorGraph,
        chunk_length: int,
        starts: Optional[list[int]] = None,
    ) -> list[NumeratorChunk]:
        r"""chunks(den_graph, chunk_length, starts=None) -> list

        Split and normalize, dropping chunks whose composition is empty.
        """
        norm = den_graph.normalization_graph()
        kept = []
        for chunk in self.split(chunk_length, starts):
            normalized = normalize_chunk(chunk, norm)
            if normalized is not None:
                kept.append(normalized)
        dropped = len(self.chunk_starts(chunk_length) if starts is None else starts) - len(kept)
        if dropped:
            logger.info(
                "dropped %d of %d numerator chunk(s) with empty normalization",
                dropped,
                dropped + len(kept),
            )
        return kept


def normalize_chunk(
    chunk: NumeratorChunk, normalization_graph: NormalizationGraph
) -> Optional[NumeratorChunk]:
    r"""normalize_chunk(chunk, normalization_graph) -> NumeratorChunk or None

    Compose a chunk with the normalization graph.

    The result's paths carry the denominator's initial, arc and final weights.
    A chunk none of whose class sequences the denominator allows composes to
    an empty graph; that chunk is returned as ``None`` so the caller can drop
    it from the minibatch.
    """
    if chunk.normalized:
        raise ValueError("chunk is already normalized")
    composed, pairs = compose(chunk.acceptor, normalization_graph)
    if composed.start is None:
        logger.debug(
            "numerator chunk at frame %d has no path the denominator allows", chunk.start_frame
        )
        return None
    frames = chunk.frames[torch.tensor([qa for qa, _ in pairs], dtype=torch.long)]
    return NumeratorChunk(composed, frames, chunk.start_frame, chunk.length, normalized=True)
