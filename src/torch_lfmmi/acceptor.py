r"""Weighted acceptor in the probability semiring.

An :class:`Acceptor` is a directed graph with one start state, per-state final
weights, and arcs ``(src, dst, label, weight)``. Weights are probabilities, not
negative log-probabilities. Labels are stored as ``ClassId + 1``; label ``0`` is
reserved for "no symbol" and is rejected by :meth:`Acceptor.add_arc`.

The text exchange format follows the OpenFst acceptor text format::

    src dst label weight     # one line per arc
    state final_weight       # one line per final state

The source state of the first line is the start state.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import torch
from torch import Tensor

logger = logging.getLogger(__name__)

__all__ = ["Arc", "ArcTensors", "Acceptor", "class_to_label", "label_to_class"]

# Graphs with at most this many states get shortest distances from a dense solve.
DENSE_SOLVE_LIMIT = 4096


def class_to_label(class_id: int) -> int:
    """Graph label for a ClassId."""
    return class_id + 1


def label_to_class(label: int) -> int:
    """ClassId for a graph label."""
    return label - 1


@dataclass(frozen=True)
class Arc:
    """Arc between two states with a class label and a probability weight."""

    src: int
    dst: int
    label: int
    weight: float


@dataclass
class ArcTensors:
    """Arcs of an acceptor as parallel 1D tensors.

    ``label`` holds ClassIds (graph label minus one), ready to index the class
    dimension of an emission tensor.
    """

    src: Tensor
    dst: Tensor
    label: Tensor
    weight: Tensor
    num_states: int

    @property
    def num_arcs(self) -> int:
        return self.src.shape[0]


class Acceptor:
    r"""Weighted acceptor with integer states.

    States are numbered ``0 .. num_states - 1`` in creation order. Non-final
    states have final weight ``0.0``.

    Examples::

        >>> g = Acceptor()
        >>> a, b = g.add_state(), g.add_state(final=1.0)
        >>> g.set_start(a)
        >>> g.add_arc(a, a, label=1, weight=0.5)
        >>> g.add_arc(a, b, label=2, weight=0.5)
        >>> g.add_arc(b, b, label=2, weight=1.0)
    """

    def __init__(self):
        self._arcs: list[list[Arc]] = []
        self._final: list[float] = []
        self.start: Optional[int] = None

    def __repr__(self):
        return (
            f"Acceptor(num_states={self.num_states}, num_arcs={self.num_arcs}, "
            f"start={self.start})"
        )

    @property
    def num_states(self) -> int:
        return len(self._arcs)

    @property
    def num_arcs(self) -> int:
        return sum(len(arcs) for arcs in self._arcs)

    def states(self) -> range:
        return range(self.num_states)

    def add_state(self, final: float = 0.0) -> int:
        self._arcs.append([])
        self._final.append(float(final))
        return len(self._arcs) - 1

    def set_start(self, state: int) -> None:
        self._check_state(state)
        self.start = state

    def set_final(self, state: int, weight: float = 1.0) -> None:
        self._check_state(state)
        if weight < 0:
            raise ValueError(f"final weight must be non-negative, got {weight}")
        self._final[state] = float(weight)

    def final(self, state: int) -> float:
        return self._final[state]

    def is_final(self, state: int) -> bool:
        return self._final[state] > 0.0

    def add_arc(self, src: int, dst: int, label: int, weight: float = 1.0) -> Arc:
        self._check_state(src)
        self._check_state(dst)
        if label <= 0:
            raise ValueError(f"arc labels must be >= 1 (label 0 is reserved), got {label}")
        if weight < 0:
            raise ValueError(f"arc weight must be non-negative, got {weight}")
        arc = Arc(src, dst, int(label), float(weight))
        self._arcs[src].append(arc)
        return arc

    def arcs(self, state: Optional[int] = None) -> Iterator[Arc]:
        """Iterate over the outgoing arcs of ``state``, or over all arcs."""
        if state is not None:
            yield from self._arcs[state]
            return
        for arcs in self._arcs:
            yield from arcs

    def labels(self) -> set[int]:
        return {arc.label for arc in self.arcs()}

    def final_weights(self, dtype=torch.float64) -> Tensor:
        return torch.tensor(self._final, dtype=dtype)

    def copy(self) -> "Acceptor":
        new = Acceptor()
        new._arcs = [list(arcs) for arcs in self._arcs]
        new._final = list(self._final)
        new.start = self.start
        return new

    def _check_state(self, state: int) -> None:
        if not 0 <= state < self.num_states:
            raise ValueError(f"state {state} out of range [0, {self.num_states})")

    # -------------------------------------------------------------------------
    # Reachability
    # -------------------------------------------------------------------------

    def accessible(self, sources: Optional[Iterable[int]] = None) -> set[int]:
        """States reachable from ``sources`` (default: the start state)."""
        if sources is None:
            if self.start is None:
                return set()
            sources = [self.start]
        seen = set(sources)
        stack = list(seen)
        while stack:
            state = stack.pop()
            for arc in self._arcs[state]:
                if arc.weight > 0.0 and arc.dst not in seen:
                    seen.add(arc.dst)
                    stack.append(arc.dst)
        return seen

    def coaccessible(self) -> set[int]:
        """States from which a final state can be reached."""
        incoming: list[list[int]] = [[] for _ in self.states()]
        for arc in self.arcs():
            if arc.weight > 0.0:
                incoming[arc.dst].append(arc.src)
        seen = {s for s in self.states() if self.is_final(s)}
        stack = list(seen)
        while stack:
            state = stack.pop()
            for prev in incoming[state]:
                if prev not in seen:
                    seen.add(prev)
                    stack.append(prev)
        return seen

    def dead_ends(self) -> list[int]:
        """Accessible, non-final states with no outgoing arcs."""
        return sorted(
            s for s in self.accessible() if not self.is_final(s) and not self._arcs[s]
        )

    def connect(
        self, keep: Optional[set[int]] = None, sources: Optional[Iterable[int]] = None
    ) -> tuple["Acceptor", list[int]]:
        r"""connect(keep=None, sources=None) -> (Acceptor, list)

        Remove states that are not both accessible and coaccessible.

        Zero-weight arcs are dropped. The surviving states keep their relative
        order.

        Args:
            keep (set, optional): If given, only these states are candidates.
            sources (iterable, optional): States that count as accessible
                roots. Defaults to the start state.

        Returns:
            Acceptor: The trimmed acceptor (empty, with ``start=None``, if no
            successful path exists).
            list: ``old_to_new`` mapping, ``-1`` for removed states.
        """
        alive = self.accessible(sources) & self.coaccessible()
        if keep is not None:
            alive &= keep
        old_to_new = [-1] * self.num_states
        out = Acceptor()
        for state in self.states():
            if state in alive:
                old_to_new[state] = out.add_state(self._final[state])
        for arc in self.arcs():
            src, dst = old_to_new[arc.src], old_to_new[arc.dst]
            if src >= 0 and dst >= 0 and arc.weight > 0.0:
                out.add_arc(src, dst, arc.label, arc.weight)
        if self.start is not None and old_to_new[self.start] >= 0:
            out.start = old_to_new[self.start]
        return out, old_to_new

    # -------------------------------------------------------------------------
    # Tensors and distances
    # -------------------------------------------------------------------------

    def arc_tensors(self, dtype=torch.float64, device=None) -> ArcTensors:
        arcs = list(self.arcs())
        return ArcTensors(
            src=torch.tensor([a.src for a in arcs], dtype=torch.long, device=device),
            dst=torch.tensor([a.dst for a in arcs], dtype=torch.long, device=device),
            label=torch.tensor(
                [label_to_class(a.label) for a in arcs], dtype=torch.long, device=device
            ),
            weight=torch.tensor([a.weight for a in arcs], dtype=dtype, device=device),
            num_states=self.num_states,
        )

    def transition_matrix(self, dtype=torch.float64) -> Tensor:
        r"""transition_matrix() -> Tensor

        Dense :math:`(N, N)` matrix with ``A[i, j]`` the summed weight of all
        arcs from ``i`` to ``j`` (labels ignored).
        """
        n = self.num_states
        mat = torch.zeros(n * n, dtype=dtype)
        tensors = self.arc_tensors(dtype=dtype)
        if tensors.num_arcs:
            mat.index_add_(0, tensors.src * n + tensors.dst, tensors.weight)
        return mat.view(n, n)

    def shortest_distance(
        self, reverse: bool = False, delta: float = 1e-10, max_iters: int = 100000
    ) -> Tensor:
        r"""shortest_distance(reverse=False, delta=1e-10, max_iters=100000) -> Tensor

        Sum of path weights in the probability semiring.

        With ``reverse=False`` entry ``q`` is the summed weight of all paths
        from the start state to ``q``. With ``reverse=True`` it is the summed
        weight of all paths from ``q`` to a final state, including the final
        weight.

        Raises:
            ValueError: If the path sums diverge (a cycle with weight >= 1).
        """
        n = self.num_states
        if n == 0:
            return torch.zeros(0, dtype=torch.float64)
        if reverse:
            source = self.final_weights()
        else:
            source = torch.zeros(n, dtype=torch.float64)
            if self.start is not None:
                source[self.start] = 1.0

        if n <= DENSE_SOLVE_LIMIT:
            mat = self.transition_matrix()
            if not reverse:
                mat = mat.t()
            system = torch.eye(n, dtype=torch.float64) - mat
            try:
                dist = torch.linalg.solve(system, source)
            except torch.linalg.LinAlgError as err:
                raise ValueError(
                    "path weights diverge; the graph has a cycle of weight >= 1"
                ) from err
            if not torch.isfinite(dist).all() or (dist < -delta).any():
                raise ValueError("path weights diverge; the graph has a cycle of weight >= 1")
            return dist.clamp_min(0.0)

        tensors = self.arc_tensors()
        gather, scatter = (tensors.dst, tensors.src) if reverse else (tensors.src, tensors.dst)
        dist = source.clone()
        for _ in range(max_iters):
            step = torch.zeros(n, dtype=torch.float64)
            step.index_add_(0, scatter, tensors.weight * dist[gather])
            new = source + step
            change = (new - dist).abs().max().item()
            dist = new
            if change <= delta * max(1.0, dist.abs().max().item()):
                return dist
        raise ValueError(f"path weights did not converge within {max_iters} iterations")

    def total_weight(self) -> float:
        """Summed weight of all successful paths."""
        if self.start is None or self.num_states == 0:
            return 0.0
        return self.shortest_distance(reverse=True)[self.start].item()

    # -------------------------------------------------------------------------
    # Text exchange format
    # -------------------------------------------------------------------------

    def to_text(self) -> str:
        lines = []
        order = list(self.states())
        if self.start is not None:
            order.remove(self.start)
            order.insert(0, self.start)
        for state in order:
            for arc in self._arcs[state]:
                lines.append(f"{arc.src} {arc.dst} {arc.label} {arc.weight!r}")
        if self.start is not None and not self._arcs[self.start]:
            lines.insert(0, f"{self.start} {self._final[self.start]!r}")
            finals = [s for s in self.states() if self.is_final(s) and s != self.start]
        else:
            finals = [s for s in self.states() if self.is_final(s)]
        for state in finals:
            lines.append(f"{state} {self._final[state]!r}")
        return "\n".join(lines) + ("\n" if lines else "")

    @classmethod
    def from_text(cls, text: str) -> "Acceptor":
        r"""from_text(text) -> Acceptor

        Parse the OpenFst-style acceptor text format.

        A final-state line may omit its weight (defaults to ``1.0``); an arc
        line may omit its weight (defaults to ``1.0``).

        Raises:
            ValueError: On malformed lines or label ``0``.
        """
        graph = cls()
        start = None

        def ensure(state):
            while graph.num_states <= state:
                graph.add_state()

        for lineno, raw in enumerate(text.splitlines(), start=1):
            fields = raw.split()
            if not fields:
                continue
            try:
                if len(fields) in (1, 2):
                    state = int(fields[0])
                    ensure(state)
                    graph.set_final(state, float(fields[1]) if len(fields) == 2 else 1.0)
                elif len(fields) in (3, 4):
                    src, dst, label = int(fields[0]), int(fields[1]), int(fields[2])
                    ensure(max(src, dst))
                    graph.add_arc(src, dst, label, float(fields[3]) if len(fields) == 4 else 1.0)
                    state = src
                else:
                    raise ValueError(f"expected 1-4 fields, got {len(fields)}")
            except ValueError as err:
                raise ValueError(f"line {lineno}: {err}") from err
            if start is None:
                start = state
        if start is not None:
            graph.set_start(start)
        return graph
