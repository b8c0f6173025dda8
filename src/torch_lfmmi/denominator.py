r"""Denominator graph: every class sequence the phone language model allows.

Building the graph takes four steps:

1. :func:`expand_phone_lm` turns the phone n-gram model into a class-labeled
   acceptor using the context dependency and the two-state phone topology.
2. :func:`minimize_denominator` shrinks it with three rounds of
   push / minimize / reverse plus a fourth round that restores arc direction.
3. :func:`compute_initial_probs` runs the HMM for a fixed number of steps and
   averages the visited distributions. These probabilities replace the
   utterance-start weights when training on chunks cut from the middle of an
   utterance; every final probability is set to one for the same reason.
4. :func:`select_anchor_state` fixes the state whose alpha drives the per-frame
   rescaling of the probability-domain forward-backward.

The result is a read-only :class:`DenominatorGraph`, shared by all minibatches
until the model topology changes. :class:`NormalizationGraph` presents it with
its initial probabilities as the weights of a synthetic start state, which is
what numerator chunks are composed with.
"""

import logging
from typing import Optional, Union

import torch
from torch import Tensor

from .acceptor import Acceptor, Arc, ArcTensors, class_to_label
from .errors import DenominatorGraphError
from .ops import _attach_start, _minimize_weighted, _push_weighted, _reverse_weighted
from .options import ChainTrainingOptions
from .phone_lm import PhoneLanguageModel
from .topology import NO_CONTEXT, ContextDependency

logger = logging.getLogger(__name__)

__all__ = [
    "DenominatorGraph",
    "NormalizationGraph",
    "expand_phone_lm",
    "minimize_denominator",
    "compute_initial_probs",
    "select_anchor_state",
]


def expand_phone_lm(
    phone_lm: PhoneLanguageModel,
    context: ContextDependency,
    self_loop_prob: float = 0.5,
) -> Acceptor:
    r"""expand_phone_lm(phone_lm, context, self_loop_prob=0.5) -> Acceptor

    Expand a phone n-gram model into a class-labeled acceptor.

    Apart from the start state, each state means "inside phone ``p``, entered
    after left context ``q``, with the phone LM in state ``s``". From there the
    graph either stays in ``p`` on its self-loop class (weight
    ``self_loop_prob``) or enters the next phone ``p2`` on its entry class with
    weight ``(1 - self_loop_prob) * P(p2 | s)``. Leaving the last phone carries
    ``(1 - self_loop_prob) * P(end | s)`` as final weight. Every arc consumes
    exactly one frame, so no epsilon arcs are needed.

    Args:
        phone_lm (PhoneLanguageModel): Validated phone n-gram model.
        context (ContextDependency): Phone-to-class mapping.
        self_loop_prob (float, optional): Self-loop weight. Default: ``0.5``

    Returns:
        Acceptor: Expanded graph, state 0 is the start state.

    Raises:
        DenominatorGraphError: If ``context`` has no classes for a phone the
            model uses, or the expansion has reachable dead ends.
    """
    missing = [p for p in phone_lm.phones if not context.has_phone(p)]
    if missing:
        raise DenominatorGraphError(f"context dependency has no classes for phones {missing}")

    graph = Acceptor()
    ids = {}
    queue = []

    def state_of(key):
        if key not in ids:
            lm_state, _, _ = key
            leave = (1.0 - self_loop_prob) * phone_lm.final_probs[lm_state]
            ids[key] = graph.add_state(leave)
            queue.append(key)
        return ids[key]

    start = graph.add_state()
    graph.set_start(start)
    for phone, prob, nxt in phone_lm.arcs(phone_lm.start):
        if prob > 0.0:
            entry, _ = context.classes(NO_CONTEXT, phone)
            graph.add_arc(start, state_of((nxt, NO_CONTEXT, phone)), class_to_label(entry), prob)

    head = 0
    while head < len(queue):
        key = queue[head]
        head += 1
        lm_state, left, phone = key
        src = ids[key]
        _, loop = context.classes(left, phone)
        graph.add_arc(src, src, class_to_label(loop), self_loop_prob)
        for next_phone, prob, nxt in phone_lm.arcs(lm_state):
            if prob > 0.0:
                entry, _ = context.classes(phone, next_phone)
                dst = state_of((nxt, phone, next_phone))
                graph.add_arc(src, dst, class_to_label(entry), (1.0 - self_loop_prob) * prob)

    _check_no_dead_ends(graph)
    logger.info(
        "expanded phone LM (%d states) into %d states, %d arcs",
        phone_lm.num_states,
        graph.num_states,
        graph.num_arcs,
    )
    return graph


def _check_no_dead_ends(graph: Acceptor) -> None:
    dead = graph.dead_ends()
    if dead:
        raise DenominatorGraphError(
            f"denominator graph has {len(dead)} reachable dead-end state(s), e.g. {dead[:5]}"
        )
    trapped = graph.accessible() - graph.coaccessible()
    if trapped:
        raise DenominatorGraphError(
            f"denominator graph has {len(trapped)} reachable state(s) that cannot "
            f"reach a final state, e.g. {sorted(trapped)[:5]}"
        )


def minimize_denominator(graph: Acceptor, delta: float = 1e-6, rounds: int = 3) -> Acceptor:
    r"""minimize_denominator(graph, delta=1e-6, rounds=3) -> Acceptor

    Shrink the graph by repeated push / minimize / reverse.

    Runs ``rounds`` rounds of {push, minimize, reverse} and one more round to
    restore the original arc direction (``rounds`` must be odd for that, which
    the default is). On unsmoothed, highly connected graphs this works far
    better than determinization-based minimization.

    Between rounds the start is kept as a vector of initial weights, so
    reversal only swaps it with the final weights and never adds a state or
    an arc. A single start state is attached after the last round, reusing
    the old start state whenever it has no incoming arcs.

    Args:
        graph (Acceptor): Expanded graph.
        delta (float, optional): Quantization step for state merging.
            Default: ``1e-6``
        rounds (int, optional): Number of reversing rounds before the final one.
            Default: ``3``

    Raises:
        ValueError: If ``rounds`` is even or the graph has no successful path.
        DenominatorGraphError: If the graph has no start state.
    """
    if rounds % 2 == 0:
        raise ValueError(f"rounds must be odd to restore arc direction, got {rounds}")
    if graph.start is None:
        raise DenominatorGraphError("denominator graph has no start state")
    initial = [0.0] * graph.num_states
    initial[graph.start] = 1.0
    for i in range(rounds + 1):
        graph, initial = _push_weighted(graph, initial)
        graph, initial = _minimize_weighted(graph, initial, delta)
        graph, initial = _reverse_weighted(graph, initial)
        logger.debug(
            "minimization round %d: %d states, %d arcs", i + 1, graph.num_states, graph.num_arcs
        )
    return _attach_start(graph, initial)


def compute_initial_probs(graph: Acceptor, num_iters: int = 100) -> Tensor:
    r"""compute_initial_probs(graph, num_iters=100) -> Tensor

    Approximate the HMM's stationary state distribution.

    Starting from all mass on the start state, multiply by the transition
    matrix ``num_iters`` times, renormalizing to sum one after every step, and
    average the ``num_iters`` distributions. Final weights are ignored.

    Returns:
        Tensor: Float64 tensor of shape :math:`(N,)` summing to one.

    Raises:
        DenominatorGraphError: If all probability mass leaves the graph.
    """
    tensors = graph.arc_tensors(dtype=torch.float64)
    cur = torch.zeros(graph.num_states, dtype=torch.float64)
    cur[graph.start] = 1.0
    avg = torch.zeros_like(cur)
    for step in range(num_iters):
        nxt = torch.zeros_like(cur)
        nxt.index_add_(0, tensors.dst, cur[tensors.src] * tensors.weight)
        total = nxt.sum()
        if total <= 0:
            raise DenominatorGraphError(
                f"all probability mass left the denominator graph after {step + 1} steps"
            )
        cur = nxt / total
        avg += cur
    return avg / num_iters


def select_anchor_state(
    graph: Acceptor, initial_probs: Tensor, policy: Union[str, int] = "max_initial"
) -> int:
    r"""select_anchor_state(graph, initial_probs, policy='max_initial') -> int

    Pick the state whose alpha rescales every frame.

    A good anchor has high stationary probability and many predecessors, so
    its alpha stays close to the typical alpha magnitude on every frame.

    Args:
        graph (Acceptor): Denominator acceptor.
        initial_probs (Tensor): Output of :func:`compute_initial_probs`.
        policy (str or int, optional): ``"max_initial"``, ``"max_reach"``, or an
            explicit state id. Default: ``"max_initial"``

    Raises:
        ValueError: If an explicit state is out of range or has zero initial
            probability, or the policy is unknown.
    """
    if isinstance(policy, int) and not isinstance(policy, bool):
        if not 0 <= policy < graph.num_states:
            raise ValueError(f"anchor state {policy} out of range [0, {graph.num_states})")
        if initial_probs[policy] <= 0:
            raise ValueError(f"anchor state {policy} has zero initial probability")
        return policy
    if policy == "max_initial":
        return int(torch.argmax(initial_probs).item())
    if policy == "max_reach":
        preds = [set() for _ in graph.states()]
        for arc in graph.arcs():
            preds[arc.dst].add(arc.src)
        candidates = [s for s in graph.states() if initial_probs[s] > 0]
        return max(candidates, key=lambda s: (len(preds[s]), initial_probs[s].item()))
    raise ValueError(f"Unknown anchor policy: {policy}. Use 'max_initial', 'max_reach', or int.")


class NormalizationGraph:
    r"""Denominator graph with its chunk-boundary probabilities attached.

    Acceptors have a single start state and no per-state initial weights, so
    the initial probabilities are presented as weights from a synthetic start
    state (numbered ``base.num_states``). The epsilon arcs that would carry
    them are folded into the first real arc: the synthetic start has an arc
    ``(label, initial[s] * w, d)`` for every base arc ``s --label/w--> d``.
    Final weights come from ``final_probs`` instead of the base graph.

    The base graph is never modified. The object exposes ``start``,
    ``arcs(state)`` and ``final(state)``, which is all
    :func:`~torch_lfmmi.ops.compose` needs.

    Args:
        base (Acceptor): Denominator acceptor.
        initial_probs (Tensor): Shape :math:`(N,)`.
        final_probs (Tensor): Shape :math:`(N,)`.
    """

    def __init__(self, base: Acceptor, initial_probs: Tensor, final_probs: Tensor):
        if initial_probs.shape != (base.num_states,) or final_probs.shape != (base.num_states,):
            raise ValueError(
                f"initial/final probs must have shape ({base.num_states},), got "
                f"{tuple(initial_probs.shape)} and {tuple(final_probs.shape)}"
            )
        self.base = base
        self.initial_probs = initial_probs
        self.final_probs = final_probs
        self.start = base.num_states
        self._final = final_probs.tolist()
        self._start_arcs = self._fold_initial_arcs()

    @property
    def num_states(self) -> int:
        return self.base.num_states + 1

    def _fold_initial_arcs(self) -> list[Arc]:
        summed = {}
        initial = self.initial_probs.tolist()
        for arc in self.base.arcs():
            if initial[arc.src] > 0.0:
                key = (arc.label, arc.dst)
                summed[key] = summed.get(key, 0.0) + initial[arc.src] * arc.weight
        return [
            Arc(self.start, dst, label, weight)
            for (label, dst), weight in sorted(summed.items(), key=lambda kv: (kv[0][1], kv[0][0]))
        ]

    def arcs(self, state: int):
        if state == self.start:
            return iter(self._start_arcs)
        return self.base.arcs(state)

    def final(self, state: int) -> float:
        if state == self.start:
            return 0.0
        return self._final[state]


class DenominatorGraph:
    r"""Denominator acceptor plus its chunk-boundary probabilities and anchor.

    Instances are read-only after construction and may be shared across
    minibatches and threads.

    Args:
        acceptor (Acceptor): Class-labeled acceptor.
        initial_probs (Tensor): Per-state initial probabilities, shape :math:`(N,)`.
        anchor_state (int): State used for per-frame rescaling.
        num_classes (int, optional): Number of network output classes. Defaults
            to the largest ClassId on any arc plus one.

    Attributes:
        final_probs (Tensor): All ones, shape :math:`(N,)`.

    Examples::

        >>> den = DenominatorGraph.build(phone_lm, ContextDependency.monophone(3))
        >>> den.num_states, den.anchor_state
    """

    def __init__(
        self,
        acceptor: Acceptor,
        initial_probs: Tensor,
        anchor_state: int,
        num_classes: Optional[int] = None,
    ):
        _check_no_dead_ends(acceptor)
        if initial_probs.shape != (acceptor.num_states,):
            raise ValueError(
                f"initial_probs must have shape ({acceptor.num_states},), "
                f"got {tuple(initial_probs.shape)}"
            )
        if (initial_probs < 0).any() or initial_probs.sum() <= 0:
            raise ValueError("initial_probs must be non-negative with positive sum")
        if not 0 <= anchor_state < acceptor.num_states:
            raise ValueError(f"anchor state {anchor_state} out of range [0, {acceptor.num_states})")
        max_class = max((a.label - 1 for a in acceptor.arcs()), default=-1)
        if num_classes is None:
            num_classes = max_class + 1
        elif num_classes <= max_class:
            raise ValueError(f"num_classes={num_classes} too small for ClassId {max_class}")

        self.acceptor = acceptor
        self.initial_probs = initial_probs.to(torch.float64)
        self.final_probs = torch.ones(acceptor.num_states, dtype=torch.float64)
        self.anchor_state = anchor_state
        self.num_classes = num_classes
        self._tensor_cache = {}
        self._normalization_graph = None

    def __repr__(self):
        return (
            f"DenominatorGraph(num_states={self.num_states}, num_arcs={self.num_arcs}, "
            f"num_classes={self.num_classes}, anchor_state={self.anchor_state})"
        )

    @classmethod
    def build(
        cls,
        phone_lm: PhoneLanguageModel,
        context: ContextDependency,
        options: Optional[ChainTrainingOptions] = None,
    ) -> "DenominatorGraph":
        r"""build(phone_lm, context, options=None) -> DenominatorGraph

        Expand, minimize, and derive chunk-boundary probabilities.

        Raises:
            DenominatorGraphError: If the model or the expanded graph is malformed.
        """
        options = options or ChainTrainingOptions()
        graph = expand_phone_lm(phone_lm, context, options.self_loop_prob)
        graph = minimize_denominator(graph, delta=options.push_delta)
        return cls.from_acceptor(graph, options, num_classes=context.num_classes)

    @classmethod
    def from_acceptor(
        cls,
        acceptor: Acceptor,
        options: Optional[ChainTrainingOptions] = None,
        num_classes: Optional[int] = None,
        initial_probs: Optional[Tensor] = None,
    ) -> "DenominatorGraph":
        r"""from_acceptor(acceptor, options=None, num_classes=None, initial_probs=None) -> DenominatorGraph

        Wrap an already built acceptor.

        ``initial_probs`` defaults to :func:`compute_initial_probs` with
        ``options.initial_prob_iters``; the anchor follows ``options.anchor_policy``.
        """
        options = options or ChainTrainingOptions()
        if initial_probs is None:
            initial_probs = compute_initial_probs(acceptor, options.initial_prob_iters)
        else:
            initial_probs = torch.as_tensor(initial_probs, dtype=torch.float64)
        anchor = select_anchor_state(acceptor, initial_probs, options.anchor_policy)
        logger.info(
            "denominator graph: %d states, %d arcs, anchor state %d (initial prob %.4g)",
            acceptor.num_states,
            acceptor.num_arcs,
            anchor,
            initial_probs[anchor].item(),
        )
        return cls(acceptor, initial_probs, anchor, num_classes=num_classes)

    @property
    def num_states(self) -> int:
        return self.acceptor.num_states

    @property
    def num_arcs(self) -> int:
        return self.acceptor.num_arcs

    def with_anchor(self, anchor_state: int) -> "DenominatorGraph":
        """Same graph with a different anchor state."""
        select_anchor_state(self.acceptor, self.initial_probs, anchor_state)
        return DenominatorGraph(
            self.acceptor, self.initial_probs, anchor_state, num_classes=self.num_classes
        )

    def arc_tensors(self, dtype=torch.float32, device=None) -> ArcTensors:
        key = (dtype, str(device))
        if key not in self._tensor_cache:
            self._tensor_cache[key] = self.acceptor.arc_tensors(dtype=dtype, device=device)
        return self._tensor_cache[key]

    def normalization_graph(self) -> NormalizationGraph:
        if self._normalization_graph is None:
            self._normalization_graph = NormalizationGraph(
                self.acceptor, self.initial_probs, self.final_probs
            )
        return self._normalization_graph
