r"""Mass-preserving operations on weighted acceptors.

- :func:`push`: reweight arcs toward the initial or final side.
- :func:`minimize`: merge states with identical weighted continuations
  (forward bisimulation), no determinization required.
- :func:`reverse`: reverse arc direction, swapping initial and final weights.
- :func:`compose`: label-synchronized product, weights multiply.
- :func:`determinize_unweighted`: subset construction for unweighted
  constraint graphs, so every label sequence is accepted once.

All operations work in the probability semiring and keep the summed weight of
the accepted paths unchanged (up to the quantization step of :func:`minimize`).
"""

from collections import defaultdict

from .acceptor import Acceptor

__all__ = ["push", "minimize", "reverse", "compose", "determinize_unweighted"]


def _reweight(graph: Acceptor, potential) -> Acceptor:
    #   prod(w * V[dst] / V[src]) * f / V[end] == prod(w) * f / V[first]
    # Path weights are unchanged when V[first] == 1 or the caller scales the
    # initial weight of the first state by V[first].
    out = Acceptor()
    for state in graph.states():
        v = potential[state]
        out.add_state(graph.final(state) / v if v > 0 else 0.0)
    for arc in graph.arcs():
        v_src, v_dst = potential[arc.src], potential[arc.dst]
        if v_src > 0 and v_dst > 0:
            out.add_arc(arc.src, arc.dst, arc.label, arc.weight * v_dst / v_src)
    out.start = graph.start
    return out


def push(graph: Acceptor, to_initial: bool = True, delta: float = 1e-10) -> Acceptor:
    r"""push(graph, to_initial=True, delta=1e-10) -> Acceptor

    Weight pushing in the probability semiring.

    With ``to_initial=True`` every state except the start becomes stochastic
    (its outgoing arc weights plus final weight sum to one, up to the constant
    total carried on the final weights). With ``to_initial=False`` weight is
    moved toward the final weights instead. States that cannot reach a final
    state (resp. cannot be reached) lose their arcs.

    Args:
        graph (Acceptor): Graph to push. Not modified.
        to_initial (bool, optional): Direction. Default: ``True``
        delta (float, optional): Convergence tolerance for the path sums on
            large graphs. Default: ``1e-10``

    Returns:
        Acceptor: Reweighted graph with the same states.

    Raises:
        ValueError: If the graph has no successful path or its path sums diverge.
    """
    if graph.start is None:
        return graph.copy()
    if to_initial:
        dist = graph.shortest_distance(reverse=True, delta=delta)
        anchor = dist[graph.start].item()
        if anchor <= 0:
            raise ValueError("cannot push a graph with no successful path")
        potential = (dist / anchor).tolist()
    else:
        dist = graph.shortest_distance(reverse=False, delta=delta)
        anchor = dist[graph.start].item()
        potential = [anchor / d if d > 0 else 0.0 for d in dist.tolist()]
    return _reweight(graph, potential)


def _partition(graph: Acceptor, delta: float) -> list:
    """Block id of every state under weighted forward bisimulation."""

    def quantize(w):
        return round(w / delta)

    block = [quantize(graph.final(s)) for s in graph.states()]
    num_blocks = len(set(block))
    while True:
        signatures = []
        for state in graph.states():
            summed = defaultdict(float)
            for arc in graph.arcs(state):
                summed[(arc.label, block[arc.dst])] += arc.weight
            signatures.append(
                (block[state], tuple(sorted((k, quantize(w)) for k, w in summed.items())))
            )
        ids = {}
        block = [ids.setdefault(sig, len(ids)) for sig in signatures]
        if len(ids) == num_blocks:
            return block
        num_blocks = len(ids)


def _merge(graph: Acceptor, block: list) -> tuple:
    # Blocks are renumbered in order of first appearance
    order = {}
    representative = []
    for state in graph.states():
        if block[state] not in order:
            order[block[state]] = len(order)
            representative.append(state)

    out = Acceptor()
    for rep in representative:
        out.add_state(graph.final(rep))
    for new_id, rep in enumerate(representative):
        summed = defaultdict(float)
        for arc in graph.arcs(rep):
            summed[(arc.label, order[block[arc.dst]])] += arc.weight
        for (label, dst), weight in sorted(summed.items(), key=lambda kv: (kv[0][1], kv[0][0])):
            out.add_arc(new_id, dst, label, weight)
    return out, [order[b] for b in block]


def minimize(graph: Acceptor, delta: float = 1e-6) -> Acceptor:
    r"""minimize(graph, delta=1e-6) -> Acceptor

    Merge states whose weighted continuations are identical.

    Works on non-deterministic acceptors by partition refinement: two states
    stay in one block while they have the same final weight and, for every
    ``(label, destination block)``, the same summed arc weight. Weights are
    compared after quantization to multiples of ``delta``. The graph is
    trimmed first.

    Args:
        graph (Acceptor): Graph to minimize. Not modified.
        delta (float, optional): Quantization step. Default: ``1e-6``

    Returns:
        Acceptor: Minimized graph, states numbered by first appearance.
    """
    trimmed, _ = graph.connect()
    if trimmed.start is None:
        return trimmed
    out, new_state = _merge(trimmed, _partition(trimmed, delta))
    out.start = new_state[trimmed.start]
    return out


def reverse(graph: Acceptor) -> Acceptor:
    r"""reverse(graph) -> Acceptor

    Reverse the acceptor.

    The reversed graph accepts every label sequence of ``graph`` backwards with
    the same weight, and the old start state becomes the only final state, with
    weight one. A lone final state without outgoing arcs becomes the new start
    directly. Otherwise final weights move onto the arcs leaving a new start
    state, so no epsilon arcs are introduced.

    Returns:
        Acceptor: Reversed, trimmed graph.
    """
    if graph.start is None:
        return graph.copy()
    initial = [0.0] * graph.num_states
    initial[graph.start] = 1.0
    return _attach_start(*_reverse_weighted(graph, initial)).connect()[0]


# The helpers below carry the start as a vector of per-state initial weights,
# which reversal swaps with the final weights without adding states.


def _push_weighted(graph: Acceptor, initial: list) -> tuple:
    # Initial weights absorb the potentials, leaving every state stochastic
    dist = graph.shortest_distance(reverse=True).tolist()
    if sum(i * d for i, d in zip(initial, dist)) <= 0:
        raise ValueError("cannot push a graph with no successful path")
    return _reweight(graph, dist), [i * d for i, d in zip(initial, dist)]


def _minimize_weighted(graph: Acceptor, initial: list, delta: float) -> tuple:
    sources = [s for s, w in enumerate(initial) if w > 0.0]
    trimmed, old_to_new = graph.connect(sources=sources)
    kept = [0.0] * trimmed.num_states
    for old, new in enumerate(old_to_new):
        if new >= 0:
            kept[new] = initial[old]
    out, new_state = _merge(trimmed, _partition(trimmed, delta))
    # Merged states share every continuation, so their initial weights add up
    merged = [0.0] * out.num_states
    for state, weight in enumerate(kept):
        merged[new_state[state]] += weight
    return out, merged


def _reverse_weighted(graph: Acceptor, initial: list) -> tuple:
    out = Acceptor()
    for state in graph.states():
        out.add_state(initial[state])
    for arc in graph.arcs():
        out.add_arc(arc.dst, arc.src, arc.label, arc.weight)
    return out, [graph.final(s) for s in graph.states()]


def _attach_start(graph: Acceptor, initial: list) -> Acceptor:
    starts = [s for s, w in enumerate(initial) if w > 0.0]
    if len(starts) == 1 and all(arc.dst != starts[0] for arc in graph.arcs()):
        # A lone initial state without incoming arcs takes its weight directly
        (start,) = starts
        scale = initial[start]
        out = Acceptor()
        for state in graph.states():
            weight = graph.final(state)
            out.add_state(weight * scale if state == start else weight)
        for arc in graph.arcs():
            weight = arc.weight * scale if arc.src == start else arc.weight
            out.add_arc(arc.src, arc.dst, arc.label, weight)
        out.set_start(start)
        return out
    out = graph.copy()
    start = out.add_state(sum(initial[s] * graph.final(s) for s in starts))
    for s in starts:
        for arc in graph.arcs(s):
            out.add_arc(start, arc.dst, arc.label, initial[s] * arc.weight)
    out.set_start(start)
    return out


def compose(a, b, connect: bool = True):
    r"""compose(a, b, connect=True) -> (Acceptor, list)

    Label-synchronized product of two acceptors.

    Result states are pairs ``(qa, qb)``; an arc exists where both graphs have
    an arc with the same label, with the product weight. Final weights
    multiply. ``b`` may be any object exposing ``start``, ``arcs(state)`` and
    ``final(state)``, e.g. a :class:`~torch_lfmmi.denominator.NormalizationGraph`.

    Args:
        a (Acceptor): Left graph.
        b: Right graph.
        connect (bool, optional): Trim the result. Default: ``True``

    Returns:
        Acceptor: The product graph (``start=None`` if empty).
        list: The ``(qa, qb)`` pair of every result state.
    """
    out = Acceptor()
    pairs = []
    if a.start is None or b.start is None:
        return out, pairs

    ids = {}

    def state_of(pair):
        if pair not in ids:
            ids[pair] = out.add_state(a.final(pair[0]) * b.final(pair[1]))
            pairs.append(pair)
            queue.append(pair)
        return ids[pair]

    b_arcs_by_label = {}

    def arcs_by_label(qb):
        if qb not in b_arcs_by_label:
            index = defaultdict(list)
            for arc in b.arcs(qb):
                index[arc.label].append(arc)
            b_arcs_by_label[qb] = index
        return b_arcs_by_label[qb]

    queue = []
    out.set_start(state_of((a.start, b.start)))
    head = 0
    while head < len(queue):
        qa, qb = queue[head]
        head += 1
        src = ids[(qa, qb)]
        index = arcs_by_label(qb)
        for arc_a in a.arcs(qa):
            for arc_b in index.get(arc_a.label, ()):
                weight = arc_a.weight * arc_b.weight
                if weight > 0.0:
                    dst = state_of((arc_a.dst, arc_b.dst))
                    out.add_arc(src, dst, arc_a.label, weight)

    if not connect:
        return out, pairs
    trimmed, old_to_new = out.connect()
    kept = [pair for old, pair in enumerate(pairs) if old_to_new[old] >= 0]
    return trimmed, kept


def determinize_unweighted(graph: Acceptor, start_states=None):
    r"""determinize_unweighted(graph, start_states=None) -> (Acceptor, list)

    Subset construction ignoring weights.

    Every result arc has weight one and every final result state has final
    weight one, so each accepted label sequence carries weight one exactly once.

    Args:
        graph (Acceptor): Constraint graph.
        start_states (iterable, optional): Initial subset. Defaults to
            ``{graph.start}``.

    Returns:
        Acceptor: Deterministic acceptor.
        list: The frozenset of ``graph`` states behind every result state.
    """
    if start_states is None:
        if graph.start is None:
            return Acceptor(), []
        start_states = [graph.start]
    start = frozenset(start_states)
    out = Acceptor()
    subsets = []
    ids = {}

    def state_of(subset):
        if subset not in ids:
            final = 1.0 if any(graph.is_final(s) for s in subset) else 0.0
            ids[subset] = out.add_state(final)
            subsets.append(subset)
        return ids[subset]

    out.set_start(state_of(start))
    head = 0
    while head < len(subsets):
        subset = subsets[head]
        src = ids[subset]
        head += 1
        moves = defaultdict(set)
        for state in sorted(subset):
            for arc in graph.arcs(state):
                if arc.weight > 0.0:
                    moves[arc.label].add(arc.dst)
        for label in sorted(moves):
            out.add_arc(src, state_of(frozenset(moves[label])), label, 1.0)
    return out, subsets
