r"""Container for a pruned, unsmoothed phone n-gram model.

The model is estimated elsewhere and handed over as explicit n-gram
probabilities. A state is a phone history of at most ``order - 1`` phones,
starting with :data:`BOS` at the beginning of an utterance. There are no
backoff arcs: after a phone the model moves to the longest suffix of the
extended history that is still a state, which is how pruned higher-order
states fall back to lower-order ones.
"""

import logging
from collections.abc import Mapping

from .acceptor import Acceptor
from .errors import DenominatorGraphError

logger = logging.getLogger(__name__)

__all__ = ["BOS", "PhoneLanguageModel"]

BOS = 0

_PROB_TOLERANCE = 1e-6


class PhoneLanguageModel:
    r"""Phone n-gram model with explicit histories.

    Args:
        probs (Mapping): ``{history: {phone: prob}}``. Histories are tuples of
            phones, optionally starting with :data:`BOS`.
        final_probs (Mapping): ``{history: prob}`` probability of ending the
            utterance in that history. Missing histories get ``0``.
        order (int, optional): N-gram order. Default: ``4``

    Raises:
        DenominatorGraphError: If probabilities are out of range, a state's
            outgoing mass exceeds one, a successor history cannot be
            resolved, or a reachable state is a dead end (no arcs and no
            final probability, or no way to finish).

    Examples::

        >>> lm = PhoneLanguageModel(
        ...     probs={(BOS,): {1: 1.0}, (BOS, 1): {2: 1.0}, (1, 2): {2: 0.5}, (2,): {2: 0.5}},
        ...     final_probs={(1, 2): 0.5, (2,): 0.5},
        ...     order=3,
        ... )
    """

    def __init__(self, probs: Mapping, final_probs: Mapping, order: int = 4):
        if order < 2:
            raise DenominatorGraphError(f"n-gram order must be >= 2, got {order}")
        self.order = order
        self.start = (BOS,)

        histories = set(probs) | set(final_probs)
        histories.add(self.start)
        for history in histories:
            self._check_history(history)
        self.histories = [self.start] + sorted(h for h in histories if h != self.start)
        self.final_probs = {h: float(final_probs.get(h, 0.0)) for h in self.histories}

        self._arcs = {}
        for history in self.histories:
            arcs = []
            for phone, prob in sorted(probs.get(history, {}).items()):
                if phone < 1:
                    raise DenominatorGraphError(
                        f"phones are numbered from 1, got {phone} after {history}"
                    )
                arcs.append((phone, float(prob), self._successor(history, phone)))
            self._arcs[history] = arcs
        self._validate()

    def __repr__(self):
        return (
            f"PhoneLanguageModel(order={self.order}, num_states={self.num_states}, "
            f"num_phones={len(self.phones)})"
        )

    @property
    def num_states(self) -> int:
        return len(self.histories)

    @property
    def phones(self) -> list[int]:
        return sorted({phone for arcs in self._arcs.values() for phone, _, _ in arcs})

    def arcs(self, history):
        """``(phone, prob, next_history)`` triples leaving ``history``."""
        return self._arcs[history]

    def _check_history(self, history):
        if not isinstance(history, tuple):
            raise DenominatorGraphError(f"histories must be tuples, got {history!r}")
        if len(history) > self.order - 1:
            raise DenominatorGraphError(
                f"history {history} longer than order-1={self.order - 1}"
            )
        if BOS in history[1:]:
            raise DenominatorGraphError(f"BOS may only start a history, got {history}")

    def _successor(self, history, phone):
        candidate = (history + (phone,))[-(self.order - 1):]
        while candidate not in self.final_probs:
            if not candidate:
                raise DenominatorGraphError(
                    f"no state to continue {history} + phone {phone}: "
                    "the model has no matching lower-order history"
                )
            candidate = candidate[1:]
        return candidate

    def _validate(self):
        for history in self.histories:
            final = self.final_probs[history]
            if not 0.0 <= final <= 1.0:
                raise DenominatorGraphError(f"final prob {final} out of [0, 1] at {history}")
            total = final
            for phone, prob, _ in self._arcs[history]:
                if not 0.0 <= prob <= 1.0:
                    raise DenominatorGraphError(
                        f"prob {prob} of phone {phone} out of [0, 1] at {history}"
                    )
                total += prob
            if total > 1.0 + _PROB_TOLERANCE:
                raise DenominatorGraphError(
                    f"outgoing probability mass {total:.6f} exceeds 1 at {history}"
                )

        graph = self.to_acceptor()
        dead = graph.dead_ends()
        if dead:
            names = [self.histories[s] for s in dead[:5]]
            raise DenominatorGraphError(
                f"{len(dead)} reachable phone LM state(s) have no outgoing arcs and "
                f"no final probability, e.g. {names}"
            )
        trapped = sorted(graph.accessible() - graph.coaccessible())
        if trapped:
            names = [self.histories[s] for s in trapped[:5]]
            raise DenominatorGraphError(
                f"{len(trapped)} reachable phone LM state(s) can never reach the end "
                f"of an utterance, e.g. {names}"
            )
        logger.debug("phone LM: %d states, %d phones", self.num_states, len(self.phones))

    def to_acceptor(self) -> Acceptor:
        """Phone-labeled acceptor; state ``i`` is ``histories[i]``, state 0 is the start."""
        index = {h: i for i, h in enumerate(self.histories)}
        graph = Acceptor()
        for history in self.histories:
            graph.add_state(self.final_probs[history])
        graph.set_start(index[self.start])
        for history in self.histories:
            for phone, prob, nxt in self._arcs[history]:
                if prob > 0.0:
                    graph.add_arc(index[history], index[nxt], phone, prob)
        return graph
