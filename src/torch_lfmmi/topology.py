r"""Phone-to-class mapping for the two-state chain topology.

Every phone instance is realized as an entry class, emitted exactly once on the
first frame of the phone, followed by zero or more frames of a self-loop class::

    --entry(q, p)--> [in p] --loop(q, p)--> [in p]   (self-loop)

The classes depend on the phone ``p`` and its left context ``q`` (the previous
phone, or :data:`NO_CONTEXT` at an utterance boundary). Phones are numbered
from 1.
"""

from typing import Optional

__all__ = ["NO_CONTEXT", "ContextDependency"]

NO_CONTEXT = 0


class ContextDependency:
    r"""Lookup table from ``(left context, phone)`` to ``(entry, loop)`` ClassIds.

    Entries keyed by ``(None, phone)`` apply to every left context that has no
    entry of its own.

    Args:
        table (dict): ``{(left, phone): (entry_class, loop_class)}``.
        num_classes (int, optional): Number of network output classes. Defaults
            to one more than the largest ClassId in ``table``.

    Raises:
        ValueError: On negative ClassIds, phones below 1, or a ``num_classes``
            too small for the table.

    Examples::

        >>> ctx = ContextDependency.monophone(num_phones=3)
        >>> ctx.classes(NO_CONTEXT, 2)
        (2, 3)
    """

    def __init__(self, table: dict, num_classes: Optional[int] = None):
        if not table:
            raise ValueError("context dependency table is empty")
        max_class = -1
        for (left, phone), (entry, loop) in table.items():
            if phone < 1:
                raise ValueError(f"phones are numbered from 1, got {phone}")
            if left is not None and left < 0:
                raise ValueError(f"left context must be >= 0 or None, got {left}")
            if entry < 0 or loop < 0:
                raise ValueError(f"ClassIds must be non-negative, got ({entry}, {loop})")
            max_class = max(max_class, entry, loop)
        if num_classes is None:
            num_classes = max_class + 1
        elif num_classes <= max_class:
            raise ValueError(f"num_classes={num_classes} too small for ClassId {max_class}")
        self._table = dict(table)
        self.num_classes = num_classes
        self.phones = sorted({phone for (_, phone) in table})

    def __repr__(self):
        return f"ContextDependency(num_phones={len(self.phones)}, num_classes={self.num_classes})"

    @classmethod
    def monophone(cls, num_phones: int) -> "ContextDependency":
        """Context-independent mapping: phone ``p`` uses classes ``2p-2`` and ``2p-1``."""
        table = {(None, p): (2 * (p - 1), 2 * (p - 1) + 1) for p in range(1, num_phones + 1)}
        return cls(table)

    @classmethod
    def left_biphone(cls, num_phones: int) -> "ContextDependency":
        """One entry/loop class pair for every ``(left, phone)`` combination."""
        table = {}
        for left in range(0, num_phones + 1):
            for phone in range(1, num_phones + 1):
                base = 2 * len(table)
                table[(left, phone)] = (base, base + 1)
        return cls(table)

    def has_phone(self, phone: int) -> bool:
        return phone in self.phones

    def classes(self, left: int, phone: int) -> tuple[int, int]:
        r"""classes(left, phone) -> (int, int)

        Entry and self-loop ClassIds of ``phone`` after ``left``.

        Raises:
            KeyError: If the table covers neither ``(left, phone)`` nor ``(None, phone)``.
        """
        try:
            return self._table[(left, phone)]
        except KeyError:
            pass
        try:
            return self._table[(None, phone)]
        except KeyError:
            raise KeyError(f"no classes for phone {phone} after left context {left}") from None
