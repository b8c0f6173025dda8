"""Exceptions raised while building training graphs."""

__all__ = ["DenominatorGraphError", "NumeratorGraphError"]


class DenominatorGraphError(ValueError):
    """The phone language model or the denominator graph built from it is malformed.

    Raised before training starts; there is no recovery other than fixing the
    model.
    """


class NumeratorGraphError(ValueError):
    """An utterance's lattice and alignment admit no frame-synchronous path."""
