r"""Semiring implementations for forward-backward over weighted acceptors.

This module provides the two semirings the engine can run in:

- :class:`ProbSemiring`: Probability-space operations (+, *). Fast, but values
  over/underflow over long chunks unless they are rescaled every frame.
- :class:`LogSemiring`: Log-space operations (logsumexp, +). Slower, but needs
  no rescaling.

Both expose the same interface, including :meth:`Semiring.scatter_sum` which
reduces per-arc values into per-state values. That is the only reduction the
sparse forward-backward recursion needs.

Examples::

    >>> from torch_lfmmi.semirings import LogSemiring, ProbSemiring
    >>> w = torch.tensor([0.5, 0.25])
    >>> ProbSemiring.sum(w)
    tensor(0.7500)
    >>> LogSemiring.sum(LogSemiring.from_prob(w)).exp()
    tensor(0.7500)
"""

import torch


class Semiring:
    r"""Base semiring class.

    A semiring :math:`(K, \oplus, \otimes, \bar{0}, \bar{1})` provides:

    - A set K of values
    - An addition operation :math:`\oplus` (commutative, associative)
    - A multiplication operation :math:`\otimes` (associative, distributes over :math:`\oplus`)
    - Zero element :math:`\bar{0}` (identity for :math:`\oplus`, annihilator for :math:`\otimes`)
    - One element :math:`\bar{1}` (identity for :math:`\otimes`)

    Subclasses must define:

    - ``zero``: The zero element
    - ``one``: The one element
    - ``sum(xs, dim)``: The :math:`\oplus` reduction
    - ``mul(a, b)``: The :math:`\otimes` operation (elementwise)
    - ``scatter_sum(values, index, size, dim)``: :math:`\oplus` of ``values``
      grouped by ``index`` along ``dim``
    - ``from_prob(p)`` / ``to_prob(x)``: conversion from/to probabilities
    - ``from_log(x)``: conversion from log-probabilities

    Attributes:
        zero (float): The semiring zero element.
        one (float): The semiring one element.
        name (str): Short name used by configuration (``"prob"`` or ``"log"``).
    """

    name = None

    @classmethod
    def times(cls, *ls):
        r"""times(*ls) -> Tensor

        Multiply a sequence of tensors together using :math:`\otimes`.
        """
        cur = ls[0]
        for item in ls[1:]:
            cur = cls.mul(cur, item)
        return cur

    @classmethod
    def plus(cls, a, b):
        r"""plus(a, b) -> Tensor

        Binary semiring addition: :math:`a \oplus b`.
        """
        return cls.sum(torch.stack([a, b], dim=-1))

    @classmethod
    def zeros(cls, *size, dtype=None, device=None):
        r"""zeros(*size, dtype=None, device=None) -> Tensor

        Allocate a tensor filled with :math:`\bar{0}`.
        """
        return torch.full(size, cls.zero, dtype=dtype, device=device)

    @staticmethod
    def sum(xs, dim=-1):
        raise NotImplementedError()

    @staticmethod
    def mul(a, b):
        raise NotImplementedError()

    @staticmethod
    def scatter_sum(values, index, size, dim=0):
        raise NotImplementedError()

    @staticmethod
    def from_prob(p):
        raise NotImplementedError()

    @staticmethod
    def to_prob(x):
        raise NotImplementedError()

    @staticmethod
    def from_log(x):
        raise NotImplementedError()


class ProbSemiring(Semiring):
    r"""Probability semiring :math:`(\mathbb{R}_{\geq 0}, +, \times, 0, 1)`.

    Operations:

    - :math:`\oplus`: ``torch.sum``
    - :math:`\otimes`: ``torch.mul``
    - :math:`\bar{0}`: ``0.0``
    - :math:`\bar{1}`: ``1.0``
    """

    name = "prob"
    zero = 0.0
    one = 1.0

    @staticmethod
    def sum(xs, dim=-1):
        return torch.sum(xs, dim=dim)

    @staticmethod
    def mul(a, b):
        return torch.mul(a, b)

    @staticmethod
    def scatter_sum(values, index, size, dim=0):
        shape = list(values.shape)
        shape[dim] = size
        out = torch.zeros(shape, dtype=values.dtype, device=values.device)
        return out.index_add_(dim, index, values)

    @staticmethod
    def from_prob(p):
        return p

    @staticmethod
    def to_prob(x):
        return x

    @staticmethod
    def from_log(x):
        return torch.exp(x)


class LogSemiring(Semiring):
    r"""Log-space semiring :math:`(\mathbb{R} \cup \{-\infty\}, \text{logsumexp}, +, -\infty, 0)`.

    Operations:

    - :math:`\oplus`: ``torch.logsumexp``
    - :math:`\otimes`: ``+`` (addition in log-space = multiplication in probability space)
    - :math:`\bar{0}`: ``-inf``
    - :math:`\bar{1}`: ``0.0``
    """

    name = "log"
    zero = float("-inf")
    one = 0.0

    @staticmethod
    def sum(xs, dim=-1):
        return torch.logsumexp(xs, dim=dim)

    @staticmethod
    def mul(a, b):
        return a + b

    @staticmethod
    def scatter_sum(values, index, size, dim=0):
        shape = list(values.shape)
        shape[dim] = size
        view = [1] * values.dim()
        view[dim] = -1
        expanded = index.view(view).expand_as(values)

        # Per-group max keeps the exponentials in range
        peak = torch.full(shape, float("-inf"), dtype=values.dtype, device=values.device)
        peak = peak.scatter_reduce(dim, expanded, values, reduce="amax", include_self=True)
        safe_peak = torch.where(torch.isfinite(peak), peak, torch.zeros_like(peak))

        shifted = torch.exp(values - torch.gather(safe_peak, dim, expanded))
        total = torch.zeros(shape, dtype=values.dtype, device=values.device)
        total = total.index_add_(dim, index, shifted)
        return torch.log(total) + safe_peak

    @staticmethod
    def from_prob(p):
        return torch.log(p)

    @staticmethod
    def to_prob(x):
        return torch.exp(x)

    @staticmethod
    def from_log(x):
        return x


SEMIRINGS = {ProbSemiring.name: ProbSemiring, LogSemiring.name: LogSemiring}


def get_semiring(name):
    r"""get_semiring(name) -> type

    Look up a semiring class by its configuration name.

    Raises:
        ValueError: If ``name`` is not ``"prob"`` or ``"log"``.
    """
    try:
        return SEMIRINGS[name]
    except KeyError:
        raise ValueError(f"Unknown semiring: {name}. Use 'prob' or 'log'.") from None
