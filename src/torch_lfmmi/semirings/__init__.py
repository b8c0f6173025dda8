"""
Semiring operations for forward-backward over weighted acceptors.
"""

from .semirings import LogSemiring, ProbSemiring, Semiring, get_semiring

__all__ = [
    "Semiring",
    "ProbSemiring",
    "LogSemiring",
    "get_semiring",
]
