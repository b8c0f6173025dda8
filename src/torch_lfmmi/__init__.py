"""
torch-lfmmi: Lattice-free MMI (chain) training objective for PyTorch

This package builds the two graphs of sequence-discriminative "chain"
training and evaluates the objective on minibatches of fixed-length chunks:

- A denominator graph expanded from a phone n-gram model, minimized by
  repeated push / minimize / reverse, with chunk-boundary initial and final
  probabilities
- Per-utterance numerator graphs with alignment tolerance, cut into chunks
  and normalized against the denominator so the objective is never positive
- Batched forward-backward in rescaled probability space (or log space)
  with state-major or sequence-major buffers
- An autograd function and loss module returning the objective and its
  gradient with respect to the network's class log-probabilities
"""

from .acceptor import Acceptor, Arc, class_to_label, label_to_class
from .batch import ChunkBatch, subsample_frames
from .denominator import (
    DenominatorGraph,
    NormalizationGraph,
    compute_initial_probs,
    expand_phone_lm,
    minimize_denominator,
    select_anchor_state,
)
from .errors import DenominatorGraphError, NumeratorGraphError
from .forward_backward import (
    DenominatorComputation,
    ForwardBackwardResult,
    NumeratorComputation,
    StorageLayout,
)
from .numerator import NumeratorChunk, NumeratorGraph, PhoneLattice, normalize_chunk
from .objective import ChainLoss, ChainObjective, ChainObjectiveFunction, compute_chain_objective
from .ops import compose, determinize_unweighted, minimize, push, reverse
from .options import ChainTrainingOptions
from .phone_lm import BOS, PhoneLanguageModel
from .topology import NO_CONTEXT, ContextDependency

__version__ = "0.1.0"

__all__ = [
    # Graphs
    "Acceptor",
    "Arc",
    "class_to_label",
    "label_to_class",
    "push",
    "minimize",
    "reverse",
    "compose",
    "determinize_unweighted",
    # Denominator
    "PhoneLanguageModel",
    "BOS",
    "ContextDependency",
    "NO_CONTEXT",
    "DenominatorGraph",
    "NormalizationGraph",
    "expand_phone_lm",
    "minimize_denominator",
    "compute_initial_probs",
    "select_anchor_state",
    # Numerator
    "PhoneLattice",
    "NumeratorGraph",
    "NumeratorChunk",
    "normalize_chunk",
    "ChunkBatch",
    "subsample_frames",
    # Forward-backward and objective
    "StorageLayout",
    "ForwardBackwardResult",
    "DenominatorComputation",
    "NumeratorComputation",
    "ChainObjective",
    "compute_chain_objective",
    "ChainObjectiveFunction",
    "ChainLoss",
    # Configuration and errors
    "ChainTrainingOptions",
    "DenominatorGraphError",
    "NumeratorGraphError",
]
