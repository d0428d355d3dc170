"""
phylohmm: phylogenetic hidden Markov models in Python.

Continuous-time Markov substitution models on phylogenetic trees combined
with a discrete-state hidden Markov model over alignment columns. The
package tabulates alignments as sufficient statistics, fits tree models by
EM or direct likelihood maximization, and decodes alignments with Viterbi,
forward and backward recursions.

Quick Start
-----------
Fit a tree model:

>>> from phylohmm import fit_tree_model
>>> result = fit_tree_model("alignment.fa", "tree.nwk", subst_model="HKY85", nratecats=4)
>>> print(result.summary())
>>> result.model.to_file("fitted.mod")

Decode with a two-state phylo-HMM:

>>> from phylohmm import decode
>>> result = decode(["neutral.mod", "conserved.mod"], "states.hmm", "alignment.fa",
...                 labels=["neutral", "conserved"])
>>> for start, end, label in result.segments():
...     print(start, end, label)
"""

__version__ = "0.1.0"

# High-level API (simple interface)
from .api import (
    fit_tree_model,
    build_tree_model,
    compute_log_likelihood,
    decode,
    FitResult,
    DecodeResult,
)

# Errors
from .errors import (
    PhyloHMMError,
    InputFormatError,
    PreconditionError,
    DimensionMismatchError,
    NumericDegeneracyError,
    CapacityError,
)

# I/O classes (for advanced users)
from .io.sequences import Alignment, read_alignment
from .io.trees import Tree

# Models and algorithms (expert use)
from .models.tree_model import TreeModel
from .hmm.hmm import HMM
from .core.likelihood import LikelihoodCalculator
from .optimize.fit_em import fit_em

__all__ = [
    # Simple API - Start here!
    "fit_tree_model",
    "compute_log_likelihood",
    "decode",
    "build_tree_model",

    # Result objects
    "FitResult",
    "DecodeResult",

    # Errors
    "PhyloHMMError",
    "InputFormatError",
    "PreconditionError",
    "DimensionMismatchError",
    "NumericDegeneracyError",
    "CapacityError",

    # I/O (advanced)
    "Alignment",
    "Tree",
    "read_alignment",

    # Expert
    "TreeModel",
    "HMM",
    "LikelihoodCalculator",
    "fit_em",

    # Version
    "__version__",
]
