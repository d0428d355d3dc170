"""
Core algorithms for phylogenetic likelihood calculation.

This module provides low-level computational routines:

- **Sufficient statistics**: distinct column tuples with counts and order
- **Likelihood calculation**: Felsenstein's pruning algorithm and the
  expected substitution counts used by EM
- **Matrix operations**: Eigendecomposition and matrix exponential

These are expert-level functions typically not needed by end users.
The high-level API (:mod:`phylohmm.api`) provides easier access.
"""

from phylohmm.core.likelihood import LikelihoodCalculator, TreePosteriors
from phylohmm.core.matrix import eigen_decompose, eigen_decompose_rev, matrix_exponential
from phylohmm.core.sufficient_stats import SufficientStats, ss_from_msas

__all__ = [
    "LikelihoodCalculator",
    "TreePosteriors",
    "SufficientStats",
    "ss_from_msas",
    "matrix_exponential",
    "eigen_decompose",
    "eigen_decompose_rev",
]
