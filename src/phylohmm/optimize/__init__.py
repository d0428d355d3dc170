"""
Optimization routines for maximum likelihood parameter estimation.

- **EM**: ``fit_em`` alternates posterior expected counts with a bounded
  quasi-Newton M-step
- **Direct**: ``TreeModelOptimizer`` maximizes the alignment likelihood
  with scipy.optimize
"""

from phylohmm.optimize.bfgs import Precision, opt_bfgs
from phylohmm.optimize.fit_em import EMResult, GradientMode, fit_em
from phylohmm.optimize.optimizer import TreeModelOptimizer

__all__ = [
    "fit_em",
    "EMResult",
    "GradientMode",
    "Precision",
    "opt_bfgs",
    "TreeModelOptimizer",
]
