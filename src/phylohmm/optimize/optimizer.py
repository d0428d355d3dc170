"""
Direct maximum-likelihood optimization of tree models.
"""

import logging
from typing import Optional

import numpy as np
from scipy.optimize import minimize

from ..core.likelihood import LikelihoodCalculator
from ..errors import NumericDegeneracyError
from ..io.sequences import Alignment
from ..models.tree_model import TreeModel
from .fit_em import finalize_scaling

logger = logging.getLogger(__name__)

# Floor applied before taking logs of parameters sitting at a zero bound
MIN_LOG_PARAM = 1e-6


class TreeModelOptimizer:
    """
    Maximize the full alignment likelihood of a tree model with L-BFGS-B.

    An alternative to EM that evaluates the likelihood directly at every
    step. Parameters are optimized on log scale, so every packed parameter
    (branch lengths, frequencies, gamma shape or rate weights, rate-matrix
    parameters) stays positive.

    Parameters
    ----------
    mod : TreeModel
        Model to fit; modified in place
    alignment : Alignment
        Alignment containing every leaf of the tree
    cat : int, optional
        Fit only the columns of this category
    """

    def __init__(self, mod: TreeModel, alignment: Alignment, cat: Optional[int] = None):
        self.mod = mod
        self.alignment = alignment
        self.cat = cat
        self.calc = LikelihoodCalculator(mod, alignment)
        self.history = []

    def compute_log_likelihood(self, log_params: np.ndarray) -> float:
        """
        Negative log-likelihood at the given log-scale parameters.
        """
        params = np.exp(log_params)
        self.mod.unpack_params(params)
        log_likelihood = self.calc.log_likelihood(self.cat)
        self.history.append(log_likelihood)
        if not np.isfinite(log_likelihood):
            return 1e10
        return -log_likelihood

    def optimize(self, method: str = 'L-BFGS-B', maxiter: int = 200) -> float:
        """
        Optimize all packed parameters.

        Returns
        -------
        float
            Maximized log-likelihood
        """
        params = self.mod.get_params()
        lower = self.mod.lower_bounds()
        init = np.log(np.maximum(params, np.maximum(lower, MIN_LOG_PARAM)))
        bounds = [(np.log(max(lo, MIN_LOG_PARAM)), None) for lo in lower]

        self.history = []
        logger.info("Starting %s over %d parameters", method, len(params))
        result = minimize(
            self.compute_log_likelihood,
            init,
            method=method,
            bounds=bounds,
            options={'maxiter': maxiter},
        )

        self.mod.unpack_params(np.exp(result.x))
        log_likelihood = self.calc.log_likelihood(self.cat)
        if not np.isfinite(log_likelihood):
            raise NumericDegeneracyError(f"Optimized log-likelihood is {log_likelihood}")

        finalize_scaling(self.mod)
        self.mod.lnL = log_likelihood

        logger.info("Optimization finished after %d evaluations: lnL = %.6f",
                    len(self.history), log_likelihood)
        return log_likelihood
