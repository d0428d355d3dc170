"""
Expectation-maximization for tree models.

Each iteration collects posterior expected substitution counts (E-step)
and then maximizes the expected complete-data log-likelihood with bounded
BFGS (M-step). Rate variation is held back until the single-rate fit is
close to converged, and the inner optimizer moves from an approximate to an
exact gradient and from crude to target precision as the outer loop settles.
"""

import logging
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, TextIO

import numpy as np

from ..core.likelihood import LikelihoodCalculator, TreePosteriors, partial_log_likelihood
from ..errors import NumericDegeneracyError
from ..io.sequences import Alignment
from ..models.subst_models import SubstModelType
from ..models.tree_model import BranchLengthMode, TreeModel
from .bfgs import Precision, opt_bfgs, write_trace_header, write_trace_row
from .gradients import compute_grad_em

logger = logging.getLogger(__name__)

# Relative log-likelihood improvement at which EM stops, per precision
EM_CONVERGENCE = {
    Precision.CRUDE: 1e-3,
    Precision.LOW: 1e-4,
    Precision.MED: 1e-6,
    Precision.HIGH: 1e-8,
}

MAX_EM_ITERATIONS = 1000


class GradientMode(str, Enum):
    """Gradient used by the inner optimizer."""
    ANALYTIC = "analytic"
    NUMERICAL = "numerical"


@dataclass
class EMResult:
    """
    Outcome of an EM fit.

    Attributes
    ----------
    lnL : float
        Final log-likelihood (natural log)
    n_iterations : int
        Number of E-steps
    converged : bool
        False when stopped by the iteration cap
    history : list of float
        Log-likelihood after every E-step
    """

    lnL: float
    n_iterations: int
    converged: bool
    history: list[float] = field(default_factory=list)


class _EMObjective:
    """Negated expected log-likelihood for fixed posteriors, with its gradient."""

    def __init__(self, mod: TreeModel, post: TreePosteriors):
        self.mod = mod
        self.post = post
        self.exact = False
        self._last_x: Optional[np.ndarray] = None

    def _unpack(self, x: np.ndarray) -> None:
        if self._last_x is None or not np.array_equal(x, self._last_x):
            self.mod.unpack_params(x)
            self._last_x = x.copy()

    def __call__(self, x: np.ndarray) -> float:
        self._unpack(x)
        return -partial_log_likelihood(self.mod, self.post)

    def gradient(self, x: np.ndarray) -> np.ndarray:
        self._unpack(x)
        return compute_grad_em(self.mod, self.post, exact=self.exact)


def _use_analytic_gradient(mod: TreeModel, mode: GradientMode) -> bool:
    return (mode == GradientMode.ANALYTIC
            and mod.estimate_branchlens != BranchLengthMode.SCALE_ONLY
            and mod.subst_model.model_type not in (SubstModelType.JC69, SubstModelType.F81)
            and not mod.estimate_backgd)


def fit_em(
    mod: TreeModel,
    msa: Alignment,
    params: Optional[np.ndarray] = None,
    cat: Optional[int] = None,
    precision: Precision = Precision.MED,
    gradient_mode: GradientMode = GradientMode.ANALYTIC,
    max_iterations: int = MAX_EM_ITERATIONS,
    logf: Optional[TextIO] = None,
) -> EMResult:
    """
    Fit a tree model to an alignment by EM.

    The model is modified in place: on return it holds the estimates, with
    the rate matrix normalized to one expected substitution per unit time
    and any global scale folded into the branch lengths.

    Parameters
    ----------
    mod : TreeModel
        Model to fit; its current parameters are the starting point
    msa : Alignment
        Alignment containing every leaf of the tree
    params : ndarray, optional
        Starting parameter vector (``mod.get_params()`` when omitted)
    cat : int, optional
        Fit only the columns of this category
    precision : Precision
        Target precision
    gradient_mode : GradientMode
        Analytic gradients where available, or numerical throughout
    max_iterations : int
        Cap on E-steps; reaching it issues a warning
    logf : file, optional
        Trace of the objective and parameters

    Returns
    -------
    EMResult

    Raises
    ------
    NumericDegeneracyError
        If the log-likelihood becomes non-finite
    """
    precision = Precision(precision)
    start = time.perf_counter()
    calc = LikelihoodCalculator(mod, msa)

    mod.disable_rate_variation()
    params = mod.get_params() if params is None else np.array(params, dtype=float)
    lower = mod.lower_bounds()
    H = np.eye(len(params))

    analytic = _use_analytic_gradient(mod, gradient_mode)
    exact = False
    bfgs_prec = Precision.CRUDE
    home_stretch = False
    last_ll = -np.inf
    history = []
    converged = False
    ll = -np.inf

    if logf is not None:
        write_trace_header(logf, len(params))

    it = 0
    for it in range(1, max_iterations + 1):
        mod.unpack_params(params)

        t0 = time.perf_counter()
        ll, post = calc.compute_posteriors(cat)
        logger.debug("Posterior collection took %.4f s", time.perf_counter() - t0)
        if not np.isfinite(ll):
            raise NumericDegeneracyError(f"Log-likelihood is {ll} at EM iteration {it}")
        history.append(ll)
        if logf is not None:
            write_trace_row(logf, ll, params)

        improvement = abs((last_ll - ll) / ll) if np.isfinite(last_ll) else np.inf
        last_ll = ll
        logger.info("EM iteration %d: lnL = %.6f, improvement = %.3g", it, ll, improvement)

        if (improvement < EM_CONVERGENCE[precision] and bfgs_prec == precision
                and not mod.rate_variation_disabled):
            converged = True
            break

        if improvement < EM_CONVERGENCE[Precision.CRUDE]:
            if analytic and not exact:
                logger.info("Switching to exact gradients")
                exact = True
                if bfgs_prec != precision:
                    bfgs_prec = bfgs_prec.bump()
            else:
                home_stretch = True
                if bfgs_prec != precision:
                    logger.info("Switching to %s precision in BFGS", precision.value)
                    bfgs_prec = precision

        objective = _EMObjective(mod, post)
        objective.exact = exact
        result = opt_bfgs(
            objective, params,
            grad=objective.gradient if analytic else None,
            lower=lower, H=H, precision=bfgs_prec, logf=logf,
        )
        params = result.x

        if mod.empirical_rates and mod.nratecats > 1:
            nsites = post.rcat_expected_nsites
            if nsites.sum() > 0:
                offset = mod.ratevar_offset()
                params[offset:offset + mod.nratecats] = nsites / nsites.sum()

        if (mod.rate_variation_disabled and home_stretch
                and improvement < EM_CONVERGENCE[Precision.CRUDE]):
            logger.info("Introducing rate variation (%d categories)", mod.planned_nratecats)
            mod.enable_rate_variation()

    if not converged:
        warnings.warn(
            f"EM stopped after {max_iterations} iterations without converging",
            UserWarning,
        )
        mod.enable_rate_variation()
        mod.unpack_params(params)
        ll = calc.log_likelihood(cat)

    mod.lnL = ll
    finalize_scaling(mod)

    logger.info("EM finished: %d iterations, lnL = %.6f, %.2f s",
                it, ll, time.perf_counter() - start)
    return EMResult(lnL=ll, n_iterations=it, converged=converged, history=history)


def finalize_scaling(mod: TreeModel) -> None:
    """Normalize Q and absorb every global rate factor into the branch lengths."""
    branchlen_scale = mod.scale_rate_matrix()
    if mod.estimate_branchlens == BranchLengthMode.SCALE_ONLY:
        branchlen_scale *= mod.scale
        mod.scale = 1.0
    if mod.empirical_rates and mod.nratecats > 1:
        mean_rate = float(np.dot(mod.rK, mod.freqK))
        branchlen_scale *= mean_rate
        mod.rK = mod.rK / mean_rate
    if branchlen_scale != 1.0:
        mod.scale_branches(branchlen_scale)
