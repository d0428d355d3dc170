"""
Analytic gradients of the EM objective.

The objective is the negated expected complete-data log-likelihood
``-sum N[i,j] log P[i,j]`` over edges and rate categories, with the
posterior counts ``N`` held fixed. Its derivative with respect to any
parameter is ``-sum N[i,j] dP[i,j] / P[i,j]``, so every parameter only
needs ``dP`` on each edge.

Branch lengths use ``dP/dt = V diag(lambda exp(lambda t)) V^-1``. For
rate-matrix parameters ``dP`` is either a fourth-order Taylor
approximation or the exact eigen formula of Schadt and Lange.
"""

import logging

import numpy as np

from ..core.likelihood import TreePosteriors
from ..core.matrix import TM_IMAG_EPS
from ..core.numeric import safe_divide
from ..errors import NumericDegeneracyError, PreconditionError
from ..models.rate_variation import discrete_gamma
from ..models.tree_model import BranchLengthMode, TreeModel
from .bfgs import DERIV_EPSILON

logger = logging.getLogger(__name__)

# Eigenvalue gaps below this use the degenerate limit t * exp(lambda t)
EIGEN_GAP_EPS = 1e-10


def count_weighted_ratio(dP: np.ndarray, counts: np.ndarray, P: np.ndarray) -> float:
    """
    ``sum counts * dP / P`` with zero-probability cells handled.

    A cell with ``P == 0`` contributes 0 when ``counts * dP`` is 0 and an
    infinity of that product's sign otherwise.
    """
    used = counts != 0
    return float(np.sum(safe_divide((counts * dP)[used], P[used])))


def _real(M: np.ndarray) -> np.ndarray:
    if np.iscomplexobj(M):
        if np.max(np.abs(M.imag), initial=0.0) > TM_IMAG_EPS:
            raise NumericDegeneracyError(
                f"Imaginary residue {np.max(np.abs(M.imag)):.3g} in gradient exceeds {TM_IMAG_EPS}"
            )
        return M.real
    return M


def _dP_dt(mod: TreeModel, t: float) -> np.ndarray:
    """Derivative of exp(Q t) with respect to t."""
    lam = mod.eigenvalues
    return _real((mod.evec * (lam * np.exp(lam * t))) @ mod.evec_inv)


def _taylor_terms(Q: np.ndarray, dQ: np.ndarray) -> list[np.ndarray]:
    """Coefficient matrices of t, t^2/2, t^3/6 and t^4/24 in d exp(Qt)."""
    Q2 = Q @ Q
    Q3 = Q2 @ Q
    dQ_Q = dQ @ Q
    Q_dQ = Q @ dQ
    return [
        dQ,
        dQ_Q + Q_dQ,
        dQ_Q @ Q + Q_dQ @ Q + Q2 @ dQ,
        dQ @ Q3 + Q_dQ @ Q2 + Q2 @ dQ_Q + Q3 @ dQ,
    ]


def _taylor_dP(terms: list[np.ndarray], t: float) -> np.ndarray:
    return t * terms[0] + (t ** 2 / 2) * terms[1] + (t ** 3 / 6) * terms[2] + (t ** 4 / 24) * terms[3]


def _schadt_lange_F(lam: np.ndarray, t: float) -> np.ndarray:
    exp_lt = np.exp(lam * t)
    diff = lam[:, np.newaxis] - lam[np.newaxis, :]
    close = np.abs(diff) < EIGEN_GAP_EPS
    F = np.empty(diff.shape, dtype=np.result_type(lam, float))
    F[~close] = ((exp_lt[:, np.newaxis] - exp_lt[np.newaxis, :])[~close]) / diff[~close]
    F[close] = (t * np.broadcast_to(exp_lt[:, np.newaxis], diff.shape))[close]
    return F


def compute_grad_em(
    mod: TreeModel,
    post: TreePosteriors,
    exact: bool = False,
) -> np.ndarray:
    """
    Gradient of the negated expected log-likelihood.

    The model must already hold the parameters at which the gradient is
    wanted. Equilibrium-frequency and rate-weight entries are zero (rate
    weights are set in closed form by EM).

    Parameters
    ----------
    mod : TreeModel
        Tree model with branch lengths estimated individually or not at all
    post : TreePosteriors
        Expected counts from the E-step
    exact : bool, default=False
        Use the eigen formula for rate-matrix parameters instead of the
        Taylor approximation

    Returns
    -------
    ndarray, shape (mod.n_params(),)

    Raises
    ------
    PreconditionError
        If equilibrium frequencies or a global scale are being estimated
    """
    if mod.estimate_backgd:
        raise PreconditionError("Analytic gradients do not cover equilibrium frequencies")
    if mod.estimate_branchlens == BranchLengthMode.SCALE_ONLY:
        raise PreconditionError("Analytic gradients do not cover a global branch scale")

    grad = np.zeros(mod.n_params())
    K = mod.nratecats
    edges = [node for node in mod.tree.nodes
             if node.parent is not None and node.id != mod.root_leaf_id]

    if mod.estimate_branchlens == BranchLengthMode.ALL:
        for node, slot, factor in mod.branch_param_map():
            t = mod.branch_length(node)
            for k in range(K):
                dP = _dP_dt(mod, t * mod.rK[k]) * mod.rK[k] * mod.scale * factor
                grad[slot] += count_weighted_ratio(
                    dP, post.expected_nsubst_tot[k, :, :, node.id], mod.P[node.id][k]
                )

    n_ratevar = mod.n_ratevar_params()
    if n_ratevar and not mod.empirical_rates and not mod.rate_variation_disabled:
        _, rK_tweak = discrete_gamma(mod.alpha + DERIV_EPSILON, K)
        drK = (rK_tweak - mod.rK) / DERIV_EPSILON
        total = 0.0
        for node in edges:
            t = mod.branch_length(node)
            for k in range(K):
                dP = _dP_dt(mod, t * mod.rK[k]) * t * drK[k]
                total += count_weighted_ratio(
                    dP, post.expected_nsubst_tot[k, :, :, node.id], mod.P[node.id][k]
                )
        grad[mod.ratevar_offset()] = total

    offset = mod.rate_matrix_offset()
    lam = mod.eigenvalues
    for p in range(mod.subst_model.n_params):
        dQ = mod.subst_model.rate_matrix_derivative(p, mod.backgd_freqs) * mod.rate_scale
        if exact:
            G = mod.evec_inv @ dQ @ mod.evec
        else:
            terms = _taylor_terms(mod.Q, dQ)
        total = 0.0
        for node in edges:
            for k in range(K):
                t = mod.branch_length(node) * mod.rK[k]
                if exact:
                    dP = _real(mod.evec @ (_schadt_lange_F(lam, t) * G) @ mod.evec_inv)
                else:
                    dP = _taylor_dP(terms, t)
                total += count_weighted_ratio(
                    dP, post.expected_nsubst_tot[k, :, :, node.id], mod.P[node.id][k]
                )
        grad[offset + p] = total

    return -grad
