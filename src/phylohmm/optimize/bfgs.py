"""
Bounded quasi-Newton minimization.

A BFGS routine with lower/upper bounds handled by an active set and a
backtracking line search. The inverse-Hessian approximation is updated in
place so an outer loop (EM) can warm-start successive calls.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TextIO

import numpy as np

from ..errors import DimensionMismatchError

logger = logging.getLogger(__name__)

# Step for finite-difference derivatives
DERIV_EPSILON = 1e-5

# Sufficient-decrease constant of the Armijo condition
ARMIJO_C = 1e-4

MIN_STEP = 1e-12
MAX_BFGS_ITERATIONS = 500


class Precision(str, Enum):
    """Convergence precision levels, coarsest first."""
    CRUDE = "crude"
    LOW = "low"
    MED = "med"
    HIGH = "high"

    def bump(self) -> "Precision":
        """Next finer level (HIGH stays HIGH)."""
        levels = list(Precision)
        return levels[min(levels.index(self) + 1, len(levels) - 1)]


# Relative change in f (or gradient norm) below which BFGS stops
BFGS_TOLERANCE = {
    Precision.CRUDE: 1e-3,
    Precision.LOW: 1e-4,
    Precision.MED: 1e-6,
    Precision.HIGH: 1e-9,
}


@dataclass
class BFGSResult:
    """
    Outcome of a BFGS run.

    Attributes
    ----------
    x : ndarray
        Final parameters
    fun : float
        Objective at ``x``
    gradient : ndarray
        Gradient at ``x``
    H : ndarray
        Inverse-Hessian approximation (the array passed in, if any)
    n_iterations : int
    converged : bool
    """

    x: np.ndarray
    fun: float
    gradient: np.ndarray
    H: np.ndarray
    n_iterations: int
    converged: bool


def write_trace_header(logf: TextIO, nparams: int) -> None:
    """Header line of an optimization trace."""
    logf.write("%15s " % "f(x)" + ''.join("%15s " % f"x_{i}" for i in range(nparams)) + "\n")
    logf.flush()


def write_trace_row(logf: TextIO, value: float, x: np.ndarray) -> None:
    """One trace line: the objective then every parameter."""
    logf.write("%15.6f " % value + ''.join("%15.6f " % xi for xi in x) + "\n")
    logf.flush()


def numerical_gradient(
    f: Callable[[np.ndarray], float],
    x: np.ndarray,
    lower: Optional[np.ndarray] = None,
    upper: Optional[np.ndarray] = None,
    eps: float = DERIV_EPSILON,
) -> np.ndarray:
    """
    Finite-difference gradient.

    Central differences, switching to one-sided differences where a step
    would cross a bound.
    """
    x = np.asarray(x, dtype=float)
    grad = np.empty(len(x))
    for i in range(len(x)):
        lo_ok = lower is None or x[i] - eps >= lower[i]
        hi_ok = upper is None or x[i] + eps <= upper[i]
        xp = x.copy()
        xm = x.copy()
        if lo_ok and hi_ok:
            xp[i] += eps
            xm[i] -= eps
            grad[i] = (f(xp) - f(xm)) / (2 * eps)
        elif hi_ok:
            xp[i] += eps
            grad[i] = (f(xp) - f(x)) / eps
        else:
            xm[i] -= eps
            grad[i] = (f(x) - f(xm)) / eps
    return grad


def _block_at_bounds(x: np.ndarray, d: np.ndarray, lower: Optional[np.ndarray],
                     upper: Optional[np.ndarray]) -> np.ndarray:
    """Zero the components of ``d`` that point out of the feasible box."""
    d = d.copy()
    if lower is not None:
        d[(x <= lower) & (d < 0)] = 0.0
    if upper is not None:
        d[(x >= upper) & (d > 0)] = 0.0
    return d


def opt_bfgs(
    f: Callable[[np.ndarray], float],
    x0: np.ndarray,
    grad: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    lower: Optional[np.ndarray] = None,
    upper: Optional[np.ndarray] = None,
    H: Optional[np.ndarray] = None,
    precision: Precision = Precision.MED,
    max_iterations: int = MAX_BFGS_ITERATIONS,
    logf: Optional[TextIO] = None,
) -> BFGSResult:
    """
    Minimize ``f`` subject to simple bounds.

    Parameters
    ----------
    f : callable
        Objective
    x0 : ndarray
        Starting point (clipped into the bounds)
    grad : callable, optional
        Gradient of ``f``; numerical central differences when omitted
    lower, upper : ndarray, optional
        Bounds; ``None`` means unbounded
    H : ndarray, optional
        Initial inverse-Hessian approximation, updated in place
        (identity when omitted)
    precision : Precision
        Stopping tolerance level
    max_iterations : int
        Iteration cap
    logf : file, optional
        Receives one trace row per iteration

    Returns
    -------
    BFGSResult
    """
    n = len(x0)
    tol = BFGS_TOLERANCE[Precision(precision)]
    lower = None if lower is None else np.asarray(lower, dtype=float)
    upper = None if upper is None else np.asarray(upper, dtype=float)
    if H is None:
        H = np.eye(n)
    elif H.shape != (n, n):
        raise DimensionMismatchError(f"Inverse Hessian has shape {H.shape} for {n} parameters")

    if grad is None:
        def grad(z):
            return numerical_gradient(f, z, lower, upper)

    x = np.array(x0, dtype=float)
    if lower is not None:
        x = np.maximum(x, lower)
    if upper is not None:
        x = np.minimum(x, upper)

    fx = f(x)
    g = grad(x)
    converged = False
    it = 0

    for it in range(1, max_iterations + 1):
        active = np.zeros(n, dtype=bool)
        if lower is not None:
            active |= (x <= lower) & (g > 0)
        if upper is not None:
            active |= (x >= upper) & (g < 0)
        free = ~active

        if np.linalg.norm(g[free]) < tol:
            converged = True
            break

        d = np.zeros(n)
        d[free] = -H[np.ix_(free, free)] @ g[free]
        d = _block_at_bounds(x, d, lower, upper)
        slope = g @ d
        if slope >= 0:
            # not a descent direction; restart from steepest descent
            H[:] = np.eye(n)
            d = _block_at_bounds(x, np.where(free, -g, 0.0), lower, upper)
            slope = g @ d

        step = 1.0
        while True:
            x_new = x + step * d
            if lower is not None:
                x_new = np.maximum(x_new, lower)
            if upper is not None:
                x_new = np.minimum(x_new, upper)
            f_new = f(x_new)
            if np.isfinite(f_new) and f_new <= fx + ARMIJO_C * step * slope:
                break
            step *= 0.5
            if step < MIN_STEP:
                break
        if step < MIN_STEP:
            logger.debug("Line search made no progress after %d iterations", it)
            converged = True
            break

        g_new = grad(x_new)
        s = x_new - x
        y = g_new - g
        sy = s @ y
        if sy > 1e-10:
            rho = 1.0 / sy
            Hy = H @ y
            H += (rho * rho * (y @ Hy) + rho) * np.outer(s, s) - rho * (np.outer(Hy, s) + np.outer(s, Hy))

        rel = abs(fx - f_new) / max(abs(fx), 1e-300)
        x, fx, g = x_new, f_new, g_new
        if logf is not None:
            write_trace_row(logf, fx, x)
        if rel < tol:
            converged = True
            break

    logger.debug("BFGS finished after %d iterations: f=%.6f", it, fx)
    return BFGSResult(x=x, fun=float(fx), gradient=g, H=H, n_iterations=it, converged=converged)
