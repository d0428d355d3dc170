"""
Matrix operations for rate matrices and transition probabilities.

This module provides eigendecomposition of (reversible or general) rate
matrices and the derived transition probability matrices P(t) = exp(Qt).
"""

import numpy as np
from scipy.linalg import eig, expm, inv

from ..errors import NumericDegeneracyError

# Largest imaginary residue accepted when a complex decomposition is
# collapsed back to real numbers
TM_IMAG_EPS = 1e-6

# Eigenvector matrices with a worse condition number are treated as singular
MAX_EIGVEC_COND = 1e12


def matrix_exponential(Q: np.ndarray, t: float) -> np.ndarray:
    """
    Compute transition probability matrix P(t) = exp(Q*t).

    Uses scipy's Pade approximation with scaling and squaring; used as the
    reference against which the eigen-based path is checked.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    t : float
        Branch length (time)

    Returns
    -------
    P : ndarray, shape (n, n)
        Transition probability matrix
    """
    return expm(Q * t)


def eigen_decompose_rev(Q: np.ndarray, pi: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose reversible rate matrix Q = U @ diag(eigenvalues) @ V.

    Uses the symmetrization Q' = sqrt(D) @ Q @ sqrt(D)^-1 with D = diag(pi),
    which is symmetric when Q satisfies detailed balance, so the
    decomposition is real and numerically stable.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Reversible rate matrix
    pi : ndarray, shape (n,)
        Stationary distribution, strictly positive

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues of Q in ascending order
    U : ndarray, shape (n, n)
        Right eigenvectors (columns)
    V : ndarray, shape (n, n)
        Inverse of U

    Examples
    --------
    >>> pi = np.array([0.1, 0.2, 0.3, 0.4])
    >>> Q = create_reversible_Q(np.ones((4, 4)), pi)
    >>> eigenvalues, U, V = eigen_decompose_rev(Q, pi)
    >>> np.allclose(Q, U @ np.diag(eigenvalues) @ V)
    True
    """
    sqrt_pi = np.sqrt(pi)

    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # Remove rounding asymmetry before handing to eigh
    Q_sym = 0.5 * (Q_sym + Q_sym.T)

    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def eigen_decompose(Q: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose a general (non-symmetric) real matrix.

    Eigenvalues and eigenvectors may be complex. When every imaginary part
    is negligible the decomposition is returned as real arrays.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues (real or complex)
    U : ndarray, shape (n, n)
        Right eigenvectors (columns)
    V : ndarray, shape (n, n)
        Inverse of U

    Raises
    ------
    NumericDegeneracyError
        If the eigenvector matrix is not invertible
    """
    eigenvalues, U = eig(Q)

    cond = np.linalg.cond(U)
    if not np.isfinite(cond) or cond > MAX_EIGVEC_COND:
        raise NumericDegeneracyError(
            f"Eigenvector matrix is not invertible (condition number {cond:.3g})"
        )
    V = inv(U)

    if (np.max(np.abs(eigenvalues.imag)) <= TM_IMAG_EPS
            and np.max(np.abs(U.imag)) <= TM_IMAG_EPS
            and np.max(np.abs(V.imag)) <= TM_IMAG_EPS):
        return eigenvalues.real.copy(), U.real.copy(), V.real.copy()

    return eigenvalues, U, V


def exp_from_eigen(
    eigenvalues: np.ndarray, U: np.ndarray, V: np.ndarray, t: float
) -> np.ndarray:
    """
    Compute P(t) = U @ diag(exp(eigenvalues * t)) @ V.

    Complex decompositions are collapsed to their real part. Round-off
    negatives are clipped to zero.
    """
    P = (U * np.exp(eigenvalues * t)[np.newaxis, :]) @ V
    if np.iscomplexobj(P):
        P = P.real
    return np.maximum(P, 0.0)


def create_reversible_Q(
    exchangeabilities: np.ndarray, weights: np.ndarray, normalize: bool = False
) -> np.ndarray:
    """
    Build a rate matrix ``Q[i,j] = s[i,j] * w[j]`` with zero row sums.

    With symmetric ``s`` the result is reversible with respect to ``w``
    (normalized to sum to one).

    Parameters
    ----------
    exchangeabilities : ndarray, shape (n, n)
        Exchangeabilities; the diagonal is ignored
    weights : ndarray, shape (n,)
        Column weights, usually the equilibrium frequencies
    normalize : bool, default=False
        Divide by the expected rate under the normalized weights

    Returns
    -------
    Q : ndarray, shape (n, n)
    """
    Q = exchangeabilities * weights[np.newaxis, :]
    np.fill_diagonal(Q, 0.0)
    np.fill_diagonal(Q, -Q.sum(axis=1))
    if normalize:
        Q = Q / expected_rate(Q, weights / weights.sum())
    return Q


def expected_rate(Q: np.ndarray, pi: np.ndarray) -> float:
    """Expected number of substitutions per unit time, -sum(pi_i Q_ii)."""
    return float(-np.dot(pi, Q.diagonal()))


def check_detailed_balance(Q: np.ndarray, pi: np.ndarray, rtol: float = 1e-10) -> bool:
    """True when the flux ``pi_i Q[i,j]`` equals ``pi_j Q[j,i]`` for every pair."""
    flux = Q * pi[:, np.newaxis]
    return bool(np.allclose(flux, flux.T, rtol=rtol, atol=1e-14))
