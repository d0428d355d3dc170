"""
Small numeric helpers shared by the likelihood, HMM and gradient code.
"""

import numpy as np
from scipy.special import logsumexp


def log_sum_exp(values: np.ndarray, axis: int | None = None) -> np.ndarray | float:
    """
    Compute log(sum(exp(values))) without overflow.

    Thin wrapper around scipy's logsumexp that returns -inf (instead of
    warning) when every term is -inf.

    Parameters
    ----------
    values : array_like
        Values in log space
    axis : int, optional
        Axis to reduce over (all axes when None)

    Returns
    -------
    float or ndarray
        Log of the summed exponentials

    Examples
    --------
    >>> log_sum_exp(np.log([0.25, 0.75]))
    0.0
    """
    values = np.asarray(values, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        result = logsumexp(values, axis=axis)
    return result


def int_pow(base: int, exponent: int) -> int:
    """Integer power by repeated squaring (exponent >= 0)."""
    if exponent < 0:
        raise ValueError(f"Negative exponent: {exponent}")
    result = 1
    while exponent:
        if exponent & 1:
            result *= base
        base *= base
        exponent >>= 1
    return result


def safe_divide(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """
    Elementwise numerator / denominator with a defined value at zero.

    Where the denominator is zero the result is 0 if the numerator is also
    zero, and +/-inf (sign of the numerator) otherwise.
    """
    numerator = np.asarray(numerator, dtype=float)
    denominator = np.asarray(denominator, dtype=float)
    zero = denominator == 0
    with np.errstate(divide='ignore', invalid='ignore'):
        result = np.where(zero, 0.0, numerator / np.where(zero, 1.0, denominator))
    result = np.where(zero & (numerator != 0), np.sign(numerator) * np.inf, result)
    return result
