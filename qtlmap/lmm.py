"""
Linear mixed model support for kinship-corrected scans.

Model: y = X b + g + e, g ~ N(0, s2 * h2 * K), e ~ N(0, s2 * (1 - h2) * I).
With K = U diag(lam) U', rotating by U' gives independent rows with variance
s2 * (h2 * lam + 1 - h2), so after weighting every row by
1 / sqrt(h2 * lam + 1 - h2) ordinary least squares applies.
"""

import warnings
from typing import Tuple

import numpy as np
from scipy import optimize

EIGEN_FLOOR = 1e-6
H2_MAX = 0.999


def eigen_rotation(K: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Eigenvalues (floored at a small positive value) and the transposed eigenvectors U'."""
    eigvals, eigvecs = np.linalg.eigh(K)
    return np.maximum(eigvals, EIGEN_FLOOR), eigvecs.T


def row_weights(eigvals: np.ndarray, h2: float) -> np.ndarray:
    return 1.0 / np.sqrt(h2 * eigvals + (1.0 - h2))


def _neg_loglik(h2: float, y: np.ndarray, X: np.ndarray, eigvals: np.ndarray, reml: bool) -> float:
    """Negative profile log-likelihood of h2 for rotated data (constants dropped)."""
    n, p = X.shape
    v = h2 * eigvals + (1.0 - h2)
    if np.any(v <= 0):
        return np.inf
    vi = 1.0 / v
    ViX = vi[:, None] * X
    XViX = X.T @ ViX
    try:
        beta = np.linalg.solve(XViX, ViX.T @ y)
    except np.linalg.LinAlgError:
        return np.inf
    resid = y - X @ beta
    yPy = float(np.sum(vi * resid * resid))
    if yPy <= 0:
        return np.inf
    logdet_v = float(np.sum(np.log(v)))
    if reml:
        sign, logdet_xvx = np.linalg.slogdet(XViX)
        if sign <= 0:
            return np.inf
        df = n - p
        return 0.5 * (logdet_v + logdet_xvx + df * np.log(yPy) + df * (1.0 - np.log(df)))
    return 0.5 * (logdet_v + n * np.log(yPy / n))


def estimate_heritability(y: np.ndarray, X: np.ndarray, eigvals: np.ndarray, reml: bool = True) -> float:
    """
    Estimate h2 in [0, H2_MAX] under the null model by bounded scalar optimization.

    :param y: rotated phenotype U'y
    :param X: rotated null design U'X (covariates with intercept)
    :param eigvals: kinship eigenvalues matching the rotation
    :param reml: restricted (True) or ordinary maximum likelihood
    """
    n, p = X.shape
    if n - p < 1:
        return 0.0

    def objective(h2):
        return _neg_loglik(h2, y, X, eigvals, reml)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = optimize.minimize_scalar(objective, bounds=(0.0, H2_MAX), method="bounded",
                                          options={"xatol": 1.22e-4, "maxiter": 500})
    # the bounded method never evaluates the end points
    candidates = [(objective(0.0), 0.0)]
    if np.isfinite(result.fun):
        candidates.append((float(result.fun), float(result.x)))
    best_val, best_h2 = min(candidates, key=lambda t: t[0])
    if not np.isfinite(best_val):
        return 0.0
    return float(np.clip(best_h2, 0.0, H2_MAX))
