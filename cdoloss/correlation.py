"""
Correlation factorizer and the canonical factor-loading representation.

Whatever the caller supplies (a scalar correlation, a factor matrix or a
full correlation matrix) is normalized here into ``FactorLoadings``, an
N x K matrix of systemic loadings. The copula and the engines only ever see
that form.
"""
import logging
from numbers import Real

import numpy as np
from scipy.optimize import least_squares

from .errors import ValidationError

LOG = logging.getLogger(__name__)

SYMMETRY_TOLERANCE = 1e-8


# ---------------------------------------------------------------------
# Factorization
# ---------------------------------------------------------------------
def _check_matrix(matrix) -> np.ndarray:
    c = np.asarray(matrix, dtype=float)
    if c.ndim != 2 or c.shape[0] != c.shape[1] or c.shape[0] == 0:
        raise ValidationError(f"Correlation matrix must be square and non-empty, not {c.shape}")
    if not np.all(np.isfinite(c)):
        raise ValidationError("Correlation matrix contains non-finite values")
    if np.max(np.abs(c - c.T)) > SYMMETRY_TOLERANCE:
        raise ValidationError("Correlation matrix must be symmetric")
    if np.max(np.abs(np.diag(c) - 1.0)) > SYMMETRY_TOLERANCE:
        raise ValidationError("Correlation matrix must have a unit diagonal")
    if np.max(np.abs(c)) > 1.0 + SYMMETRY_TOLERANCE:
        raise ValidationError("Correlations must lie in [-1, 1]")
    return 0.5 * (c + c.T)


def _normalize_rows(f: np.ndarray) -> np.ndarray:
    norms = np.sqrt((f * f).sum(axis=1, keepdims=True))
    out = np.where(norms > 0, f / np.where(norms > 0, norms, 1.0), 0.0)
    # a row truncated to nothing keeps the first factor
    empty = norms[:, 0] == 0
    out[empty, 0] = 1.0
    return out


def _cholesky(c: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.cholesky(c)
    except np.linalg.LinAlgError:
        pass
    # Input noise: clip the spectrum and restore the unit diagonal
    values, vectors = np.linalg.eigh(c)
    LOG.warning(f"Correlation matrix not positive definite (min eigenvalue {values.min():.3e}), repairing")
    values = np.maximum(values, 1e-10)
    repaired = (vectors * values) @ vectors.T
    d = np.sqrt(np.diag(repaired))
    repaired = repaired / np.outer(d, d)
    return np.linalg.cholesky(0.5 * (repaired + repaired.T))


def correlation_error(loadings, matrix) -> float:
    """Sum of squared differences between F F' and the target matrix."""
    f = np.asarray(loadings, dtype=float)
    diff = f @ f.T - np.asarray(matrix, dtype=float)
    return float((diff * diff).sum())


def factorize_correlation(matrix, n_factors=None) -> np.ndarray:
    """
    Factorize a correlation matrix into an N x K loading matrix with unit
    norm rows such that F F' approximates the matrix.

    K = N is an exact Cholesky factorization. For K < N the Cholesky factor is
    truncated, its rows renormalized, then refined by nonlinear least squares;
    the refinement is kept only when it beats the truncation.
    """
    c = _check_matrix(matrix)
    n = c.shape[0]
    k = n if n_factors is None else int(n_factors)
    if k < 1 or k > n:
        raise ValidationError(f"Number of factors must be between 1 and {n}, not {n_factors}")

    full = _normalize_rows(_cholesky(c))
    if k == n:
        return full

    truncated = _normalize_rows(full[:, :k])
    naive_error = correlation_error(truncated, c)
    iu = np.triu_indices(n, 1)

    def residuals(x):
        f = _normalize_rows(x.reshape(n, k))
        return (f @ f.T)[iu] - c[iu]

    result = least_squares(residuals, truncated.ravel(), xtol=1e-12, ftol=1e-12, gtol=1e-12)
    refined = _normalize_rows(result.x.reshape(n, k))
    refined_error = correlation_error(refined, c)
    LOG.debug(f"Factorized {n}x{n} matrix to {k} factors: truncation error {naive_error:.6e}, "
              f"refined error {refined_error:.6e} ({result.nfev} evaluations)")
    return refined if refined_error < naive_error else truncated


# ---------------------------------------------------------------------
# Canonical loadings
# ---------------------------------------------------------------------
def _to_ball(x: np.ndarray) -> np.ndarray:
    return x / np.sqrt(1.0 + (x * x).sum(axis=1, keepdims=True))


def _from_ball(b: np.ndarray) -> np.ndarray:
    return b / np.sqrt(1.0 - (b * b).sum(axis=1, keepdims=True))


def _fit_systemic(c: np.ndarray, k: int) -> np.ndarray:
    """Systemic loadings inside the unit ball matching the off-diagonal
    correlations; the remainder of each name is idiosyncratic."""
    n = c.shape[0]
    shape = factorize_correlation(c, k)
    average = (c.sum(axis=1) - 1.0) / max(n - 1, 1)
    start = shape * np.sqrt(np.clip(average, 1e-4, 0.95))[:, None]
    iu = np.triu_indices(n, 1)

    def residuals(x):
        b = _to_ball(x.reshape(n, k))
        return (b @ b.T)[iu] - c[iu]

    result = least_squares(residuals, _from_ball(start).ravel(), xtol=1e-12, ftol=1e-12)
    return _to_ball(result.x.reshape(n, k))


class FactorLoadings:
    """N x K systemic loadings; name i has idiosyncratic weight sqrt(1 - |b_i|^2)."""

    def __init__(self, loadings):
        b = np.asarray(loadings, dtype=float)
        if b.ndim == 1:
            b = b[:, None]
        if b.ndim != 2 or b.shape[0] == 0 or b.shape[1] == 0:
            raise ValidationError(f"Factor loadings must be an N x K matrix, not {b.shape}")
        if not np.all(np.isfinite(b)):
            raise ValidationError("Factor loadings contain non-finite values")
        norms = np.sqrt((b * b).sum(axis=1))
        if np.any(norms > 1.0 + 1e-12):
            raise ValidationError(f"Factor loading norms must not exceed 1 (max {norms.max():.6f})")
        self.values = b
        self.norms = np.minimum(norms, 1.0)

    @classmethod
    def from_scalar(cls, correlation: float, n_names: int) -> "FactorLoadings":
        if not 0.0 <= correlation <= 1.0:
            raise ValidationError(f"Correlation must lie in [0, 1], not {correlation}")
        return cls(np.full((n_names, 1), np.sqrt(correlation)))

    @classmethod
    def from_factor_matrix(cls, matrix) -> "FactorLoadings":
        """From a K x N matrix, one row per factor."""
        m = np.atleast_2d(np.asarray(matrix, dtype=float))
        return cls(m.T)

    @classmethod
    def from_correlation_matrix(cls, matrix, n_factors: int = 1) -> "FactorLoadings":
        c = _check_matrix(matrix)
        n = c.shape[0]
        if n_factors < 1 or n_factors > n:
            raise ValidationError(f"Number of factors must be between 1 and {n}, not {n_factors}")
        if n_factors == n:
            return cls(factorize_correlation(c, n))
        return cls(_fit_systemic(c, n_factors))

    @classmethod
    def create(cls, value, n_names: int, n_factors=None) -> "FactorLoadings":
        """Normalize any correlation input for a basket of ``n_names``."""
        if isinstance(value, FactorLoadings):
            loadings = value
        elif isinstance(value, Real):
            loadings = cls.from_scalar(float(value), n_names)
        else:
            m = np.asarray(value, dtype=float)
            if m.ndim == 1 and m.shape[0] == n_names:
                loadings = cls(m[:, None])
            elif m.ndim == 2 and m.shape == (n_names, n_names) and np.allclose(np.diag(m), 1.0) \
                    and np.allclose(m, m.T):
                loadings = cls.from_correlation_matrix(m, 1 if n_factors is None else n_factors)
            elif m.ndim == 2 and m.shape[1] == n_names:
                loadings = cls.from_factor_matrix(m)
            else:
                raise ValidationError(f"Correlation of shape {m.shape} does not match a basket of {n_names} names")
        if loadings.n_names != n_names:
            raise ValidationError(f"Correlation covers {loadings.n_names} names, basket has {n_names}")
        return loadings

    @property
    def n_names(self) -> int:
        return self.values.shape[0]

    @property
    def n_factors(self) -> int:
        return self.values.shape[1]

    @property
    def idiosyncratic(self) -> np.ndarray:
        return np.sqrt(np.maximum(1.0 - self.norms ** 2, 0.0))

    @property
    def is_uniform(self) -> bool:
        return bool(np.all(self.values == self.values[0]))

    def scaled(self, scale: float) -> "FactorLoadings":
        return FactorLoadings(self.values * scale)

    def take(self, indices) -> "FactorLoadings":
        return FactorLoadings(self.values[np.asarray(indices, dtype=int)])

    def correlation(self) -> np.ndarray:
        c = self.values @ self.values.T
        np.fill_diagonal(c, 1.0)
        return c

    def __repr__(self):
        return f"FactorLoadings(n_names={self.n_names}, n_factors={self.n_factors})"
