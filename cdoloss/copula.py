"""
Copula engine: unconditional survival + factor realization -> conditional
survival.

Each name has a latent variable X_i = b_i . Z + sqrt(1 - |b_i|^2) e_i and
defaults by t when X_i falls below the threshold implied by its default
probability. Conditioning on Z makes the names independent.
"""
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

import numpy as np
from scipy.special import roots_legendre
from scipy.stats import norm, t as student_t

from .errors import ValidationError

PROBABILITY_FLOOR = 1e-15


class CopulaType(Enum):
    GAUSS = "gauss"
    STUDENT_T = "student_t"


# ---------------------------------------------------------------------
# Unit-variance components (df == 0 means normal)
# ---------------------------------------------------------------------
def _scale(df: int) -> float:
    return np.sqrt((df - 2.0) / df)


def component_cdf(x, df: int):
    if df == 0:
        return norm.cdf(x)
    return student_t.cdf(x / _scale(df), df)


def component_ppf(u, df: int):
    if df == 0:
        return norm.ppf(u)
    return student_t.ppf(u, df) * _scale(df)


@lru_cache(maxsize=512)
def _latent_table(df_common: int, df_idiosyncratic: int, loading: float):
    """Marginal CDF of a b Z + sqrt(1 - b^2) e on a sinh-spaced grid."""
    x = np.sinh(np.linspace(-13.0, 13.0, 2001))
    s = np.sqrt(max(1.0 - loading * loading, 0.0))
    if loading == 0.0:
        cdf = component_cdf(x, df_idiosyncratic)
    elif s == 0.0:
        cdf = component_cdf(x / loading, df_common)
    else:
        r, w = roots_legendre(96)
        u, w = 0.5 * (r + 1.0), 0.5 * w
        z = component_ppf(u, df_common)
        cdf = component_cdf((x[:, None] - loading * z[None, :]) / s, df_idiosyncratic) @ w
    cdf = np.maximum.accumulate(np.clip(cdf, 0.0, 1.0))
    return x, cdf


# ---------------------------------------------------------------------
# Copula
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Copula:
    """Gaussian or double-t factor copula.

    The Student-t variant uses a t-distributed common factor with
    ``df_common`` and t-distributed idiosyncratic terms with
    ``df_idiosyncratic``, both scaled to unit variance; a df of 0 makes that
    component normal.
    """

    copula_type: CopulaType = CopulaType.GAUSS
    df_common: int = 0
    df_idiosyncratic: int = 0

    def __post_init__(self):
        object.__setattr__(self, "copula_type", CopulaType(self.copula_type))
        for label, df in (("df_common", self.df_common), ("df_idiosyncratic", self.df_idiosyncratic)):
            if df < 0 or (0 < df <= 2):
                raise ValidationError(f"Invalid degree of freedom ({label} = {df}), must be 0 or above 2")
        if self.copula_type is CopulaType.GAUSS and (self.df_common or self.df_idiosyncratic):
            raise ValidationError("Degrees of freedom only apply to the Student-t copula")

    @classmethod
    def gauss(cls) -> "Copula":
        return cls(CopulaType.GAUSS)

    @classmethod
    def student_t(cls, df_common: int, df_idiosyncratic: int) -> "Copula":
        return cls(CopulaType.STUDENT_T, df_common, df_idiosyncratic)

    @property
    def is_gauss(self) -> bool:
        return self.copula_type is CopulaType.GAUSS or (self.df_common == 0 and self.df_idiosyncratic == 0)

    # -- factor distribution ------------------------------------------
    def factor_cdf(self, x):
        return norm.cdf(x) if self.is_gauss else component_cdf(x, self.df_common)

    def factor_ppf(self, u):
        return norm.ppf(u) if self.is_gauss else component_ppf(u, self.df_common)

    def factor_from_normal(self, x):
        """Map standard normal draws to the factor distribution."""
        x = np.asarray(x, dtype=float)
        if self.is_gauss:
            return x
        # work on the lower tail on both sides so extreme nodes stay finite
        lower = component_ppf(norm.cdf(-np.abs(x)), self.df_common)
        return np.where(x >= 0, -lower, lower)

    # -- idiosyncratic distribution -----------------------------------
    def idiosyncratic_cdf(self, x):
        return norm.cdf(x) if self.is_gauss else component_cdf(x, self.df_idiosyncratic)

    def idiosyncratic_ppf(self, u):
        return norm.ppf(u) if self.is_gauss else component_ppf(u, self.df_idiosyncratic)

    # -- latent marginal ----------------------------------------------
    def latent_cdf(self, x, norms):
        if self.is_gauss:
            return norm.cdf(x)
        return self._by_loading(np.asarray(x, dtype=float), norms, inverse=False)

    def latent_ppf(self, p, norms):
        if self.is_gauss:
            return norm.ppf(p)
        return self._by_loading(np.asarray(p, dtype=float), norms, inverse=True)

    def _by_loading(self, values, norms, inverse):
        norms = np.broadcast_to(np.asarray(norms, dtype=float), values.shape[-1:])
        out = np.empty_like(values)
        for a in np.unique(norms):
            cols = norms == a
            grid, cdf = _latent_table(self.df_common, self.df_idiosyncratic, float(a))
            if inverse:
                out[..., cols] = np.interp(values[..., cols], cdf, grid)
            else:
                out[..., cols] = np.interp(values[..., cols], grid, cdf)
        return out

    # -- conditional probabilities ------------------------------------
    def conditional_default(self, default_probability, loadings, factors):
        """
        Conditional default probabilities.

        :param default_probability: (..., N) unconditional default probabilities
        :param loadings: (N, K) systemic loadings
        :param factors: (M, K) factor realizations
        :return: (M, ..., N) conditional default probabilities
        """
        q = np.asarray(default_probability, dtype=float)
        b = np.atleast_2d(np.asarray(loadings, dtype=float))
        f = np.atleast_2d(np.asarray(factors, dtype=float))
        if b.shape[1] != f.shape[1]:
            raise ValidationError(f"Loadings have {b.shape[1]} factors, realizations have {f.shape[1]}")
        if not self.is_gauss and b.shape[1] > 1:
            raise ValidationError("The Student-t copula supports a single common factor")
        norms = np.minimum(np.sqrt((b * b).sum(axis=1)), 1.0)
        s = np.sqrt(np.maximum(1.0 - norms ** 2, 0.0))
        threshold = self.latent_ppf(np.clip(q, PROBABILITY_FLOOR, 1.0 - PROBABILITY_FLOOR), norms)
        shift = (f @ b.T).reshape((f.shape[0],) + (1,) * (q.ndim - 1) + (b.shape[0],))
        x = threshold[None, ...] - shift
        p = self.idiosyncratic_cdf(x / np.where(s > 0, s, 1.0))
        p = np.where(s > 0, p, (x >= 0).astype(float))
        return np.where(q <= 0.0, 0.0, np.where(q >= 1.0, 1.0, p))


def conditional_survival(copula: Copula, survival, loadings, factors):
    """Conditional survival probabilities, shape (M, ..., N)."""
    return 1.0 - copula.conditional_default(1.0 - np.asarray(survival, dtype=float), loadings, factors)
