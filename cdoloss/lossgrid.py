"""
Loss grid recursion.

For a fixed factor realization the names are independent, so the
distribution of portfolio loss is built by adding names one at a time to a
discretized probability array:

    new_p[k] = p[k] * P(no loss) + sum_j p[k - shift_j] * P(outcome j)

Shifts that do not fall on a grid node are split between the two
neighbouring nodes so that the expected loss is preserved. Dates and factor
nodes are carried as leading array axes; names are processed sequentially.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .errors import ValidationError

LOG = logging.getLogger(__name__)

ALIGNMENT_TOLERANCE = 1e-9
MAX_GRID_NODES = 20000
DEFAULT_SUBDIVISIONS = 4


# ---------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------
def auto_grid_size(amounts, maximum: float = 1.0, subdivisions: int = DEFAULT_SUBDIVISIONS) -> float:
    """
    Largest step on which every amount falls on a node; when the amounts
    share no common unit, a fraction of the smallest amount.
    """
    a = np.abs(np.asarray(amounts, dtype=float)).ravel()
    a = a[a > 1e-15]
    if len(a) == 0:
        return 1.0
    unit = a.min()
    ratios = a / unit
    step = unit if np.all(np.abs(ratios - np.round(ratios)) < ALIGNMENT_TOLERANCE) else unit / subdivisions
    return max(step, maximum / MAX_GRID_NODES)


def grid_units(amount, step: float):
    """Amount in grid units, snapped to the node when within tolerance."""
    x = np.asarray(amount, dtype=float) / step
    r = np.round(x)
    return np.where(np.abs(x - r) < ALIGNMENT_TOLERANCE, r, x)


class LossGrid:
    """Node k holds loss (k - offset) * step; nodes below ``offset`` carry
    the gains of short names until they are folded back into zero."""

    def __init__(self, step: float, maximum: float, minimum: float = 0.0):
        if step <= 0:
            raise ValidationError(f"Grid size must be positive, not {step}")
        self.step = float(step)
        self.maximum = float(maximum)
        self.offset = int(np.ceil(-minimum / step - ALIGNMENT_TOLERANCE)) + 1 if minimum < 0 else 0
        self.size = self.offset + int(np.ceil(maximum / step - ALIGNMENT_TOLERANCE)) + 2

    def start(self, shape, shift) -> np.ndarray:
        """Point masses at ``shift`` (one per date, last axis of ``shape`` is dates)."""
        dist = np.zeros(tuple(shape) + (self.size,))
        x = self.offset + grid_units(shift, self.step)
        lo = np.floor(x).astype(int)
        frac = x - lo
        for d in range(dist.shape[-2]):
            _add_point(dist[..., d, :], lo[d], 1.0 - frac[d])
            if frac[d] > 0:
                _add_point(dist[..., d, :], lo[d] + 1, frac[d])
        return dist

    def fold(self, dist: np.ndarray) -> np.ndarray:
        """Clamp negative portfolio loss to zero and drop the offset region."""
        if self.offset == 0:
            return dist
        out = dist[..., self.offset:].copy()
        out[..., 0] += dist[..., :self.offset].sum(axis=-1)
        return out


def _add_point(row, k, mass):
    k = min(max(k, 0), row.shape[-1] - 1)
    row[..., k] += mass


def _add_shifted(out, src, k):
    n = out.shape[-1]
    if k == 0:
        out += src
    elif k > 0:
        if k < n:
            out[..., k:] += src[..., :n - k]
            out[..., -1] += src[..., n - k:].sum(axis=-1)
        else:
            out[..., -1] += src.sum(axis=-1)
    else:
        k = -k
        if k < n:
            out[..., :n - k] += src[..., k:]
            out[..., 0] += src[..., :k].sum(axis=-1)
        else:
            out[..., 0] += src.sum(axis=-1)


def convolve_outcomes(dist, probs, shifts):
    """
    Add one independent unit to a distribution.

    :param dist: (..., n) probabilities on the grid
    :param probs: (..., m) outcome probabilities, leading axes as ``dist``
    :param shifts: (m,) outcome amounts in grid units (may be fractional or negative)
    """
    out = np.zeros_like(dist)
    for j, shift in enumerate(np.asarray(shifts, dtype=float)):
        p = probs[..., j:j + 1]
        lo = int(np.floor(shift))
        frac = shift - lo
        if frac > 1.0 - ALIGNMENT_TOLERANCE:
            lo, frac = lo + 1, 0.0
        elif frac < ALIGNMENT_TOLERANCE:
            frac = 0.0
        if frac == 0.0:
            _add_shifted(out, dist * p, lo)
        else:
            _add_shifted(out, dist * (p * (1.0 - frac)), lo)
            _add_shifted(out, dist * (p * frac), lo + 1)
    return out


# ---------------------------------------------------------------------
# Distributions
# ---------------------------------------------------------------------
class LossDistribution:
    """Unconditional loss probabilities per date on the grid support."""

    def __init__(self, step: float, pmf, maximum: Optional[float] = None):
        self.step = float(step)
        self.pmf = np.atleast_2d(np.asarray(pmf, dtype=float))
        self.support = np.arange(self.pmf.shape[-1]) * self.step
        self.maximum = self.support[-1] if maximum is None else float(maximum)

    def __len__(self):
        return self.pmf.shape[0]

    def row(self, i: int) -> "LossDistribution":
        return LossDistribution(self.step, self.pmf[i:i + 1], self.maximum)

    def blend(self, i: int, j: int, weight: float) -> "LossDistribution":
        """(1 - weight) * row i + weight * row j."""
        pmf = (1.0 - weight) * self.pmf[i] + weight * self.pmf[j]
        return LossDistribution(self.step, pmf[None, :], self.maximum)

    def cumulative(self, levels) -> np.ndarray:
        """P(L <= level), shape (dates, levels)."""
        levels = np.atleast_1d(np.asarray(levels, dtype=float))
        cdf = np.cumsum(self.pmf, axis=-1)
        k = np.floor(levels / self.step + ALIGNMENT_TOLERANCE).astype(int)
        k = np.minimum(k, cdf.shape[-1] - 1)
        out = np.where(k >= 0, cdf[:, np.maximum(k, 0)], 0.0)
        return np.where(levels >= self.maximum - ALIGNMENT_TOLERANCE, 1.0, np.minimum(out, 1.0))

    def base_loss(self, levels) -> np.ndarray:
        """E[min(L, level)], shape (dates, levels)."""
        levels = np.atleast_1d(np.asarray(levels, dtype=float))
        return self.pmf @ np.minimum(self.support[:, None], np.maximum(levels, 0.0)[None, :])

    def expected(self) -> np.ndarray:
        return self.pmf @ self.support

    def to_grid(self, dates, levels, kind: str = "loss") -> "LossDistributionGrid":
        values = self.cumulative(levels) if kind == LossDistributionGrid.PROBABILITY else self.base_loss(levels)
        return LossDistributionGrid(pd.DatetimeIndex(dates), np.asarray(levels, dtype=float), values, kind)


@dataclass
class LossDistributionGrid:
    """Values over (date index, level index): either P(L <= level) or
    E[min(L, level)]. Read-only for the tranche mapper."""

    PROBABILITY = "probability"
    LOSS = "loss"

    dates: pd.DatetimeIndex
    levels: np.ndarray
    values: np.ndarray
    kind: str = "loss"

    def __post_init__(self):
        if self.kind not in (self.PROBABILITY, self.LOSS):
            raise ValidationError(f"Unknown distribution kind {self.kind!r}")
        self.values = np.asarray(self.values, dtype=float)
        if self.values.shape != (len(self.dates), len(self.levels)):
            raise ValidationError(f"Values of shape {self.values.shape} do not match "
                                  f"{len(self.dates)} dates x {len(self.levels)} levels")
        if np.any(np.diff(self.levels) <= 0):
            raise ValidationError("Loss levels must be strictly ascending")

    def date_index(self, date) -> int:
        try:
            return self.dates.get_loc(pd.Timestamp(date))
        except KeyError:
            raise ValidationError(f"{pd.Timestamp(date).date()} is not on the distribution date grid") from None

    def interpolate(self, date, level) -> float:
        return float(np.interp(level, self.levels, self.values[self.date_index(date)]))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=pd.Index(self.dates, name="date"),
                            columns=pd.Index(self.levels, name="level"))


# ---------------------------------------------------------------------
# Recursion engine
# ---------------------------------------------------------------------
@dataclass
class NameTerms:
    """Per-name inputs of the recursion, amounts as signed fractions of the
    basket's total principal. ``weights`` are the (second stage) recovery
    node weights; defaulted names only enter through the preset arrays."""

    default_probability: np.ndarray              # (D, N)
    loss: np.ndarray                             # (D, N, J)
    amortization: np.ndarray                     # (D, N, J)
    weights: np.ndarray                          # (D, N, J)
    prepay_probability: Optional[np.ndarray] = None   # (D, N), given no default first
    prepay_amount: Optional[np.ndarray] = None        # (N,)
    preset_loss: Optional[np.ndarray] = None          # (D,)
    preset_amortization: Optional[np.ndarray] = None  # (D,)
    shared: bool = False

    @property
    def n_dates(self) -> int:
        return self.default_probability.shape[0]

    @property
    def n_names(self) -> int:
        return self.default_probability.shape[1]


class RecursionEngine:
    """Factor-conditioned loss/amortization recursion integrated over the
    factor quadrature."""

    def __init__(self, copula, loadings, quadrature, grid_size=None, max_workers=None, progress=False):
        self.copula = copula
        self.loadings = np.atleast_2d(np.asarray(loadings, dtype=float))
        self.quadrature = quadrature
        self.grid_size = grid_size
        self.max_workers = max_workers
        self.progress = progress

    def grid(self, terms: NameTerms, amortization: bool = False) -> LossGrid:
        amounts, preset, extra = self._amounts(terms, amortization)
        up = np.maximum(amounts, 0.0).max(axis=2).sum(axis=1)
        down = np.maximum(-amounts, 0.0).max(axis=2).sum(axis=1)
        if extra is not None:
            up = up + np.maximum(extra, 0.0).sum()
            down = down + np.maximum(-extra, 0.0).sum()
        maximum = float(np.max(up + np.maximum(preset, 0.0)))
        minimum = -float(np.max(down))
        step = self.grid_size
        if step is None:
            candidates = amounts[amounts != 0.0]
            if extra is not None:
                candidates = np.concatenate([candidates, extra[extra != 0.0]])
            candidates = np.concatenate([candidates, preset[preset != 0.0]])
            step = auto_grid_size(candidates, max(maximum, 1e-12))
        return LossGrid(step, max(maximum, 0.0), minimum)

    def distribution(self, terms: NameTerms, amortization: bool = False) -> LossDistribution:
        timer = time.perf_counter()
        grid = self.grid(terms, amortization)

        def conditional(nodes):
            return self.conditional_pmf(terms, nodes, grid, amortization)

        pmf = self.quadrature.integrate(conditional, self.max_workers, self.progress)
        LOG.debug(f"{'Amortization' if amortization else 'Loss'} distribution: {terms.n_names} names, "
                  f"{terms.n_dates} dates, {len(self.quadrature)} nodes, {grid.size} levels "
                  f"in {time.perf_counter() - timer:.3f}s")
        return LossDistribution(grid.step, pmf, grid.maximum)

    def conditional_pmf(self, terms: NameTerms, nodes, grid: LossGrid, amortization: bool = False):
        """Conditional distributions, shape (len(nodes), D, levels)."""
        nodes = np.atleast_2d(nodes)
        amounts, preset, extra = self._amounts(terms, amortization)
        q = terms.default_probability
        loadings = self.loadings
        if terms.shared:
            q, loadings = q[:, :1], loadings[:1]
        p_default = self.copula.conditional_default(q, loadings, nodes)   # (m, D, N or 1)
        dist = grid.start((len(nodes), terms.n_dates), preset)

        for i in range(terms.n_names):
            pd_i = p_default[..., 0 if terms.shared else i]              # (m, D)
            p_prepay = None
            if extra is not None and terms.prepay_probability is not None:
                p_prepay = (1.0 - pd_i) * terms.prepay_probability[None, :, i]
            if not np.any(pd_i) and (p_prepay is None or not np.any(p_prepay)):
                continue
            w = terms.weights[:, i]                                      # (D, J)
            used = np.flatnonzero(np.any(w > 0, axis=0))
            if p_prepay is None:
                probs = [1.0 - pd_i]
            else:
                probs = [(1.0 - pd_i) * (1.0 - terms.prepay_probability[None, :, i])]
            probs.extend(pd_i * w[None, :, j] for j in used)
            shifts = amounts[:, i, used]                                 # (D, J)
            if p_prepay is not None:
                probs.append(p_prepay)
                shifts = np.concatenate([shifts, np.full((terms.n_dates, 1), extra[i])], axis=1)
            probs = np.stack(probs, axis=-1)                             # (m, D, outcomes)
            shifts = np.concatenate([np.zeros((terms.n_dates, 1)), grid_units(shifts, grid.step)], axis=1)
            if np.all(shifts == shifts[0]):
                dist = convolve_outcomes(dist, probs, shifts[0])
            else:
                for d in range(terms.n_dates):
                    dist[:, d] = convolve_outcomes(dist[:, d], probs[:, d], shifts[d])
        return grid.fold(dist)

    @staticmethod
    def _amounts(terms: NameTerms, amortization: bool):
        n_dates = terms.n_dates
        if amortization:
            preset = terms.preset_amortization
            amounts = terms.amortization
            extra = terms.prepay_amount if terms.prepay_probability is not None else None
        else:
            preset = terms.preset_loss
            amounts = terms.loss
            extra = None
        if preset is None:
            preset = np.zeros(n_dates)
        return amounts, np.asarray(preset, dtype=float), extra
