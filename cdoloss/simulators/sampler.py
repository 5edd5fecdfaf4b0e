"""
Stratified sampling on the number of defaults at the horizon, and the
online moment accumulators the Monte Carlo engine streams into.
"""
import bisect
from typing import Optional, Sequence

import numpy as np

from ..errors import ValidationError


class RunningMoments:
    """Count, mean and sum of squared deviations (Welford), mergeable with
    Chan's pairwise update."""

    def __init__(self, shape=()):
        self.count = 0
        self.mean = np.zeros(shape)
        self.m2 = np.zeros(shape)

    def push(self, value):
        self.count += 1
        delta = value - self.mean
        self.mean = self.mean + delta / self.count
        self.m2 = self.m2 + delta * (value - self.mean)

    def update(self, values):
        """Add a batch of observations stacked along the first axis."""
        values = np.asarray(values, dtype=float)
        if len(values) == 0:
            return
        batch = RunningMoments(self.mean.shape)
        batch.count = len(values)
        batch.mean = values.mean(axis=0)
        batch.m2 = ((values - batch.mean) ** 2).sum(axis=0)
        self.merge(batch)

    def merge(self, other: "RunningMoments"):
        if other.count == 0:
            return
        if self.count == 0:
            self.count, self.mean, self.m2 = other.count, other.mean.copy(), other.m2.copy()
            return
        total = self.count + other.count
        delta = other.mean - self.mean
        self.mean = self.mean + delta * (other.count / total)
        self.m2 = self.m2 + other.m2 + delta * delta * (self.count * other.count / total)
        self.count = total

    @property
    def variance(self) -> np.ndarray:
        if self.count < 2:
            return np.zeros_like(self.mean)
        return self.m2 / (self.count - 1)

    def __repr__(self):
        return f"RunningMoments(count={self.count})"


def count_table(p) -> np.ndarray:
    """
    T[i, c] = P(exactly c defaults among names i .. N - 1) for independent
    default probabilities ``p``; row 0 is the full default-count distribution.
    """
    p = np.asarray(p, dtype=float)
    n = len(p)
    table = np.zeros((n + 1, n + 1))
    table[n, 0] = 1.0
    for i in range(n - 1, -1, -1):
        table[i] = table[i + 1] * (1.0 - p[i])
        table[i, 1:] += table[i + 1, :-1] * p[i]
    return table


def draw_with_count(p, table, count: int, uniforms) -> np.ndarray:
    """Which names default, given that exactly ``count`` of them do."""
    n = len(p)
    defaulted = np.zeros(n, dtype=bool)
    remaining = count
    for i in range(n):
        if remaining == 0:
            break
        total = table[i, remaining]
        if total <= 0.0:
            break
        if uniforms[i] * total < p[i] * table[i + 1, remaining - 1]:
            defaulted[i] = True
            remaining -= 1
    return defaulted


class StratifiedSampler:
    """
    Paths grouped by the number of defaults at the horizon.

    ``strata`` are the inclusive upper bounds of the default-count ranges
    (the last is extended to the number of names) and ``allocations`` the
    number of paths given to each; by default paths are split evenly.
    Paths of a stratum occupy one contiguous index range.
    """

    def __init__(self, n_names: int, sample_size: int, strata: Optional[Sequence[int]] = None,
                 allocations: Optional[Sequence[int]] = None):
        bounds = [n_names] if strata is None else [int(b) for b in strata]
        if any(b < 0 or b > n_names for b in bounds) or any(np.diff(bounds) <= 0):
            raise ValidationError(f"Strata must be ascending default counts in [0, {n_names}], not {strata}")
        if bounds[-1] < n_names:
            bounds.append(n_names)
        if allocations is None:
            if sample_size < len(bounds):
                raise ValidationError(f"{sample_size} paths cannot cover {len(bounds)} strata")
            share, extra = divmod(sample_size, len(bounds))
            allocations = [share + (1 if s < extra else 0) for s in range(len(bounds))]
        allocations = [int(a) for a in allocations]
        if len(allocations) != len(bounds):
            raise ValidationError(f"{len(allocations)} allocations for {len(bounds)} strata")
        if any(a < 1 for a in allocations) or sum(allocations) != sample_size:
            raise ValidationError(f"Allocations {allocations} must be positive and sum to {sample_size}")
        self.n_names = n_names
        self.sample_size = sample_size
        self.highs = bounds
        self.lows = [0] + [b + 1 for b in bounds[:-1]]
        self.allocations = allocations
        self.starts = list(np.cumsum([0] + allocations[:-1]))

    def __len__(self):
        return len(self.highs)

    def locate(self, index: int):
        """(stratum, position within the stratum) of a path index."""
        if not 0 <= index < self.sample_size:
            raise ValidationError(f"Path index {index} outside the sample of {self.sample_size}")
        s = bisect.bisect_right(self.starts, index) - 1
        return s, index - self.starts[s]

    def choose_count(self, stratum: int, position: int, pmf, u: float):
        """
        Default count for a path and its weight.

        The stratum estimate is the mean over its paths of weight * value.
        When the stratum has at least as many paths as count values, the
        counts are assigned systematically and weighted by P(k) / share;
        otherwise the count is drawn from the distribution restricted to the
        stratum and weighted by the stratum probability.
        """
        lo, hi = self.lows[stratum], self.highs[stratum]
        size = self.allocations[stratum]
        width = hi - lo + 1
        if size >= width:
            r = position % width
            share = size // width + (1 if r < size % width else 0)
            return lo + r, size * pmf[lo + r] / share
        probs = pmf[lo:hi + 1]
        mass = probs.sum()
        if mass <= 0.0:
            return lo, 0.0
        k = int(np.searchsorted(np.cumsum(probs) / mass, u, side="right"))
        return lo + min(k, width - 1), mass
