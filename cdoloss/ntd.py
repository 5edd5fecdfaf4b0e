"""
Nth-to-default baskets.

The recursion runs on the default count instead of the loss. When every
credit of a window loses the same amount on default, the count axis maps
back to loss exactly and the contract is the CDO tranche
[(1 - R)(first - 1)/N, (1 - R)(first - 1 + covered)/N]. Otherwise each
credit's own loss is weighted by the probability that its default is one of
``first`` .. ``last``, worked out along a time path conditional on the
factor.

Several windows can run on consecutive sub-baskets; their losses add up.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .basket import BasketModel, Credit, build_terms, consolidate, register_model
from .curves import DAYS_PER_YEAR, check_survival
from .errors import UnsupportedConfigurationError, ValidationError
from .lossgrid import LossDistribution
from .tranche import Tranche, check_ntd_window

LOG = logging.getLogger(__name__)

PATH_STEP_DAYS = 30


@dataclass
class NtdWindow:
    """Defaults ``first`` .. ``last`` among basket entries ``start`` .. ``end - 1``."""

    start: int
    end: int
    first: int
    num_covered: int
    credits: List[Credit] = field(default_factory=list, repr=False)

    @property
    def last(self) -> int:
        return self.first + self.num_covered - 1


def ranked_loss(p: np.ndarray, amounts: np.ndarray, first: int, last: int) -> np.ndarray:
    """
    Expected loss of the defaults ranked ``first`` .. ``last``, conditional
    on the factor.

    :param p: (m, T, N) conditional probabilities that each name has
        defaulted by each point of a time path
    :param amounts: (T, N) loss of each name when it defaults in the step
        ending at each path point
    :return: (m,) expected losses

    Names are independent given the factor. A name defaulting in a step is
    ranked behind the other names' defaults counted halfway through the
    step, which is exact as the steps shrink.
    """
    m, steps, n = p.shape
    p = np.concatenate([np.zeros((m, 1, n)), p], axis=1)

    def products(order):
        # count distributions of the first k names of ``order``, truncated to 0 .. last - 1
        out = np.zeros((n + 1, m, steps + 1, last))
        out[0, ..., 0] = 1.0
        for k, i in enumerate(order):
            hit = p[..., i, None]
            out[k + 1] = out[k] * (1.0 - hit)
            out[k + 1, ..., 1:] += out[k, ..., :-1] * hit
        return out

    before = products(range(n))
    after = products(reversed(range(n)))
    total = np.zeros(m)
    for i in range(n):
        head, tail = before[i], after[n - 1 - i]
        inside = np.zeros((m, steps + 1))
        for count in range(first - 1, last):
            for a in range(count + 1):
                inside += head[..., a] * tail[..., count - a]
        step_default = np.diff(p[..., i], axis=1)
        halfway = 0.5 * (inside[:, :-1] + inside[:, 1:])
        total += (step_default * halfway * amounts[None, :, i]).sum(axis=1)
    return total


@register_model("ntd")
class NtdBasket(BasketModel):
    """Protection on defaults ``first`` .. ``first + num_covered - 1``.

    ``sub_baskets`` replaces the single window with a list of
    ``(end_index, first, num_covered)``; each sub-basket starts where the
    previous one ended and the last one must end with the basket.
    """

    allows_shorts = False
    allows_refinance = False

    def __init__(self, basket, first: int = 1, num_covered: int = 1,
                 sub_baskets: Optional[Sequence[Tuple[int, int, int]]] = None):
        super().__init__(basket)
        self.sub_baskets = [(len(basket), first, num_covered)] if sub_baskets is None else \
            [tuple(int(v) for v in s) for s in sub_baskets]
        self.windows: List[NtdWindow] = []
        self._build_windows()

    def _build_windows(self):
        ends = [s[0] for s in self.sub_baskets]
        if not ends or ends[-1] != len(self.basket) or np.any(np.diff([0] + ends) <= 0):
            raise ValidationError(f"Sub-basket ends {ends} must rise strictly up to {len(self.basket)}")
        principals = self.basket.principals
        windows = []
        start = 0
        for end, first, num_covered in self.sub_baskets:
            credits = consolidate(self.basket.names[start:end], principals[start:end],
                                  self.loadings.values[start:end])
            check_ntd_window(first, num_covered, len(credits))
            windows.append(NtdWindow(start, end, first, num_covered, credits))
            start = end
        self.windows = windows
        self.credits = consolidate(self.basket.names, principals, self.loadings.values)
        LOG.debug("NTD windows: " + ", ".join(f"defaults {w.first}..{w.last} of {len(w.credits)} credits"
                                              for w in windows))

    def reset(self):
        super().reset()
        self._build_windows()

    def _lookup(self, key, date, compute) -> LossDistribution:
        date = pd.Timestamp(date)
        if date in self.basket.dates:
            if key not in self._cache:
                self._cache[key] = compute(self.basket.dates)
            return self._cache[key].row(self.basket.dates.get_loc(date))
        key = key + (date,)
        if key not in self._cache:
            self._cache[key] = compute(pd.DatetimeIndex([date]))
        return self._cache[key]

    def _counts(self, credits, dates) -> LossDistribution:
        # the count distribution does not depend on recovery
        terms, loadings = build_terms(credits, dates, self.basket.total_principal, counts=True)
        return self.engine(loadings, grid_size=1.0).distribution(terms)

    def _distribution(self, dates, amortization):
        return self._counts(self.credits, dates)

    def window_distribution(self, index: int, date) -> LossDistribution:
        """Default-count distribution of one sub-basket."""
        window = self.windows[index]
        if len(self.windows) == 1:
            return self.distribution(date)
        return self._lookup(("window", index), date, lambda dates: self._counts(window.credits, dates))

    def count_distribution(self, date) -> np.ndarray:
        """P(D = k), k = 0 .. number of credits."""
        dist = self.distribution(date)
        pmf = np.zeros(len(self.credits) + 1)
        n = min(len(pmf), dist.pmf.shape[-1])
        pmf[:n] = dist.pmf[0, :n]
        return pmf

    def _per_default(self, credits, date, amortization=False):
        """Expected loss (or recovery) per default of each credit and its default probability."""
        dates = pd.DatetimeIndex([pd.Timestamp(date)])
        terms, _ = build_terms(credits, dates, self.basket.total_principal,
                               self.settings.quadrature_points_second)
        amounts = terms.amortization if amortization else terms.loss
        per_default = list((amounts[0] * terms.weights[0]).sum(axis=1))
        probability = list(terms.default_probability[0])
        for credit in credits:
            if credit.name.default_date is None:
                continue
            rate = credit.name.recovery_rate(pd.DatetimeIndex([credit.name.default_date]))[0]
            share = rate if amortization else 1.0 - rate
            per_default.append(credit.principal * share / self.basket.total_principal)
            probability.append(float(credit.name.defaulted_by(dates)[0]))
        return np.array(per_default), np.array(probability)

    def _uniform(self, credits, date, amortization=False) -> bool:
        per_default, _ = self._per_default(credits, date, amortization)
        return bool(np.allclose(per_default, per_default[0], rtol=1e-10, atol=0.0))

    def unit(self, date, amortization: bool = False) -> float:
        """Probability-weighted average loss (or recovery) per default."""
        per_default, probability = self._per_default(self.credits, date, amortization)
        if probability.sum() == 0.0:
            return float(per_default.mean())
        return float(per_default @ probability / probability.sum())

    def _pool(self, date, amortization) -> LossDistribution:
        points = self.settings.quadrature_points_second
        return self._lookup(("pool", amortization), date,
                            lambda dates: self._recursion(dates, amortization, points))

    def cumulative(self, date, levels, amortization=False):
        levels = np.atleast_1d(np.asarray(levels, dtype=float))
        if not self._uniform(self.credits, date, amortization):
            return self._pool(date, amortization).cumulative(levels)[0]
        unit = self.unit(date, amortization)
        if unit <= 0.0:
            return np.where(levels >= 0.0, 1.0, 0.0)
        return self.distribution(date).cumulative(levels / unit)[0]

    def base_loss(self, date, levels, amortization=False):
        levels = np.atleast_1d(np.asarray(levels, dtype=float))
        if not self._uniform(self.credits, date, amortization):
            return self._pool(date, amortization).base_loss(levels)[0]
        unit = self.unit(date, amortization)
        if unit <= 0.0:
            return np.zeros(len(levels))
        return unit * self.distribution(date).base_loss(levels / unit)[0]

    def tranche(self, date, sub_basket: int = 0) -> Tranche:
        """Equivalent loss tranche on ``date``; needs a uniform loss per default."""
        window = self.windows[sub_basket]
        if not self._uniform(window.credits, date):
            raise UnsupportedConfigurationError("An NTD on credits with different losses has no equivalent tranche")
        unit = self._per_default(window.credits, date)[0][0]
        return Tranche(unit * (window.first - 1), min(unit * window.last, 1.0))

    def window_loss(self, date, sub_basket: int = 0) -> float:
        """Expected loss of one sub-basket's covered defaults, as a fraction of total principal."""
        window = self.windows[sub_basket]
        if self._uniform(window.credits, date):
            unit = self._per_default(window.credits, date)[0][0]
            counts = self.window_distribution(sub_basket, date).base_loss([window.first - 1, window.last])[0]
            return float(unit * (counts[1] - counts[0]))
        return self._ranked_window_loss(window, pd.Timestamp(date))

    def ntd_loss(self, date) -> float:
        """Expected loss of the covered defaults, summed over sub-baskets."""
        return float(sum(self.window_loss(date, k) for k in range(len(self.windows))))

    def _path(self, credits, date) -> pd.DatetimeIndex:
        as_of = self.basket.as_of
        end = max((date - as_of).days, 0)
        days = [np.arange(0, end, PATH_STEP_DAYS), [end]]
        for credit in credits:
            curve = credit.name.survival_curve
            days.append((curve.as_of - as_of).days + np.round(curve.knot_times() * DAYS_PER_YEAR).astype(int))
            if credit.name.default_date is not None:
                days.append([(credit.name.default_date - as_of).days])
        days = np.concatenate(days)
        days = np.union1d(days[(days >= 0) & (days <= end)], [0])
        return as_of + pd.to_timedelta(days, unit="D")

    def _ranked_window_loss(self, window: NtdWindow, date) -> float:
        total = self.basket.total_principal
        path = self._path(window.credits, date)
        random = [c for c in window.credits if c.name.default_date is None]
        preset = [c for c in window.credits if c.name.default_date is not None]
        amounts = np.zeros((len(path), len(random) + len(preset)))
        q = np.zeros((len(path), len(random)))
        for i, credit in enumerate(random):
            name = credit.name
            q[:, i] = 1.0 - check_survival(name.survival_curve.survival(path), name.identifier)
            amounts[:, i] = credit.principal * (1.0 - name.recovery_rate(path)) / total
        hit = np.zeros((len(path), len(preset)))
        for j, credit in enumerate(preset):
            name = credit.name
            hit[:, j] = name.defaulted_by(path)
            rate = name.recovery_rate(pd.DatetimeIndex([name.default_date]))[0]
            amounts[:, len(random) + j] = credit.principal * (1.0 - rate) / total
        n_factors = self.loadings.n_factors
        loadings = np.array([c.loading for c in random]).reshape(len(random), n_factors)
        copula = self.basket.copula

        def conditional(nodes):
            p = np.zeros((len(nodes), len(path), amounts.shape[1]))
            if random:
                p[..., :len(random)] = copula.conditional_default(q, loadings, nodes)
            p[..., len(random):] = hit[None]
            return ranked_loss(p, amounts, window.first, window.last)

        loss = float(self.quadrature.integrate(conditional, self.settings.max_workers))
        LOG.debug(f"Ranked NTD loss on {len(path)} path points: {loss:.6g}")
        return loss

    def ntd_probability(self, date, sub_basket: int = 0) -> float:
        """Probability that the ``first``-th default of a sub-basket has happened."""
        window = self.windows[sub_basket]
        return float(1.0 - self.window_distribution(sub_basket, date).cumulative([window.first - 1])[0, 0])

    def expected_defaults(self, date) -> float:
        return float(self.distribution(date).expected()[0])
