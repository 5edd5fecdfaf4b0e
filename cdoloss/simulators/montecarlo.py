"""
Monte Carlo loss engine.

Each path draws the systemic factor(s), a default count from the
stratified sampler, the names that default given that count, and then the
idiosyncratic terms consistent with that outcome. Latent values are
compared with the per-date thresholds to find default dates; refinance
curves give independent prepayment dates that compete with the default
dates (whichever comes first happens) and dispersed recoveries are Beta
draws. Per-path loss and amortization are streamed into per-stratum
accumulators.

Paths are processed in fixed blocks merged in index order, and every path
has its own addressed random stream, so results do not depend on the
number of workers.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import beta
from tqdm.auto import tqdm

from ..basket import BasketModel, consolidate, register_model
from ..copula import PROBABILITY_FLOOR, Copula
from ..curves import check_survival, year_fraction
from ..errors import ValidationError
from ..lossgrid import LossDistribution, LossGrid, auto_grid_size
from .rng import PathStreams
from .sampler import RunningMoments, StratifiedSampler, count_table, draw_with_count

LOG = logging.getLogger(__name__)


@dataclass
class MonteCarloOptions:
    sample_size: int = 10000
    seed: int = 0
    strata: Optional[Sequence[int]] = None
    allocations: Optional[Sequence[int]] = None
    block_size: int = 256

    def __post_init__(self):
        if self.sample_size < 1:
            raise ValidationError(f"Sample size must be positive, not {self.sample_size}")
        if self.block_size < 1:
            raise ValidationError(f"Block size must be positive, not {self.block_size}")


@dataclass
class PathOutcome:
    index: int
    stratum: int
    weight: float
    loss: np.ndarray              # (D,)
    amortization: np.ndarray      # (D,)
    defaults: np.ndarray          # (D,)
    latent: np.ndarray            # (random names,)


@dataclass
class MonteCarloResult:
    dates: pd.DatetimeIndex
    loss: LossDistribution
    amortization: LossDistribution
    mean: np.ndarray              # (3, D): loss, amortization, defaults
    variance: np.ndarray          # (3, D) of the estimates
    strata: List[RunningMoments]

    @property
    def expected_loss(self) -> np.ndarray:
        return self.mean[0]

    @property
    def expected_amortization(self) -> np.ndarray:
        return self.mean[1]

    @property
    def expected_defaults(self) -> np.ndarray:
        return self.mean[2]

    @property
    def standard_error(self) -> np.ndarray:
        return np.sqrt(self.variance)


def beta_recovery(mean, dispersion, u):
    """Beta quantile with the given mean and standard deviation."""
    if dispersion <= 0.0 or mean <= 0.0 or mean >= 1.0:
        return mean
    variance = dispersion * dispersion
    if variance >= mean * (1.0 - mean):
        raise ValidationError(f"Recovery dispersion {dispersion} too large for mean recovery {mean}")
    total = mean * (1.0 - mean) / variance - 1.0
    return float(beta.ppf(u, mean * total, (1.0 - mean) * total))


def _deposit(hist, values, weight, step):
    """Add ``weight`` at ``values`` (one per date), split between nodes."""
    x = np.maximum(values, 0.0) / step
    lo = np.minimum(np.floor(x).astype(int), hist.shape[1] - 1)
    frac = np.clip(x - lo, 0.0, 1.0)
    rows = np.arange(hist.shape[0])
    hist[rows, lo] += weight * (1.0 - frac)
    hist[rows, np.minimum(lo + 1, hist.shape[1] - 1)] += weight * frac


class MonteCarloEngine:
    """
    Simulates ``names`` on ``dates``.

    ``aggregate(loss_rate, amortization_rate)`` turns the (D, N) per-name
    loss and amortization rates (fractions of each name's own principal)
    of one path into the (D,) portfolio figures; by default the
    principal-weighted sum over ``total``.
    """

    def __init__(self, names, principals, loadings, copula: Copula, as_of, dates, total=None,
                 options: Optional[MonteCarloOptions] = None,
                 aggregate: Optional[Callable] = None, loss_step=None, amortization_step=None,
                 max_workers=None, progress=False):
        self.names = list(names)
        self.principals = np.asarray(principals, dtype=float)
        self.total = float(total) if total is not None else float(self.principals[self.principals > 0].sum())
        self.loadings = np.atleast_2d(np.asarray(loadings, dtype=float))
        if self.loadings.shape[0] != len(self.names):
            raise ValidationError(f"{self.loadings.shape[0]} loading rows for {len(self.names)} names")
        if not copula.is_gauss and self.loadings.shape[1] > 1:
            raise ValidationError("The Student-t copula supports a single common factor")
        self.copula = copula
        self.as_of = pd.Timestamp(as_of)
        self.dates = pd.DatetimeIndex(dates)
        self.options = options if options is not None else MonteCarloOptions()
        self.aggregate = aggregate if aggregate is not None else self._weighted_sum
        self.max_workers = max_workers
        self.progress = progress

        n_dates = len(self.dates)
        self.random = [i for i, n in enumerate(self.names) if n.default_date is None]
        self.preset = [i for i, n in enumerate(self.names) if n.default_date is not None]
        self.random_names = random_names = [self.names[i] for i in self.random]

        q = np.zeros((n_dates, len(self.random)))
        for j, name in enumerate(random_names):
            q[:, j] = 1.0 - check_survival(name.survival_curve.survival(self.dates), name.identifier)
        self.default_probability = q
        self.b = self.loadings[self.random]
        self.norms = np.minimum(np.sqrt((self.b * self.b).sum(axis=1)), 1.0)
        self.idiosyncratic = np.sqrt(np.maximum(1.0 - self.norms ** 2, 0.0))
        thresholds = self.copula.latent_ppf(np.clip(q, PROBABILITY_FLOOR, 1.0 - PROBABILITY_FLOOR), self.norms)
        self.thresholds = np.where(q <= 0.0, -np.inf, np.where(q >= 1.0, np.inf, thresholds))

        self.recovery = np.column_stack([n.recovery_rate(self.dates) for n in self.names])   # (D, N)
        self.dispersion = np.array([n.recovery_dispersion for n in self.names])
        self.prepay = None
        if any(n.refinance_curve is not None for n in random_names):
            self.prepay = np.zeros_like(q)
            for j, name in enumerate(random_names):
                if name.refinance_curve is not None:
                    self.prepay[:, j] = 1.0 - check_survival(name.refinance_curve.survival(self.dates),
                                                             f"{name.identifier} refinance")

        self.preset_defaulted = np.zeros((n_dates, len(self.names)), dtype=bool)
        self.preset_recovery = np.zeros(len(self.names))
        for i in self.preset:
            name = self.names[i]
            self.preset_defaulted[:, i] = name.defaulted_by(self.dates)
            self.preset_recovery[i] = name.recovery_rate(pd.DatetimeIndex([name.default_date]))[0]

        scale = np.abs(self.principals) / self.total
        if loss_step is None:
            loss_step = auto_grid_size((scale * (1.0 - self.recovery)).ravel())
        if amortization_step is None:
            amounts = (scale * self.recovery).ravel()
            if self.prepay is not None:
                amounts = np.concatenate([amounts, scale])
            amortization_step = auto_grid_size(amounts)
        self.loss_grid = LossGrid(loss_step, 1.0)
        self.amortization_grid = LossGrid(amortization_step, 1.0)

        self.sampler = StratifiedSampler(len(self.random), self.options.sample_size,
                                         self.options.strata, self.options.allocations)
        self.streams = PathStreams(self.options.seed)

    def _weighted_sum(self, loss_rate, amortization_rate):
        return loss_rate @ self.principals / self.total, amortization_rate @ self.principals / self.total

    # -- one path ------------------------------------------------------
    def path(self, index: int) -> PathOutcome:
        rng = self.streams.generator(index)
        n_random = len(self.random)
        n_dates = len(self.dates)
        stratum, position = self.sampler.locate(index)
        z = rng.standard_normal(self.loadings.shape[1])
        u = rng.random(1 + 4 * n_random)
        u_select, u_idio, u_prepay, u_recovery = u[1:].reshape(4, n_random)

        f = self.copula.factor_from_normal(z)
        p = self.copula.conditional_default(self.default_probability[-1], self.b, f[None, :])[0]
        table = count_table(p)
        count, weight = self.sampler.choose_count(stratum, position, table[0], u[0])
        forced = draw_with_count(p, table, count, u_select)

        # idiosyncratic terms conditional on the horizon outcome
        v = np.where(forced, u_idio * p, p + u_idio * (1.0 - p))
        eps = self.copula.idiosyncratic_ppf(np.clip(v, PROBABILITY_FLOOR, 1.0 - PROBABILITY_FLOOR))
        x = self.b @ f + np.where(self.idiosyncratic > 0, self.idiosyncratic * eps, 0.0)
        horizon = self.thresholds[-1]
        x = np.where(forced, np.minimum(x, horizon), np.maximum(x, np.nextafter(horizon, np.inf)))
        default_index = (self.thresholds < x[None, :]).sum(axis=0)
        prepay_index = np.full(n_random, n_dates)
        if self.prepay is not None:
            prepay_index = (self.prepay <= u_prepay[None, :]).sum(axis=0)
            default_index, prepay_index = self._first_event(default_index, prepay_index, x, u_prepay)

        steps = np.arange(n_dates)[:, None]
        defaulted = np.array(self.preset_defaulted)
        defaulted[:, self.random] = steps >= default_index[None, :]
        recovery = np.array(self.preset_recovery)
        for j, i in enumerate(self.random):
            if default_index[j] < n_dates:
                mean = self.recovery[default_index[j], i]
                recovery[i] = beta_recovery(mean, self.dispersion[i], u_recovery[j])
        prepaid = np.zeros_like(defaulted)
        prepaid[:, self.random] = steps >= prepay_index[None, :]

        loss_rate = defaulted * (1.0 - recovery)[None, :]
        amortization_rate = defaulted * recovery[None, :] + prepaid
        loss, amortization = self.aggregate(loss_rate, amortization_rate)
        return PathOutcome(index, stratum, weight, np.maximum(loss, 0.0), np.maximum(amortization, 0.0),
                           defaulted.sum(axis=1).astype(float), x)

    def _first_event(self, default_index, prepay_index, x, u_prepay):
        """Keep the earlier of default and prepayment of each name; the
        other event never happens."""
        n_dates = len(self.dates)
        prepay_first = prepay_index < default_index
        tie = np.flatnonzero((prepay_index == default_index) & (default_index < n_dates))
        if len(tie):
            u = self.copula.latent_cdf(x[None, :], self.norms)[0]
            for j in tie:
                name = self.random_names[j]
                prepay_first[j] = name.refinance_curve.solve(1.0 - u_prepay[j]) \
                    < name.survival_curve.solve(1.0 - u[j])
        return np.where(prepay_first, n_dates, default_index), np.where(prepay_first, prepay_index, n_dates)

    # -- blocks --------------------------------------------------------
    def _blocks(self, indices):
        size = self.options.block_size
        return [indices[i:i + size] for i in range(0, len(indices), size)]

    def _run(self, func, indices):
        blocks = self._blocks(list(indices))
        if self.max_workers is None or self.max_workers <= 1 or len(blocks) == 1:
            return [func(b) for b in tqdm(blocks, desc="Path blocks", disable=not self.progress)]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(tqdm(pool.map(func, blocks), total=len(blocks), desc="Path blocks",
                             disable=not self.progress))

    def _accumulate(self, block):
        n_dates = len(self.dates)
        moments = {}
        loss_hist = {}
        amortization_hist = {}
        values = {}
        for index in block:
            outcome = self.path(index)
            s = outcome.stratum
            if s not in moments:
                moments[s] = RunningMoments((3, n_dates))
                loss_hist[s] = np.zeros((n_dates, self.loss_grid.size))
                amortization_hist[s] = np.zeros((n_dates, self.amortization_grid.size))
                values[s] = []
            values[s].append(outcome.weight * np.stack([outcome.loss, outcome.amortization, outcome.defaults]))
            if outcome.weight != 0.0:
                _deposit(loss_hist[s], outcome.loss, outcome.weight, self.loss_grid.step)
                _deposit(amortization_hist[s], outcome.amortization, outcome.weight, self.amortization_grid.step)
        for s in moments:
            moments[s].update(np.array(values[s]))
        return moments, loss_hist, amortization_hist

    def simulate(self) -> MonteCarloResult:
        timer = time.perf_counter()
        n_dates = len(self.dates)
        n_strata = len(self.sampler)
        moments = [RunningMoments((3, n_dates)) for _ in range(n_strata)]
        loss_hist = [np.zeros((n_dates, self.loss_grid.size)) for _ in range(n_strata)]
        amortization_hist = [np.zeros((n_dates, self.amortization_grid.size)) for _ in range(n_strata)]

        for block_moments, block_loss, block_amortization in self._run(self._accumulate,
                                                                      range(self.options.sample_size)):
            for s in sorted(block_moments):
                moments[s].merge(block_moments[s])
                loss_hist[s] += block_loss[s]
                amortization_hist[s] += block_amortization[s]

        sizes = self.sampler.allocations
        mean = sum(m.mean for m in moments)
        variance = sum(m.variance / n for m, n in zip(moments, sizes))
        loss_pmf = sum(h / n for h, n in zip(loss_hist, sizes))
        amortization_pmf = sum(h / n for h, n in zip(amortization_hist, sizes))
        LOG.info(f"Simulated {self.options.sample_size} paths of {len(self.names)} names in {n_strata} "
                 f"strata in {time.perf_counter() - timer:.2f}s; expected loss at horizon "
                 f"{mean[0, -1]:.6f} +/- {np.sqrt(variance[0, -1]):.2e}")
        return MonteCarloResult(self.dates, LossDistribution(self.loss_grid.step, loss_pmf, 1.0),
                                LossDistribution(self.amortization_grid.step, amortization_pmf, 1.0),
                                mean, variance, moments)

    # -- inspection ----------------------------------------------------
    def _outcomes(self, indices) -> List[PathOutcome]:
        return [o for block in self._run(lambda b: [self.path(i) for i in b], indices) for o in block]

    def simulate_paths(self, indices) -> pd.DataFrame:
        """Per-path figures indexed by (Path, Date)."""
        outcomes = self._outcomes(indices)
        idx = pd.MultiIndex.from_product([[o.index for o in outcomes], self.dates], names=["Path", "Date"])
        return pd.DataFrame({
            "loss": np.concatenate([o.loss for o in outcomes]),
            "amortization": np.concatenate([o.amortization for o in outcomes]),
            "defaults": np.concatenate([o.defaults for o in outcomes]),
            "weight": np.repeat([o.weight for o in outcomes], len(self.dates)),
        }, index=idx)

    def default_times(self, indices) -> pd.DataFrame:
        """Default times in years of the random names, ``inf`` when the
        curve never gets there."""
        outcomes = self._outcomes(indices)
        random_names = self.random_names
        rows = []
        for outcome in outcomes:
            u = self.copula.latent_cdf(outcome.latent[None, :], self.norms)[0]
            rows.append([n.survival_curve.solve(1.0 - ui) for n, ui in zip(random_names, u)])
        return pd.DataFrame(rows, index=pd.Index([o.index for o in outcomes], name="Path"),
                            columns=[n.identifier for n in random_names])


@register_model("monte_carlo")
class MonteCarloBasket(BasketModel):
    """Simulated distributions on the basket dates; other dates are
    interpolated linearly in time."""

    def __init__(self, basket, options: Optional[MonteCarloOptions] = None):
        super().__init__(basket)
        self.options = options if options is not None else MonteCarloOptions()
        self._result = None

    def reset(self):
        super().reset()
        self._result = None

    def engine(self, loadings=None, grid_size=None) -> MonteCarloEngine:
        credits = consolidate(self.basket.names, self.basket.principals, self.loadings.values)
        return MonteCarloEngine([c.name for c in credits], [c.principal for c in credits],
                                [c.loading for c in credits], self.basket.copula, self.basket.as_of,
                                self.basket.dates, self.basket.total_principal, self.options,
                                loss_step=grid_size if grid_size is not None else self.settings.grid_size,
                                max_workers=self.settings.max_workers, progress=self.settings.progress)

    @property
    def result(self) -> MonteCarloResult:
        if self._result is None:
            self._result = self.engine().simulate()
        return self._result

    def _position(self, date):
        times = year_fraction(self.basket.as_of, self.basket.dates)
        t = year_fraction(self.basket.as_of, pd.Timestamp(date))
        if t < times[0] - 1e-12 or t > times[-1] + 1e-12:
            raise ValidationError(f"{pd.Timestamp(date).date()} is outside the simulated dates")
        j = int(np.clip(np.searchsorted(times, t), 1, len(times) - 1)) if len(times) > 1 else 0
        if len(times) == 1:
            return 0, 0, 0.0
        weight = (t - times[j - 1]) / (times[j] - times[j - 1])
        return j - 1, j, float(np.clip(weight, 0.0, 1.0))

    def distribution(self, date, amortization: bool = False) -> LossDistribution:
        dist = self.result.amortization if amortization else self.result.loss
        i, j, weight = self._position(date)
        return dist.blend(i, j, weight)

    def _interpolate(self, series, date) -> float:
        i, j, weight = self._position(date)
        return float((1.0 - weight) * series[i] + weight * series[j])

    def expected_defaults(self, date) -> float:
        return self._interpolate(self.result.expected_defaults, date)

    def standard_error(self, date) -> float:
        """Standard error of the expected loss estimate."""
        return self._interpolate(self.result.standard_error[0], date)

    def simulate_paths(self, indices) -> pd.DataFrame:
        return self.engine().simulate_paths(indices)
