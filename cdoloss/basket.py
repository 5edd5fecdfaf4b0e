"""
Basket model family.

A ``Basket`` holds the names, the date and loss-level grids and the
dependence inputs. A ``BasketModel`` strategy turns it into loss and
amortization distributions. Every strategy answers the same questions
(``accumulated_loss``, ``amortized_amount``, ``calc_loss_distribution``,
``loss_distribution``) and supports ``reset`` and ``set_factor``; strategies
are looked up by kind with ``create_basket_model``.
"""
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.integrate import quad_vec
from scipy.optimize import brentq
from scipy.stats import binom

from .copula import Copula
from .correlation import FactorLoadings
from .curves import Name, check_survival, competing_risks
from .errors import UnsupportedConfigurationError, ValidationError
from .lossgrid import LossDistribution, LossDistributionGrid, NameTerms, RecursionEngine
from .quadrature import FactorQuadrature, recovery_quadrature

LOG = logging.getLogger(__name__)

BASKET_MODELS: Dict[str, type] = {}


def register_model(kind: str):
    def decorator(cls):
        cls.kind = kind
        BASKET_MODELS[kind] = cls
        return cls
    return decorator


def create_basket_model(kind: str, basket: "Basket", **kwargs) -> "BasketModel":
    """Build the strategy registered under ``kind`` for ``basket``."""
    try:
        cls = BASKET_MODELS[kind]
    except KeyError:
        raise ValidationError(f"Unknown basket model {kind!r}, choose from {sorted(BASKET_MODELS)}") from None
    return cls(basket, **kwargs)


# ---------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------
@dataclass
class BasketSettings:
    """Numerical controls shared by all strategies."""

    grid_size: Optional[float] = None
    quadrature_points: int = 25
    quadrature_points_second: int = 5
    adaptive_quadrature: bool = False
    max_workers: Optional[int] = None
    effective_digits: int = 9
    progress: bool = False

    def __post_init__(self):
        if self.grid_size is not None and self.grid_size <= 0:
            raise ValidationError(f"Grid size must be positive, not {self.grid_size}")
        if self.quadrature_points < 1 or self.quadrature_points_second < 1:
            raise ValidationError("Quadrature orders must be positive")
        if not 1 <= self.effective_digits <= 15:
            raise ValidationError(f"Effective digits must lie in [1, 15], not {self.effective_digits}")

    @property
    def tolerance(self) -> float:
        return 10.0 ** -self.effective_digits


class Basket:
    """Names plus the grids and dependence model they are priced on.

    Curves are referenced, never copied. ``correlation`` may be a scalar, a
    K x N factor matrix, a full N x N correlation matrix or ready-made
    ``FactorLoadings``.
    """

    def __init__(self, names: List[Name], as_of, dates, levels=None, correlation=0.0,
                 copula: Optional[Copula] = None, settings: Optional[BasketSettings] = None,
                 n_factors: Optional[int] = None):
        self.names = list(names)
        if not self.names:
            raise ValidationError("A basket needs at least one name")
        self.as_of = pd.Timestamp(as_of)
        self.dates = pd.DatetimeIndex(dates)
        if len(self.dates) == 0 or not self.dates.is_monotonic_increasing or not self.dates.is_unique:
            raise ValidationError("Basket dates must be non-empty and strictly ascending")
        if self.dates[0] <= self.as_of:
            raise ValidationError(f"Basket dates must follow the as-of date {self.as_of.date()}")
        self.levels = np.linspace(0.0, 1.0, 101) if levels is None else np.asarray(levels, dtype=float)
        if self.levels.ndim != 1 or len(self.levels) == 0 or np.any(np.diff(self.levels) <= 0) \
                or self.levels[0] < 0.0 or self.levels[-1] > 1.0:
            raise ValidationError("Loss levels must be strictly ascending fractions in [0, 1]")
        self.loadings = FactorLoadings.create(correlation, len(self.names), n_factors)
        self.copula = copula if copula is not None else Copula.gauss()
        self.settings = settings if settings is not None else BasketSettings()
        self.check_principals()
        LOG.debug(f"Basket of {len(self.names)} names, {len(self.dates)} dates, "
                  f"{self.loadings.n_factors} factor(s), {self.copula.copula_type.value} copula")

    def __len__(self):
        return len(self.names)

    @property
    def principals(self) -> np.ndarray:
        """Principals as the names currently hold them."""
        return np.array([n.principal for n in self.names], dtype=float)

    @property
    def total_principal(self) -> float:
        principals = self.principals
        return float(principals[principals > 0].sum())

    def check_principals(self):
        if self.total_principal <= 0:
            raise ValidationError("A basket needs a positive long principal")

    def survival(self, dates=None) -> np.ndarray:
        """(dates, names) survival probabilities."""
        dates = self.dates if dates is None else pd.DatetimeIndex(dates)
        return np.column_stack([check_survival(n.survival_curve.survival(dates), n.identifier)
                                for n in self.names])

    @property
    def has_shorts(self) -> bool:
        return bool(np.any(self.principals < 0))

    @property
    def has_refinance(self) -> bool:
        return any(n.refinance_curve is not None for n in self.names)

    @property
    def has_dispersion(self) -> bool:
        return any(n.recovery_dispersion > 0 for n in self.names)

    @property
    def has_defaulted(self) -> bool:
        return any(n.default_date is not None for n in self.names)


# ---------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------
@dataclass
class Credit:
    """One underlying credit; basket entries with the same identifier are
    pieces of it."""

    name: Name
    principal: float
    loading: np.ndarray


def _same_credit(credit: Credit, name: Name, loading) -> bool:
    other = credit.name
    same_recovery = other.recovery is name.recovery or other.recovery == name.recovery
    return (other.survival_curve is name.survival_curve and same_recovery
            and other.refinance_curve is name.refinance_curve
            and other.default_date == name.default_date
            and other.recovery_dispersion == name.recovery_dispersion
            and np.allclose(credit.loading, loading, rtol=0.0, atol=1e-8))


def consolidate(names, principals, loadings) -> List[Credit]:
    """Merge entries sharing an identifier, summing their principals."""
    credits: Dict[str, Credit] = {}
    for name, principal, loading in zip(names, principals, np.atleast_2d(loadings)):
        if principal == 0:
            continue
        credit = credits.get(name.identifier)
        if credit is None:
            credits[name.identifier] = Credit(name, float(principal), np.asarray(loading, dtype=float))
        elif _same_credit(credit, name, loading):
            credit.principal += float(principal)
        else:
            raise ValidationError(f"Entries of {name.identifier} must share curves, recovery and loadings")
    return list(credits.values())


def build_terms(credits: List[Credit], dates, total: float, recovery_points: int = 1,
                counts: bool = False) -> Tuple[NameTerms, np.ndarray]:
    """
    Recursion inputs for ``credits`` on ``dates``.

    With ``counts`` every default moves the distribution by one unit, which
    gives the default-count distribution instead of the loss distribution.
    Returns the terms and the loadings of the random (not yet defaulted)
    credits.
    """
    dates = pd.DatetimeIndex(dates)
    n_dates = len(dates)
    random = [c for c in credits if c.name.default_date is None]
    preset = [c for c in credits if c.name.default_date is not None]
    dispersed = not counts and any(c.name.recovery_dispersion > 0 for c in random)
    n_nodes = recovery_points if dispersed else 1

    q = np.zeros((n_dates, len(random)))
    loss = np.zeros((n_dates, len(random), n_nodes))
    amortization = np.zeros_like(loss)
    weights = np.zeros_like(loss)
    for i, credit in enumerate(random):
        name = credit.name
        q[:, i] = 1.0 - check_survival(name.survival_curve.survival(dates), name.identifier)
        if counts:
            loss[:, i, 0] = 1.0
            weights[:, i, 0] = 1.0
            continue
        rates = name.recovery_rate(dates)
        for rate in np.unique(rates):
            nodes, w = recovery_quadrature(rate, name.recovery_dispersion, n_nodes)
            rows = rates == rate
            loss[rows, i, :len(nodes)] = credit.principal * (1.0 - nodes) / total
            amortization[rows, i, :len(nodes)] = credit.principal * nodes / total
            weights[rows, i, :len(nodes)] = w

    prepay_probability = prepay_amount = None
    if not counts and any(c.name.refinance_curve is not None for c in random):
        prepay_probability = np.zeros((n_dates, len(random)))
        prepay_amount = np.array([c.principal / total for c in random])
        for i, credit in enumerate(random):
            name = credit.name
            if name.refinance_curve is None:
                continue
            # defaults and prepayments compete; the prepay branch is taken given no default first
            default_first, prepay_first = competing_risks(name.survival_curve, name.refinance_curve,
                                                          name.survival_curve.as_of, dates, label=name.identifier)
            q[:, i] = default_first
            alive = 1.0 - default_first
            prepay_probability[:, i] = np.where(alive > 0.0, prepay_first / np.where(alive > 0.0, alive, 1.0), 0.0)

    preset_loss = np.zeros(n_dates)
    preset_amortization = np.zeros(n_dates)
    for credit in preset:
        hit = credit.name.defaulted_by(dates).astype(float)
        if counts:
            preset_loss += hit
            continue
        rate = credit.name.recovery_rate(pd.DatetimeIndex([credit.name.default_date]))[0]
        preset_loss += hit * credit.principal * (1.0 - rate) / total
        preset_amortization += hit * credit.principal * rate / total

    terms = NameTerms(q, loss, amortization, weights, prepay_probability, prepay_amount,
                      preset_loss, preset_amortization)
    n_factors = len(credits[0].loading) if credits else 1
    loadings = np.array([c.loading for c in random]).reshape(len(random), n_factors)
    return terms, loadings


def check_window(low: float, high: float) -> None:
    if not 0.0 <= low <= high <= 1.0:
        raise ValidationError(f"Invalid loss window [{low}, {high}], need 0 <= low <= high <= 1")


# ---------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------
class BasketModel:
    """Shared contract of the basket strategies.

    Distributions for the basket's own dates are computed together and
    cached; any other date is computed on its own. ``reset`` drops the cache
    after curves, principals or correlation changed, re-reads them from the
    basket and checks them again.
    """

    kind = ""
    allows_shorts = True
    allows_refinance = True
    allows_dispersion = True
    allows_defaulted = True
    single_factor = False

    def __init__(self, basket: Basket):
        self.basket = basket
        self.settings = basket.settings
        self.factor_scale = 1.0
        self.loadings = basket.loadings
        self._cache = {}
        self._quadrature = None
        self._check_inputs()

    def _check_inputs(self):
        """Reject inputs this strategy cannot price; runs again on ``reset``."""
        basket = self.basket
        basket.check_principals()
        if self.loadings.n_names != len(basket):
            raise ValidationError(f"Correlation covers {self.loadings.n_names} names, basket has {len(basket)}")
        consolidate(basket.names, basket.principals, self.loadings.values)
        problems = []
        if not basket.copula.is_gauss and self.loadings.n_factors > 1:
            problems.append("multi-factor loadings under the Student-t copula")
        if not self.allows_shorts and basket.has_shorts:
            problems.append("short names")
        if not self.allows_refinance and basket.has_refinance:
            problems.append("refinance curves")
        if not self.allows_dispersion and basket.has_dispersion:
            problems.append("recovery dispersion")
        if not self.allows_defaulted and basket.has_defaulted:
            problems.append("defaulted names")
        if self.single_factor and self.loadings.n_factors > 1:
            problems.append("multi-factor loadings")
        if problems:
            raise UnsupportedConfigurationError(f"{type(self).__name__} does not support {', '.join(problems)}")

    @property
    def quadrature(self) -> FactorQuadrature:
        if self._quadrature is None:
            self._quadrature = FactorQuadrature(self.basket.copula, self.loadings.n_factors,
                                                self.settings.quadrature_points,
                                                self.settings.adaptive_quadrature)
        return self._quadrature

    def engine(self, loadings, grid_size=None) -> RecursionEngine:
        return RecursionEngine(self.basket.copula, loadings, self.quadrature,
                               grid_size if grid_size is not None else self.settings.grid_size,
                               self.settings.max_workers, self.settings.progress)

    def reset(self):
        loadings = self.basket.loadings
        self.loadings = loadings if self.factor_scale == 1.0 else loadings.scaled(self.factor_scale)
        self._quadrature = None
        self._cache.clear()
        self._check_inputs()

    def set_factor(self, scale: float):
        """Rescale every factor loading by ``scale`` and drop cached results."""
        self.factor_scale = float(scale)
        self.reset()

    # -- distributions -------------------------------------------------
    def _distribution(self, dates: pd.DatetimeIndex, amortization: bool) -> LossDistribution:
        raise NotImplementedError

    def _recursion(self, dates, amortization, recovery_points=1, shared=False) -> LossDistribution:
        credits = consolidate(self.basket.names, self.basket.principals, self.loadings.values)
        terms, loadings = build_terms(credits, dates, self.basket.total_principal, recovery_points)
        q = terms.default_probability
        terms.shared = bool(shared and q.shape[1] > 0 and np.all(q == q[:, :1])
                            and np.all(loadings == loadings[0]))
        return self.engine(loadings).distribution(terms, amortization)

    def distribution(self, date, amortization: bool = False) -> LossDistribution:
        """Distribution for a single date."""
        date = pd.Timestamp(date)
        if date in self.basket.dates:
            key = ("grid", amortization)
            if key not in self._cache:
                timer = time.perf_counter()
                self._cache[key] = self._distribution(self.basket.dates, amortization)
                LOG.debug(f"{type(self).__name__}: {'amortization' if amortization else 'loss'} "
                          f"distribution in {time.perf_counter() - timer:.3f}s")
            return self._cache[key].row(self.basket.dates.get_loc(date))
        key = (date, amortization)
        if key not in self._cache:
            self._cache[key] = self._distribution(pd.DatetimeIndex([date]), amortization)
        return self._cache[key]

    def cumulative(self, date, levels, amortization: bool = False) -> np.ndarray:
        """P(L <= level) for each level."""
        return self.distribution(date, amortization).cumulative(levels)[0]

    def base_loss(self, date, levels, amortization: bool = False) -> np.ndarray:
        """E[min(L, level)] for each level."""
        return self.distribution(date, amortization).base_loss(levels)[0]

    # -- contract ------------------------------------------------------
    def expected_loss(self, date) -> float:
        return float(self.base_loss(date, [1.0])[0])

    def accumulated_loss(self, date, low: float, high: float) -> float:
        """Expected loss in [low, high], as a fraction of total principal."""
        check_window(low, high)
        if low == high:
            return 0.0
        base = self.base_loss(date, [low, high])
        return float(base[1] - base[0])

    def amortized_amount(self, date, low: float, high: float) -> float:
        """Expected amortization reaching [low, high] from the top of the capital structure."""
        check_window(low, high)
        if low == high:
            return 0.0
        base = self.base_loss(date, [1.0 - high, 1.0 - low], amortization=True)
        return float(base[1] - base[0])

    def calc_loss_distribution(self, cumulative: bool, date, levels=None) -> np.ndarray:
        """(levels, 2) array of [level, P(L <= level)] or [level, E[min(L, level)]]."""
        levels = self.basket.levels if levels is None else np.asarray(levels, dtype=float)
        values = self.cumulative(date, levels) if cumulative else self.base_loss(date, levels)
        return np.column_stack([levels, values])

    def loss_distribution(self, kind: str = LossDistributionGrid.LOSS,
                          amortization: bool = False) -> LossDistributionGrid:
        if kind not in (LossDistributionGrid.PROBABILITY, LossDistributionGrid.LOSS):
            raise ValidationError(f"Unknown distribution kind {kind!r}")
        levels = self.basket.levels
        read = self.cumulative if kind == LossDistributionGrid.PROBABILITY else self.base_loss
        values = np.vstack([read(date, levels, amortization) for date in self.basket.dates])
        return LossDistributionGrid(self.basket.dates, levels, values, kind)

    def __repr__(self):
        return f"{type(self).__name__}(names={len(self.basket)}, dates={len(self.basket.dates)})"


@register_model("uniform")
class UniformBasket(BasketModel):
    """Identical names: the conditional default count is binomial."""

    allows_shorts = False
    allows_refinance = False
    allows_dispersion = False
    allows_defaulted = False

    def _check_inputs(self):
        super()._check_inputs()
        basket = self.basket
        if np.any(basket.principals != basket.principals[0]):
            raise UnsupportedConfigurationError("UniformBasket needs identical principals")
        if not self.loadings.is_uniform:
            raise UnsupportedConfigurationError("UniformBasket needs identical factor loadings")
        survival = basket.survival()
        if np.any(survival != survival[:, :1]):
            raise UnsupportedConfigurationError("UniformBasket needs identical survival curves")
        rates = np.column_stack([n.recovery_rate(basket.dates) for n in basket.names])
        if np.any(rates != rates[0, 0]):
            raise UnsupportedConfigurationError("UniformBasket needs one constant recovery rate")
        self.recovery = float(rates[0, 0])

    def _distribution(self, dates, amortization):
        basket = self.basket
        n = len(basket)
        first = basket.names[0]
        q = 1.0 - check_survival(first.survival_curve.survival(dates), first.identifier)
        rate = self.recovery if amortization else 1.0 - self.recovery
        amount = rate * basket.principals[0] / basket.total_principal
        if amount <= 0.0:
            return LossDistribution(1.0, np.ones((len(dates), 1)), 0.0)
        counts = np.arange(n + 1)
        loadings = self.loadings.values[:1]

        def conditional(nodes):
            p = basket.copula.conditional_default(q[:, None], loadings, nodes)[..., 0]
            return binom.pmf(counts, n, p[..., None])

        pmf = self.quadrature.integrate(conditional, self.settings.max_workers, self.settings.progress)
        return LossDistribution(amount, pmf, n * amount)


@register_model("homogeneous")
class HomogeneousBasket(BasketModel):
    """One survival curve and recovery for all names; principals may differ.

    Conditional default probabilities are computed once per node and date.
    """

    allows_refinance = False
    allows_dispersion = False

    def _check_inputs(self):
        super()._check_inputs()
        basket = self.basket
        random = [i for i, n in enumerate(basket.names) if n.default_date is None]
        if random:
            survival = basket.survival()[:, random]
            rates = np.column_stack([basket.names[i].recovery_rate(basket.dates) for i in random])
            if np.any(survival != survival[:, :1]) or np.any(rates != rates[:, :1]):
                raise UnsupportedConfigurationError(
                    "HomogeneousBasket needs one survival curve and recovery for all names")

    def _distribution(self, dates, amortization):
        return self._recursion(dates, amortization, shared=True)


@register_model("heterogeneous")
class HeterogeneousBasket(BasketModel):
    """Per-name curves, recovery and principal, short names and several
    factors."""

    allows_refinance = False
    allows_dispersion = False

    def _distribution(self, dates, amortization):
        return self._recursion(dates, amortization)


@register_model("semi_analytic")
class SemiAnalyticBasket(BasketModel):
    """The full recursion: refinance, stochastic recovery, shorts and
    defaulted names."""

    def _distribution(self, dates, amortization):
        return self._recursion(dates, amortization, self.settings.quadrature_points_second)


@register_model("large_pool")
class LargePoolBasket(BasketModel):
    """
    Infinitely granular pool. Given the factor the pool loss is its
    conditional expectation L(f), decreasing in f, so

        P(L <= x) = 1 - F(f*),  L(f*) = x

    and the base loss E[min(L, x)] is a one-dimensional integral.
    """

    allows_shorts = False
    allows_refinance = False
    single_factor = True

    def _check_inputs(self):
        super()._check_inputs()
        if np.any(self.loadings.values < 0):
            raise UnsupportedConfigurationError("LargePoolBasket needs non-negative factor loadings")

    def _pool(self, date, amortization):
        credits = consolidate(self.basket.names, self.basket.principals, self.loadings.values)
        terms, loadings = build_terms(credits, [date], self.basket.total_principal)
        amounts = terms.amortization if amortization else terms.loss
        preset = terms.preset_amortization if amortization else terms.preset_loss
        q = terms.default_probability[0]
        coefficients = amounts[0, :, 0]
        copula = self.basket.copula

        def pool_loss(factors):
            f = np.atleast_1d(np.asarray(factors, dtype=float))[:, None]
            return copula.conditional_default(q, loadings, f) @ coefficients

        return pool_loss, float(preset[0])

    def cumulative(self, date, levels, amortization=False):
        pool_loss, offset = self._pool(date, amortization)
        copula = self.basket.copula
        lo, hi = copula.factor_ppf(np.array([1e-15, 1.0 - 1e-15]))
        top, bottom = pool_loss([lo, hi])
        out = []
        for level in np.atleast_1d(np.asarray(levels, dtype=float)):
            target = level - offset
            if target >= top:
                out.append(1.0)
            elif target < bottom:
                out.append(0.0)
            else:
                root = brentq(lambda f: pool_loss(f)[0] - target, lo, hi, xtol=self.settings.tolerance)
                out.append(1.0 - float(copula.factor_cdf(root)))
        return np.array(out)

    def base_loss(self, date, levels, amortization=False):
        pool_loss, offset = self._pool(date, amortization)
        levels = np.atleast_1d(np.asarray(levels, dtype=float))
        caps = np.maximum(levels - offset, 0.0)
        copula = self.basket.copula

        def integrand(u):
            f = copula.factor_ppf(np.clip(u, 1e-16, 1.0 - 1e-16))
            return np.minimum(pool_loss(f)[0], caps)

        value, error = quad_vec(integrand, 0.0, 1.0, epsabs=self.settings.tolerance)
        LOG.debug(f"Large pool base loss on {date}: integration error {error:.2e}")
        return np.minimum(offset + value, np.maximum(levels, 0.0))
