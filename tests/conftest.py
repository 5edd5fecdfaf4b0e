"""Shared fixtures: the 100-name uniform pool and builders for smaller baskets."""
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from cdoloss import Basket, BasketSettings, FlatHazardCurve, Name, date_grid

AS_OF = pd.Timestamp("2025-01-15")
TRANCHES = [0.0, 0.03, 0.06, 0.09, 0.12, 0.15, 0.20, 0.30, 0.80, 1.0]


@pytest.fixture(scope="session")
def as_of():
    return AS_OF


@pytest.fixture(scope="session")
def dates():
    """Monthly dates over five years."""
    return date_grid(AS_OF, AS_OF + pd.DateOffset(years=5), months=1)


@pytest.fixture(scope="session")
def quarterly():
    return date_grid(AS_OF, AS_OF + pd.DateOffset(years=5), months=3)


@pytest.fixture
def uniform_names():
    def make(n=100, hazard=0.005, recovery=0.4, prefix="N"):
        curve = FlatHazardCurve(AS_OF, hazard)
        return [Name(f"{prefix}{i:03d}", curve, recovery) for i in range(n)]
    return make


@pytest.fixture
def uniform_basket(uniform_names, dates):
    return Basket(uniform_names(), AS_OF, dates, correlation=0.3)


@pytest.fixture
def mixed_names():
    """Names with different hazards, recoveries and principals."""
    def make(n=20, seed=7, prefix="M"):
        rng = np.random.default_rng(seed)
        hazards = rng.uniform(0.005, 0.05, n)
        recoveries = rng.choice([0.25, 0.4, 0.5], n)
        principals = rng.choice([0.5, 1.0, 2.0], n)
        return [Name(f"{prefix}{i:03d}", FlatHazardCurve(AS_OF, h), float(r), float(p))
                for i, (h, r, p) in enumerate(zip(hazards, recoveries, principals))]
    return make


@pytest.fixture
def make_basket(quarterly):
    def make(names, correlation=0.3, dates=None, **kwargs):
        settings = kwargs.pop("settings", None) or BasketSettings()
        return Basket(names, AS_OF, quarterly if dates is None else dates, correlation=correlation,
                      settings=settings, **kwargs)
    return make


def expected_pool_loss(names, dates, total=None):
    """Sum of principal * (1 - R) * default probability over total long principal."""
    total = total or sum(n.principal for n in names if n.principal > 0)
    return sum(n.principal * (1.0 - n.recovery) * (1.0 - n.survival_curve.survival(dates))
               for n in names if n.default_date is None) / total


@pytest.fixture
def pool_loss():
    return expected_pool_loss


def default_and_prepay(name, dates):
    """Default-first and prepay-first probabilities of a name with flat
    hazard and refinance curves."""
    h = name.survival_curve.hazard
    g = name.refinance_curve.hazard
    t = np.asarray((pd.DatetimeIndex(dates) - AS_OF).days, dtype=float) / 365.0
    gone = 1.0 - np.exp(-(h + g) * t)
    return h / (h + g) * gone, g / (h + g) * gone


def expected_refinanced_pool(names, dates):
    """Expected loss and amortization of long names that all refinance."""
    total = sum(n.principal for n in names)
    loss = 0.0
    amortization = 0.0
    for n in names:
        c, p = default_and_prepay(n, dates)
        loss = loss + n.principal * (1.0 - n.recovery) * c / total
        amortization = amortization + n.principal * (n.recovery * c + p) / total
    return loss, amortization
