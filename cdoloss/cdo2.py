"""
CDO-squared baskets.

Each row of the principal matrix is an inner CDO on the basket names with
its own [attachment, detachment]. The outer portfolio is the sum of the
inner tranche losses, normalized by the total inner tranche notional.

With disjoint inner pools the inner pools are independent given the
factor, so the outer distribution is a second recursion over the
conditional inner tranche-loss distributions. Overlapping pools need the
Monte Carlo pass.
"""
import logging

import numpy as np
import pandas as pd

from .basket import BasketModel, build_terms, consolidate, register_model
from .errors import UnsupportedConfigurationError, ValidationError
from .lossgrid import LossDistribution, LossGrid, auto_grid_size, convolve_outcomes, grid_units
from .simulators.montecarlo import MonteCarloEngine, MonteCarloOptions

LOG = logging.getLogger(__name__)

SEMI_ANALYTIC = "semi_analytic"
MONTE_CARLO = "monte_carlo"


@register_model("cdo2")
class CDO2Basket(BasketModel):

    def __init__(self, basket, principals, attachments, detachments, method: str = SEMI_ANALYTIC,
                 options: MonteCarloOptions = None):
        super().__init__(basket)
        self.inner_principals = np.atleast_2d(np.asarray(principals, dtype=float))
        self.attachments = np.asarray(attachments, dtype=float)
        self.detachments = np.asarray(detachments, dtype=float)
        n_inner = self.inner_principals.shape[0]
        if self.inner_principals.shape[1] != len(basket):
            raise ValidationError(f"Principal matrix has {self.inner_principals.shape[1]} columns, "
                                  f"basket has {len(basket)} names")
        if self.attachments.shape != (n_inner,) or self.detachments.shape != (n_inner,):
            raise ValidationError(f"Need one attachment and detachment per inner CDO ({n_inner})")
        if np.any(self.attachments < 0) or np.any(self.detachments > 1) \
                or np.any(self.detachments <= self.attachments):
            raise ValidationError("Inner tranches need 0 <= attachment < detachment <= 1")
        self.notionals = np.array([row[row > 0].sum() for row in self.inner_principals])
        if np.any(self.notionals <= 0):
            raise ValidationError("Every inner CDO needs a positive long principal")
        self.total = float((self.notionals * (self.detachments - self.attachments)).sum())
        if method not in (SEMI_ANALYTIC, MONTE_CARLO):
            raise ValidationError(f"Unknown CDO-squared method {method!r}")
        self.disjoint = bool(np.all((self.inner_principals != 0).sum(axis=0) <= 1))
        if method == SEMI_ANALYTIC and not self.disjoint:
            raise UnsupportedConfigurationError(
                "Overlapping inner pools are not independent given the factor; use method='monte_carlo'")
        self.method = method
        self.options = options if options is not None else MonteCarloOptions()
        self._simulated = None
        LOG.debug(f"CDO-squared of {n_inner} inner CDOs, outer notional {self.total:.4f}, {method}")

    def reset(self):
        super().reset()
        self._simulated = None

    # -- outer tranche mapping -----------------------------------------
    def _inner_tranche(self, j, values, amortization):
        a, d = self.attachments[j], self.detachments[j]
        start = 1.0 - d if amortization else a
        return np.clip(values - start, 0.0, d - a) * self.notionals[j] / self.total

    def _aggregate(self, loss_rate, amortization_rate):
        loss = np.zeros(loss_rate.shape[0])
        amortization = np.zeros(loss_rate.shape[0])
        for j, row in enumerate(self.inner_principals):
            loss += self._inner_tranche(j, loss_rate @ row / self.notionals[j], False)
            amortization += self._inner_tranche(j, amortization_rate @ row / self.notionals[j], True)
        return loss, amortization

    # -- distributions -------------------------------------------------
    def _distribution(self, dates, amortization):
        if self.method == MONTE_CARLO:
            return self._monte_carlo(dates, amortization)
        return self._semi_analytic(dates, amortization)

    def _semi_analytic(self, dates, amortization):
        inner = []
        values_seen = []
        for j, row in enumerate(self.inner_principals):
            credits = consolidate(self.basket.names, row, self.loadings.values)
            terms, loadings = build_terms(credits, dates, self.notionals[j],
                                          self.settings.quadrature_points_second)
            engine = self.engine(loadings)
            grid = engine.grid(terms, amortization)
            values = self._inner_tranche(j, np.arange(grid.size - grid.offset) * grid.step, amortization)
            outcomes, positions = np.unique(values, return_inverse=True)
            collect = np.zeros((len(values), len(outcomes)))
            collect[np.arange(len(values)), positions] = 1.0
            inner.append((engine, terms, grid, outcomes, collect))
            values_seen.append(outcomes)

        # outer step on which the inner tranche outcomes fall, when they share one
        outer = LossGrid(self.settings.grid_size or auto_grid_size(np.concatenate(values_seen)), 1.0)

        def conditional(nodes):
            dist = outer.start((len(nodes), len(dates)), np.zeros(len(dates)))
            for engine, terms, grid, outcomes, collect in inner:
                pmf = engine.conditional_pmf(terms, nodes, grid, amortization)
                dist = convolve_outcomes(dist, pmf @ collect, grid_units(outcomes, outer.step))
            return dist

        pmf = self.quadrature.integrate(conditional, self.settings.max_workers, self.settings.progress)
        return LossDistribution(outer.step, pmf, 1.0)

    def _monte_carlo(self, dates, amortization):
        if self._simulated is None or not self._simulated.dates.equals(dates):
            engine = MonteCarloEngine(self.basket.names, self.basket.principals, self.loadings.values,
                                      self.basket.copula, self.basket.as_of, dates, self.basket.total_principal,
                                      self.options, aggregate=self._aggregate,
                                      loss_step=self.settings.grid_size or 1e-3,
                                      amortization_step=self.settings.grid_size or 1e-3,
                                      max_workers=self.settings.max_workers, progress=self.settings.progress)
            self._simulated = engine.simulate()
        return self._simulated.amortization if amortization else self._simulated.loss

    def standard_error(self, date) -> float:
        """Standard error of the simulated expected outer loss on a basket date;
        zero for the semi-analytic method."""
        if self.method != MONTE_CARLO:
            return 0.0
        date = pd.Timestamp(date)
        if date not in self.basket.dates:
            raise ValidationError(f"{date.date()} is not a basket date")
        self.distribution(date)
        return float(self._simulated.standard_error[0, self.basket.dates.get_loc(date)])
