"""
Curve adapter.

The loss engine only needs three things from the curve subsystem:
survival probability by date, recovery rate by date and (optionally) the
probability of not having refinanced by date. Curves are fitted elsewhere;
the small concrete curves below cover flat and piecewise hazard inputs and
are what the tests and callers use to feed a basket.
"""
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from .errors import ValidationError

DAYS_PER_YEAR = 365.0


# ---------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------
def year_fraction(start, dates):
    """ACT/365F year fractions from ``start``; scalar in, scalar out."""
    start = pd.Timestamp(start)
    if np.ndim(dates) == 0:
        return (pd.Timestamp(dates) - start).days / DAYS_PER_YEAR
    idx = pd.DatetimeIndex(dates)
    return np.asarray((idx - start).days, dtype=float) / DAYS_PER_YEAR


def date_grid(as_of, maturity, months: int = 1) -> pd.DatetimeIndex:
    """Dates stepping ``months`` from ``as_of``, always ending on ``maturity``."""
    as_of, maturity = pd.Timestamp(as_of), pd.Timestamp(maturity)
    if maturity <= as_of:
        raise ValidationError(f"Maturity {maturity.date()} must be after as-of {as_of.date()}")
    if months <= 0:
        raise ValidationError(f"Step must be a positive number of months, not {months}")
    dates = []
    k = 1
    while True:
        date = as_of + pd.DateOffset(months=k * months)
        if date >= maturity:
            break
        dates.append(date)
        k += 1
    dates.append(maturity)
    return pd.DatetimeIndex(dates)


# ---------------------------------------------------------------------
# Survival curves
# ---------------------------------------------------------------------
class SurvivalCurve:
    """Survival probability as a function of date, relative to ``as_of``."""

    def __init__(self, as_of):
        self.as_of = pd.Timestamp(as_of)

    def survival_at_time(self, t):
        raise NotImplementedError

    def survival(self, dates):
        return self.survival_at_time(year_fraction(self.as_of, dates))

    def default_probability(self, dates):
        return 1.0 - self.survival(dates)

    def knot_times(self) -> np.ndarray:
        """Times in years where the hazard rate may jump."""
        return np.empty(0)

    def solve(self, probability: float) -> float:
        """Time in years at which survival falls to ``probability``.

        Returns ``inf`` when the curve never gets that low.
        """
        if probability >= 1.0:
            return 0.0
        hi = 1.0
        while self.survival_at_time(hi) > probability:
            hi *= 2.0
            if hi > 1e4:
                return np.inf
        return brentq(lambda t: self.survival_at_time(t) - probability, 0.0, hi, xtol=1e-12)


class FlatHazardCurve(SurvivalCurve):
    """S(t) = exp(-h t)."""

    def __init__(self, as_of, hazard: float):
        super().__init__(as_of)
        if hazard < 0:
            raise ValidationError(f"Hazard rate must be non-negative, not {hazard}")
        self.hazard = float(hazard)

    def survival_at_time(self, t):
        t = np.maximum(t, 0.0)
        return np.exp(-self.hazard * t)

    def solve(self, probability: float) -> float:
        if probability >= 1.0:
            return 0.0
        if self.hazard == 0.0 or probability <= 0.0:
            return np.inf
        return -np.log(probability) / self.hazard

    def __repr__(self):
        return f"FlatHazardCurve(as_of={self.as_of.date()}, hazard={self.hazard})"


class PiecewiseSurvivalCurve(SurvivalCurve):
    """Log-linear interpolation of survival probabilities (piecewise flat
    hazard), extrapolated with the last hazard rate."""

    def __init__(self, as_of, dates, probabilities):
        super().__init__(as_of)
        times = year_fraction(self.as_of, dates)
        probabilities = np.asarray(probabilities, dtype=float)
        if len(times) == 0 or len(times) != len(probabilities):
            raise ValidationError("Curve dates and probabilities must be non-empty and of equal length")
        if np.any(np.diff(times) <= 0) or times[0] <= 0:
            raise ValidationError("Curve dates must be strictly increasing and after the as-of date")
        if np.any(probabilities <= 0) or np.any(probabilities > 1):
            raise ValidationError("Survival probabilities must lie in (0, 1]")
        if np.any(np.diff(probabilities) > 0):
            raise ValidationError("Survival probabilities must be non-increasing")
        self.times = np.concatenate([[0.0], times])
        self.log_survival = np.concatenate([[0.0], np.log(probabilities)])
        span = self.times[-1] - self.times[-2]
        self.last_hazard = (self.log_survival[-2] - self.log_survival[-1]) / span

    def survival_at_time(self, t):
        t = np.maximum(np.asarray(t, dtype=float), 0.0)
        log_s = np.interp(t, self.times, self.log_survival)
        beyond = t > self.times[-1]
        log_s = np.where(beyond, self.log_survival[-1] - self.last_hazard * (t - self.times[-1]), log_s)
        return np.exp(log_s)

    def knot_times(self) -> np.ndarray:
        return self.times[1:]

    def solve(self, probability: float) -> float:
        if probability >= 1.0:
            return 0.0
        if probability <= 0.0:
            return np.inf
        target = np.log(probability)
        if target >= self.log_survival[-1]:
            # log survival is non-increasing, so interpolate on its negative
            return float(np.interp(-target, -self.log_survival, self.times))
        if self.last_hazard <= 0.0:
            return np.inf
        return self.times[-1] + (self.log_survival[-1] - target) / self.last_hazard


# ---------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------
class RecoveryCurve:
    """Recovery rate by date: linear between points, flat outside."""

    def __init__(self, as_of, dates, rates):
        self.as_of = pd.Timestamp(as_of)
        self.times = year_fraction(self.as_of, dates)
        self.rates = np.asarray(rates, dtype=float)
        if len(self.times) != len(self.rates) or len(self.rates) == 0:
            raise ValidationError("Recovery dates and rates must be non-empty and of equal length")
        if np.any(self.rates < 0) or np.any(self.rates > 1):
            raise ValidationError("Recovery rates must lie in [0, 1]")

    def recovery(self, dates):
        return np.interp(year_fraction(self.as_of, dates), self.times, self.rates)


# ---------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------
@dataclass(eq=False)
class Name:
    """One credit in a basket. Curves are held by reference, never copied."""

    identifier: str
    survival_curve: SurvivalCurve
    recovery: Union[float, RecoveryCurve] = 0.4
    principal: float = 1.0
    recovery_dispersion: float = 0.0
    refinance_curve: Optional[SurvivalCurve] = None
    default_date: Optional[pd.Timestamp] = None

    def __post_init__(self):
        if self.default_date is not None:
            self.default_date = pd.Timestamp(self.default_date)
        if self.recovery_dispersion < 0:
            raise ValidationError(f"{self.identifier}: recovery dispersion must be non-negative")
        if isinstance(self.recovery, (int, float)) and not 0.0 <= self.recovery <= 1.0:
            raise ValidationError(f"{self.identifier}: recovery rate {self.recovery} outside [0, 1]")

    @property
    def is_short(self) -> bool:
        return self.principal < 0

    def recovery_rate(self, dates) -> np.ndarray:
        if isinstance(self.recovery, (int, float)):
            return np.full(len(dates), float(self.recovery))
        return np.asarray(self.recovery.recovery(dates), dtype=float)

    def defaulted_by(self, dates) -> np.ndarray:
        if self.default_date is None:
            return np.zeros(len(dates), dtype=bool)
        return np.asarray(pd.DatetimeIndex(dates) >= self.default_date)


def check_survival(values: np.ndarray, label: str = "curve") -> np.ndarray:
    """Survival values on a date grid must lie in [0, 1] and be non-increasing."""
    values = np.asarray(values, dtype=float)
    if not np.all(np.isfinite(values)) or np.any(values < 0) or np.any(values > 1):
        raise ValidationError(f"{label}: survival probabilities must lie in [0, 1]")
    if np.any(np.diff(values, axis=-1) > 1e-14):
        raise ValidationError(f"{label}: survival probabilities must be non-increasing in time")
    return values


def competing_risks(survival_curve: SurvivalCurve, refinance_curve: SurvivalCurve, as_of, dates,
                    step_days: int = 30, label: str = "curve"):
    """
    Probabilities of defaulting before refinancing and of refinancing
    before defaulting, both by each of ``dates``.

    Default and prepayment are independent competing risks; a name that
    prepays leaves the pool. Both hazard rates are taken flat between the
    nodes of a day grid made of ``step_days`` steps, the curve knots and
    ``dates``, which is exact for flat and piecewise flat hazard curves.
    """
    as_of = pd.Timestamp(as_of)
    dates = pd.DatetimeIndex(dates)
    targets = np.maximum(np.asarray((dates - as_of).days), 0)
    end = int(targets.max()) if len(targets) else 0
    knots = []
    for curve in (survival_curve, refinance_curve):
        shift = (curve.as_of - as_of).days
        knots.append(shift + np.round(curve.knot_times() * DAYS_PER_YEAR).astype(int))
    days = np.concatenate([np.arange(0, end, step_days), targets] + knots)
    days = np.unique(days[(days >= 0) & (days <= end)])
    days = np.union1d(days, [0])
    grid = as_of + pd.to_timedelta(days, unit="D")

    s = check_survival(survival_curve.survival(grid), label)
    r = check_survival(refinance_curve.survival(grid), f"{label} refinance")
    with np.errstate(divide="ignore", invalid="ignore"):
        a = -np.diff(np.log(s))
        b = -np.diff(np.log(r))
        share = a / (a + b)
    share = np.where(np.isposinf(a) & ~np.isposinf(b), 1.0, share)
    share = np.where(np.isposinf(b) & ~np.isposinf(a), 0.0, share)
    share = np.nan_to_num(share, nan=0.5, posinf=0.5, neginf=0.5)
    leaving = -np.diff(s * r)
    default_first = np.concatenate([[0.0], np.cumsum(share * leaving)])
    prepay_first = np.concatenate([[0.0], np.cumsum((1.0 - share) * leaving)])
    k = np.searchsorted(days, targets)
    return default_first[k], prepay_first[k]
