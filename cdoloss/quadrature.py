"""
Factor integrator: Gauss-type quadrature over the systemic factor(s) and
over the idiosyncratic recovery dimension.
"""
import itertools
import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy.integrate import quad_vec
from scipy.special import roots_hermitenorm, roots_jacobi
from scipy.stats import norm
from tqdm.auto import tqdm

from .copula import Copula
from .errors import UnsupportedConfigurationError, ValidationError

LOG = logging.getLogger(__name__)

MAX_QUADRATURE_FACTORS = 3


class FactorQuadrature:
    """Tensor-product Gauss-Hermite nodes mapped through the factor law."""

    def __init__(self, copula: Copula, n_factors: int = 1, points: int = 25, adaptive: bool = False):
        if points < 1:
            raise ValidationError(f"Quadrature points must be positive, not {points}")
        if n_factors > MAX_QUADRATURE_FACTORS:
            raise UnsupportedConfigurationError(
                f"Quadrature over {n_factors} factors is not supported (max {MAX_QUADRATURE_FACTORS}); "
                f"reduce the factor count or use Monte Carlo")
        self.copula = copula
        self.n_factors = n_factors
        self.points = points
        self.adaptive = adaptive and n_factors == 1

        x, w = roots_hermitenorm(points)
        w = w / w.sum()
        nodes = np.array(list(itertools.product(x, repeat=n_factors)))
        weights = np.array([np.prod(c) for c in itertools.product(w, repeat=n_factors)])
        self.nodes = copula.factor_from_normal(nodes)
        self.weights = weights

    def __len__(self):
        return len(self.weights)

    def integrate(self, func, max_workers=None, progress: bool = False):
        """
        Weighted sum over the factor nodes of ``func(nodes)``.

        ``func`` receives an (m, K) block of nodes and returns an array whose
        first axis has length m. Blocks are independent, so with
        ``max_workers`` they run in a thread pool; partial sums are combined
        in block order, which keeps the result independent of the pool size.
        """
        if self.adaptive:
            return self._integrate_adaptive(func)
        blocks = self._blocks()

        def _one(block):
            values = func(self.nodes[block])
            return np.tensordot(self.weights[block], values, axes=(0, 0))

        if max_workers is None or max_workers <= 1 or len(blocks) == 1:
            parts = [_one(b) for b in tqdm(blocks, desc="Factor nodes", disable=not progress)]
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                parts = list(tqdm(pool.map(_one, blocks), total=len(blocks),
                                  desc="Factor nodes", disable=not progress))
        total = parts[0]
        for part in parts[1:]:
            total = total + part
        return total

    def _blocks(self):
        # fixed block layout regardless of pool size
        size = max(1, min(8, len(self.weights)))
        return [np.arange(i, min(i + size, len(self.weights))) for i in range(0, len(self.weights), size)]

    def _integrate_adaptive(self, func):
        def integrand(x):
            return norm.pdf(x) * func(self.copula.factor_from_normal(np.array([[x]])))[0]

        value, error = quad_vec(integrand, -np.inf, np.inf, epsabs=1e-12, epsrel=1e-10, norm="max")
        LOG.debug(f"Adaptive factor integration error estimate {error:.3e}")
        return value


def recovery_quadrature(mean: float, dispersion: float, points: int = 5):
    """
    Nodes and weights of a Beta recovery with the given mean and standard
    deviation (Gauss-Jacobi). Zero dispersion gives the single node ``mean``.
    """
    if dispersion <= 0.0 or mean <= 0.0 or mean >= 1.0:
        return np.array([mean]), np.array([1.0])
    variance = dispersion * dispersion
    if variance >= mean * (1.0 - mean):
        raise ValidationError(
            f"Recovery dispersion {dispersion} too large for mean recovery {mean}")
    total = mean * (1.0 - mean) / variance - 1.0
    a, b = mean * total, (1.0 - mean) * total
    # Beta(a, b) on [0, 1] is Jacobi weight (1 - x)^(b - 1) (1 + x)^(a - 1) on [-1, 1]
    x, w = roots_jacobi(points, b - 1.0, a - 1.0)
    return 0.5 * (x + 1.0), w / w.sum()
