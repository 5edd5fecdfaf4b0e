"""Loss and amortization distributions of credit baskets under factor copulas."""
from .basket import (BASKET_MODELS, Basket, BasketModel, BasketSettings, HeterogeneousBasket,
                     HomogeneousBasket, LargePoolBasket, SemiAnalyticBasket, UniformBasket,
                     create_basket_model)
from .cdo2 import CDO2Basket
from .copula import Copula, CopulaType, conditional_survival
from .correlation import FactorLoadings, correlation_error, factorize_correlation
from .curves import FlatHazardCurve, Name, PiecewiseSurvivalCurve, RecoveryCurve, date_grid
from .errors import BasketError, UnsupportedConfigurationError, ValidationError
from .lossgrid import LossDistribution, LossDistributionGrid
from .ntd import NtdBasket
from .quadrature import FactorQuadrature
from .simulators import MonteCarloBasket, MonteCarloOptions
from .tranche import (Tranche, cumulative_probability, tranche_amortization, tranche_loss,
                      tranche_probability)

__version__ = "0.1.0"
