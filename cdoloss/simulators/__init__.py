from .montecarlo import MonteCarloBasket, MonteCarloEngine, MonteCarloOptions, MonteCarloResult
from .rng import PathStreams
from .sampler import RunningMoments, StratifiedSampler
