"""Path-addressed random streams."""
import numpy as np

from ..errors import ValidationError


class PathStreams:
    """
    One independent generator per path index.

    Each path gets a Philox generator keyed by the seed with its counter
    positioned at ``index << 128``. Path ``i`` therefore sees the same numbers
    whichever worker draws it and in whatever order, and every path has room
    for 2**128 counter steps before running into the next one.
    """

    COUNTER_SHIFT = 128

    def __init__(self, seed: int = 0):
        if not 0 <= int(seed) < 2 ** 128:
            raise ValidationError(f"Seed must lie in [0, 2**128), not {seed}")
        self.seed = int(seed)

    def generator(self, index: int) -> np.random.Generator:
        if not 0 <= int(index) < 2 ** self.COUNTER_SHIFT:
            raise ValidationError(f"Invalid path index {index}")
        return np.random.Generator(np.random.Philox(key=self.seed, counter=int(index) << self.COUNTER_SHIFT))

    def __repr__(self):
        return f"PathStreams(seed={self.seed})"
