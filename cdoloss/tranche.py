"""
Tranche mapper: tranche-level figures read off a LossDistributionGrid.

Levels are interpolated linearly; dates must lie on the grid.
"""
from dataclasses import dataclass

from .errors import ValidationError
from .lossgrid import LossDistributionGrid


@dataclass(frozen=True)
class Tranche:
    """[attachment, detachment] slice of the portfolio, as fractions of
    the total principal."""

    attachment: float
    detachment: float

    def __post_init__(self):
        if not 0.0 <= self.attachment <= self.detachment <= 1.0:
            raise ValidationError(f"Invalid tranche [{self.attachment}, {self.detachment}], "
                                  f"need 0 <= attachment <= detachment <= 1")

    @property
    def width(self) -> float:
        return self.detachment - self.attachment

    @classmethod
    def nth_to_default(cls, first: int, num_covered: int, basket_size: int, recovery: float = 0.4) -> "Tranche":
        """Loss window hit by defaults ``first`` .. ``first + num_covered - 1``
        of a uniform basket."""
        check_ntd_window(first, num_covered, basket_size)
        unit = (1.0 - recovery) / basket_size
        return cls(unit * (first - 1), unit * (first - 1 + num_covered))


def check_ntd_window(first: int, num_covered: int, basket_size: int) -> None:
    if first < 1:
        raise ValidationError(f"First default must be at least 1, not {first}")
    if num_covered < 1:
        raise ValidationError(f"Number of covered defaults must be at least 1, not {num_covered}")
    if first + num_covered - 1 > basket_size:
        raise ValidationError(f"Defaults {first}..{first + num_covered - 1} exceed a basket of {basket_size} names")


def _expect(grid: LossDistributionGrid, kind: str):
    if grid.kind != kind:
        raise ValidationError(f"Expected a {kind!r} distribution grid, got {grid.kind!r}")


def tranche_loss(grid: LossDistributionGrid, date, tranche: Tranche) -> float:
    """Expected tranche loss as a fraction of the portfolio principal."""
    _expect(grid, LossDistributionGrid.LOSS)
    return grid.interpolate(date, tranche.detachment) - grid.interpolate(date, tranche.attachment)


def tranche_amortization(grid: LossDistributionGrid, date, tranche: Tranche) -> float:
    """Amortization eats the capital structure from the top, so the tranche
    sees the slice [1 - detachment, 1 - attachment] of the amortization."""
    _expect(grid, LossDistributionGrid.LOSS)
    return grid.interpolate(date, 1.0 - tranche.attachment) - grid.interpolate(date, 1.0 - tranche.detachment)


def cumulative_probability(grid: LossDistributionGrid, date, level: float) -> float:
    _expect(grid, LossDistributionGrid.PROBABILITY)
    return grid.interpolate(date, level)


def tranche_probability(grid: LossDistributionGrid, date, tranche: Tranche) -> float:
    """Probability that the portfolio loss ends inside (attachment, detachment]."""
    _expect(grid, LossDistributionGrid.PROBABILITY)
    return grid.interpolate(date, tranche.detachment) - grid.interpolate(date, tranche.attachment)
