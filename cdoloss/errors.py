"""Exception classes for the loss distribution engine."""


class BasketError(Exception):
    """Base exception for basket and loss distribution errors."""

    pass


class ValidationError(BasketError, ValueError):
    """Raised when inputs are malformed: tranche windows, correlation
    dimensions, curve values, strata or allocations."""

    pass


class UnsupportedConfigurationError(BasketError):
    """Raised when a basket strategy cannot price the given combination of
    names (short positions, refinancing, dispersion, factor count)."""

    pass
