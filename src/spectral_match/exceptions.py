"""Error taxonomy for merging and library matching."""
from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid matcher or merger setup. Raised before any batch work starts."""


class InvalidInputError(ValueError):
    """Numeric contract violation (NaN values, negative intensity or tolerance)."""


class MissingMassListError(LookupError):
    """A scan or row has no usable mass list.

    Recoverable per query unit: the engine logs it, counts it and moves on.
    """


__all__ = ["ConfigurationError", "InvalidInputError", "MissingMassListError"]
