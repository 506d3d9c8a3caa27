"""
Exception types raised by the power engine.

Search non-convergence (max N reached, stagnation) is not an exception; it is
reported through ``SearchStatus`` on the returned result.
"""


class RMSTPowerError(Exception):
    """Base class for all package errors."""


class DataValidationError(RMSTPowerError, ValueError):
    """Pilot data or call options are invalid. Fatal to the call."""


class EstimationFailure(RMSTPowerError, RuntimeError):
    """A model fit is degenerate (singular design, too few events, empty stratum)."""
