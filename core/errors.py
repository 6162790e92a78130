"""
Error kinds raised by the spatial SDC engine.

All of them derive from SpatialSDCError so callers can catch the whole
family, and from the matching builtin so existing ``except ValueError``
handlers keep working.
"""


class SpatialSDCError(Exception):
    """Base class for engine errors."""


class LayoutMismatch(SpatialSDCError, ValueError):
    """Two grids being compared have different rows/cols/cell size/origin."""


class MassMismatch(SpatialSDCError, ValueError):
    """Balanced transport requested for distributions with unequal totals."""


class InvalidConfig(SpatialSDCError, ValueError):
    """A configuration value is rejected before any computation starts."""


class TransportTimeout(SpatialSDCError, TimeoutError):
    """The transport solver hit its time limit."""


class SolverError(SpatialSDCError, RuntimeError):
    """The LP backend returned a status other than optimal or time limit."""
