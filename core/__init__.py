"""
Spatial SDC Engine
==================
Disclosure protection and distance evaluation for gridded counts.

Protection transforms (grid -> protected grid):
- Suppression of sensitive cells (mass removed)
- Quadtree aggregation of sensitive cells (mass preserved)
- Kernel smoothing (mass preserved up to border leakage)

Distance evaluation:
- Kantorovich-Wasserstein (KWD) distance between a grid and its
  protected variant, whole map or inside a focus area, balanced or
  unbalanced (see engine/)
"""

__version__ = "1.0.0"
__author__ = "Spatial SDC Team"

from .config import Config, TransportConfig, ProtectionConfig, AreaConfig
from .errors import (
    SpatialSDCError,
    LayoutMismatch,
    MassMismatch,
    InvalidConfig,
    TransportTimeout,
    SolverError,
)
from .sensitivity import cellwise, min_count_rule

__all__ = [
    # Config
    "Config", "TransportConfig", "ProtectionConfig", "AreaConfig",
    # Errors
    "SpatialSDCError", "LayoutMismatch", "MassMismatch", "InvalidConfig",
    "TransportTimeout", "SolverError",
    # Protection
    "ProtectionResult", "protect_suppression", "protect_quadtree", "protect_smoothing",
    "cellwise", "min_count_rule",
]

_PROTECTION_EXPORTS = ("ProtectionResult", "protect_suppression", "protect_quadtree", "protect_smoothing")


def __getattr__(name):
    # Protection pulls in schema.grid, which itself imports core.errors
    if name in _PROTECTION_EXPORTS:
        from . import protection
        return getattr(protection, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
