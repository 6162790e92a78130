"""
Protection Transforms - common result type and convenience entry points.

Each transform maps a grid to a protected grid on the same layout:
- Suppression: sensitive cells set to zero (mass removed)
- Quadtree: sensitive cells merged into coarser blocks (mass preserved)
- Smoothing: kernel density smoothing (mass preserved up to border leakage)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from core.config import ProtectionConfig
from core.sensitivity import SensitivityRule, min_count_rule
from schema.grid import Grid


logger = logging.getLogger(__name__)


@dataclass
class ProtectionResult:
    """Result of a protection transform."""
    grid: Grid
    method: str
    input_mass: float
    output_mass: float
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def mass_change(self) -> float:
        """Output mass minus input mass (negative = mass removed or leaked)."""
        return self.output_mass - self.input_mass

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "method": self.method,
            "input_mass": self.input_mass,
            "output_mass": self.output_mass,
            "mass_change": self.mass_change,
            **self.details,
        }


def protect_suppression(
    grid: Grid,
    rule: Optional[SensitivityRule] = None,
    config: Optional[ProtectionConfig] = None
) -> ProtectionResult:
    """Suppress sensitive cells (default rule: min_count from config)."""
    from core.suppression import SuppressionManager

    config = config or ProtectionConfig()
    config.validate()
    rule = rule or min_count_rule(config.min_count)
    return SuppressionManager(rule).apply(grid)


def protect_quadtree(
    grid: Grid,
    rule: Optional[SensitivityRule] = None,
    config: Optional[ProtectionConfig] = None
) -> ProtectionResult:
    """Aggregate sensitive cells with a quadtree up to config.max_zoom."""
    from core.quadtree import QuadtreeAggregator

    config = config or ProtectionConfig()
    config.validate()
    rule = rule or min_count_rule(config.min_count)
    return QuadtreeAggregator(rule, max_zoom=config.max_zoom).apply(grid)


def protect_smoothing(
    grid: Grid,
    config: Optional[ProtectionConfig] = None
) -> ProtectionResult:
    """
    Kernel smoothing; the bandwidth defaults to twice the larger cell side
    when the config leaves it unset.
    """
    from core.smoothing import KernelSmoother

    config = config or ProtectionConfig()
    config.validate()
    bandwidth = config.bandwidth
    if bandwidth is None:
        bandwidth = 2.0 * max(grid.layout.cell_width, grid.layout.cell_height)
        logger.info(f"No smoothing bandwidth configured, using {bandwidth}")
    smoother = KernelSmoother(bandwidth=bandwidth, kernel=config.kernel, truncate=config.truncate)
    return smoother.apply(grid)
