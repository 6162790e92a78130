"""
Focus Area Masks.

A focus area is a closed square (Chebyshev / ``linf``) or disc
(Euclidean / ``l2``) around a centroid. Cells are selected by their
centre; a centre exactly on the boundary is inside.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np

from core.errors import InvalidConfig
from schema.grid import Grid, GridLayout


logger = logging.getLogger(__name__)


class AreaMetric(Enum):
    """Shape of the focus area."""
    LINF = "linf"
    L2 = "l2"


@dataclass(frozen=True)
class AreaSpec:
    """Centroid, radius and metric of a focus area."""
    centroid_x: float
    centroid_y: float
    radius: float
    metric: str = "linf"

    def __post_init__(self):
        if not np.isfinite(self.radius) or self.radius <= 0:
            raise InvalidConfig(f"Focus area radius must be > 0, got {self.radius}")
        try:
            AreaMetric(self.metric)
        except ValueError:
            raise InvalidConfig(
                f"Focus area metric must be one of {[m.value for m in AreaMetric]}, got {self.metric!r}"
            ) from None

    @property
    def centroid(self) -> Tuple[float, float]:
        return (self.centroid_x, self.centroid_y)

    def contains(self, x, y) -> np.ndarray:
        """Vectorised membership test for coordinates x, y."""
        dx = np.asarray(x, dtype=np.float64) - self.centroid_x
        dy = np.asarray(y, dtype=np.float64) - self.centroid_y
        if AreaMetric(self.metric) is AreaMetric.LINF:
            return (np.abs(dx) <= self.radius) & (np.abs(dy) <= self.radius)
        return dx * dx + dy * dy <= self.radius * self.radius


def membership(coord: Tuple[float, float], area: AreaSpec) -> bool:
    """True if a single (x, y) coordinate lies in the closed focus area."""
    return bool(area.contains(coord[0], coord[1]))


def area_cells(layout: GridLayout, area: AreaSpec) -> np.ndarray:
    """Boolean (rows, cols) array of the cells whose centre is inside the area."""
    centers = layout.cell_centers()
    return area.contains(centers[:, 0], centers[:, 1]).reshape(layout.shape)


def crop_indices(layout: GridLayout, area: AreaSpec) -> np.ndarray:
    """Row-major flat indices of the cells inside the area."""
    return np.flatnonzero(area_cells(layout, area).ravel())


def apply_mask(grid: Grid, area: AreaSpec) -> Grid:
    """
    Zero every cell outside the focus area.

    Cells inside keep their value, including zeros and NaN; the result is
    idempotent under repeated application.
    """
    inside = area_cells(grid.layout, area)
    masked = np.where(inside, grid.values, 0.0)
    logger.debug(
        f"Focus mask {area.metric} r={area.radius} at {area.centroid}: "
        f"{int(inside.sum())}/{grid.layout.n_cells} cells inside"
    )
    return grid.with_values(masked)
