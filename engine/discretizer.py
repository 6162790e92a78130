"""
Bin Discretizer and L-level Lattice Metric.

Turns a pair of grids into the index space the transport solver works on:
integer bins (row, col), cell centres and the two weight vectors.

Recode:
    Indices where both weights are exactly zero are dropped. They can
    neither send nor receive mass, so recoding changes the problem size
    and never the distance.

Resolution level L:
    Mass may only move along the primitive lattice directions

        D_L = {(dc, dr) : |dc|, |dr| <= L, gcd(|dc|, |dr|) = 1}

    each step costing its physical length. The cheapest lattice path
    between two cells has length N_L(offset), where N_L is the gauge of
    the convex polygon spanned by the unit direction vectors. Hence:
    - N_L >= Euclidean distance (the approximation is an upper bound)
    - N_L is non-increasing in L
    - N_L equals the Euclidean distance for every offset with
      |dc|, |dr| <= L, so the approximation is exact on a grid once
      L >= max(rows, cols) - 1
"""

import logging
import math
import numbers
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

import numpy as np

from core.errors import InvalidConfig
from schema.grid import WeightPair, normalize


logger = logging.getLogger(__name__)


@lru_cache(maxsize=32)
def _primitive_directions(resolution: int) -> Tuple[Tuple[int, int], ...]:
    return tuple(
        (dc, dr)
        for dc in range(-resolution, resolution + 1)
        for dr in range(-resolution, resolution + 1)
        if (dc, dr) != (0, 0) and math.gcd(abs(dc), abs(dr)) == 1
    )


def direction_set(resolution: int) -> np.ndarray:
    """(K, 2) integer array of the (dc, dr) directions of level L."""
    _check_resolution(resolution)
    return np.array(_primitive_directions(int(resolution)), dtype=np.int64)


def _check_resolution(resolution) -> None:
    if isinstance(resolution, bool) or not isinstance(resolution, numbers.Integral):
        raise InvalidConfig(f"resolution L must be an integer, got {resolution!r}")
    if resolution < 1:
        raise InvalidConfig(f"resolution L must be >= 1, got {resolution}")


class LatticeMetric:
    """
    Ground distance of the L-level lattice approximation, in map units.

    N_L(v) = max_k <n_k, v>, where n_k is the normal of the polygon edge
    between consecutive unit directions u_k, u_k+1 (n_k . u_k = n_k . u_k+1 = 1).
    """

    def __init__(self, resolution: int, cell_width: float, cell_height: float):
        _check_resolution(resolution)
        self.resolution = int(resolution)
        self.cell_width = float(cell_width)
        self.cell_height = float(cell_height)

        steps = direction_set(self.resolution)
        physical = steps * np.array([self.cell_width, self.cell_height])
        order = np.argsort(np.arctan2(physical[:, 1], physical[:, 0]))

        self.directions = steps[order]
        self.step_lengths = np.hypot(physical[order, 0], physical[order, 1])

        units = physical[order] / self.step_lengths[:, None]
        pairs = np.stack([units, np.roll(units, -1, axis=0)], axis=1)  # (K, 2, 2)
        self.normals = np.linalg.solve(pairs, np.ones((len(units), 2, 1)))[..., 0]

    @property
    def n_directions(self) -> int:
        return len(self.directions)

    def distance(self, d_cols: np.ndarray, d_rows: np.ndarray, chunk: int = 1 << 20) -> np.ndarray:
        """Lattice path length for integer offsets (in cells), any shape."""
        d_cols = np.asarray(d_cols)
        dx = (d_cols * self.cell_width).ravel()
        dy = (np.asarray(d_rows) * self.cell_height).ravel()
        out = np.empty(dx.shape, dtype=np.float64)

        step = max(1, chunk // max(1, self.n_directions))
        for start in range(0, dx.size, step):
            stop = start + step
            proj = np.outer(dx[start:stop], self.normals[:, 0]) + np.outer(dy[start:stop], self.normals[:, 1])
            out[start:stop] = proj.max(axis=1)

        # Exact zero on the diagonal
        out[(dx == 0) & (dy == 0)] = 0.0
        return out.reshape(d_cols.shape)


def euclidean_distance(d_cols: np.ndarray, d_rows: np.ndarray, cell_width: float, cell_height: float) -> np.ndarray:
    """Exact Euclidean distance for integer offsets (in cells)."""
    return np.hypot(np.asarray(d_cols) * cell_width, np.asarray(d_rows) * cell_height)


@dataclass
class DiscretizedPair:
    """Compacted index space handed to the transport solver."""
    bins: np.ndarray  # (m, 2) int: (row, col)
    coords: np.ndarray  # (m, 2) float: (x, y) cell centres
    weights_a: np.ndarray
    weights_b: np.ndarray
    cell_width: float
    cell_height: float
    resolution: int
    recoded: bool
    n_total: int  # Cells before recoding

    @property
    def n_active(self) -> int:
        return len(self.bins)

    @property
    def mass_a(self) -> float:
        return float(self.weights_a.sum())

    @property
    def mass_b(self) -> float:
        return float(self.weights_b.sum())

    def lattice_metric(self) -> LatticeMetric:
        return LatticeMetric(self.resolution, self.cell_width, self.cell_height)


def _build(
    bins: np.ndarray,
    coords: np.ndarray,
    weights_a: np.ndarray,
    weights_b: np.ndarray,
    cell_size: Tuple[float, float],
    resolution: int,
    recode: bool
) -> DiscretizedPair:
    n_total = len(bins)
    if recode:
        keep = (weights_a != 0) | (weights_b != 0)
        bins, coords = bins[keep], coords[keep]
        weights_a, weights_b = weights_a[keep], weights_b[keep]
        logger.debug(f"Recode: kept {int(keep.sum())}/{n_total} cells")

    return DiscretizedPair(
        bins=bins,
        coords=coords,
        weights_a=weights_a,
        weights_b=weights_b,
        cell_width=float(cell_size[0]),
        cell_height=float(cell_size[1]),
        resolution=int(resolution),
        recoded=recode,
        n_total=n_total,
    )


def discretize(pair: WeightPair, resolution: int, recode: bool) -> DiscretizedPair:
    """
    Map a weight pair onto the solver's index space.

    Args:
        pair: Two grids on the same layout (NaN is normalized to 0)
        resolution: Lattice resolution level L (>= 1)
        recode: Drop cells that are zero in both grids

    Returns:
        DiscretizedPair in row-major cell order
    """
    _check_resolution(resolution)
    layout = pair.layout
    return _build(
        bins=layout.cell_indices(),
        coords=layout.cell_centers(),
        weights_a=normalize(pair.grid_a).values.ravel().copy(),
        weights_b=normalize(pair.grid_b).values.ravel().copy(),
        cell_size=(layout.cell_width, layout.cell_height),
        resolution=resolution,
        recode=recode,
    )


def discretize_subset(pair: WeightPair, indices: np.ndarray, resolution: int, recode: bool) -> DiscretizedPair:
    """Like discretize(), restricted to the given row-major cell indices."""
    _check_resolution(resolution)
    layout = pair.layout
    indices = np.asarray(indices, dtype=np.int64)
    return _build(
        bins=layout.cell_indices()[indices],
        coords=layout.cell_centers()[indices],
        weights_a=normalize(pair.grid_a).values.ravel()[indices],
        weights_b=normalize(pair.grid_b).values.ravel()[indices],
        cell_size=(layout.cell_width, layout.cell_height),
        resolution=resolution,
        recode=recode,
    )


def discretize_points(
    coords: np.ndarray,
    weights_a: np.ndarray,
    weights_b: np.ndarray,
    cell_size,
    resolution: int,
    recode: bool = True
) -> DiscretizedPair:
    """
    Discretize raw cell-centre coordinates sharing a regular spacing.

    Args:
        coords: (n, 2) cell centres (x, y)
        weights_a, weights_b: (n,) weights; NaN is treated as 0
        cell_size: Cell width, or (width, height)
        resolution: Lattice resolution level L
        recode: Drop cells that are zero in both weight vectors
    """
    _check_resolution(resolution)
    coords = np.asarray(coords, dtype=np.float64)
    wa = np.nan_to_num(np.asarray(weights_a, dtype=np.float64), nan=0.0)
    wb = np.nan_to_num(np.asarray(weights_b, dtype=np.float64), nan=0.0)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise InvalidConfig(f"coords must have shape (n, 2), got {coords.shape}")
    if not (len(coords) == len(wa) == len(wb)):
        raise InvalidConfig(
            f"coords and weights must have the same length, got {len(coords)}, {len(wa)}, {len(wb)}"
        )
    if np.any(wa < 0) or np.any(wb < 0):
        raise InvalidConfig("weights must be non-negative")
    if np.any(np.isinf(wa)) or np.any(np.isinf(wb)):
        raise InvalidConfig("weights must be finite")

    if isinstance(cell_size, (tuple, list)):
        width, height = float(cell_size[0]), float(cell_size[1])
    else:
        width = height = float(cell_size)
    if width <= 0 or height <= 0:
        raise InvalidConfig(f"cell size must be positive, got ({width}, {height})")

    if len(coords):
        origin = coords.min(axis=0)
        cols = np.rint((coords[:, 0] - origin[0]) / width).astype(np.int64)
        rows = np.rint((coords[:, 1] - origin[1]) / height).astype(np.int64)
    else:
        cols = rows = np.zeros(0, dtype=np.int64)

    return _build(
        bins=np.column_stack([rows, cols]),
        coords=coords,
        weights_a=wa,
        weights_b=wb,
        cell_size=(width, height),
        resolution=resolution,
        recode=recode,
    )
