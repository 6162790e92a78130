"""
Grid Structure for Gridded Mass Distributions.

Defines the rectangular cell grid that every protection transform and
distance computation works on. A grid is a fixed layout (rows, cols,
cell size, origin) plus one value per cell.

Conventions:
- Origin is the lower-left corner of cell (0, 0)
- Row index grows with y, column index grows with x
- Cells are iterated row-major, so every grid derived from the same
  layout yields coordinates and values in the same order
- NaN means "no data" and is treated as zero weight (see normalize())
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np

from core.errors import InvalidConfig, LayoutMismatch


logger = logging.getLogger(__name__)


CellSize = Union[float, Tuple[float, float]]


def _split_cell_size(cell_size: CellSize) -> Tuple[float, float]:
    if isinstance(cell_size, (tuple, list)):
        width, height = float(cell_size[0]), float(cell_size[1])
    else:
        width = height = float(cell_size)
    if width <= 0 or height <= 0:
        raise InvalidConfig(f"cell size must be positive, got ({width}, {height})")
    return width, height


@dataclass(frozen=True)
class GridLayout:
    """Geometry of a rectangular grid, shared by grids that can be compared."""
    rows: int
    cols: int
    cell_width: float
    cell_height: float
    origin_x: float = 0.0
    origin_y: float = 0.0

    def __post_init__(self):
        if self.rows < 1 or self.cols < 1:
            raise InvalidConfig(f"grid must have at least one cell, got {self.rows}x{self.cols}")
        if self.cell_width <= 0 or self.cell_height <= 0:
            raise InvalidConfig(
                f"cell size must be positive, got ({self.cell_width}, {self.cell_height})"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def n_cells(self) -> int:
        """Total number of cells in the grid."""
        return self.rows * self.cols

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(xmin, ymin, xmax, ymax) of the grid in map units."""
        return (
            self.origin_x,
            self.origin_y,
            self.origin_x + self.cols * self.cell_width,
            self.origin_y + self.rows * self.cell_height,
        )

    @property
    def diagonal(self) -> float:
        """Length of the grid diagonal in map units."""
        return float(np.hypot(self.cols * self.cell_width, self.rows * self.cell_height))

    def cell_indices(self) -> np.ndarray:
        """(n, 2) array of (row, col) indices in row-major order."""
        rows, cols = np.divmod(np.arange(self.n_cells), self.cols)
        return np.column_stack([rows, cols])

    def cell_centers(self) -> np.ndarray:
        """(n, 2) array of (x, y) cell centres in row-major order."""
        idx = self.cell_indices()
        x = self.origin_x + (idx[:, 1] + 0.5) * self.cell_width
        y = self.origin_y + (idx[:, 0] + 0.5) * self.cell_height
        return np.column_stack([x, y])

    def center_of(self, row: int, col: int) -> Tuple[float, float]:
        """Centre of a single cell."""
        return (
            self.origin_x + (col + 0.5) * self.cell_width,
            self.origin_y + (row + 0.5) * self.cell_height,
        )

    def assert_same(self, other: 'GridLayout') -> None:
        """Raise LayoutMismatch unless both layouts describe the same cells."""
        if self != other:
            raise LayoutMismatch(f"Grid layouts differ: {self} vs {other}")


class Grid:
    """
    Immutable snapshot of a gridded mass distribution.

    The value array is copied on construction and flagged read-only, so
    transforms always build a new Grid instead of editing one in place.
    """

    def __init__(self, layout: GridLayout, values: np.ndarray):
        """
        Initialize a grid.

        Args:
            layout: Grid geometry
            values: Array of shape (rows, cols); values >= 0 or NaN (no data)
        """
        array = np.array(values, dtype=np.float64)
        if array.shape != layout.shape:
            raise InvalidConfig(f"Value shape {array.shape} doesn't match layout shape {layout.shape}")
        if np.any(array < 0):
            raise InvalidConfig("Grid values must be non-negative (or NaN for no data)")
        if np.any(np.isinf(array)):
            raise InvalidConfig("Grid values must be finite (or NaN for no data)")
        array.setflags(write=False)

        self.layout = layout
        self._values = array

    @classmethod
    def from_array(
        cls,
        values: np.ndarray,
        cell_size: CellSize = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0)
    ) -> 'Grid':
        """Build a grid from a (rows, cols) array, row 0 being the lowest y."""
        array = np.asarray(values, dtype=np.float64)
        if array.ndim != 2:
            raise InvalidConfig(f"values must be 2-dimensional, got {array.ndim} dimensions")
        width, height = _split_cell_size(cell_size)
        layout = GridLayout(
            rows=array.shape[0],
            cols=array.shape[1],
            cell_width=width,
            cell_height=height,
            origin_x=float(origin[0]),
            origin_y=float(origin[1]),
        )
        return cls(layout, array)

    @classmethod
    def from_points(
        cls,
        x: np.ndarray,
        y: np.ndarray,
        cell_size: CellSize,
        weights: Optional[np.ndarray] = None,
        origin: Optional[Tuple[float, float]] = None,
        shape: Optional[Tuple[int, int]] = None
    ) -> 'Grid':
        """
        Aggregate point records into per-cell totals.

        Args:
            x, y: Point coordinates
            cell_size: Cell width (and height) in map units
            weights: Optional per-point weight (default 1 per point = counts)
            origin: Lower-left corner; defaults to the snapped point minimum
            shape: (rows, cols); defaults to the extent covering all points

        Returns:
            Grid with the summed weights per cell
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if x.shape != y.shape:
            raise InvalidConfig(f"x and y must have the same shape, got {x.shape} and {y.shape}")
        if x.size == 0 and (origin is None or shape is None):
            raise InvalidConfig("origin and shape are required when there are no points")
        w = np.ones_like(x) if weights is None else np.asarray(weights, dtype=np.float64)

        width, height = _split_cell_size(cell_size)
        if origin is None:
            origin = (np.floor(x.min() / width) * width, np.floor(y.min() / height) * height)

        cols_idx = np.floor((x - origin[0]) / width).astype(np.int64)
        rows_idx = np.floor((y - origin[1]) / height).astype(np.int64)

        if shape is None:
            shape = (int(rows_idx.max()) + 1, int(cols_idx.max()) + 1)

        inside = (rows_idx >= 0) & (rows_idx < shape[0]) & (cols_idx >= 0) & (cols_idx < shape[1])
        if not np.all(inside):
            logger.warning(f"{int((~inside).sum())} points fall outside the grid and are ignored")

        values = np.zeros(shape, dtype=np.float64)
        np.add.at(values, (rows_idx[inside], cols_idx[inside]), w[inside])
        return cls.from_array(values, cell_size=(width, height), origin=origin)

    @property
    def values(self) -> np.ndarray:
        """Read-only (rows, cols) value array."""
        return self._values

    @property
    def shape(self) -> Tuple[int, int]:
        return self.layout.shape

    @property
    def total_mass(self) -> float:
        """Sum of all values, NaN counted as zero."""
        return float(np.nansum(self._values))

    @property
    def non_zero_cells(self) -> int:
        """Number of cells carrying mass."""
        return int(np.count_nonzero(np.nan_to_num(self._values, nan=0.0)))

    @property
    def has_missing(self) -> bool:
        return bool(np.isnan(self._values).any())

    def with_values(self, values: np.ndarray) -> 'Grid':
        """New grid on the same layout."""
        return Grid(self.layout, values)

    def zeros_like(self) -> 'Grid':
        return Grid(self.layout, np.zeros(self.layout.shape))

    def equals(self, other: 'Grid') -> bool:
        """Same layout and same values (NaN equal to NaN)."""
        return self.layout == other.layout and bool(
            np.array_equal(self._values, other._values, equal_nan=True)
        )

    def to_dataframe(self):
        """
        Convert grid to a pandas DataFrame, one row per cell.

        Returns:
            pandas DataFrame with row, col, x, y and value columns
        """
        import pandas as pd

        idx = self.layout.cell_indices()
        centers = self.layout.cell_centers()
        return pd.DataFrame({
            'row': idx[:, 0],
            'col': idx[:, 1],
            'x': centers[:, 0],
            'y': centers[:, 1],
            'value': self._values.ravel(),
        })

    def summary(self) -> str:
        """Generate a summary of the grid."""
        lines = [
            "=" * 60,
            "Grid Summary",
            "=" * 60,
            f"Shape: {self.shape}",
            f"Cell size: {self.layout.cell_width} x {self.layout.cell_height}",
            f"Origin: ({self.layout.origin_x}, {self.layout.origin_y})",
            f"Total Cells: {self.layout.n_cells:,}",
            f"Non-Zero Cells: {self.non_zero_cells:,} "
            f"({100 * self.non_zero_cells / self.layout.n_cells:.2f}%)",
            f"Missing Cells: {int(np.isnan(self._values).sum()):,}",
            f"Total Mass: {self.total_mass:,.2f}",
            "=" * 60,
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Grid(shape={self.shape}, mass={self.total_mass:.4g})"


@dataclass(frozen=True)
class WeightPair:
    """Two grids on an identical layout; the only thing distances are defined on."""
    grid_a: Grid
    grid_b: Grid

    def __post_init__(self):
        self.grid_a.layout.assert_same(self.grid_b.layout)

    @property
    def layout(self) -> GridLayout:
        return self.grid_a.layout


def coordinates_of(grid: Grid) -> np.ndarray:
    """(n, 2) cell centres in the stable row-major order."""
    return grid.layout.cell_centers()


def values_of(grid: Grid) -> np.ndarray:
    """(n,) cell values in the stable row-major order."""
    return grid.values.ravel().copy()


def normalize(grid: Grid) -> Grid:
    """Replace NaN (no data) by 0.0."""
    if not grid.has_missing:
        return grid
    return grid.with_values(np.nan_to_num(grid.values, nan=0.0))
