"""
Tests for the grid model: layout geometry, value handling and the stable
row-major ordering every distance computation relies on.
"""

import numpy as np
import pytest

from core.errors import InvalidConfig, LayoutMismatch
from schema.grid import Grid, GridLayout, WeightPair, coordinates_of, values_of, normalize


def test_cell_centers_follow_lower_left_origin():
    """Row 0 is the lowest y band; centres are offset by half a cell."""
    grid = Grid.from_array(np.zeros((2, 3)), cell_size=200, origin=(1000.0, 5000.0))

    centers = coordinates_of(grid)
    assert centers.shape == (6, 2)
    # Row-major: (row 0, col 0), (row 0, col 1), ...
    assert tuple(centers[0]) == (1100.0, 5100.0)
    assert tuple(centers[1]) == (1300.0, 5100.0)
    assert tuple(centers[3]) == (1100.0, 5300.0)
    assert grid.layout.center_of(1, 2) == (1500.0, 5300.0)


def test_extent_and_diagonal():
    layout = GridLayout(rows=3, cols=4, cell_width=1.0, cell_height=1.0)
    assert layout.extent == (0.0, 0.0, 4.0, 3.0)
    assert layout.diagonal == pytest.approx(5.0)
    assert layout.n_cells == 12


def test_values_are_read_only():
    grid = Grid.from_array([[1.0, 2.0], [3.0, 4.0]])
    with pytest.raises(ValueError):
        grid.values[0, 0] = 10.0


def test_construction_copies_input():
    source = np.array([[1.0, 2.0]])
    grid = Grid.from_array(source)
    source[0, 0] = 99.0
    assert grid.values[0, 0] == 1.0


def test_negative_values_rejected():
    with pytest.raises(InvalidConfig):
        Grid.from_array([[1.0, -1.0]])


def test_infinite_values_rejected():
    with pytest.raises(InvalidConfig):
        Grid.from_array([[np.inf, 0.0]])
    with pytest.raises(InvalidConfig):
        Grid.from_array([[0.0, -np.inf]])
    # NaN still means no data
    assert Grid.from_array([[np.nan, 1.0]]).total_mass == 1.0


def test_shape_mismatch_rejected():
    layout = GridLayout(rows=2, cols=2, cell_width=1.0, cell_height=1.0)
    with pytest.raises(InvalidConfig):
        Grid(layout, np.zeros((3, 2)))


def test_invalid_layout_rejected():
    with pytest.raises(InvalidConfig):
        GridLayout(rows=0, cols=2, cell_width=1.0, cell_height=1.0)
    with pytest.raises(InvalidConfig):
        GridLayout(rows=2, cols=2, cell_width=0.0, cell_height=1.0)


def test_missing_values_count_as_zero():
    grid = Grid.from_array([[np.nan, 2.0], [3.0, 0.0]])

    assert grid.has_missing
    assert grid.total_mass == 5.0
    assert grid.non_zero_cells == 2

    clean = normalize(grid)
    assert not clean.has_missing
    assert clean.values[0, 0] == 0.0
    # Already clean grids are returned unchanged
    assert normalize(clean) is clean


def test_values_of_is_row_major_copy():
    grid = Grid.from_array([[1.0, 2.0], [3.0, 4.0]])
    flat = values_of(grid)
    assert list(flat) == [1.0, 2.0, 3.0, 4.0]
    flat[0] = 100.0
    assert grid.values[0, 0] == 1.0


def test_from_points_counts_per_cell():
    """Points are binned by floor((coord - origin) / cell_size)."""
    grid = Grid.from_points(
        x=[0.5, 0.6, 1.5],
        y=[0.5, 0.5, 0.5],
        cell_size=1.0,
    )
    assert grid.shape == (1, 2)
    np.testing.assert_array_equal(grid.values, [[2.0, 1.0]])


def test_from_points_with_weights_and_fixed_shape():
    grid = Grid.from_points(
        x=[50.0, 150.0, 950.0],
        y=[50.0, 150.0, 50.0],
        cell_size=100.0,
        weights=[2.0, 3.0, 7.0],
        origin=(0.0, 0.0),
        shape=(2, 2),
    )
    # The third point falls outside the 2x2 grid and is dropped
    np.testing.assert_array_equal(grid.values, [[2.0, 0.0], [0.0, 3.0]])
    assert grid.total_mass == 5.0


def test_layout_mismatch():
    a = Grid.from_array(np.zeros((2, 2)), cell_size=1.0)
    b = Grid.from_array(np.zeros((2, 2)), cell_size=2.0)
    c = Grid.from_array(np.zeros((2, 2)), cell_size=1.0, origin=(1.0, 0.0))

    with pytest.raises(LayoutMismatch):
        a.layout.assert_same(b.layout)
    with pytest.raises(LayoutMismatch):
        WeightPair(a, c)
    # LayoutMismatch is also a ValueError
    with pytest.raises(ValueError):
        WeightPair(a, b)


def test_equals_and_with_values():
    grid = Grid.from_array([[1.0, np.nan]])
    same = grid.with_values([[1.0, np.nan]])
    other = grid.with_values([[1.0, 0.0]])

    assert grid.equals(same)
    assert not grid.equals(other)
    assert grid.zeros_like().total_mass == 0.0


def test_to_dataframe():
    grid = Grid.from_array([[1.0, 2.0], [3.0, 4.0]], cell_size=10.0)
    df = grid.to_dataframe()

    assert list(df.columns) == ['row', 'col', 'x', 'y', 'value']
    assert len(df) == 4
    assert df['value'].sum() == 10.0
    assert df.iloc[3]['x'] == 15.0 and df.iloc[3]['y'] == 15.0


def test_summary_mentions_mass():
    grid = Grid.from_array([[1.0, 2.0]])
    text = grid.summary()
    assert "Grid Summary" in text
    assert "Total Mass: 3.00" in text
