"""
Quadtree Aggregation.

Sensitive cells are protected by merging them with their neighbours into
aligned square blocks of 2^z x 2^z cells, going one zoom level up at a
time:

- Level 0 blocks are single cells; level z blocks cover 2^z x 2^z cells
  (clipped at the grid edge)
- A block merges into one unit when any unit inside it is sensitive
- A merged unit is sensitive when the rule flags its summed mass
- A block with no sensitive unit is left alone; it is only absorbed when
  a sibling forces the parent block to merge
- Every cell of a merged unit gets unit_mass / unit_cells

Total mass is preserved exactly. Units still sensitive at max_zoom are
kept as they are and reported as residual risk: the depth limit bounds
how coarse the output may become, so protection can remain incomplete.

The tree is stored as an arena: per-level arrays of block mass, cell
count and flags, plus the arena index of each block's parent. Depth is
bounded by max_zoom; there is no recursion.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Any

import numpy as np

from core.errors import InvalidConfig
from core.protection import ProtectionResult
from core.sensitivity import SensitivityRule, evaluate_rule
from schema.grid import Grid, normalize


logger = logging.getLogger(__name__)


@dataclass
class QuadtreeLevel:
    """All blocks of one zoom level."""
    level: int
    block_rows: int
    block_cols: int
    offset: int  # Arena index of block (0, 0) of this level
    mass: np.ndarray  # (block_rows, block_cols)
    cells: np.ndarray  # Number of real grid cells covered
    merged: np.ndarray  # Block acts as one unit
    sensitive: np.ndarray  # Block contains a sensitive unit

    @property
    def size(self) -> int:
        """Edge length of a block in cells."""
        return 2 ** self.level

    def arena_index(self, block_row: np.ndarray, block_col: np.ndarray) -> np.ndarray:
        return self.offset + block_row * self.block_cols + block_col


@dataclass
class QuadtreeArena:
    """Index arena of every block visited by the aggregation."""
    levels: List[QuadtreeLevel] = field(default_factory=list)
    parent: List[np.ndarray] = field(default_factory=list)  # Per level: arena index of parent (-1 at top)

    @property
    def n_blocks(self) -> int:
        return sum(lvl.mass.size for lvl in self.levels)

    def merged_blocks(self) -> List[Dict[str, Any]]:
        """Outermost merged units as (level, row, col, rows, cols, mass) records."""
        if not self.levels:
            return []
        rows, cols = self.levels[0].mass.shape
        covered = np.zeros((rows, cols), dtype=bool)
        blocks = []
        for lvl in reversed(self.levels[1:]):
            for br, bc in zip(*np.nonzero(lvl.merged)):
                r0, c0 = br * lvl.size, bc * lvl.size
                if covered[r0, c0]:
                    continue
                r1, c1 = min(r0 + lvl.size, rows), min(c0 + lvl.size, cols)
                covered[r0:r1, c0:c1] = True
                blocks.append({
                    "level": lvl.level,
                    "row": int(r0),
                    "col": int(c0),
                    "rows": int(r1 - r0),
                    "cols": int(c1 - c0),
                    "mass": float(lvl.mass[br, bc]),
                    "sensitive": bool(lvl.sensitive[br, bc]),
                })
        return blocks


def _coarsen(values: np.ndarray, block_rows: int, block_cols: int) -> np.ndarray:
    """Sum 2x2 groups of a level into the next level (edge blocks may be partial)."""
    padded = np.zeros((block_rows * 2, block_cols * 2), dtype=values.dtype)
    padded[:values.shape[0], :values.shape[1]] = values
    return padded.reshape(block_rows, 2, block_cols, 2).sum(axis=(1, 3))


class QuadtreeAggregator:
    """
    Protect a grid by quadtree aggregation of sensitive cells.

    The rule is evaluated on cell values at level 0 and on summed block
    mass for merged units.
    """

    def __init__(self, rule: SensitivityRule, max_zoom: int = 3):
        """
        Initialize aggregator.

        Args:
            rule: Callable flagging sensitive values (see core.sensitivity)
            max_zoom: Deepest zoom level; blocks never exceed 2^max_zoom cells per side
        """
        if not callable(rule):
            raise TypeError("rule must be callable")
        if isinstance(max_zoom, bool) or not isinstance(max_zoom, int) or max_zoom < 0:
            raise InvalidConfig(f"max_zoom must be an integer >= 0, got {max_zoom!r}")
        self.rule = rule
        self.max_zoom = max_zoom

    def build_arena(self, grid: Grid) -> QuadtreeArena:
        """Run the bottom-up merge and return the filled arena."""
        values = normalize(grid).values
        rows, cols = values.shape
        depth_needed = math.ceil(math.log2(max(rows, cols))) if max(rows, cols) > 1 else 0
        top = min(self.max_zoom, depth_needed)

        leaf_sensitive = evaluate_rule(self.rule, values)
        arena = QuadtreeArena()
        arena.levels.append(QuadtreeLevel(
            level=0,
            block_rows=rows,
            block_cols=cols,
            offset=0,
            mass=values.copy(),
            cells=np.ones((rows, cols), dtype=np.int64),
            merged=np.zeros((rows, cols), dtype=bool),
            sensitive=leaf_sensitive,
        ))

        for z in range(1, top + 1):
            child = arena.levels[-1]
            if not child.sensitive.any():
                logger.debug(f"Quadtree: no sensitive units left above zoom {z - 1}")
                break

            block_rows = math.ceil(child.block_rows / 2)
            block_cols = math.ceil(child.block_cols / 2)
            offset = child.offset + child.mass.size

            mass = _coarsen(child.mass, block_rows, block_cols)
            cells = _coarsen(child.cells, block_rows, block_cols)
            merged = _coarsen(child.sensitive.astype(np.int64), block_rows, block_cols) > 0

            sensitive = np.zeros_like(merged)
            if merged.any():
                sensitive[merged] = evaluate_rule(self.rule, mass[merged])

            level = QuadtreeLevel(
                level=z,
                block_rows=block_rows,
                block_cols=block_cols,
                offset=offset,
                mass=mass,
                cells=cells,
                merged=merged,
                sensitive=sensitive,
            )

            child_r, child_c = np.indices(child.mass.shape)
            arena.parent.append(level.arena_index(child_r // 2, child_c // 2).ravel())
            arena.levels.append(level)

            logger.debug(
                f"Quadtree zoom {z}: {int(merged.sum())} blocks merged, "
                f"{int(sensitive.sum())} still sensitive"
            )

        arena.parent.append(np.full(arena.levels[-1].mass.size, -1, dtype=np.int64))
        return arena

    def apply(self, grid: Grid) -> ProtectionResult:
        """
        Aggregate sensitive cells of a grid.

        Args:
            grid: Grid with unprotected values

        Returns:
            ProtectionResult with the aggregated grid; details carry the
            merged blocks and the residual risk at the depth limit
        """
        source = normalize(grid)
        arena = self.build_arena(source)
        rows, cols = source.shape

        protected = source.values.copy()
        assigned = np.zeros((rows, cols), dtype=bool)
        r, c = np.indices((rows, cols))

        # Outermost merged ancestor wins
        for lvl in reversed(arena.levels[1:]):
            br, bc = r >> lvl.level, c >> lvl.level
            take = lvl.merged[br, bc] & ~assigned
            if not take.any():
                continue
            protected[take] = lvl.mass[br, bc][take] / lvl.cells[br, bc][take]
            assigned |= take

        top = arena.levels[-1]
        residual_units = int(top.sensitive.sum())
        residual_mass = float(top.mass[top.sensitive].sum())

        result = ProtectionResult(
            grid=source.with_values(protected),
            method="quadtree",
            input_mass=source.total_mass,
            output_mass=float(protected.sum()),
            details={
                "max_zoom": self.max_zoom,
                "zoom_reached": top.level,
                "merged_cells": int(assigned.sum()),
                "blocks": arena.merged_blocks(),
                "residual_sensitive_units": residual_units,
                "residual_mass": residual_mass,
            },
        )

        logger.info(
            f"Quadtree complete: zoom reached {top.level}/{self.max_zoom}, "
            f"{result.details['merged_cells']} cells merged into {len(result.details['blocks'])} blocks"
        )
        if residual_units:
            logger.warning(
                f"Quadtree depth limit reached with {residual_units} sensitive units "
                f"(mass {residual_mass:.4g}) left unprotected"
            )
        return result
