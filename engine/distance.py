"""
Distance Orchestration.

Wires the pieces into the two public comparisons:

- whole_map_distance:  normalize -> layout check -> discretize -> solve
- focus_area_distance: normalize -> layout check -> mask -> discretize -> solve

Focus-area comparisons run in one of two modes:

- "zero" (default): both grids keep their full layout and every cell
  outside the area is set to zero before discretizing
- "crop": only the cells inside the area form the coordinate set

They are separate code paths. With an explicit unbalanced cost they give
the same distance; they diverge when the cost is derived from the extent
being compared (half_diagonal_cost), because the extent differs.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Any, Optional

from core.config import TransportConfig
from core.errors import InvalidConfig
from core.memory_monitor import MemoryMonitor
from engine.discretizer import DiscretizedPair, discretize, discretize_subset
from engine.transport import TransportPlan, TransportResult, TransportSolver
from schema.area import AreaSpec, apply_mask, crop_indices
from schema.grid import Grid, GridLayout, WeightPair, normalize


logger = logging.getLogger(__name__)


FOCUS_MODES = ('zero', 'crop')


@dataclass
class DistanceResult:
    """Result of one grid comparison."""
    distance: float
    scope: str  # 'whole_map' or 'focus_area'
    mass_a: float
    mass_b: float
    transport_cost: float
    unbalanced_cost_total: float
    unmatched_mass: float
    method: str
    resolution: int
    n_active_cells: int
    n_total_cells: int
    solve_seconds: float
    focus_mode: Optional[str] = None
    plan: Optional[TransportPlan] = None

    @classmethod
    def from_transport(
        cls,
        result: TransportResult,
        pair: DiscretizedPair,
        scope: str,
        focus_mode: Optional[str] = None
    ) -> 'DistanceResult':
        return cls(
            distance=result.cost,
            scope=scope,
            mass_a=result.mass_a,
            mass_b=result.mass_b,
            transport_cost=result.transport_cost,
            unbalanced_cost_total=result.unbalanced_cost_total,
            unmatched_mass=result.unmatched_mass,
            method=result.method,
            resolution=result.resolution,
            n_active_cells=pair.n_active,
            n_total_cells=pair.n_total,
            solve_seconds=result.solve_seconds,
            focus_mode=focus_mode,
            plan=result.plan,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (plan omitted)."""
        return {
            "distance": self.distance,
            "scope": self.scope,
            "focus_mode": self.focus_mode,
            "mass_a": self.mass_a,
            "mass_b": self.mass_b,
            "transport_cost": self.transport_cost,
            "unbalanced_cost_total": self.unbalanced_cost_total,
            "unmatched_mass": self.unmatched_mass,
            "method": self.method,
            "resolution": self.resolution,
            "n_active_cells": self.n_active_cells,
            "n_total_cells": self.n_total_cells,
            "solve_seconds": self.solve_seconds,
        }


def half_diagonal_cost(layout: GridLayout) -> float:
    """Conventional per-unit penalty for missing mass: half the grid diagonal."""
    return 0.5 * layout.diagonal


class DistanceOrchestrator:
    """
    Compare grids with the KWD distance.

    Grids are never modified; one orchestrator can run many independent
    comparisons, serially or on a thread pool (compare_many).
    """

    def __init__(self, config: Optional[TransportConfig] = None, monitor: Optional[MemoryMonitor] = None):
        """
        Initialize orchestrator.

        Args:
            config: Transport settings; defaults to TransportConfig()
            monitor: Optional memory monitor passed to the solver
        """
        self.config = config or TransportConfig()
        self.config.validate()
        self.solver = TransportSolver(self.config, monitor=monitor)

    def _prepare(self, grid_a: Grid, grid_b: Grid) -> WeightPair:
        grid_a.layout.assert_same(grid_b.layout)
        return WeightPair(normalize(grid_a), normalize(grid_b))

    def whole_map_distance(self, grid_a: Grid, grid_b: Grid) -> DistanceResult:
        """
        KWD distance over the whole grid.

        Args:
            grid_a: Reference grid
            grid_b: Grid to compare (same layout)

        Returns:
            DistanceResult
        """
        pair = self._prepare(grid_a, grid_b)
        discretized = discretize(pair, self.config.resolution, self.config.recode)
        result = self.solver.solve(discretized)
        return DistanceResult.from_transport(result, discretized, scope='whole_map')

    def focus_area_distance(
        self,
        grid_a: Grid,
        grid_b: Grid,
        area: AreaSpec,
        mode: str = "zero"
    ) -> DistanceResult:
        """
        KWD distance restricted to a focus area.

        Args:
            grid_a: Reference grid
            grid_b: Grid to compare (same layout)
            area: Focus area
            mode: 'zero' (mask the full grids) or 'crop' (inside cells only)

        Returns:
            DistanceResult
        """
        if mode not in FOCUS_MODES:
            raise InvalidConfig(f"focus mode must be one of {FOCUS_MODES}, got {mode!r}")
        if not isinstance(area, AreaSpec):
            raise InvalidConfig(f"area must be an AreaSpec, got {type(area).__name__}")

        pair = self._prepare(grid_a, grid_b)
        if mode == 'zero':
            masked = WeightPair(apply_mask(pair.grid_a, area), apply_mask(pair.grid_b, area))
            discretized = discretize(masked, self.config.resolution, self.config.recode)
        else:
            inside = crop_indices(pair.layout, area)
            discretized = discretize_subset(pair, inside, self.config.resolution, self.config.recode)

        logger.debug(
            f"Focus area ({mode}): {discretized.n_active}/{pair.layout.n_cells} cells "
            f"passed to the solver"
        )
        result = self.solver.solve(discretized)
        return DistanceResult.from_transport(result, discretized, scope='focus_area', focus_mode=mode)

    def compare_many(
        self,
        baseline: Grid,
        variants: Dict[str, Grid],
        area: Optional[AreaSpec] = None,
        mode: str = "zero",
        max_workers: int = 1
    ) -> Dict[str, DistanceResult]:
        """
        Compare several protected variants against one baseline.

        Queries are independent, so they may run on a thread pool; the
        results are the same as a serial run.

        Args:
            baseline: Reference grid
            variants: Name -> grid to compare
            area: Optional focus area (whole map if None)
            mode: Focus mode when an area is given
            max_workers: Thread pool size (1 = serial)

        Returns:
            Name -> DistanceResult, in the order of ``variants``
        """
        if max_workers < 1:
            raise InvalidConfig(f"max_workers must be >= 1, got {max_workers}")

        # Fail fast on layouts before starting any solve
        for name, grid in variants.items():
            baseline.layout.assert_same(grid.layout)

        def run(grid: Grid) -> DistanceResult:
            if area is None:
                return self.whole_map_distance(baseline, grid)
            return self.focus_area_distance(baseline, grid, area, mode=mode)

        if max_workers == 1 or len(variants) <= 1:
            results = {name: run(grid) for name, grid in variants.items()}
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = {name: pool.submit(run, grid) for name, grid in variants.items()}
                results = {name: future.result() for name, future in futures.items()}

        for name, res in results.items():
            logger.info(f"  {name}: distance={res.distance:.6g} ({res.scope})")
        return results


def whole_map_distance(grid_a: Grid, grid_b: Grid, config: Optional[TransportConfig] = None) -> DistanceResult:
    """KWD distance over the whole grid; see DistanceOrchestrator."""
    return DistanceOrchestrator(config).whole_map_distance(grid_a, grid_b)


def focus_area_distance(
    grid_a: Grid,
    grid_b: Grid,
    area: AreaSpec,
    config: Optional[TransportConfig] = None,
    mode: str = "zero"
) -> DistanceResult:
    """KWD distance inside a focus area; see DistanceOrchestrator."""
    return DistanceOrchestrator(config).focus_area_distance(grid_a, grid_b, area, mode=mode)
