"""
Kantorovich-Wasserstein Transport Solver.

Computes the minimum cost of morphing one weight distribution into
another over the same set of grid cells.

FORMULATION:
Let d_i = a_i - b_i (mass present in both at one cell costs nothing).
Sources are cells with d_i > 0, sinks are cells with d_i < 0.

    minimize   sum_ij c_ij x_ij  +  u * (unmatched mass)
    subject to mass balance at every source and sink, x >= 0

Two exact LP formulations, both solved by HiGHS (simplex) through
scipy.optimize.linprog with sparse constraint matrices:

- bipartite: one variable per (source, sink) pair; c_ij is the ground
  distance (L-level lattice norm or exact Euclidean)
- network: min-cost flow on the lattice covering the active bounding box,
  one arc per cell and L-level direction, arc cost = physical step
  length. O(n * |directions|) variables instead of O(sources * sinks).
  Same optimum as bipartite with the lattice norm, since a shortest
  lattice path between two cells never leaves their bounding box.

UNBALANCED MODE:
The excess delta = |sum(a) - sum(b)| is routed to (or drawn from) a
virtual node at ``unbalanced_cost`` per unit. Only the heavier side is
connected to the virtual node, so the excess contributes exactly
delta * unbalanced_cost and the rest is an ordinary balanced match.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

import numpy as np
from scipy.optimize import linprog
from scipy.sparse import coo_matrix

from core.config import TransportConfig
from core.errors import MassMismatch, SolverError, TransportTimeout
from core.memory_monitor import MemoryMonitor
from engine.discretizer import DiscretizedPair, discretize_points, euclidean_distance


logger = logging.getLogger(__name__)


# Flows below this are solver noise and dropped from reported plans
FLOW_EPSILON = 1e-12


@dataclass
class TransportPlan:
    """
    Arcs of an optimal transport solution.

    For the bipartite formulation each arc is a direct (source, sink)
    assignment; for the network formulation arcs are lattice steps.
    Bins are (row, col) grid indices.
    """
    kind: str  # 'assignment' or 'edge_flow'
    origins: np.ndarray  # (k, 2)
    destinations: np.ndarray  # (k, 2)
    flow: np.ndarray  # (k,)
    unit_cost: np.ndarray  # (k,)
    unmatched_bins: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.int64))
    unmatched_mass: np.ndarray = field(default_factory=lambda: np.zeros(0))  # >0 removed from A, <0 added for B

    @property
    def transport_cost(self) -> float:
        return float(np.dot(self.flow, self.unit_cost))

    @property
    def n_arcs(self) -> int:
        return len(self.flow)


@dataclass
class TransportResult:
    """Result of a transport solve."""
    cost: float
    transport_cost: float = 0.0
    unbalanced_cost_total: float = 0.0
    unmatched_mass: float = 0.0
    mass_a: float = 0.0
    mass_b: float = 0.0
    balanced: bool = True
    method: str = "trivial"
    ground_distance: str = "lattice"
    resolution: int = 1
    n_active_cells: int = 0
    n_sources: int = 0
    n_sinks: int = 0
    n_variables: int = 0
    solve_seconds: float = 0.0
    plan: Optional[TransportPlan] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (plan omitted)."""
        return {
            "cost": self.cost,
            "transport_cost": self.transport_cost,
            "unbalanced_cost_total": self.unbalanced_cost_total,
            "unmatched_mass": self.unmatched_mass,
            "mass_a": self.mass_a,
            "mass_b": self.mass_b,
            "balanced": self.balanced,
            "method": self.method,
            "ground_distance": self.ground_distance,
            "resolution": self.resolution,
            "n_active_cells": self.n_active_cells,
            "n_sources": self.n_sources,
            "n_sinks": self.n_sinks,
            "n_variables": self.n_variables,
            "solve_seconds": self.solve_seconds,
        }


class TransportSolver:
    """
    Exact optimal transport between two weight vectors on grid bins.

    The solver is stateless between calls; one instance can serve many
    independent queries.
    """

    def __init__(self, config: TransportConfig, monitor: Optional[MemoryMonitor] = None):
        """
        Initialize solver.

        Args:
            config: Transport settings (validated here)
            monitor: Optional memory monitor for LP size checkpoints
        """
        config.validate()
        self.config = config
        self.monitor = monitor

    def choose_method(self, n_sources: int, n_sinks: int) -> str:
        """Formulation used for a problem of this size."""
        if self.config.ground_distance == 'euclidean':
            return 'bipartite'
        if self.config.method != 'auto':
            return self.config.method
        return 'bipartite' if n_sources * n_sinks <= self.config.bipartite_max_pairs else 'network'

    def solve(self, pair: DiscretizedPair) -> TransportResult:
        """
        Solve the transport problem for a discretized pair.

        Args:
            pair: Output of the bin discretizer

        Returns:
            TransportResult; ``cost`` is the KWD distance

        Raises:
            MassMismatch: balanced mode with unequal totals
            TransportTimeout: time_limit reached
            SolverError: the LP backend failed
        """
        cfg = self.config
        start = time.perf_counter()

        a = pair.weights_a.astype(np.float64)
        b = pair.weights_b.astype(np.float64)
        mass_a, mass_b = float(a.sum()), float(b.sum())
        excess = mass_a - mass_b

        if cfg.balanced:
            if abs(excess) > cfg.mass_tolerance * max(mass_a, mass_b):
                raise MassMismatch(
                    f"Balanced transport needs equal totals, got {mass_a:.10g} vs {mass_b:.10g} "
                    f"(difference {excess:.6g}); use balanced=False with an unbalanced_cost"
                )
            # Totals agree within tolerance: match them exactly
            if mass_b > 0:
                b = b * (mass_a / mass_b)
            excess = 0.0

        d = a - b
        src_idx = np.flatnonzero(d > 0)
        dst_idx = np.flatnonzero(d < 0)
        supply = d[src_idx]
        demand = -d[dst_idx]

        unit_penalty = 0.0 if cfg.balanced else float(cfg.unbalanced_cost)
        result = TransportResult(
            cost=0.0,
            mass_a=mass_a,
            mass_b=mass_b,
            balanced=cfg.balanced,
            ground_distance=cfg.ground_distance,
            resolution=pair.resolution,
            n_active_cells=pair.n_active,
            n_sources=len(src_idx),
            n_sinks=len(dst_idx),
            unmatched_mass=abs(excess),
            unbalanced_cost_total=abs(excess) * unit_penalty,
        )

        if len(src_idx) == 0 or len(dst_idx) == 0:
            # Nothing can be matched: either identical, or all of the
            # difference is unmatched mass
            if excess == 0.0 and (len(src_idx) or len(dst_idx)):
                logger.debug("Residual mass difference within tolerance, treated as identical")
            result.transport_cost = 0.0
            if cfg.keep_plan:
                result.plan = self._unmatched_only_plan(pair, src_idx, dst_idx, supply, demand, excess)
        else:
            method = self.choose_method(len(src_idx), len(dst_idx))
            result.method = method
            if method == 'bipartite':
                transport_cost, n_vars, plan = self._solve_bipartite(
                    pair, src_idx, dst_idx, supply, demand, excess, unit_penalty
                )
            else:
                transport_cost, n_vars, plan = self._solve_network(pair, d, excess, unit_penalty)
            result.transport_cost = transport_cost
            result.n_variables = n_vars
            if cfg.keep_plan:
                result.plan = plan

        result.cost = result.transport_cost + result.unbalanced_cost_total
        result.solve_seconds = time.perf_counter() - start

        logger.info(
            f"Transport solved: method={result.method}, L={pair.resolution}, "
            f"cost={result.cost:.6g} (transport={result.transport_cost:.6g}, "
            f"unmatched={result.unmatched_mass:.6g}), sources={result.n_sources}, "
            f"sinks={result.n_sinks}, vars={result.n_variables:,}, {result.solve_seconds:.3f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Formulations
    # ------------------------------------------------------------------

    def _ground_costs(self, pair: DiscretizedPair, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        d_rows = dst[None, :, 0] - src[:, None, 0]
        d_cols = dst[None, :, 1] - src[:, None, 1]
        if self.config.ground_distance == 'euclidean':
            return euclidean_distance(d_cols, d_rows, pair.cell_width, pair.cell_height)
        return pair.lattice_metric().distance(d_cols, d_rows)

    def _solve_bipartite(
        self,
        pair: DiscretizedPair,
        src_idx: np.ndarray,
        dst_idx: np.ndarray,
        supply: np.ndarray,
        demand: np.ndarray,
        excess: float,
        unit_penalty: float
    ) -> Tuple[float, int, TransportPlan]:
        src_bins = pair.bins[src_idx]
        dst_bins = pair.bins[dst_idx]
        p, q = len(src_idx), len(dst_idx)
        n_pairs = p * q

        costs = self._ground_costs(pair, src_bins, dst_bins).ravel()

        # Row i: sum_j x_ij (+ slack_i) = supply_i ; row p+j: sum_i x_ij (+ slack_j) = demand_j
        pair_ids = np.arange(n_pairs)
        rows = [np.repeat(np.arange(p), q), p + np.tile(np.arange(q), p)]
        cols = [pair_ids, pair_ids]
        objective = [costs]

        if excess > 0:
            # A heavier: source mass may leave to the virtual sink
            rows.append(np.arange(p))
            cols.append(n_pairs + np.arange(p))
            objective.append(np.full(p, unit_penalty))
        elif excess < 0:
            # B heavier: sink mass may arrive from the virtual source
            rows.append(p + np.arange(q))
            cols.append(n_pairs + np.arange(q))
            objective.append(np.full(q, unit_penalty))

        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
        c_vec = np.concatenate(objective)
        A_eq = coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(p + q, len(c_vec))).tocsr()
        b_eq = np.concatenate([supply, demand])

        x = self._run_lp(c_vec, A_eq, b_eq, label=f"bipartite {p}x{q}")
        transport_cost = float(np.dot(costs, x[:n_pairs]))

        flows = x[:n_pairs]
        keep = flows > FLOW_EPSILON
        i, j = np.divmod(np.flatnonzero(keep), q)
        plan = TransportPlan(
            kind='assignment',
            origins=src_bins[i],
            destinations=dst_bins[j],
            flow=flows[keep],
            unit_cost=costs[keep],
        )
        slack = x[n_pairs:]
        if excess != 0 and len(slack):
            has = slack > FLOW_EPSILON
            if excess > 0:
                plan.unmatched_bins = src_bins[has]
                plan.unmatched_mass = slack[has]
            else:
                plan.unmatched_bins = dst_bins[has]
                plan.unmatched_mass = -slack[has]

        return transport_cost, len(c_vec), plan

    def _solve_network(
        self,
        pair: DiscretizedPair,
        d: np.ndarray,
        excess: float,
        unit_penalty: float
    ) -> Tuple[float, int, TransportPlan]:
        metric = pair.lattice_metric()
        low = pair.bins.min(axis=0)
        height, width = pair.bins.max(axis=0) - low + 1
        n_nodes = int(height * width)

        node_of_bin = (pair.bins[:, 0] - low[0]) * width + (pair.bins[:, 1] - low[1])
        supply = np.zeros(n_nodes)
        np.add.at(supply, node_of_bin, d)

        rr, cc = np.indices((height, width))
        tails, heads, arc_costs = [], [], []
        for (dc, dr), length in zip(metric.directions, metric.step_lengths):
            r2, c2 = rr + dr, cc + dc
            ok = (r2 >= 0) & (r2 < height) & (c2 >= 0) & (c2 < width)
            tails.append((rr * width + cc)[ok])
            heads.append((r2 * width + c2)[ok])
            arc_costs.append(np.full(int(ok.sum()), length))
        tail = np.concatenate(tails)
        head = np.concatenate(heads)
        arc_cost = np.concatenate(arc_costs)
        n_arcs = len(tail)

        # Node v: outflow - inflow (+ to virtual - from virtual) = supply_v
        arc_ids = np.arange(n_arcs)
        rows = [tail, head]
        cols = [arc_ids, arc_ids]
        vals = [np.ones(n_arcs), -np.ones(n_arcs)]
        objective = [arc_cost]

        virtual_nodes = np.zeros(0, dtype=np.int64)
        if excess != 0:
            virtual_nodes = np.flatnonzero(supply > 0) if excess > 0 else np.flatnonzero(supply < 0)
            rows.append(virtual_nodes)
            cols.append(n_arcs + np.arange(len(virtual_nodes)))
            vals.append(np.full(len(virtual_nodes), 1.0 if excess > 0 else -1.0))
            objective.append(np.full(len(virtual_nodes), unit_penalty))

        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
        c_vec = np.concatenate(objective)
        A_eq = coo_matrix((np.concatenate(vals), (rows, cols)), shape=(n_nodes, len(c_vec))).tocsr()

        x = self._run_lp(c_vec, A_eq, supply, label=f"network {height}x{width}, {n_arcs:,} arcs")
        flows = x[:n_arcs]
        transport_cost = float(np.dot(arc_cost, flows))

        def to_bins(nodes: np.ndarray) -> np.ndarray:
            r, c = np.divmod(nodes, width)
            return np.column_stack([r + low[0], c + low[1]])

        keep = flows > FLOW_EPSILON
        plan = TransportPlan(
            kind='edge_flow',
            origins=to_bins(tail[keep]),
            destinations=to_bins(head[keep]),
            flow=flows[keep],
            unit_cost=arc_cost[keep],
        )
        if len(virtual_nodes):
            slack = x[n_arcs:]
            has = slack > FLOW_EPSILON
            plan.unmatched_bins = to_bins(virtual_nodes[has])
            plan.unmatched_mass = slack[has] if excess > 0 else -slack[has]

        return transport_cost, len(c_vec), plan

    def _run_lp(self, c_vec: np.ndarray, A_eq, b_eq: np.ndarray, label: str) -> np.ndarray:
        """Solve min c.x s.t. A_eq x = b_eq, x >= 0 with HiGHS."""
        if self.monitor is not None:
            self.monitor.estimate_lp_size(
                n_variables=A_eq.shape[1],
                n_constraints=A_eq.shape[0],
                nnz=A_eq.nnz,
                label=label,
            )

        options = {}
        if self.config.time_limit is not None:
            options['time_limit'] = float(self.config.time_limit)

        logger.debug(f"LP {label}: {A_eq.shape[1]:,} variables, {A_eq.shape[0]:,} constraints")
        res = linprog(
            c_vec,
            A_eq=A_eq,
            b_eq=b_eq,
            bounds=(0, None),
            method='highs',
            options=options,
        )

        if self.monitor is not None:
            self.monitor.log_memory(f"after LP {label}")

        if res.status == 1 and self.config.time_limit is not None:
            raise TransportTimeout(
                f"Transport LP ({label}) stopped at time_limit={self.config.time_limit}s: {res.message}"
            )
        if res.status != 0 or res.x is None:
            raise SolverError(f"Transport LP ({label}) failed with status {res.status}: {res.message}")
        return res.x

    def _unmatched_only_plan(
        self,
        pair: DiscretizedPair,
        src_idx: np.ndarray,
        dst_idx: np.ndarray,
        supply: np.ndarray,
        demand: np.ndarray,
        excess: float
    ) -> TransportPlan:
        empty_bins = np.zeros((0, 2), dtype=np.int64)
        plan = TransportPlan(
            kind='assignment',
            origins=empty_bins,
            destinations=empty_bins,
            flow=np.zeros(0),
            unit_cost=np.zeros(0),
        )
        if excess > 0:
            plan.unmatched_bins = pair.bins[src_idx]
            plan.unmatched_mass = supply
        elif excess < 0:
            plan.unmatched_bins = pair.bins[dst_idx]
            plan.unmatched_mass = -demand
        return plan


def solve(pair: DiscretizedPair, config: TransportConfig, monitor: Optional[MemoryMonitor] = None) -> TransportResult:
    """Solve one transport problem; see TransportSolver.solve()."""
    return TransportSolver(config, monitor=monitor).solve(pair)


def solve_transport(
    coords: np.ndarray,
    weights_a: np.ndarray,
    weights_b: np.ndarray,
    config: TransportConfig,
    cell_size=1.0
) -> TransportResult:
    """
    Transport between two weight vectors on regularly spaced cell centres.

    Args:
        coords: (n, 2) cell centres
        weights_a, weights_b: (n,) weights on those cells
        config: Transport settings
        cell_size: Grid spacing, or (width, height)

    Returns:
        TransportResult
    """
    config.validate()
    pair = discretize_points(
        coords, weights_a, weights_b,
        cell_size=cell_size,
        resolution=config.resolution,
        recode=config.recode,
    )
    return TransportSolver(config).solve(pair)
