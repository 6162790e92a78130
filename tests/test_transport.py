"""
Tests for the transport solver.

Covers balanced and unbalanced accounting, agreement of the two LP
formulations, recode neutrality and the error paths of the LP backend.
"""

import math
from types import SimpleNamespace

import numpy as np
import pytest

from core.config import TransportConfig
from core.errors import InvalidConfig, MassMismatch, SolverError, TransportTimeout
from core.memory_monitor import MemoryMonitor
from engine import transport as transport_module
from engine.discretizer import discretize
from engine.transport import TransportSolver, solve, solve_transport
from schema.grid import Grid, WeightPair


def pair_of(values_a, values_b, cell_size=1.0, resolution=3, recode=True):
    a = Grid.from_array(np.asarray(values_a, dtype=float), cell_size=cell_size)
    b = Grid.from_array(np.asarray(values_b, dtype=float), cell_size=cell_size)
    return discretize(WeightPair(a, b), resolution=resolution, recode=recode)


def unbalanced(cost, **kwargs) -> TransportConfig:
    return TransportConfig(balanced=False, unbalanced_cost=cost, **kwargs)


@pytest.fixture
def excess_scenario():
    """A has 3 at (0, 0) and 4 at (2, 2); B has 3 at (0, 1). Cells are 200 wide."""
    a = np.zeros((3, 3))
    a[0, 0] = 3.0
    a[2, 2] = 4.0
    b = np.zeros((3, 3))
    b[0, 1] = 3.0
    return a, b


# =============================================================================
# Trivial and balanced cases
# =============================================================================

def test_identical_distributions_cost_nothing():
    values = np.array([[1.0, 2.0], [0.0, 5.0]])
    result = solve(pair_of(values, values), TransportConfig())

    assert result.cost == 0.0
    assert result.method == "trivial"
    assert result.n_sources == 0 and result.n_sinks == 0


def test_single_unit_move():
    result = solve(pair_of([[1.0, 0.0]], [[0.0, 1.0]], cell_size=200.0), TransportConfig())
    assert result.cost == pytest.approx(200.0)
    assert result.transport_cost == pytest.approx(200.0)
    assert result.unmatched_mass == 0.0


def test_shared_mass_does_not_move():
    """Only the per-cell difference is transported."""
    result = solve(pair_of([[5.0, 1.0]], [[4.0, 2.0]]), TransportConfig())
    assert result.cost == pytest.approx(1.0)


def test_balanced_mass_mismatch():
    centre = np.zeros((3, 3))
    centre[1, 1] = 10.0
    with pytest.raises(MassMismatch):
        solve(pair_of(centre, np.zeros((3, 3))), TransportConfig())


def test_balanced_within_tolerance_is_rescaled():
    a = [[1.0, 0.0]]
    b = [[0.0, 1.0 + 1e-12]]
    result = solve(pair_of(a, b), TransportConfig())
    assert result.cost == pytest.approx(1.0)
    assert result.unmatched_mass == 0.0


# =============================================================================
# Unbalanced accounting
# =============================================================================

def test_centre_mass_against_empty_grid():
    """All 10 units are unmatched; the distance is exactly 10 * c."""
    centre = np.zeros((3, 3))
    centre[1, 1] = 10.0
    for c in (0.0, 1.5, 1000.0):
        result = solve(pair_of(centre, np.zeros((3, 3))), unbalanced(c))
        assert result.cost == pytest.approx(10 * c)
        assert result.unmatched_mass == 10.0
        assert result.transport_cost == 0.0


def test_excess_costs_exactly_delta_times_c(excess_scenario):
    a, b = excess_scenario
    result = solve(pair_of(a, b, cell_size=200.0), unbalanced(1000.0))

    assert result.unmatched_mass == pytest.approx(4.0)
    assert result.unbalanced_cost_total == pytest.approx(4000.0)
    assert result.transport_cost == pytest.approx(600.0)
    assert result.cost == pytest.approx(4600.0)


def test_excess_on_the_other_side(excess_scenario):
    a, b = excess_scenario
    result = solve(pair_of(b, a, cell_size=200.0), unbalanced(1000.0))
    assert result.cost == pytest.approx(4600.0)


def test_small_excess_on_large_mass_is_charged_in_full():
    """5 extra units next to 1e10 shared units still cost 5 * c."""
    a = np.zeros((3, 3))
    a[0, 0] = 1e10
    b = a.copy()
    b[2, 2] = 5.0
    result = solve(pair_of(a, b, cell_size=200.0), unbalanced(1000.0))

    assert result.unmatched_mass == pytest.approx(5.0)
    assert result.unbalanced_cost_total == pytest.approx(5000.0)
    assert result.cost == pytest.approx(5000.0, rel=1e-9)

    with pytest.raises(MassMismatch):
        solve(pair_of(a, b, cell_size=200.0), TransportConfig(mass_tolerance=1e-12))


def test_unbalanced_with_equal_mass_matches_balanced():
    a = [[2.0, 0.0, 1.0]]
    b = [[0.0, 3.0, 0.0]]
    balanced = solve(pair_of(a, b), TransportConfig())
    relaxed = solve(pair_of(a, b), unbalanced(1e6))
    assert relaxed.cost == pytest.approx(balanced.cost)
    assert relaxed.unbalanced_cost_total == 0.0


def test_plan_is_reported(excess_scenario):
    a, b = excess_scenario
    result = solve(pair_of(a, b, cell_size=200.0), unbalanced(1000.0, keep_plan=True, method="bipartite"))
    plan = result.plan

    assert plan.kind == "assignment"
    assert plan.transport_cost == pytest.approx(600.0)
    np.testing.assert_array_equal(plan.origins, [[0, 0]])
    np.testing.assert_array_equal(plan.destinations, [[0, 1]])
    np.testing.assert_allclose(plan.flow, [3.0])
    np.testing.assert_array_equal(plan.unmatched_bins, [[2, 2]])
    np.testing.assert_allclose(plan.unmatched_mass, [4.0])


def test_plan_omitted_by_default(excess_scenario):
    a, b = excess_scenario
    assert solve(pair_of(a, b), unbalanced(1.0)).plan is None


# =============================================================================
# Formulations
# =============================================================================

@pytest.mark.parametrize("seed", [0, 1, 2])
def test_bipartite_and_network_agree(seed):
    rng = np.random.default_rng(seed)
    a = rng.integers(0, 6, size=(5, 6)).astype(float)
    b = rng.permutation(a.ravel()).reshape(5, 6)
    pair = pair_of(a, b, cell_size=100.0, resolution=2)

    bipartite = solve(pair, TransportConfig(resolution=2, method="bipartite"))
    network = solve(pair, TransportConfig(resolution=2, method="network"))

    assert bipartite.method == "bipartite"
    assert network.method == "network"
    assert network.cost == pytest.approx(bipartite.cost, rel=1e-6)


def test_formulations_agree_unbalanced(excess_scenario):
    a, b = excess_scenario
    pair = pair_of(a, b, cell_size=200.0)
    bipartite = solve(pair, unbalanced(1000.0, method="bipartite"))
    network = solve(pair, unbalanced(1000.0, method="network", keep_plan=True))

    assert network.cost == pytest.approx(bipartite.cost, rel=1e-6)
    assert network.plan.kind == "edge_flow"
    assert network.plan.transport_cost == pytest.approx(600.0)
    np.testing.assert_allclose(network.plan.unmatched_mass.sum(), 4.0)


def test_recode_is_neutral():
    rng = np.random.default_rng(5)
    a = rng.integers(0, 3, size=(6, 6)).astype(float) * (rng.random((6, 6)) < 0.4)
    b = rng.integers(0, 3, size=(6, 6)).astype(float) * (rng.random((6, 6)) < 0.4)
    config = unbalanced(50.0)

    for method in ("bipartite", "network"):
        config.method = method
        kept = solve(pair_of(a, b, recode=False), config).cost
        recoded = solve(pair_of(a, b, recode=True), config).cost
        assert recoded == pytest.approx(kept, rel=1e-6, abs=1e-9)


def test_resolution_converges_to_euclidean():
    a = np.zeros((4, 4))
    b = np.zeros((4, 4))
    a[0, 0] = 1.0
    b[2, 3] = 1.0

    exact = solve(pair_of(a, b), TransportConfig(ground_distance="euclidean")).cost
    assert exact == pytest.approx(math.hypot(3, 2))

    costs = [solve(pair_of(a, b, resolution=L), TransportConfig(resolution=L)).cost for L in (1, 2, 3)]
    assert costs[0] >= costs[1] >= costs[2]
    assert costs[0] > exact
    assert costs[2] == pytest.approx(exact)


def test_auto_method_switches_on_size():
    solver = TransportSolver(TransportConfig(bipartite_max_pairs=10))
    assert solver.choose_method(2, 5) == "bipartite"
    assert solver.choose_method(3, 4) == "network"

    euclidean = TransportSolver(TransportConfig(ground_distance="euclidean", bipartite_max_pairs=1))
    assert euclidean.choose_method(100, 100) == "bipartite"


def test_solve_transport_on_coordinates():
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
    result = solve_transport(coords, [1.0, 1.0, 0.0], [0.0, 1.0, 1.0], TransportConfig())
    assert result.cost == pytest.approx(2.0)


def test_result_to_dict(excess_scenario):
    a, b = excess_scenario
    d = solve(pair_of(a, b), unbalanced(10.0)).to_dict()
    assert d["balanced"] is False
    assert d["n_sources"] == 2 and d["n_sinks"] == 1
    assert "plan" not in d


# =============================================================================
# Configuration and backend errors
# =============================================================================

@pytest.mark.parametrize("kwargs", [
    {"resolution": 0},
    {"balanced": False},
    {"balanced": False, "unbalanced_cost": -1.0},
    {"balanced": False, "unbalanced_cost": float("nan")},
    {"balanced": False, "unbalanced_cost": float("inf")},
    {"method": "simplex"},
    {"ground_distance": "manhattan"},
    {"method": "network", "ground_distance": "euclidean"},
    {"time_limit": 0.0},
    {"time_limit": float("nan")},
])
def test_invalid_transport_config(kwargs):
    with pytest.raises(InvalidConfig):
        TransportSolver(TransportConfig(**kwargs))


def test_time_limit_raises_timeout(monkeypatch, excess_scenario):
    def fake_linprog(*args, **kwargs):
        assert kwargs["options"] == {"time_limit": 0.5}
        return SimpleNamespace(status=1, x=None, message="Time limit reached")

    monkeypatch.setattr(transport_module, "linprog", fake_linprog)
    a, b = excess_scenario
    with pytest.raises(TransportTimeout):
        solve(pair_of(a, b), unbalanced(1.0, time_limit=0.5))


def test_backend_failure_raises_solver_error(monkeypatch, excess_scenario):
    monkeypatch.setattr(
        transport_module, "linprog",
        lambda *args, **kwargs: SimpleNamespace(status=2, x=None, message="Problem is infeasible"),
    )
    a, b = excess_scenario
    with pytest.raises(SolverError):
        solve(pair_of(a, b), unbalanced(1.0))


def test_memory_monitor_records_lp_size(excess_scenario):
    a, b = excess_scenario
    monitor = MemoryMonitor()
    solve(pair_of(a, b), unbalanced(1.0, method="bipartite"), monitor=monitor)

    assert len(monitor.estimates) == 1
    est = monitor.estimates[0]
    # 2 sources x 1 sink + 2 slack columns, 3 rows
    assert est["n_variables"] == 4
    assert est["n_constraints"] == 3
    assert est["estimated_gb"] > 0
    assert "Memory Monitoring Summary" in monitor.summary()


def test_numpy_integer_resolution_solves():
    a = [[2.0, 0.0, 1.0]]
    b = [[0.0, 3.0, 0.0]]
    expected = solve(pair_of(a, b, resolution=2), TransportConfig(resolution=2))
    result = solve(pair_of(a, b, resolution=np.int64(2)), TransportConfig(resolution=np.int64(2)))
    assert result.cost == pytest.approx(expected.cost)


def test_memory_monitor_keeps_latest_records():
    monitor = MemoryMonitor(max_records=2)
    for i in range(3):
        monitor.estimate_lp_size(10, 5, 20, label=f"lp-{i}")
        monitor.log_memory(f"step-{i}")

    assert [est["label"] for est in monitor.estimates] == ["lp-1", "lp-2"]
    assert "step-0" not in monitor.summary()
    assert "step-2" in monitor.summary()

    with pytest.raises(InvalidConfig):
        MemoryMonitor(max_records=0)
