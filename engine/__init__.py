"""Discretization, transport solver and distance orchestration."""
__all__ = ['DistanceOrchestrator', 'DistanceResult', 'TransportSolver', 'TransportResult', 'discretize']

def __getattr__(name):
    if name in ('DistanceOrchestrator', 'DistanceResult'):
        from .distance import DistanceOrchestrator, DistanceResult
        return {'DistanceOrchestrator': DistanceOrchestrator, 'DistanceResult': DistanceResult}[name]
    elif name in ('TransportSolver', 'TransportResult'):
        from .transport import TransportSolver, TransportResult
        return {'TransportSolver': TransportSolver, 'TransportResult': TransportResult}[name]
    elif name == 'discretize':
        from .discretizer import discretize
        return discretize
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
