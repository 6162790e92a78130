"""Schema definitions for grids and focus areas."""
__all__ = ['Grid', 'GridLayout', 'WeightPair', 'AreaSpec', 'apply_mask']

def __getattr__(name):
    if name in ('Grid', 'GridLayout', 'WeightPair'):
        from .grid import Grid, GridLayout, WeightPair
        return {'Grid': Grid, 'GridLayout': GridLayout, 'WeightPair': WeightPair}[name]
    elif name in ('AreaSpec', 'apply_mask'):
        from .area import AreaSpec, apply_mask
        return {'AreaSpec': AreaSpec, 'apply_mask': apply_mask}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
