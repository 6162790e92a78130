"""
Sensitivity Predicates.

Protection transforms do not decide which cells are disclosive; they are
handed a rule. A rule is any callable that takes an array of cell values
and returns a boolean array of the same shape (True = sensitive).

Scalar predicates (``lambda v: v < 3``) are adapted with cellwise().
"""

from typing import Callable

import numpy as np

from core.errors import InvalidConfig


SensitivityRule = Callable[[np.ndarray], np.ndarray]


def cellwise(predicate: Callable[[float], bool]) -> SensitivityRule:
    """Turn a scalar predicate into an array rule."""
    vectorized = np.vectorize(lambda v: bool(predicate(float(v))), otypes=[bool])

    def rule(values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.size == 0:
            return np.zeros(values.shape, dtype=bool)
        return vectorized(values)

    rule.__name__ = getattr(predicate, '__name__', 'cellwise_rule')
    return rule


def min_count_rule(min_count: float) -> SensitivityRule:
    """
    Threshold rule: a non-empty cell with fewer than ``min_count`` units.

    Empty cells are never sensitive.
    """
    if min_count < 0:
        raise InvalidConfig(f"min_count must be >= 0, got {min_count}")

    def rule(values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        return (values > 0) & (values < min_count)

    rule.__name__ = f"min_count_{min_count}"
    return rule


def evaluate_rule(rule: SensitivityRule, values: np.ndarray) -> np.ndarray:
    """Apply a rule and check that it produced one flag per value."""
    values = np.asarray(values, dtype=np.float64)
    flags = np.asarray(rule(values))
    if flags.shape != values.shape:
        raise InvalidConfig(
            f"Sensitivity rule returned shape {flags.shape} for values of shape {values.shape}; "
            f"wrap scalar predicates with cellwise()"
        )
    return flags.astype(bool)
