"""
Suppression Manager for gridded counts.

Cells flagged by the sensitivity rule are set to zero. Their mass is
removed, not redistributed, so the protected total can only go down.

This is the simplest protection and the baseline the quadtree and
smoothing transforms are compared against.
"""

import logging

import numpy as np

from core.protection import ProtectionResult
from core.sensitivity import SensitivityRule, evaluate_rule
from schema.grid import Grid, normalize


logger = logging.getLogger(__name__)


class SuppressionManager:
    """
    Manages cell suppression based on an injected sensitivity rule.

    Suppression is deterministic: the same grid and rule always give the
    same protected grid. Missing cells (NaN) are treated as empty.
    """

    def __init__(self, rule: SensitivityRule):
        """
        Initialize the SuppressionManager.

        Args:
            rule: Callable flagging sensitive cells (see core.sensitivity)
        """
        if not callable(rule):
            raise TypeError("rule must be callable")
        self.rule = rule
        logger.info(f"SuppressionManager initialized: rule={getattr(rule, '__name__', repr(rule))}")

    def sensitive_cells(self, grid: Grid) -> np.ndarray:
        """Boolean (rows, cols) array of the cells the rule flags."""
        return evaluate_rule(self.rule, normalize(grid).values)

    def apply(self, grid: Grid) -> ProtectionResult:
        """
        Apply suppression rules to a grid.

        Args:
            grid: Grid with unprotected values.

        Returns:
            ProtectionResult with the suppressed grid.
        """
        source = normalize(grid)
        values = source.values
        suppressed = evaluate_rule(self.rule, values)

        protected = np.where(suppressed, 0.0, values)
        result = ProtectionResult(
            grid=source.with_values(protected),
            method="suppression",
            input_mass=source.total_mass,
            output_mass=float(protected.sum()),
        )
        result.details = self.get_suppression_stats(source, suppressed)

        logger.info(
            f"Suppression complete: {result.details['suppressed_count']}/{result.details['total_count']} "
            f"cells suppressed ({100 * result.details['suppression_rate']:.2f}%), "
            f"mass removed={result.details['suppressed_mass']:.4g}"
        )
        return result

    def get_suppression_stats(self, grid: Grid, suppressed: np.ndarray) -> dict:
        """
        Get statistics about suppression on a grid.

        Args:
            grid: Grid before suppression.
            suppressed: Boolean array of suppressed cells.

        Returns:
            Dictionary with suppression statistics.
        """
        total = grid.layout.n_cells
        count = int(suppressed.sum())
        return {
            "suppressed_count": count,
            "total_count": total,
            "suppression_rate": count / total if total > 0 else 0,
            "suppressed_mass": float(normalize(grid).values[suppressed].sum()),
        }
