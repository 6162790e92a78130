"""
Memory monitoring for transport solves.

Large grids turn into LPs with millions of variables. The monitor logs
process and system memory at checkpoints and estimates the size of each
LP before it is handed to the solver.
"""

import logging
from collections import deque
from typing import Dict, Any, List

import psutil

from core.errors import InvalidConfig

logger = logging.getLogger(__name__)


# HiGHS keeps the sparse matrix (value + index per nonzero) and several
# dense vectors per variable and per row
_BYTES_PER_NONZERO = 8 + 4
_BYTES_PER_VARIABLE = 8 * 6
_BYTES_PER_CONSTRAINT = 8 * 6


class MemoryMonitor:
    """
    Track memory usage around transport solves.

    Checkpoints are kept in insertion order so summary() reads like a
    timeline of the run. Only the latest ``max_records`` checkpoints and
    LP estimates are kept, so a long-lived orchestrator stays bounded.
    """

    def __init__(self, max_records: int = 1000):
        if max_records < 1:
            raise InvalidConfig(f"max_records must be >= 1, got {max_records}")
        self.max_records = max_records
        self._checkpoints: Dict[str, Dict[str, float]] = {}
        self._estimates = deque(maxlen=max_records)
        self._process = psutil.Process()

    def log_memory(self, label: str) -> Dict[str, float]:
        """
        Log current memory usage.

        Args:
            label: Description of current checkpoint

        Returns:
            Dict with memory statistics (GB and %)
        """
        vm = psutil.virtual_memory()
        rss_gb = self._process.memory_info().rss / (1024**3)
        mem_total_gb = vm.total / (1024**3)
        mem_available_gb = vm.available / (1024**3)

        stats = {
            'label': label,
            'rss_gb': rss_gb,
            'total_gb': mem_total_gb,
            'percent': vm.percent,
            'available_gb': mem_available_gb
        }

        logger.debug(
            f"[MEMORY] {label}: process={rss_gb:.2f} GB, "
            f"system {vm.percent:.1f}% used, available={mem_available_gb:.2f} GB"
        )

        self._checkpoints.pop(label, None)
        self._checkpoints[label] = stats
        if len(self._checkpoints) > self.max_records:
            # Oldest checkpoint first in insertion order
            del self._checkpoints[next(iter(self._checkpoints))]
        return stats

    def estimate_lp_size(
        self,
        n_variables: int,
        n_constraints: int,
        nnz: int,
        label: str
    ) -> Dict[str, Any]:
        """
        Estimate the memory an LP will need, warn when it exceeds what is free.

        Args:
            n_variables: Number of LP columns
            n_constraints: Number of LP rows
            nnz: Nonzeros of the constraint matrix
            label: Description of the problem

        Returns:
            Dict with size estimates
        """
        estimated_bytes = (
            nnz * _BYTES_PER_NONZERO
            + n_variables * _BYTES_PER_VARIABLE
            + n_constraints * _BYTES_PER_CONSTRAINT
        )
        estimated_gb = estimated_bytes / (1024**3)
        available_gb = psutil.virtual_memory().available / (1024**3)

        stats = {
            'label': label,
            'n_variables': n_variables,
            'n_constraints': n_constraints,
            'nnz': nnz,
            'estimated_gb': estimated_gb,
            'available_gb': available_gb,
        }

        logger.info(
            f"[LP SIZE] {label}: {n_variables:,} vars x {n_constraints:,} rows, "
            f"{nnz:,} nonzeros = ~{estimated_gb:.3f} GB"
        )
        if estimated_gb > available_gb:
            logger.warning(
                f"[LP SIZE] {label} needs ~{estimated_gb:.2f} GB but only {available_gb:.2f} GB "
                f"is available; consider a lower resolution or the network formulation"
            )

        self._estimates.append(stats)
        return stats

    @property
    def estimates(self) -> List[Dict[str, Any]]:
        return list(self._estimates)

    def summary(self) -> str:
        """
        Generate summary of all checkpoints.

        Returns:
            Formatted summary string
        """
        if not self._checkpoints and not self._estimates:
            return "No memory checkpoints recorded"

        lines = [
            "=" * 60,
            "Memory Monitoring Summary",
            "=" * 60,
            ""
        ]

        for label, stats in self._checkpoints.items():
            lines.append(f"{label}:")
            lines.append(f"  Process: {stats['rss_gb']:.2f} GB")
            lines.append(f"  System used: {stats['percent']:.1f}%, available: {stats['available_gb']:.2f} GB")
            lines.append("")

        for est in self._estimates:
            lines.append(f"LP {est['label']}: ~{est['estimated_gb']:.3f} GB")

        lines.append("=" * 60)
        return "\n".join(lines)
