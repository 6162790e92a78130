"""
Configuration management for the Spatial SDC engine.
Handles loading, validation, and access to configuration parameters.
"""

import configparser
import math
import numbers
import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from core.errors import InvalidConfig


logger = logging.getLogger(__name__)


TRANSPORT_METHODS = ('auto', 'bipartite', 'network')
GROUND_DISTANCES = ('lattice', 'euclidean')
SMOOTHING_KERNELS = ('gaussian', 'epanechnikov', 'uniform')
AREA_METRICS = ('linf', 'l2')


@dataclass
class TransportConfig:
    """Optimal transport (KWD) settings."""

    # Resolution level L of the lattice approximation (larger = finer, costlier)
    resolution: int = 3
    recode: bool = True  # Drop cells that are zero in both distributions before solving
    balanced: bool = True
    unbalanced_cost: Optional[float] = None  # Per-unit cost of unmatched mass (required if not balanced)

    # Solver settings
    method: str = "auto"  # 'auto', 'bipartite' or 'network'
    ground_distance: str = "lattice"  # 'lattice' (L-level approximation) or 'euclidean' (exact)
    time_limit: Optional[float] = None  # Seconds; None = no limit
    bipartite_max_pairs: int = 250_000  # 'auto' switches to the network formulation above this
    keep_plan: bool = False  # Return the transport plan with the result
    mass_tolerance: float = 1e-9  # Relative tolerance for the balanced mass check

    def validate(self) -> None:
        """Validate transport configuration."""
        if isinstance(self.resolution, bool) or not isinstance(self.resolution, numbers.Integral):
            raise InvalidConfig(f"resolution must be an integer, got {self.resolution!r}")
        if self.resolution < 1:
            raise InvalidConfig(f"resolution must be >= 1, got {self.resolution}")

        if not self.balanced:
            if self.unbalanced_cost is None:
                raise InvalidConfig("unbalanced_cost must be set when balanced=False")
            if not math.isfinite(self.unbalanced_cost) or self.unbalanced_cost < 0:
                raise InvalidConfig(f"unbalanced_cost must be finite and >= 0, got {self.unbalanced_cost}")

        if self.method not in TRANSPORT_METHODS:
            raise InvalidConfig(f"method must be one of {TRANSPORT_METHODS}, got {self.method}")

        if self.ground_distance not in GROUND_DISTANCES:
            raise InvalidConfig(f"ground_distance must be one of {GROUND_DISTANCES}, got {self.ground_distance}")

        # The network formulation only exists for the lattice metric
        if self.method == 'network' and self.ground_distance != 'lattice':
            raise InvalidConfig("method='network' requires ground_distance='lattice'")

        if self.time_limit is not None and not self.time_limit > 0:
            raise InvalidConfig(f"time_limit must be > 0 or None, got {self.time_limit}")

        if self.bipartite_max_pairs < 1:
            raise InvalidConfig(f"bipartite_max_pairs must be >= 1, got {self.bipartite_max_pairs}")

        if not 0 <= self.mass_tolerance < 1:
            raise InvalidConfig(f"mass_tolerance must be in [0, 1), got {self.mass_tolerance}")


@dataclass
class ProtectionConfig:
    """Settings for the three protection transforms."""

    # Threshold rule used when no external predicate is supplied
    min_count: int = 5

    # Quadtree aggregation
    max_zoom: int = 3

    # Kernel smoothing
    bandwidth: Optional[float] = None  # Map units; None = derive from cell size at call time
    kernel: str = "gaussian"  # 'gaussian', 'epanechnikov' or 'uniform'
    truncate: float = 3.0  # Gaussian support in bandwidths

    def validate(self) -> None:
        """Validate protection configuration."""
        if self.min_count < 0:
            raise InvalidConfig(f"min_count must be >= 0, got {self.min_count}")
        if self.max_zoom < 0:
            raise InvalidConfig(f"max_zoom must be >= 0, got {self.max_zoom}")
        if self.bandwidth is not None and self.bandwidth <= 0:
            raise InvalidConfig(f"bandwidth must be > 0, got {self.bandwidth}")
        if self.kernel not in SMOOTHING_KERNELS:
            raise InvalidConfig(f"kernel must be one of {SMOOTHING_KERNELS}, got {self.kernel}")
        if self.truncate <= 0:
            raise InvalidConfig(f"truncate must be > 0, got {self.truncate}")


@dataclass
class AreaConfig:
    """Focus area used by focus-area comparisons."""
    centroid_x: float = 0.0
    centroid_y: float = 0.0
    radius: float = 0.0
    metric: str = "linf"

    def validate(self) -> None:
        """Validate focus area configuration."""
        if self.radius <= 0:
            raise InvalidConfig(f"radius must be > 0, got {self.radius}")
        if self.metric not in AREA_METRICS:
            raise InvalidConfig(f"metric must be one of {AREA_METRICS}, got {self.metric}")

    def to_area_spec(self):
        """Build the AreaSpec used by the mask functions."""
        from schema.area import AreaSpec
        return AreaSpec(
            centroid_x=self.centroid_x,
            centroid_y=self.centroid_y,
            radius=self.radius,
            metric=self.metric,
        )


def _optional_float(raw: str) -> Optional[float]:
    raw = raw.strip()
    if raw == '' or raw.lower() == 'none':
        return None
    return float(raw)


@dataclass
class Config:
    """Main configuration container."""
    transport: TransportConfig = field(default_factory=TransportConfig)
    protection: ProtectionConfig = field(default_factory=ProtectionConfig)
    area: Optional[AreaConfig] = None

    def validate(self) -> None:
        """Validate entire configuration."""
        self.transport.validate()
        self.protection.validate()
        if self.area is not None:
            self.area.validate()
        logger.info("Configuration validated successfully")

    @classmethod
    def from_ini(cls, config_path: str) -> "Config":
        """Load configuration from INI file."""
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Config file not found: {config_path}")

        parser = configparser.ConfigParser()
        parser.read(config_path, encoding='utf-8')

        config = cls()

        # Load transport section
        if 'transport' in parser:
            sec = parser['transport']
            if 'resolution' in sec:
                config.transport.resolution = int(sec['resolution'])
            if 'recode' in sec:
                config.transport.recode = sec.getboolean('recode')
            if 'balanced' in sec:
                config.transport.balanced = sec.getboolean('balanced')
            if 'unbalanced_cost' in sec:
                config.transport.unbalanced_cost = _optional_float(sec['unbalanced_cost'])
            if 'method' in sec:
                config.transport.method = sec['method'].strip()
            if 'ground_distance' in sec:
                config.transport.ground_distance = sec['ground_distance'].strip()
            if 'time_limit' in sec:
                config.transport.time_limit = _optional_float(sec['time_limit'])
            if 'bipartite_max_pairs' in sec:
                config.transport.bipartite_max_pairs = int(sec['bipartite_max_pairs'])
            if 'keep_plan' in sec:
                config.transport.keep_plan = sec.getboolean('keep_plan')
            if 'mass_tolerance' in sec:
                config.transport.mass_tolerance = float(sec['mass_tolerance'])

        # Load protection section
        if 'protection' in parser:
            sec = parser['protection']
            if 'min_count' in sec:
                config.protection.min_count = int(sec['min_count'])
            if 'max_zoom' in sec:
                config.protection.max_zoom = int(sec['max_zoom'])
            if 'bandwidth' in sec:
                config.protection.bandwidth = _optional_float(sec['bandwidth'])
            if 'kernel' in sec:
                config.protection.kernel = sec['kernel'].strip()
            if 'truncate' in sec:
                config.protection.truncate = float(sec['truncate'])

        # Load area section (optional)
        if 'area' in parser:
            sec = parser['area']
            config.area = AreaConfig(
                centroid_x=float(sec.get('centroid_x', '0.0')),
                centroid_y=float(sec.get('centroid_y', '0.0')),
                radius=float(sec.get('radius', '0.0')),
                metric=sec.get('metric', 'linf').strip(),
            )

        logger.info(f"Configuration loaded from {config_path}")
        return config

    def to_ini(self, config_path: str) -> None:
        """Save configuration to INI file."""
        parser = configparser.ConfigParser()

        def fmt_optional(value: Optional[float]) -> str:
            return '' if value is None else str(value)

        parser['transport'] = {
            'resolution': str(self.transport.resolution),
            'recode': str(self.transport.recode).lower(),
            'balanced': str(self.transport.balanced).lower(),
            'unbalanced_cost': fmt_optional(self.transport.unbalanced_cost),
            'method': self.transport.method,
            'ground_distance': self.transport.ground_distance,
            'time_limit': fmt_optional(self.transport.time_limit),
            'bipartite_max_pairs': str(self.transport.bipartite_max_pairs),
            'keep_plan': str(self.transport.keep_plan).lower(),
            'mass_tolerance': str(self.transport.mass_tolerance),
        }

        parser['protection'] = {
            'min_count': str(self.protection.min_count),
            'max_zoom': str(self.protection.max_zoom),
            'bandwidth': fmt_optional(self.protection.bandwidth),
            'kernel': self.protection.kernel,
            'truncate': str(self.protection.truncate),
        }

        if self.area is not None:
            parser['area'] = {
                'centroid_x': str(self.area.centroid_x),
                'centroid_y': str(self.area.centroid_y),
                'radius': str(self.area.radius),
                'metric': self.area.metric,
            }

        with open(config_path, 'w', encoding='utf-8') as f:
            parser.write(f)

        logger.info(f"Configuration saved to {config_path}")
