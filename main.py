#!/usr/bin/env python3
"""
Spatial SDC Engine - Main Entry Point
=====================================
Command-line wrapper: protect a gridded count array and measure how far
each protected variant is from the original.

Usage:
    python main.py --config configs/default.ini --baseline counts.npy --cell-size 200
    python main.py --config configs/default.ini --baseline counts.npy --cell-size 200 \\
        --protect suppression quadtree --focus 1000 1000 600 --metric l2
"""

import argparse
import json
import logging
import logging.handlers
import sys
import os
from datetime import datetime
from typing import Dict, Optional

import numpy as np

from core.config import Config, AreaConfig
from core.errors import SpatialSDCError, MassMismatch
from core.protection import protect_suppression, protect_quadtree, protect_smoothing
from engine.distance import DistanceOrchestrator
from schema.grid import Grid


PROTECTIONS = {
    "suppression": lambda grid, config: protect_suppression(grid, config=config.protection),
    "quadtree": lambda grid, config: protect_quadtree(grid, config=config.protection),
    "smoothing": lambda grid, config: protect_smoothing(grid, config=config.protection),
}

# Marks handlers owned by setup_logging()
_HANDLER_TAG = "_spatial_sdc_handler"


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_dir: Optional[str] = "logs"
) -> logging.Logger:
    """
    Set up logging with console and optional file output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file name. If None, auto-generated.
        log_dir: Directory for log files; None disables file logging

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    # Replace handlers installed by an earlier call; others are left alone
    for handler in [h for h in logger.handlers if getattr(h, _HANDLER_TAG, False)]:
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_format = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(console_format)
    setattr(console_handler, _HANDLER_TAG, True)
    logger.addHandler(console_handler)

    # File handler (rotating)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        if log_file is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = f"spatial_sdc_{timestamp}.log"

        log_path = os.path.join(log_dir, log_file)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
        )
        file_handler.setFormatter(file_format)
        setattr(file_handler, _HANDLER_TAG, True)
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_path}")

    return logger


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Spatial SDC Engine - protect gridded counts and measure KWD distances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # All three protections, whole-map distances
    python main.py --config configs/default.ini --baseline counts.npy --cell-size 200

    # Compare an existing protected array inside a circular focus area
    python main.py --config configs/default.ini --baseline counts.npy \\
        --compare protected.npy --cell-size 200 --focus 1000 1000 600 --metric l2
        """
    )

    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to configuration INI file (defaults are used if omitted)"
    )

    parser.add_argument(
        "--baseline", "-b",
        required=True,
        help="Path to a .npy array of baseline counts (rows x cols, row 0 = lowest y)"
    )

    parser.add_argument(
        "--compare",
        nargs="*",
        default=[],
        help="Paths to .npy arrays of already protected grids"
    )

    parser.add_argument(
        "--protect",
        nargs="*",
        choices=sorted(PROTECTIONS),
        default=None,
        help="Protections to apply to the baseline (default: all unless --compare is given)"
    )

    parser.add_argument("--cell-size", type=float, default=1.0, help="Cell size in map units")
    parser.add_argument("--origin", type=float, nargs=2, default=(0.0, 0.0), metavar=("X", "Y"),
                        help="Lower-left corner of the grid")

    # Focus area overrides
    parser.add_argument("--focus", type=float, nargs=3, default=None, metavar=("X", "Y", "R"),
                        help="Focus area centroid and radius")
    parser.add_argument("--metric", choices=["linf", "l2"], default=None, help="Focus area shape")
    parser.add_argument("--focus-mode", choices=["zero", "crop"], default="zero",
                        help="Focus comparison mode (default: zero)")

    # Transport overrides
    parser.add_argument("--resolution", "-L", type=int, default=None, help="Override resolution level L")
    parser.add_argument("--unbalanced-cost", type=float, default=None,
                        help="Switch to unbalanced mode with this per-unit cost")

    parser.add_argument("--output", "-o", type=str, default=None, help="Write results as JSON")

    # Logging options
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Directory for log files (default: console only)"
    )

    return parser.parse_args(argv)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command-line overrides to configuration."""
    if args.resolution is not None:
        config.transport.resolution = args.resolution

    if args.unbalanced_cost is not None:
        config.transport.balanced = False
        config.transport.unbalanced_cost = args.unbalanced_cost

    if args.focus is not None:
        config.area = AreaConfig(
            centroid_x=args.focus[0],
            centroid_y=args.focus[1],
            radius=args.focus[2],
            metric=args.metric or (config.area.metric if config.area else "linf"),
        )
    elif args.metric is not None and config.area is not None:
        config.area.metric = args.metric

    return config


def print_config_summary(config: Config, logger: logging.Logger):
    """Print configuration summary."""
    t = config.transport
    logger.info("=" * 60)
    logger.info("Configuration Summary")
    logger.info("=" * 60)
    logger.info(f"Resolution (L):           {t.resolution}")
    logger.info(f"Recode:                   {t.recode}")
    logger.info(f"Mode:                     {'balanced' if t.balanced else f'unbalanced (cost={t.unbalanced_cost})'}")
    logger.info(f"Method / ground distance: {t.method} / {t.ground_distance}")
    logger.info(f"Min count:                {config.protection.min_count}")
    logger.info(f"Quadtree max zoom:        {config.protection.max_zoom}")
    logger.info(f"Smoothing:                {config.protection.kernel}, bw={config.protection.bandwidth}")
    if config.area is not None:
        a = config.area
        logger.info(f"Focus area:               {a.metric} r={a.radius} at ({a.centroid_x}, {a.centroid_y})")
    logger.info("=" * 60)


def load_grid(path: str, cell_size: float, origin) -> Grid:
    """Load a .npy value array as a grid."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Grid file not found: {path}")
    return Grid.from_array(np.load(path), cell_size=cell_size, origin=tuple(origin))


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_args(argv)
    logger = setup_logging(log_level=args.log_level, log_dir=args.log_dir)

    try:
        config = Config.from_ini(args.config) if args.config else Config()
        config = apply_overrides(config, args)
        config.validate()
        print_config_summary(config, logger)

        baseline = load_grid(args.baseline, args.cell_size, args.origin)
        logger.info(baseline.summary())

        variants: Dict[str, Grid] = {}
        for path in args.compare:
            variants[os.path.basename(path)] = load_grid(path, args.cell_size, args.origin)

        protections = args.protect if args.protect is not None else ([] if args.compare else sorted(PROTECTIONS))
        protection_reports = {}
        for name in protections:
            result = PROTECTIONS[name](baseline, config)
            variants[name] = result.grid
            protection_reports[name] = {k: v for k, v in result.to_dict().items() if k != "blocks"}

        if not variants:
            logger.error("Nothing to compare: give --compare files or --protect methods")
            return 1

        changed = [n for n, v in variants.items() if not np.isclose(v.total_mass, baseline.total_mass)]
        if config.transport.balanced and changed:
            logger.warning(f"Variants {changed} change the total mass; balanced comparisons of those will fail")

        orchestrator = DistanceOrchestrator(config.transport)
        report = {"protections": protection_reports, "whole_map": {}, "focus_area": {}}

        for name, grid in variants.items():
            try:
                report["whole_map"][name] = orchestrator.whole_map_distance(baseline, grid).to_dict()
            except MassMismatch as e:
                logger.error(f"{name}: {e}")
                report["whole_map"][name] = {"error": str(e)}

        if config.area is not None:
            area = config.area.to_area_spec()
            for name, grid in variants.items():
                try:
                    report["focus_area"][name] = orchestrator.focus_area_distance(
                        baseline, grid, area, mode=args.focus_mode
                    ).to_dict()
                except MassMismatch as e:
                    logger.error(f"{name} (focus): {e}")
                    report["focus_area"][name] = {"error": str(e)}

        logger.info("=" * 60)
        logger.info("Distances")
        logger.info("=" * 60)
        for scope in ("whole_map", "focus_area"):
            for name, res in report[scope].items():
                shown = f"{res['distance']:.6g}" if "distance" in res else "n/a"
                logger.info(f"{scope:<12} {name:<24} {shown}")
        logger.info("=" * 60)

        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(report, f, indent=2, default=str)
            logger.info(f"Results written to {args.output}")

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except SpatialSDCError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
