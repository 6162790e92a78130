"""
Tests for the command-line entry point.
"""

import json
import logging
import os

import numpy as np

import main as cli


DEFAULT_INI = os.path.join(os.path.dirname(__file__), '..', 'configs', 'default.ini')


def write_baseline(tmp_path, seed: int = 0) -> str:
    rng = np.random.default_rng(seed)
    path = str(tmp_path / "baseline.npy")
    np.save(path, rng.poisson(4.0, size=(6, 6)).astype(float))
    return path


def test_all_protections_with_default_config(tmp_path):
    baseline = write_baseline(tmp_path)
    output = str(tmp_path / "report.json")

    code = cli.main([
        "--config", DEFAULT_INI,
        "--baseline", baseline,
        "--cell-size", "200",
        "--focus", "600", "600", "300",
        "--metric", "l2",
        "--output", output,
    ])
    assert code == 0

    with open(output, encoding="utf-8") as f:
        report = json.load(f)
    assert set(report["whole_map"]) == {"quadtree", "smoothing", "suppression"}
    assert set(report["focus_area"]) == {"quadtree", "smoothing", "suppression"}
    assert abs(report["protections"]["quadtree"]["mass_change"]) < 1e-9
    for res in report["whole_map"].values():
        assert res["distance"] >= 0.0


def test_compare_existing_array(tmp_path):
    baseline = write_baseline(tmp_path)
    protected = str(tmp_path / "protected.npy")
    values = np.load(baseline)
    np.save(protected, values[::-1].copy())
    output = str(tmp_path / "report.json")

    code = cli.main([
        "--baseline", baseline,
        "--compare", protected,
        "--cell-size", "100",
        "--resolution", "2",
        "--output", output,
    ])
    assert code == 0

    with open(output, encoding="utf-8") as f:
        report = json.load(f)
    assert report["protections"] == {}
    assert report["whole_map"]["protected.npy"]["resolution"] == 2


def test_balanced_mismatch_is_reported_not_fatal(tmp_path):
    baseline = write_baseline(tmp_path)
    output = str(tmp_path / "report.json")

    code = cli.main(["--baseline", baseline, "--protect", "suppression", "--output", output])
    assert code == 0

    with open(output, encoding="utf-8") as f:
        report = json.load(f)
    assert "error" in report["whole_map"]["suppression"]


def test_missing_baseline(tmp_path):
    assert cli.main(["--baseline", str(tmp_path / "missing.npy")]) == 1


def test_invalid_override(tmp_path):
    baseline = write_baseline(tmp_path)
    assert cli.main(["--baseline", baseline, "--resolution", "0"]) == 1


def test_apply_overrides():
    args = cli.parse_args([
        "--baseline", "x.npy",
        "--unbalanced-cost", "42",
        "--focus", "1", "2", "3",
    ])
    config = cli.apply_overrides(cli.Config(), args)

    assert config.transport.balanced is False
    assert config.transport.unbalanced_cost == 42.0
    assert config.area.radius == 3.0
    assert config.area.metric == "linf"


def test_repeated_setup_does_not_stack_handlers(tmp_path):
    root = logging.getLogger()
    others = [h for h in root.handlers if not getattr(h, cli._HANDLER_TAG, False)]
    try:
        cli.setup_logging(log_dir=None)
        cli.setup_logging(log_dir=str(tmp_path))
        cli.setup_logging(log_dir=None)
        owned = [h for h in root.handlers if getattr(h, cli._HANDLER_TAG, False)]
        assert len(owned) == 1
        # Handlers installed by someone else stay in place
        assert all(h in root.handlers for h in others)
    finally:
        for handler in [h for h in root.handlers if getattr(h, cli._HANDLER_TAG, False)]:
            root.removeHandler(handler)
            handler.close()
