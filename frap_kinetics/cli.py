"""Command-line entry point: analyse one or more TIFF stacks."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import matplotlib.pyplot as plt
import yaml

from .errors import FrapAnalysisError
from .io.frap_results import output_prefix, save_label_mask, save_summary
from .io.stack_loader import load_stack
from .pipeline import analyze_stack
from .reports.figures import plot_recovery_curves, save_figure
from .settings import AnalysisSettings, Calibration

LOGGER = logging.getLogger(__name__)

# CLI flag -> AnalysisSettings field
_SETTING_FLAGS = {
    "min_region_size": "min_region_size",
    "score_threshold": "score_threshold",
    "ema_window_size": "ema_window_size",
    "detector": "detector",
    "projection": "projection",
    "circular_region": "circular_region",
    "bleached_border": "bleached_border",
    "nested_models": "nested_models",
    "diffusion_coefficient": "diffusion_coefficient",
    "background_size": "background_size",
    "max_iterations": "max_iterations",
    "jobs": "n_jobs",
    "align": "align",
    "alignment_frame": "alignment_frame",
    "max_shift": "max_shift",
    "alignment_iterations": "alignment_iterations",
    "results_dir": "results_dir",
}


def _load_cli_config(config_path):
    if not config_path:
        return {}
    with open(config_path, "r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError("Config file must define a YAML mapping/dictionary.")
    return payload


def _build_arg_parser():
    parser = argparse.ArgumentParser(description="FRAP kinetics analysis of time-lapse TIFF stacks.")
    parser.add_argument("inputs", nargs="+", help="TIFF stack(s) to analyse.")
    parser.add_argument("--config", type=str, default=None, help="YAML file with analysis settings.")
    parser.add_argument("--results-dir", type=str, default=None, help="Directory for CSV, TIFF and plot outputs.")
    parser.add_argument("--min-region-size", type=int, default=None, help="Minimum bleached region size (pixels).")
    parser.add_argument("--score-threshold", type=float, default=None, help="Standard-score threshold for regions.")
    parser.add_argument("--ema-window-size", type=int, default=None, help="EMA detector window (frames).")
    parser.add_argument("--detector", choices=("laplacian", "ema"), default=None, help="Bleach-event detector.")
    parser.add_argument("--projection", choices=("max", "mean"), default=None, help="Projection for the foreground mask.")
    parser.add_argument(
        "--circular-region",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Fit circular regions around score maxima instead of morphological regions.",
    )
    parser.add_argument("--bleached-border", type=int, default=None, help="Foreground border removed around regions (0-5).")
    parser.add_argument(
        "--nested-models",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also fit models with a residual bleaching envelope (F-test selection).",
    )
    parser.add_argument("--diffusion-coefficient", type=float, default=None, help="Assumed D used to seed tD.")
    parser.add_argument("--background-size", type=int, default=None, help="Half-width of the background block.")
    parser.add_argument("--max-iterations", type=int, default=None, help="Optimizer evaluation cap.")
    parser.add_argument("--jobs", type=int, default=None, help="Worker threads (-1 for all cores).")
    parser.add_argument("--align", action=argparse.BooleanOptionalAction, default=None, help="Correct drift first.")
    parser.add_argument("--alignment-frame", type=int, default=None, help="Reference frame (0-based) for alignment.")
    parser.add_argument("--max-shift", type=int, default=None, help="Maximum drift shift (pixels).")
    parser.add_argument("--alignment-iterations", type=int, default=None, help="Alignment passes.")
    parser.add_argument("--pixel-size", type=float, default=None, help="Override pixel size.")
    parser.add_argument("--distance-unit", type=str, default=None, help="Unit of --pixel-size.")
    parser.add_argument("--frame-interval", type=float, default=None, help="Override frame interval.")
    parser.add_argument("--time-unit", type=str, default=None, help="Unit of --frame-interval.")
    parser.add_argument("--no-plot", action="store_true", help="Do not save the recovery plot.")
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def _settings_from(args: argparse.Namespace, cfg: dict) -> AnalysisSettings:
    payload = dict(cfg.get("settings", {}))
    for flag, name in _SETTING_FLAGS.items():
        value = getattr(args, flag)
        if value is not None:
            payload[name] = value
    return AnalysisSettings.from_mapping(payload)


def _calibration_from(args: argparse.Namespace, cfg: dict) -> Calibration | None:
    payload = dict(cfg.get("calibration", {}))
    for name in ("pixel_size", "distance_unit", "frame_interval", "time_unit"):
        value = getattr(args, name)
        if value is not None:
            payload[name] = value
    return Calibration(**payload) if payload else None


def _analyse_file(path: Path, settings: AnalysisSettings, calibration: Calibration | None, plot: bool) -> None:
    stack = load_stack(path, calibration=calibration)
    result = analyze_stack(stack, settings)
    out_dir = settings.results_path
    if out_dir is None:
        return
    prefix = output_prefix(stack.name)
    save_label_mask(result.label_mask, out_dir / f"{prefix}_regions.tif")
    save_summary(result, out_dir / f"{prefix}_summary.csv")
    if plot:
        fig = plot_recovery_curves(result)
        save_figure(fig, str(out_dir / f"{prefix}_recovery"))
        plt.close(fig)


def main(argv=None):
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s - %(levelname)s - %(message)s")

    cfg = _load_cli_config(args.config) if args.config else {}
    settings = _settings_from(args, cfg)
    calibration = _calibration_from(args, cfg)
    if settings.results_dir:
        Path(settings.results_dir).mkdir(parents=True, exist_ok=True)

    failures = 0
    for name in args.inputs:
        try:
            _analyse_file(Path(name), settings, calibration, plot=not args.no_plot)
        except (FrapAnalysisError, OSError) as exc:
            LOGGER.error("%s: %s", name, exc)
            failures += 1
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
