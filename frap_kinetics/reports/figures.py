"""Measured-vs-fitted recovery plots and figure export."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from ..core.frap_models import model_values, time_axis

if TYPE_CHECKING:
    from ..pipeline import AnalysisResult


def save_figure(fig, filename_stem: str, formats: list[str] | tuple[str, ...] = ("png",), dpi: int = 150) -> list[str]:
    """Save one figure in each of ``formats``.

    Parameters
    ----------
    fig : matplotlib.figure.Figure
        Figure object to save.
    filename_stem : str
        Output path without extension.
    formats : sequence of str
        Format list, e.g. ``("svg", "png")``.
    dpi : int
        Raster DPI for non-vector outputs.
    """
    if not formats:
        raise ValueError("formats must include at least one output format.")

    stem_path = Path(filename_stem)
    saved_paths: list[str] = []
    for fmt in formats:
        ext = str(fmt).lower().lstrip(".")
        out_path = stem_path.with_name(f"{stem_path.name}.{ext}")
        if ext == "svg":
            fig.savefig(out_path, format="svg", bbox_inches="tight")
        else:
            fig.savefig(out_path, format=ext, dpi=dpi, bbox_inches="tight")
        saved_paths.append(str(out_path))
    return saved_paths


def plot_recovery_curves(result: "AnalysisResult"):
    """Mean intensity per region, foreground and background with the fitted curves.

    Returns
    -------
    fig : matplotlib.figure.Figure
    """
    time = result.time
    interval = result.calibration.frame_interval
    fig, ax = plt.subplots(figsize=(8.0, 5.0), constrained_layout=True)

    ax.plot(time, result.foreground_trace, color="black", linewidth=1.5, label="Foreground")
    if result.decay_fit is not None:
        ax.plot(time, result.decay_fit.fitted, color="gray", linestyle=":", linewidth=1.2)
    if result.background is not None:
        ax.plot(time, result.background.means, "o", color="gray", markersize=3, label="Background")

    colours = plt.get_cmap("coolwarm")(np.linspace(0.0, 1.0, max(result.n_regions, 1)))
    for colour, region, fit in zip(colours, result.regions, result.region_fits):
        ax.plot(time, result.region_trace(region.region_id), color=colour, linewidth=1.2, label=f"Region{region.region_id}")
        if fit.selected is None:
            continue
        n_points = time.size - fit.bleach_frame
        fitted = model_values(fit.selected.model_kind, fit.selected.parameters, time_axis(n_points, interval))
        ax.plot(time[fit.bleach_frame :], fitted, color=colour, linestyle=":", linewidth=1.5)

    ax.set_xlabel(f"Time ({result.calibration.time_unit})")
    ax.set_ylabel("Mean Intensity")
    ax.set_title(result.stack.name)
    ax.legend(loc="best", fontsize="small")
    return fig


__all__ = ["plot_recovery_curves", "save_figure"]
