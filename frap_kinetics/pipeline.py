"""End-to-end FRAP kinetics analysis of one frame stack."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import logging

import numpy as np

from .cancellation import CancellationToken, check_cancelled
from .core.frap_fitting import FitResult, RegionFit, fit_decay, fit_regions, log_region_fit
from .core.frap_models import LN2
from .errors import FitConvergenceError
from .image.alignment import AlignmentResult, align_stack
from .image.background import BackgroundTrace, extract_background
from .image.events import detect_events
from .image.masks import build_foreground_mask
from .image.regions import Region, build_label_mask, segment_regions
from .image.timeseries import aggregate_means
from .image.traces import FrameStack
from .io.frap_results import save_traces
from .settings import AnalysisSettings, Calibration

LOGGER = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Everything produced by :func:`analyze_stack` for one stack."""

    stack: FrameStack
    settings: AnalysisSettings
    foreground_mask: np.ndarray
    label_mask: np.ndarray
    regions: list[Region]
    means: np.ndarray
    decay_fit: FitResult | None
    region_fits: list[RegionFit] = field(default_factory=list)
    background: BackgroundTrace | None = None
    alignment: AlignmentResult | None = None

    @property
    def calibration(self) -> Calibration:
        return self.stack.calibration

    @property
    def n_regions(self) -> int:
        return len(self.regions)

    @property
    def foreground_trace(self) -> np.ndarray:
        return self.means[-1]

    @property
    def time(self) -> np.ndarray:
        return np.arange(self.stack.n_frames, dtype=float) * self.calibration.frame_interval

    def region_trace(self, region_id: int) -> np.ndarray:
        if not 1 <= region_id <= self.n_regions:
            raise KeyError(f"No region {region_id}.")
        return self.means[region_id - 1]

    def region_sizes(self) -> list[int]:
        return [int(np.count_nonzero(self.label_mask == label)) for label in range(1, self.n_regions + 2)]

    def summary_rows(self) -> list[dict[str, Any]]:
        rows = []
        for region, fit in zip(self.regions, self.region_fits):
            row = fit.to_dict()
            row["centroid_x"] = region.centroid[0]
            row["centroid_y"] = region.centroid[1]
            rows.append(row)
        return rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.stack.name,
            "settings": self.settings.to_dict(),
            "n_regions": self.n_regions,
            "decay": self.decay_fit.to_dict() if self.decay_fit is not None else None,
            "regions": self.summary_rows(),
        }


def _fit_foreground(trace: np.ndarray, calibration: Calibration, settings: AnalysisSettings) -> FitResult | None:
    try:
        fit = fit_decay(trace, interval=calibration.frame_interval, max_iterations=settings.max_iterations)
    except FitConvergenceError as exc:
        LOGGER.warning("Failed to fit foreground decay: %s", exc)
        return None
    LOGGER.info(
        "Foreground decay: %s; Half-life = %.4g %ss",
        fit.describe(),
        LN2 / fit.param("koff"),
        calibration.time_unit,
    )
    return fit


def analyze_stack(
    stack: FrameStack,
    settings: AnalysisSettings | None = None,
    token: CancellationToken | None = None,
) -> AnalysisResult:
    """Detect bleached regions in ``stack`` and fit their recovery kinetics.

    Raises
    ------
    StackTooShortError, NoForegroundError, TooManyRegionsError
        Input errors; nothing is written in that case.
    AnalysisCancelledError
        If ``token`` is cancelled.
    """
    settings = settings or AnalysisSettings()
    raw = FrameStack(frames=stack.frames, calibration=stack.calibration.normalized(), name=stack.name)
    calibration = raw.calibration
    LOGGER.info(
        "Analysing %s: %d frames of %dx%d, %.4g %s/pixel, %.4g %s/frame",
        raw.name,
        raw.n_frames,
        raw.width,
        raw.height,
        calibration.pixel_size,
        calibration.distance_unit,
        calibration.frame_interval,
        calibration.time_unit,
    )

    alignment = None
    shifts = None
    work = raw
    if settings.align:
        LOGGER.info("Aligning image")
        alignment = align_stack(
            raw,
            reference_frame_index=settings.alignment_frame,
            max_shift=settings.max_shift,
            iterations=settings.alignment_iterations,
            token=token,
        )
        work = alignment.stack
        shifts = alignment.shifts

    mask = build_foreground_mask(work, settings.projection)
    detection = detect_events(work, mask, settings, token)
    regions = segment_regions(detection.score_map, mask, settings, token)
    if not regions:
        LOGGER.info("No bleached regions detected")
    label_mask = build_label_mask(mask, regions, settings.bleached_border)
    check_cancelled(token)

    means = aggregate_means(label_mask, work, len(regions), n_jobs=settings.n_jobs, token=token)
    background = extract_background(raw, settings.background_size, shifts)

    decay_fit = _fit_foreground(means[-1], calibration, settings)
    decay_rate = decay_fit.param("koff") if decay_fit is not None else None

    region_fits = fit_regions(
        means[:-1],
        regions,
        interval=calibration.frame_interval,
        pixel_size=calibration.pixel_size,
        decay_rate=decay_rate,
        diffusion_coefficient=settings.diffusion_coefficient,
        nested=settings.nested_models,
        max_iterations=settings.max_iterations,
        n_jobs=settings.n_jobs,
        token=token,
    )
    for fit in region_fits:
        log_region_fit(fit, time_unit=calibration.time_unit, distance_unit=calibration.distance_unit)

    result = AnalysisResult(
        stack=work,
        settings=settings,
        foreground_mask=mask,
        label_mask=label_mask,
        regions=regions,
        means=means,
        decay_fit=decay_fit,
        region_fits=region_fits,
        background=background,
        alignment=alignment,
    )

    results_path = settings.results_path
    if results_path is not None:
        save_traces(result, results_path)
    return result


__all__ = ["AnalysisResult", "analyze_stack"]
