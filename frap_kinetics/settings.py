"""Immutable analysis configuration and image calibration."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping
import logging
import math

LOGGER = logging.getLogger(__name__)

MAX_BORDER = 5
"""Upper limit on the bleached-border dilation (pixels)."""

DETECTORS = ("laplacian", "ema")
PROJECTIONS = ("max", "mean")


@dataclass(frozen=True)
class Calibration:
    """Spatial and temporal calibration of a frame stack.

    Attributes
    ----------
    pixel_size : float
        Physical width of one pixel in ``distance_unit``.
    distance_unit : str
        Unit of ``pixel_size`` (``"pixel"`` when uncalibrated).
    frame_interval : float
        Time between frames in ``time_unit``. Zero means "unknown".
    time_unit : str
        Unit of ``frame_interval``.
    """

    pixel_size: float = 1.0
    distance_unit: str = "pixel"
    frame_interval: float = 1.0
    time_unit: str = "frame"

    def __post_init__(self) -> None:
        if not math.isfinite(self.pixel_size) or self.pixel_size <= 0:
            raise ValueError("pixel_size must be a positive finite number.")
        if not math.isfinite(self.frame_interval) or self.frame_interval < 0:
            raise ValueError("frame_interval must be a finite number >= 0.")

    def normalized(self) -> "Calibration":
        """Map the calibration onto micrometres and seconds where the units allow it.

        An uncalibrated frame interval of zero becomes one ``frame``.
        """
        pixel_size = self.pixel_size
        distance_unit = self.distance_unit
        unit = distance_unit.lower()
        if unit == "nm" or unit.startswith("nanomet"):
            distance_unit = "µm"
            pixel_size /= 1000.0
        elif unit in ("um", "µm") or unit.startswith("micron") or unit.startswith("micromet"):
            distance_unit = "µm"

        frame_interval = self.frame_interval
        time_unit = self.time_unit
        if frame_interval == 0:
            frame_interval = 1.0
            time_unit = "frame"
        elif time_unit.lower() in ("msec", "ms"):
            time_unit = "sec"
            frame_interval /= 1000.0

        return Calibration(
            pixel_size=pixel_size,
            distance_unit=distance_unit,
            frame_interval=frame_interval,
            time_unit=time_unit,
        )


@dataclass(frozen=True)
class AnalysisSettings:
    """All options recognised by the analysis pipeline.

    The defaults follow the values used for routine FRAP screening: a permissive
    Laplacian pre-filter and a score threshold of 7 standard deviations for regions.
    """

    min_region_size: int = 100
    score_threshold: float = 7.0
    ema_window_size: int = 10
    circular_region: bool = True
    bleached_border: int = 3
    nested_models: bool = False
    diffusion_coefficient: float = 1.0
    results_dir: str | None = None
    detector: str = "laplacian"
    projection: str = "max"
    background_size: int = 20
    max_iterations: int = 3000
    n_jobs: int = 1
    align: bool = True
    alignment_frame: int | None = None
    max_shift: int = 40
    alignment_iterations: int = 2

    def __post_init__(self) -> None:
        if self.min_region_size < 1:
            raise ValueError("min_region_size must be >= 1.")
        if not math.isfinite(self.score_threshold) or self.score_threshold <= 0:
            raise ValueError("score_threshold must be a positive finite number.")
        if self.ema_window_size < 1:
            raise ValueError("ema_window_size must be >= 1.")
        if not 0 <= self.bleached_border <= MAX_BORDER:
            raise ValueError(f"bleached_border must be in [0, {MAX_BORDER}].")
        if not math.isfinite(self.diffusion_coefficient):
            raise ValueError("diffusion_coefficient must be finite.")
        if self.detector not in DETECTORS:
            raise ValueError(f"detector must be one of: {', '.join(DETECTORS)}.")
        if self.projection not in PROJECTIONS:
            raise ValueError(f"projection must be one of: {', '.join(PROJECTIONS)}.")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores).")
        if self.alignment_iterations < 1:
            raise ValueError("alignment_iterations must be >= 1.")
        if self.max_shift < 0:
            raise ValueError("max_shift must be >= 0.")

    @property
    def detector_threshold(self) -> float:
        """Per-pixel acceptance threshold of the selected detector.

        The Laplacian detector takes the permissive pre-filter ``min(1, score_threshold / 4)``
        and the score maps are filtered again during segmentation. The EMA detector keeps the
        first excursion it meets, so it uses ``score_threshold`` directly.
        """
        if self.detector == "ema":
            return self.score_threshold
        return min(1.0, self.score_threshold / 4.0)

    @property
    def min_radius(self) -> float:
        return max(2.0, math.sqrt(self.min_region_size / math.pi))

    @property
    def results_path(self) -> Path | None:
        """Results directory if one is configured and exists."""
        if not self.results_dir:
            return None
        path = Path(self.results_dir)
        return path if path.is_dir() else None

    def with_updates(self, **changes: Any) -> "AnalysisSettings":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "AnalysisSettings":
        """Build settings from a mapping (e.g. a YAML document), ignoring unknown keys."""
        if not payload:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown settings: %s", ", ".join(unknown))
        return cls(**{key: value for key, value in payload.items() if key in known})


__all__ = ["AnalysisSettings", "Calibration", "MAX_BORDER", "DETECTORS", "PROJECTIONS"]
