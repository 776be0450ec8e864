"""Load time-lapse TIFF stacks with their spatial and temporal calibration."""

from __future__ import annotations

from pathlib import Path
import logging

import numpy as np
import tifffile

from ..errors import InputError
from ..image.traces import FrameStack
from ..settings import Calibration

LOGGER = logging.getLogger(__name__)

_TIME_AXES = ("T", "I", "Z", "Q")


def _to_tyx(data: np.ndarray, axes: str) -> np.ndarray:
    """Reduce an n-D series to ``(time, y, x)``; other axes take their first index.

    Series with a sample (``S``) axis are rejected wherever it sits.
    """
    axes = axes.upper()
    if data.ndim != len(axes):
        raise ValueError(f"Axes {axes!r} do not match data with {data.ndim} dimensions.")
    if "S" in axes:
        raise InputError(f"RGB or multi-sample stacks are not supported (axes {axes!r}).")
    if data.ndim == 2:
        return data[np.newaxis]
    time_axis = next((axes.index(a) for a in _TIME_AXES if a in axes), None)
    index: list[slice | int] = []
    for pos, name in enumerate(axes):
        if pos == time_axis or name in ("Y", "X"):
            index.append(slice(None))
        else:
            index.append(0)
    reduced = data[tuple(index)]
    if time_axis is None:
        return reduced[np.newaxis]
    return reduced


def _pixel_size(page: tifffile.TiffPage) -> float:
    tag = page.tags.get("XResolution")
    if tag is None:
        return 1.0
    numerator, denominator = tag.value
    if numerator <= 0 or denominator <= 0:
        return 1.0
    return float(denominator) / float(numerator)


def read_calibration(tif: tifffile.TiffFile) -> Calibration:
    """Calibration from ImageJ metadata and the resolution tags (not normalized)."""
    metadata = tif.imagej_metadata or {}
    distance_unit = str(metadata.get("unit", "pixel"))
    pixel_size = _pixel_size(tif.pages[0]) if distance_unit != "pixel" else 1.0
    if "finterval" in metadata:
        frame_interval = float(metadata["finterval"])
        time_unit = str(metadata.get("tunit", "sec"))
    else:
        frame_interval = 1.0
        time_unit = "frame"
    return Calibration(
        pixel_size=pixel_size,
        distance_unit=distance_unit,
        frame_interval=frame_interval,
        time_unit=time_unit,
    )


def load_stack(path: str | Path, *, calibration: Calibration | None = None) -> FrameStack:
    """Read a TIFF time series as a :class:`FrameStack`.

    ``calibration`` overrides the calibration stored in the file.
    """
    path = Path(path)
    with tifffile.TiffFile(path) as tif:
        series = tif.series[0]
        data = series.asarray()
        frames = _to_tyx(data, series.axes)
        if calibration is None:
            calibration = read_calibration(tif)
    LOGGER.info("Loaded %s: %s %s (axes %s)", path.name, frames.shape, frames.dtype, series.axes)
    return FrameStack(frames=frames, calibration=calibration, name=path.name)


def save_stack(stack: FrameStack, path: str | Path) -> Path:
    """Write ``stack`` as an ImageJ hyperstack carrying its calibration."""
    path = Path(path)
    cal = stack.calibration
    metadata = {"axes": "TYX"}
    if cal.distance_unit != "pixel":
        metadata["unit"] = cal.distance_unit
    if cal.time_unit != "frame":
        metadata["finterval"] = cal.frame_interval
        metadata["tunit"] = cal.time_unit
    tifffile.imwrite(
        path,
        np.asarray(stack.frames),
        imagej=True,
        resolution=(1.0 / cal.pixel_size, 1.0 / cal.pixel_size),
        metadata=metadata,
    )
    return path


__all__ = ["load_stack", "read_calibration", "save_stack"]
