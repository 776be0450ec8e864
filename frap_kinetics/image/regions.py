"""Bleached-region segmentation from per-frame event score maps.

Each frame of the score map is turned into a binary image with one of two strategies
and split into 8-connected components of at least ``min_region_size`` pixels:

- morphological: threshold, 3x3 closing, speckle removal, hole filling;
- circular: Gaussian-smoothed scores, local maxima, a disc per maximum whose radius is
  where the radial mean of the smoothed score falls below the threshold.

Components from all frames are then numbered sequentially in frame order. A pixel
belongs to the first region that claims it, and every region is limited to the
foreground mask.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
import logging
import math

import numpy as np
from joblib import Parallel, delayed
from scipy import ndimage
from skimage.draw import disk
from skimage.feature import peak_local_max
from skimage.measure import label, regionprops

from ..cancellation import CancellationToken, check_cancelled
from ..errors import NoForegroundError, TooManyRegionsError
from ..settings import MAX_BORDER, AnalysisSettings

LOGGER = logging.getLogger(__name__)

MAX_REGIONS = 254
CIRCULAR_BLUR_SIGMA = 2.0
_STRUCTURE = np.ones((3, 3), dtype=bool)
_NEIGHBOURS = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.int32)


@dataclass(frozen=True, eq=False)
class Region:
    """A bleached region: id, originating frame and pixel footprint."""

    region_id: int
    bleach_frame: int
    pixels: np.ndarray
    centroid: tuple[float, float]

    @property
    def size(self) -> int:
        return int(np.count_nonzero(self.pixels))

    def to_dict(self) -> dict[str, float | int]:
        return {
            "region_id": self.region_id,
            "bleach_frame": self.bleach_frame,
            "size": self.size,
            "centroid_x": self.centroid[0],
            "centroid_y": self.centroid[1],
        }


def close_binary(binary: np.ndarray) -> np.ndarray:
    """3x3 closing; pixels outside the image do not erode the border."""
    dilated = ndimage.binary_dilation(binary, structure=_STRUCTURE)
    return ndimage.binary_erosion(dilated, structure=_STRUCTURE, border_value=1)


def remove_speckles(binary: np.ndarray) -> np.ndarray:
    """Drop foreground pixels with no 8-connected foreground neighbour."""
    neighbours = ndimage.convolve(binary.astype(np.int32), _NEIGHBOURS, mode="constant", cval=0)
    return binary & (neighbours > 0)


def morphological_frame(score: np.ndarray, threshold: float) -> np.ndarray:
    binary = np.asarray(score) >= threshold
    if not binary.any():
        return binary
    return ndimage.binary_fill_holes(remove_speckles(close_binary(binary)))


def _value(image: np.ndarray, x: int, y: int) -> float:
    if 0 <= y < image.shape[0] and 0 <= x < image.shape[1]:
        return float(image[y, x])
    return -math.inf


def _axis_radius(image: np.ndarray, x: int, y: int, threshold: float) -> int:
    """Largest distance to the first sub-threshold pixel along the four axes."""
    reach = []
    for dx, dy in ((-1, 0), (0, -1), (1, 0), (0, 1)):
        step = 1
        while _value(image, x + dx * step, y + dy * step) >= threshold:
            step += 1
        reach.append(step)
    return max(reach)


def radial_means(image: np.ndarray, x: int, y: int, radius: int) -> np.ndarray:
    """Mean of ``image`` per integer radial bin ``0..radius`` around ``(x, y)``.

    Pixels outside the image count as zero.
    """
    size = 2 * radius + 1
    window = np.zeros((size, size), dtype=np.float64)
    y0, x0 = y - radius, x - radius
    sy0, sx0 = max(y0, 0), max(x0, 0)
    sy1, sx1 = min(y0 + size, image.shape[0]), min(x0 + size, image.shape[1])
    window[sy0 - y0 : sy1 - y0, sx0 - x0 : sx1 - x0] = image[sy0:sy1, sx0:sx1]

    yy, xx = np.indices((size, size))
    bins = np.rint(np.hypot(yy - radius, xx - radius)).astype(np.int64).ravel()
    inside = bins <= radius
    sums = np.bincount(bins[inside], weights=window.ravel()[inside], minlength=radius + 1)
    counts = np.bincount(bins[inside], minlength=radius + 1)
    return sums / counts


def refine_radius(image: np.ndarray, x: int, y: int, radius: int, threshold: float) -> int:
    """Shrink or grow ``radius`` to the last radial bin still at or above ``threshold``.

    When every bin in the window passes, the window is doubled, up to the image diagonal.
    """
    limit = int(math.ceil(math.hypot(*image.shape)))
    radius = max(1, radius)
    while True:
        means = radial_means(image, x, y, radius)
        below = np.flatnonzero(means[1:] < threshold)
        if below.size:
            return int(below[0])
        if radius >= limit:
            return limit
        radius = min(radius * 2, limit)


def circular_frame(score: np.ndarray, threshold: float, min_radius: float) -> np.ndarray:
    blurred = ndimage.gaussian_filter(np.asarray(score, dtype=np.float64), CIRCULAR_BLUR_SIGMA, mode="nearest")
    binary = np.zeros(blurred.shape, dtype=bool)
    if blurred.max() < threshold:
        return binary
    peaks = peak_local_max(
        blurred,
        min_distance=max(1, int(min_radius)),
        threshold_abs=threshold,
        exclude_border=False,
    )
    for y, x in peaks:
        if blurred[y, x] < threshold:
            continue
        radius = _axis_radius(blurred, int(x), int(y), threshold)
        radius = refine_radius(blurred, int(x), int(y), (radius * 3) // 2, threshold)
        rr, cc = disk((y, x), radius + 0.5, shape=binary.shape)
        binary[rr, cc] = True
    return binary


def frame_components(binary: np.ndarray, min_size: int) -> list[np.ndarray]:
    """8-connected components of at least ``min_size`` pixels, in label order."""
    labels = label(binary, connectivity=2)
    return [labels == prop.label for prop in regionprops(labels) if prop.area >= min_size]


def _segment_frame(
    score: np.ndarray, settings: AnalysisSettings, token: CancellationToken | None
) -> list[np.ndarray]:
    check_cancelled(token, "Region segmentation")
    if settings.circular_region:
        binary = circular_frame(score, settings.score_threshold, settings.min_radius)
    else:
        binary = morphological_frame(score, settings.score_threshold)
    if not binary.any():
        return []
    return frame_components(binary, settings.min_region_size)


def segment_regions(
    score_map: np.ndarray,
    foreground_mask: np.ndarray,
    settings: AnalysisSettings | None = None,
    token: CancellationToken | None = None,
) -> list[Region]:
    """Convert the ``(n_frames, height, width)`` score map into numbered regions.

    Raises
    ------
    TooManyRegionsError
        If more than 254 regions are found.
    """
    settings = settings or AnalysisSettings()
    scores = np.asarray(score_map)
    mask = np.asarray(foreground_mask, dtype=bool)
    if scores.ndim != 3 or scores.shape[1:] != mask.shape:
        raise ValueError("score_map must be (n_frames, height, width) matching the foreground mask.")

    active = [f for f in range(scores.shape[0]) if scores[f].max() > 0]
    if settings.n_jobs == 1 or len(active) < 2:
        per_frame = [_segment_frame(scores[f], settings, token) for f in active]
    else:
        per_frame = Parallel(n_jobs=settings.n_jobs, prefer="threads")(
            delayed(_segment_frame)(scores[f], settings, token) for f in active
        )
    check_cancelled(token, "Region segmentation")

    claimed = ~mask
    regions: list[Region] = []
    for frame, candidates in zip(active, per_frame):
        accepted = 0
        for footprint in candidates:
            pixels = footprint & ~claimed
            size = int(np.count_nonzero(pixels))
            if size < settings.min_region_size:
                continue
            claimed |= pixels
            ys, xs = np.nonzero(pixels)
            region = Region(
                region_id=len(regions) + 1,
                bleach_frame=frame,
                pixels=pixels,
                centroid=(float(xs.mean()), float(ys.mean())),
            )
            regions.append(region)
            accepted += 1
            LOGGER.info(
                "  [%d] (%.2f,%.2f) = %d pixels", region.region_id, region.centroid[0], region.centroid[1], size
            )
        if accepted:
            LOGGER.info("Detected %d region(s) on frame %d", accepted, frame)

    if len(regions) > MAX_REGIONS:
        raise TooManyRegionsError(len(regions), MAX_REGIONS)
    return regions


def build_label_mask(
    foreground_mask: np.ndarray, regions: Sequence[Region], bleached_border: int = 0
) -> np.ndarray:
    """uint8 label image: 0 background, region ids, ``len(regions) + 1`` foreground.

    Foreground pixels within ``min(bleached_border, MAX_BORDER)`` pixels (3x3 max
    filter steps) of any region are set to background.

    Raises
    ------
    TooManyRegionsError
        If the labels would not fit into 8 bits.
    NoForegroundError
        If no pixel keeps the foreground label.
    """
    if len(regions) > MAX_REGIONS:
        raise TooManyRegionsError(len(regions), MAX_REGIONS)
    mask = np.asarray(foreground_mask, dtype=bool)
    foreground_id = len(regions) + 1
    labels = np.zeros(mask.shape, dtype=np.uint8)
    labels[mask] = foreground_id
    for region in regions:
        labels[region.pixels] = region.region_id

    border = min(int(bleached_border), MAX_BORDER)
    if border > 0 and regions:
        bleached = (labels > 0) & (labels < foreground_id)
        grown = ndimage.binary_dilation(bleached, structure=_STRUCTURE, iterations=border)
        labels[(labels == foreground_id) & grown] = 0

    n_foreground = int(np.count_nonzero(labels == foreground_id))
    if n_foreground == 0:
        raise NoForegroundError("No foreground (entire image is bleached regions).")
    LOGGER.info("Foreground = %d pixels", n_foreground)
    return labels


__all__ = [
    "MAX_REGIONS",
    "Region",
    "build_label_mask",
    "circular_frame",
    "close_binary",
    "frame_components",
    "morphological_frame",
    "radial_means",
    "refine_radius",
    "remove_speckles",
    "segment_regions",
]
