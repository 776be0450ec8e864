"""Foreground mask from an Otsu threshold of a projection across frames."""

from __future__ import annotations

import logging

import numpy as np
from skimage.filters import threshold_otsu

from .traces import FrameStack, pixel_values

LOGGER = logging.getLogger(__name__)

FLOAT_HISTOGRAM_LEVELS = 65536


def project(stack: FrameStack, projection: str = "max") -> np.ndarray:
    """Project the stack across frames; returns a ``(height, width)`` array."""
    raw = pixel_values(stack)
    if projection == "max":
        flat = raw.max(axis=0)
    elif projection == "mean":
        flat = raw.mean(axis=0, dtype=np.float64)
    else:
        raise ValueError(f"Unknown projection: {projection!r}")
    return flat.reshape(stack.height, stack.width)


def _histogram_levels(image: np.ndarray) -> np.ndarray:
    """Map an image onto non-negative integer histogram levels."""
    lo = image.min()
    if np.issubdtype(image.dtype, np.integer):
        return image.astype(np.int64) - int(lo)
    hi = image.max()
    scale = (FLOAT_HISTOGRAM_LEVELS - 1) / (float(hi) - float(lo))
    return np.floor((image.astype(np.float64) - float(lo)) * scale).astype(np.int64)


def build_foreground_mask(stack: FrameStack, projection: str = "max") -> np.ndarray:
    """Boolean ``(height, width)`` mask of pixels above the Otsu threshold.

    Integer stacks use their raw levels (offset by the minimum); float stacks are
    scaled from their range onto 0..65535. A constant projection has no foreground.
    """
    image = project(stack, projection)
    if not np.all(np.isfinite(image)):
        raise ValueError("Projection contains non-finite values.")
    if image.min() == image.max():
        LOGGER.info("Constant %s projection; foreground mask is empty", projection)
        return np.zeros(image.shape, dtype=bool)

    levels = _histogram_levels(image)
    counts = np.bincount(levels.ravel())
    threshold = threshold_otsu(hist=(counts, np.arange(counts.size)))
    mask = levels > threshold
    LOGGER.info("Foreground threshold = %s (%d pixels)", threshold, int(mask.sum()))
    return mask


__all__ = ["build_foreground_mask", "project"]
