"""Background trace from the darkest square block of the first frame."""

from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np
from scipy import ndimage

from .traces import FrameStack, as_float_frames

LOGGER = logging.getLogger(__name__)


@dataclass
class BackgroundTrace:
    """Mean of a ``(2 * half_width + 1)``-square block in every frame.

    ``center`` is the ``(y, x)`` block centre in the first raw frame.
    """

    center: tuple[int, int]
    half_width: int
    means: np.ndarray

    @property
    def size(self) -> int:
        width = 2 * self.half_width + 1
        return width * width


def extract_background(
    stack: FrameStack, half_width: int, shifts: np.ndarray | None = None
) -> BackgroundTrace | None:
    """Follow the darkest block of the first raw frame through the stack.

    ``shifts`` are the per-frame ``(dy, dx)`` drift corrections; the block is moved
    with the sample so it covers the same specimen area in every frame. Candidate
    blocks must stay inside the image for every shift. Returns ``None`` when
    ``half_width < 1`` or no such block exists.
    """
    if half_width < 1:
        return None
    frames = as_float_frames(stack)
    n_frames, height, width = frames.shape
    if shifts is None:
        shifts = np.zeros((n_frames, 2), dtype=int)
    shifts = np.asarray(shifts, dtype=int)
    if shifts.shape != (n_frames, 2):
        raise ValueError("shifts must have shape (n_frames, 2).")

    # Offsets of each frame's block relative to the block in frame 0.
    rel = shifts[0] - shifts
    s = int(half_width)
    y_lo, y_hi = s - int(rel[:, 0].min()), height - 1 - s - int(rel[:, 0].max())
    x_lo, x_hi = s - int(rel[:, 1].min()), width - 1 - s - int(rel[:, 1].max())
    if y_hi < y_lo or x_hi < x_lo:
        LOGGER.info(
            "Unable to place a %dx%d background block inside the image with drift %s to %s",
            2 * s + 1,
            2 * s + 1,
            shifts.min(axis=0).tolist(),
            shifts.max(axis=0).tolist(),
        )
        return None

    block = ndimage.uniform_filter(frames[0], size=2 * s + 1, mode="constant")
    window = block[y_lo : y_hi + 1, x_lo : x_hi + 1]
    wy, wx = np.unravel_index(np.argmin(window), window.shape)
    cy, cx = int(wy) + y_lo, int(wx) + x_lo

    means = np.empty(n_frames, dtype=np.float64)
    for idx in range(n_frames):
        y = cy + int(rel[idx, 0])
        x = cx + int(rel[idx, 1])
        means[idx] = frames[idx, y - s : y + s + 1, x - s : x + s + 1].mean()
    LOGGER.info("Background block centred at (%d,%d), %d pixels", cx, cy, (2 * s + 1) ** 2)
    return BackgroundTrace(center=(cy, cx), half_width=s, means=means)


__all__ = ["BackgroundTrace", "extract_background"]
