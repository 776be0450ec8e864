"""Integer-pixel drift correction by FFT cross-correlation."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math

import numpy as np

from ..cancellation import CancellationToken, check_cancelled
from .traces import FrameStack, as_float_frames

LOGGER = logging.getLogger(__name__)

CONVERGENCE_TOLERANCE = 1e-3


@dataclass
class AlignmentResult:
    """Aligned stack cropped to the region covered by every shifted frame.

    ``shifts`` holds the ``(dy, dx)`` translation applied to each raw frame;
    ``origin`` is the ``(y, x)`` position of the crop in the raw frame.
    """

    stack: FrameStack
    shifts: np.ndarray
    origin: tuple[int, int]
    iterations: int

    @property
    def max_shift(self) -> int:
        return int(np.abs(self.shifts).max()) if self.shifts.size else 0

    def to_dict(self) -> dict[str, object]:
        return {
            "shifts_dy_dx": self.shifts.tolist(),
            "origin_yx": self.origin,
            "iterations": self.iterations,
        }


def _cross_correlation_shift(reference: np.ndarray, moving: np.ndarray, max_shift: int | None = None) -> tuple[int, int]:
    """Return integer shift ``(dy, dx)`` maximizing cross-correlation.

    With ``max_shift`` the peak search is limited to ``|dy|, |dx| <= max_shift``.
    """
    ref = reference - np.mean(reference)
    mov = moving - np.mean(moving)

    fft_ref = np.fft.fft2(ref)
    fft_mov = np.fft.fft2(mov)
    corr = np.fft.ifft2(fft_ref * np.conj(fft_mov))
    corr = np.fft.fftshift(np.real(corr))

    center_y = corr.shape[0] // 2
    center_x = corr.shape[1] // 2
    # Ties (e.g. featureless frames) resolve to no shift.
    if corr[center_y, center_x] >= corr.max():
        return 0, 0
    if max_shift is not None and max_shift > 0:
        y0, y1 = max(center_y - max_shift, 0), min(center_y + max_shift + 1, corr.shape[0])
        x0, x1 = max(center_x - max_shift, 0), min(center_x + max_shift + 1, corr.shape[1])
        window = corr[y0:y1, x0:x1]
        peak_y, peak_x = np.unravel_index(np.argmax(window), window.shape)
        peak_y += y0
        peak_x += x0
    else:
        peak_y, peak_x = np.unravel_index(np.argmax(corr), corr.shape)
    return int(peak_y - center_y), int(peak_x - center_x)


def _shift_image(frame: np.ndarray, dy: int, dx: int) -> np.ndarray:
    """Translate by ``(dy, dx)``; uncovered pixels are zero."""
    shifted = np.zeros_like(frame)
    height, width = frame.shape
    if abs(dy) >= height or abs(dx) >= width:
        return shifted
    src_y = slice(max(-dy, 0), height - max(dy, 0))
    src_x = slice(max(-dx, 0), width - max(dx, 0))
    dst_y = slice(max(dy, 0), height - max(-dy, 0))
    dst_x = slice(max(dx, 0), width - max(-dx, 0))
    shifted[dst_y, dst_x] = frame[src_y, src_x]
    return shifted


def _relative_error(a: float, b: float) -> float:
    scale = max(abs(a), abs(b))
    return 0.0 if scale == 0 else abs(a - b) / scale


def crop_bounds(shifts: np.ndarray, height: int, width: int) -> tuple[slice, slice]:
    """Rows and columns covered by every shifted frame."""
    dy = shifts[:, 0]
    dx = shifts[:, 1]
    rows = slice(max(0, int(dy.max())), min(height, height + int(dy.min())))
    cols = slice(max(0, int(dx.max())), min(width, width + int(dx.min())))
    return rows, cols


def align_stack(
    stack: FrameStack,
    *,
    reference_frame_index: int | None = None,
    max_shift: int = 40,
    iterations: int = 2,
    token: CancellationToken | None = None,
) -> AlignmentResult:
    """Correct translational drift and crop to the common field of view.

    The first pass aligns every frame to the reference frame (the middle frame by
    default). Later passes align to the maximum projection of the previous pass and stop
    early once the summed squared change of the shifts stops changing (relative
    change below ``1e-3``).
    """
    frames = as_float_frames(stack)
    n_frames, height, width = frames.shape
    if reference_frame_index is None:
        reference_frame_index = (n_frames + 1) // 2 - 1
    if not 0 <= reference_frame_index < n_frames:
        raise ValueError(f"reference_frame_index {reference_frame_index} outside [0, {n_frames}).")

    reference = frames[int(reference_frame_index)]
    shifts = np.zeros((n_frames, 2), dtype=int)
    corrected = np.empty_like(frames)
    ss = 0.0
    completed = 0
    for iteration in range(1, max(1, iterations) + 1):
        previous_ss = ss
        ss = 0.0
        for idx in range(n_frames):
            check_cancelled(token, "Alignment")
            dy, dx = _cross_correlation_shift(reference, frames[idx], max_shift)
            ss += float((dy - shifts[idx, 0]) ** 2 + (dx - shifts[idx, 1]) ** 2)
            shifts[idx] = (dy, dx)
            corrected[idx] = _shift_image(frames[idx], dy=dy, dx=dx)
        completed = iteration
        LOGGER.info("  [%d] RMSD %.4g", iteration, math.sqrt(ss / n_frames))
        relative = _relative_error(ss, previous_ss)
        if relative < CONVERGENCE_TOLERANCE:
            LOGGER.info("  [%d] Alignment converged within %.3g", iteration, relative)
            break
        if iteration < iterations:
            # The mean projection is biased by the bleached regions.
            reference = corrected.max(axis=0)

    if max_shift > 0 and int(np.abs(shifts).max()) >= max_shift:
        LOGGER.warning("Maximum shift limit reached: %s to %s", shifts.min(axis=0).tolist(), shifts.max(axis=0).tolist())

    rows, cols = crop_bounds(shifts, height, width)
    if rows.stop <= rows.start or cols.stop <= cols.start:
        raise ValueError("Drift leaves no common field of view.")
    # Crop from the raw samples so the pixel type is preserved.
    raw = stack.frames
    cropped = np.stack(
        [raw[i, rows.start - dy : rows.stop - dy, cols.start - dx : cols.stop - dx] for i, (dy, dx) in enumerate(shifts)]
    )
    return AlignmentResult(
        stack=stack.with_frames(cropped),
        shifts=shifts,
        origin=(rows.start, cols.start),
        iterations=completed,
    )


__all__ = ["AlignmentResult", "align_stack", "crop_bounds"]
