"""Per-region mean intensity over time."""

from __future__ import annotations

import logging

import numpy as np
from joblib import Parallel, delayed

from ..cancellation import CancellationToken, check_cancelled
from .traces import FrameStack, pixel_values

LOGGER = logging.getLogger(__name__)

FRAME_CHUNK = 16


def _chunk_sums(
    raw: np.ndarray, labels: np.ndarray, frames: range, n_labels: int, token: CancellationToken | None
) -> np.ndarray:
    sums = np.empty((len(frames), n_labels), dtype=np.float64)
    for row, frame in enumerate(frames):
        check_cancelled(token, "Time-series aggregation")
        sums[row] = np.bincount(labels, weights=raw[frame].astype(np.float64), minlength=n_labels)
    return sums


def aggregate_means(
    label_mask: np.ndarray,
    stack: FrameStack,
    n_regions: int,
    *,
    n_jobs: int = 1,
    token: CancellationToken | None = None,
) -> np.ndarray:
    """Mean intensity per label and frame.

    Returns
    -------
    np.ndarray
        ``(n_regions + 1, n_frames)`` matrix; row ``j`` is region ``j + 1`` and the
        last row is the foreground reference (label ``n_regions + 1``).
    """
    labels = np.asarray(label_mask).ravel().astype(np.intp)
    if labels.size != stack.n_pixels:
        raise ValueError("label_mask does not match the stack frame size.")
    n_labels = n_regions + 2
    if labels.size and labels.max() >= n_labels:
        raise ValueError(f"label_mask contains labels above {n_regions + 1}.")

    counts = np.bincount(labels, minlength=n_labels)[1:]
    if np.any(counts == 0):
        empty = (np.flatnonzero(counts == 0) + 1).tolist()
        raise ValueError(f"Labels without pixels: {empty}")

    raw = pixel_values(stack)
    chunks = [range(start, min(start + FRAME_CHUNK, stack.n_frames)) for start in range(0, stack.n_frames, FRAME_CHUNK)]
    if n_jobs == 1 or len(chunks) < 2:
        parts = [_chunk_sums(raw, labels, frames, n_labels, token) for frames in chunks]
    else:
        parts = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_chunk_sums)(raw, labels, frames, n_labels, token) for frames in chunks
        )
    sums = np.concatenate(parts, axis=0)[:, 1:]
    return (sums / counts).T


__all__ = ["aggregate_means"]
