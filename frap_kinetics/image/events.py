"""Per-pixel bleach-event detection.

Two interchangeable detectors report at most one event per pixel trace, as the frame
where the intensity has dropped and the standard score of the drop:

``ema``
    Reverse exponential moving average. The trace is walked from the last frame back
    to the first while an EMA and an exponentially weighted variance are updated.
    After a spin-up of ``window`` steps the first sample whose positive deviation
    from the EMA has ``delta**2 / var > threshold**2`` marks the event (the drop
    happens on the following frame, forward in time).
``laplacian``
    The trace is filtered with ``[1, -2, 1]`` (mirrored ends). The largest positive
    first difference of the Laplacian is the candidate drop; it is accepted when
    ``(0.5 * max - mean)**2 / var > threshold**2`` where the mean and sample variance
    are taken over the Laplacian values away from the drop.

Both detectors operate on batches of traces ``(n, n_frames)``; the single-trace
functions are thin wrappers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
import logging
import math

import numpy as np
from joblib import Parallel, delayed

from ..cancellation import CancellationToken, check_cancelled
from ..settings import AnalysisSettings
from .traces import FrameStack, pixel_values

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 4096
EMA_WEIGHT_FRACTION = 0.001


@dataclass(frozen=True)
class BleachEvent:
    """Detected intensity drop for one pixel."""

    pixel_index: int
    frame: int
    magnitude: float

    def to_dict(self) -> dict[str, float | int]:
        return {"pixel_index": self.pixel_index, "frame": self.frame, "magnitude": self.magnitude}


@dataclass
class EventDetection:
    """Score map ``(n_frames, height, width)`` plus the list of accepted events."""

    score_map: np.ndarray
    events: list[BleachEvent]

    @property
    def n_events(self) -> int:
        return len(self.events)

    def event_frames(self) -> np.ndarray:
        return np.array([event.frame for event in self.events], dtype=int)


def ema_alpha(window_size: int) -> float:
    """Smoothing factor giving the first ``window_size`` samples 99.9% of the weight."""
    if window_size < 1:
        raise ValueError("window_size must be >= 1.")
    return 1.0 - math.exp(math.log(EMA_WEIGHT_FRACTION) / window_size)


def _as_batch(traces: np.ndarray) -> np.ndarray:
    batch = np.asarray(traces, dtype=np.float64)
    if batch.ndim == 1:
        batch = batch[np.newaxis, :]
    if batch.ndim != 2:
        raise ValueError("traces must be 1D or 2D (n_traces, n_frames).")
    return batch


def detect_ema_batch(
    traces: np.ndarray, threshold: float, window_size: int
) -> tuple[np.ndarray, np.ndarray]:
    """Reverse-EMA detector over rows of ``traces``.

    Returns
    -------
    frames : np.ndarray
        Event frame per trace, ``-1`` where nothing was detected.
    magnitudes : np.ndarray
        Standard score at acceptance, ``0`` where nothing was detected.
    """
    batch = _as_batch(traces)
    n, size = batch.shape
    frames = np.full(n, -1, dtype=np.int64)
    magnitudes = np.zeros(n, dtype=np.float64)
    if size < 2:
        return frames, magnitudes

    alpha = ema_alpha(window_size)
    eps = 1.0 - alpha
    threshold2 = float(threshold) ** 2
    end = size - 1
    ema = batch[:, end].copy()
    var = np.zeros(n, dtype=np.float64)
    pending = np.ones(n, dtype=bool)
    for i in range(1, end + 1):
        delta = batch[:, end - i] - ema
        delta2 = delta * delta
        if i > window_size:
            # A zero variance has no defined standard score.
            with np.errstate(divide="ignore", invalid="ignore"):
                score = np.where(var > 0, delta2 / var, 0.0)
            hit = pending & (delta > 0) & (score > threshold2)
            if hit.any():
                frames[hit] = end - i + 1
                magnitudes[hit] = np.sqrt(score[hit])
                pending &= ~hit
                if not pending.any():
                    break
        ema += alpha * delta
        var = eps * (var + alpha * delta2)
    return frames, magnitudes


def laplacian(traces: np.ndarray) -> np.ndarray:
    """``[1, -2, 1]`` filter along the last axis with mirrored ends."""
    batch = _as_batch(traces)
    lap = np.empty_like(batch)
    lap[:, 0] = 2.0 * (batch[:, 1] - batch[:, 0])
    lap[:, -1] = 2.0 * (batch[:, -2] - batch[:, -1])
    lap[:, 1:-1] = batch[:, :-2] - 2.0 * batch[:, 1:-1] + batch[:, 2:]
    return lap


def detect_laplacian_batch(traces: np.ndarray, threshold: float) -> tuple[np.ndarray, np.ndarray]:
    """Laplacian single-event detector over rows of ``traces``.

    Returns the same ``(frames, magnitudes)`` pair as :func:`detect_ema_batch`.
    """
    batch = _as_batch(traces)
    n, size = batch.shape
    frames = np.full(n, -1, dtype=np.int64)
    magnitudes = np.zeros(n, dtype=np.float64)
    if size < 3:
        return frames, magnitudes

    end = size - 1
    lap = laplacian(batch)
    # diff[:, i - 1] = lap[i] - lap[i - 1] for i in [1, end)
    diff = lap[:, 1:end] - lap[:, : end - 1]
    offset = np.argmax(diff, axis=1)
    peak = diff[np.arange(n), offset]
    maxi = offset + 1

    # The remaining Laplacian values: lap[maxi + 1 .. end - 1] and lap[0 .. maxi - 2].
    columns = np.arange(size)[np.newaxis, :]
    keep = ((columns >= maxi[:, None] + 1) & (columns <= end - 1)) | (columns <= maxi[:, None] - 2)
    count = keep.sum(axis=1)
    total = np.where(keep, lap, 0.0).sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean = total / count
        centred = np.where(keep, lap - mean[:, None], 0.0)
        var = (centred * centred).sum(axis=1) / (count - 1)
        score = (0.5 * peak - mean) ** 2 / var

    hit = (peak > 0) & (count >= 2) & (var > 0) & (score > float(threshold) ** 2)
    frames[hit] = maxi[hit]
    magnitudes[hit] = np.sqrt(score[hit])
    return frames, magnitudes


def _single(frames: np.ndarray, magnitudes: np.ndarray, pixel_index: int) -> BleachEvent | None:
    if frames[0] < 0:
        return None
    return BleachEvent(pixel_index=pixel_index, frame=int(frames[0]), magnitude=float(magnitudes[0]))


def detect_ema(
    trace: Sequence[float] | np.ndarray,
    threshold: float,
    window_size: int = 10,
    *,
    pixel_index: int = 0,
) -> BleachEvent | None:
    """Reverse-EMA detection for a single trace."""
    frames, magnitudes = detect_ema_batch(np.asarray(trace, dtype=np.float64), threshold, window_size)
    return _single(frames, magnitudes, pixel_index)


def detect_laplacian(
    trace: Sequence[float] | np.ndarray, threshold: float, *, pixel_index: int = 0
) -> BleachEvent | None:
    """Laplacian detection for a single trace."""
    frames, magnitudes = detect_laplacian_batch(np.asarray(trace, dtype=np.float64), threshold)
    return _single(frames, magnitudes, pixel_index)


def _detect_chunk(
    raw: np.ndarray,
    pixel_indices: np.ndarray,
    detector: str,
    threshold: float,
    window_size: int,
    token: CancellationToken | None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    check_cancelled(token, "Event detection")
    traces = raw[:, pixel_indices].T.astype(np.float64)
    if detector == "ema":
        frames, magnitudes = detect_ema_batch(traces, threshold, window_size)
    else:
        frames, magnitudes = detect_laplacian_batch(traces, threshold)
    found = frames >= 0
    return pixel_indices[found], frames[found], magnitudes[found]


def detect_events(
    stack: FrameStack,
    mask: np.ndarray,
    settings: AnalysisSettings | None = None,
    token: CancellationToken | None = None,
    *,
    threshold: float | None = None,
) -> EventDetection:
    """Detect bleach events for every foreground pixel of ``stack``.

    Parameters
    ----------
    mask : np.ndarray
        Boolean ``(height, width)`` foreground mask; other pixels are skipped.
    threshold : float, optional
        Per-pixel score threshold. Defaults to ``settings.detector_threshold``: a
        permissive pre-filter for the Laplacian detector, the full score threshold for EMA.

    Raises
    ------
    AnalysisCancelledError
        If ``token`` is cancelled; no partial score map is returned.
    """
    settings = settings or AnalysisSettings()
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != (stack.height, stack.width):
        raise ValueError(f"mask shape {mask.shape} does not match stack {(stack.height, stack.width)}.")
    if threshold is None:
        threshold = settings.detector_threshold

    raw = pixel_values(stack)
    foreground = np.flatnonzero(mask.ravel())
    chunks = [foreground[start : start + CHUNK_SIZE] for start in range(0, foreground.size, CHUNK_SIZE)]
    LOGGER.info(
        "Detecting bleach events (%s) in %d foreground pixels, threshold = %.3g",
        settings.detector,
        foreground.size,
        threshold,
    )

    args = (settings.detector, float(threshold), settings.ema_window_size, token)
    if settings.n_jobs == 1 or len(chunks) < 2:
        parts = [_detect_chunk(raw, chunk, *args) for chunk in chunks]
    else:
        parts = Parallel(n_jobs=settings.n_jobs, prefer="threads")(
            delayed(_detect_chunk)(raw, chunk, *args) for chunk in chunks
        )
    check_cancelled(token, "Event detection")

    score_map = np.zeros((stack.n_frames, stack.n_pixels), dtype=np.float32)
    events: list[BleachEvent] = []
    for pixels, frames, magnitudes in parts:
        score_map[frames, pixels] = magnitudes
        events.extend(
            BleachEvent(pixel_index=int(p), frame=int(f), magnitude=float(m))
            for p, f, m in zip(pixels, frames, magnitudes)
        )
    LOGGER.info("Detected %d bleach events", len(events))
    return EventDetection(score_map=score_map.reshape(stack.n_frames, stack.height, stack.width), events=events)


__all__ = [
    "BleachEvent",
    "EventDetection",
    "detect_ema",
    "detect_ema_batch",
    "detect_events",
    "detect_laplacian",
    "detect_laplacian_batch",
    "ema_alpha",
    "laplacian",
]
