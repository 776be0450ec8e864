"""Frame stacks and per-pixel intensity traces."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence
import logging

import numpy as np

from ..errors import StackTooShortError, UnsupportedPixelTypeError
from ..settings import Calibration

LOGGER = logging.getLogger(__name__)

# Signed integer samples are stored bit patterns; read them back as unsigned.
_UNSIGNED_VIEWS = {
    np.dtype(np.int8): np.dtype(np.uint8),
    np.dtype(np.int16): np.dtype(np.uint16),
    np.dtype(np.int32): np.dtype(np.uint32),
}
SUPPORTED_DTYPES = (
    np.dtype(np.uint8),
    np.dtype(np.uint16),
    np.dtype(np.uint32),
    np.dtype(np.float32),
    np.dtype(np.float64),
)


@dataclass(frozen=True, eq=False)
class FrameStack:
    """Immutable time-lapse stack shaped ``(n_frames, height, width)``.

    ``frames`` is stored as a read-only copy of the input array.
    """

    frames: np.ndarray
    calibration: Calibration = field(default_factory=Calibration)
    name: str = "stack"

    def __post_init__(self) -> None:
        arr = np.array(self.frames, copy=True)
        if arr.ndim != 3:
            raise ValueError("frames must have shape (n_frames, height, width).")
        if arr.shape[0] < 2:
            raise StackTooShortError(f"Stack requires at least 2 frames, got {arr.shape[0]}.")
        if arr.shape[1] < 1 or arr.shape[2] < 1:
            raise ValueError("frames must have non-empty spatial dimensions.")
        arr.setflags(write=False)
        object.__setattr__(self, "frames", arr)

    @property
    def n_frames(self) -> int:
        return int(self.frames.shape[0])

    @property
    def height(self) -> int:
        return int(self.frames.shape[1])

    @property
    def width(self) -> int:
        return int(self.frames.shape[2])

    @property
    def n_pixels(self) -> int:
        return self.height * self.width

    @property
    def is_integer(self) -> bool:
        return np.issubdtype(self.frames.dtype, np.integer)

    def with_frames(self, frames: np.ndarray) -> "FrameStack":
        return FrameStack(frames=frames, calibration=self.calibration, name=self.name)


def pixel_values(stack: FrameStack) -> np.ndarray:
    """Raw samples as a ``(n_frames, n_pixels)`` view with unsigned integer semantics."""
    dtype = stack.frames.dtype
    if dtype in _UNSIGNED_VIEWS:
        raw = stack.frames.view(_UNSIGNED_VIEWS[dtype])
    elif dtype in SUPPORTED_DTYPES:
        raw = stack.frames
    else:
        raise UnsupportedPixelTypeError(f"Unsupported pixel type: {dtype}")
    return raw.reshape(stack.n_frames, -1)


def as_float_frames(stack: FrameStack) -> np.ndarray:
    """Whole stack as float64 ``(n_frames, height, width)``."""
    return pixel_values(stack).astype(np.float64).reshape(stack.frames.shape)


def trace_function(stack: FrameStack) -> Callable[[int], np.ndarray]:
    """Return a closure mapping a flat pixel index to its float64 trace.

    The pixel type is resolved once here; the closure never branches on it.
    """
    raw = pixel_values(stack)

    def _trace(pixel_index: int) -> np.ndarray:
        return raw[:, pixel_index].astype(np.float64)

    return _trace


def extract_traces(stack: FrameStack, pixel_indices: Sequence[int] | np.ndarray) -> np.ndarray:
    """Traces for many pixels at once, shaped ``(len(pixel_indices), n_frames)``."""
    idx = np.asarray(pixel_indices, dtype=np.intp).reshape(-1)
    return pixel_values(stack)[:, idx].T.astype(np.float64)


__all__ = [
    "FrameStack",
    "SUPPORTED_DTYPES",
    "as_float_frames",
    "extract_traces",
    "pixel_values",
    "trace_function",
]
