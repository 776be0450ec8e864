"""Frame stack, trace extraction and foreground mask tests."""

from __future__ import annotations

import numpy as np
import pytest

from frap_kinetics.errors import StackTooShortError, UnsupportedPixelTypeError
from frap_kinetics.image.masks import build_foreground_mask, project
from frap_kinetics.image.traces import (
    FrameStack,
    as_float_frames,
    extract_traces,
    pixel_values,
    trace_function,
)


def _cell(size=64):
    yy, xx = np.indices((size, size))
    return (yy - size // 2) ** 2 + (xx - size // 2) ** 2 <= 26**2


def test_frame_stack_is_read_only_copy():
    data = np.zeros((3, 4, 5), dtype=np.uint16)
    stack = FrameStack(data)
    data[0, 0, 0] = 9
    assert stack.frames[0, 0, 0] == 0
    assert (stack.n_frames, stack.height, stack.width, stack.n_pixels) == (3, 4, 5, 20)
    with pytest.raises(ValueError):
        stack.frames[0, 0, 0] = 1


def test_frame_stack_validation():
    with pytest.raises(StackTooShortError):
        FrameStack(np.zeros((1, 4, 4)))
    with pytest.raises(ValueError):
        FrameStack(np.zeros((4, 4)))


def test_signed_samples_read_as_unsigned():
    stack = FrameStack(np.full((2, 2, 2), -1, dtype=np.int16))
    values = pixel_values(stack)
    assert values.dtype == np.uint16
    assert values.shape == (2, 4)
    assert np.all(values == 65535)


def test_unsupported_pixel_type():
    stack = FrameStack(np.zeros((2, 2, 2), dtype=bool))
    with pytest.raises(UnsupportedPixelTypeError):
        pixel_values(stack)


def test_trace_accessors_agree():
    rng = np.random.default_rng(1)
    stack = FrameStack(rng.integers(0, 255, size=(6, 3, 4), dtype=np.uint8))
    trace = trace_function(stack)
    traces = extract_traces(stack, [0, 5, 11])
    assert traces.shape == (3, 6)
    np.testing.assert_array_equal(traces[1], trace(5))
    np.testing.assert_array_equal(trace(5), stack.frames[:, 1, 1].astype(float))
    assert as_float_frames(stack).dtype == np.float64


def test_projection_modes(frap_stack):
    peak = project(frap_stack, "max")
    mean = project(frap_stack, "mean")
    assert peak.shape == mean.shape == (64, 64)
    assert np.all(peak >= mean)
    with pytest.raises(ValueError):
        project(frap_stack, "median")


def test_foreground_mask_matches_cell(frap_stack):
    mask = build_foreground_mask(frap_stack)
    np.testing.assert_array_equal(mask, _cell())


def test_foreground_mask_float_stack(frap_stack):
    floats = frap_stack.with_frames(frap_stack.frames.astype(np.float32) / 7.0)
    mask = build_foreground_mask(floats, "mean")
    np.testing.assert_array_equal(mask, _cell())


def test_constant_projection_has_no_foreground():
    stack = FrameStack(np.full((4, 8, 8), 12, dtype=np.uint16))
    assert not build_foreground_mask(stack).any()
