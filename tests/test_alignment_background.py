"""Drift correction and background-block tests."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import ndimage

from frap_kinetics.image.alignment import align_stack, crop_bounds
from frap_kinetics.image.background import extract_background
from frap_kinetics.image.traces import FrameStack

APPLIED = [(2, -1), (1, 0), (0, 0), (-3, 2), (0, 3)]


@pytest.fixture
def texture():
    rng = np.random.default_rng(21)
    smooth = ndimage.gaussian_filter(rng.normal(size=(64, 64)), 2.0)
    return np.rint(1000.0 + 3000.0 * smooth).astype(np.uint16)


def test_align_recovers_known_drift(texture):
    frames = np.stack([np.roll(texture, shift, axis=(0, 1)) for shift in APPLIED])
    result = align_stack(FrameStack(frames, name="drift.tif"))

    np.testing.assert_array_equal(result.shifts, -np.array(APPLIED))
    assert result.stack.frames.shape == (5, 59, 60)
    assert result.stack.frames.dtype == np.uint16
    assert result.origin == (3, 1)
    assert result.stack.name == "drift.tif"
    for frame in result.stack.frames:
        np.testing.assert_array_equal(frame, texture[3:62, 1:61])


def test_align_static_stack_is_unchanged(texture):
    frames = np.stack([texture] * 4)
    result = align_stack(FrameStack(frames))
    assert not result.shifts.any()
    assert result.stack.frames.shape == frames.shape
    assert result.iterations == 1


def test_align_featureless_stack():
    result = align_stack(FrameStack(np.full((3, 16, 16), 7, dtype=np.uint8)))
    assert not result.shifts.any()


def test_align_rejects_bad_reference(texture):
    with pytest.raises(ValueError):
        align_stack(FrameStack(np.stack([texture] * 3)), reference_frame_index=3)


def test_crop_bounds():
    rows, cols = crop_bounds(np.array([[2, -1], [0, 0], [-1, 3]]), 20, 30)
    assert (rows.start, rows.stop) == (2, 19)
    assert (cols.start, cols.stop) == (3, 29)


def test_background_picks_darkest_block():
    frames = np.full((3, 40, 40), 500, dtype=np.uint16)
    frames[:, 0:10, 30:40] = 50
    background = extract_background(FrameStack(frames), 2)
    assert background is not None
    assert background.size == 25
    np.testing.assert_allclose(background.means, 50.0)
    assert 0 <= background.center[0] < 10 and 30 <= background.center[1] < 40


def test_background_follows_drift():
    n_frames = 4
    frames = np.full((n_frames, 40, 40), 200, dtype=np.uint16)
    for k in range(n_frames):
        frames[k, 10 + k : 17 + k, 10:17] = 10
    shifts = np.array([(-k, 0) for k in range(n_frames)])
    background = extract_background(FrameStack(frames), 3, shifts)
    assert background.center == (13, 13)
    np.testing.assert_allclose(background.means, 10.0)


def test_background_unavailable():
    stack = FrameStack(np.zeros((2, 40, 40), dtype=np.uint8))
    assert extract_background(stack, 0) is None
    assert extract_background(stack, 25) is None
