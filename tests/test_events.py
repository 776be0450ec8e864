"""Bleach-event detector tests on synthetic step traces and stacks."""

from __future__ import annotations

import numpy as np
import pytest

from frap_kinetics.image import events
from frap_kinetics.image.events import (
    detect_ema,
    detect_ema_batch,
    detect_events,
    detect_laplacian,
    detect_laplacian_batch,
    ema_alpha,
    laplacian,
)
from frap_kinetics.image.masks import build_foreground_mask
from frap_kinetics.cancellation import CancellationToken
from frap_kinetics.errors import AnalysisCancelledError
from frap_kinetics.settings import AnalysisSettings


def test_ema_alpha_weights_window():
    alpha = ema_alpha(10)
    assert (1.0 - alpha) ** 10 == pytest.approx(0.001)
    with pytest.raises(ValueError):
        ema_alpha(0)


def test_ema_detects_large_step(step_trace):
    """A 100-unit drop with noise sd 2 is reported at the first low frame."""
    trace = step_trace(n_frames=120, step_frame=40, delta=100.0, sigma=2.0, seed=4)
    event = detect_ema(trace, threshold=8.0, window_size=50, pixel_index=17)
    assert event is not None
    assert event.frame == 40
    assert event.pixel_index == 17
    assert event.magnitude > 8.0


def test_ema_ignores_rising_step(step_trace):
    trace = step_trace(n_frames=120, step_frame=40, delta=-100.0, sigma=2.0, seed=4)
    assert detect_ema(trace, threshold=8.0, window_size=50) is None


@pytest.mark.parametrize("seed", range(5))
def test_laplacian_detects_step(step_trace, seed):
    trace = step_trace(delta=12.0, sigma=1.0, seed=seed)
    event = detect_laplacian(trace, threshold=2.0)
    assert event is not None
    assert abs(event.frame - 25) <= 1


def test_laplacian_quiet_on_noise(step_trace):
    trace = step_trace(delta=0.0, sigma=1.0, seed=9)
    assert detect_laplacian(trace, threshold=7.0) is None


def test_constant_trace_has_no_event():
    flat = np.full(40, 250.0)
    assert detect_laplacian(flat, threshold=0.5) is None
    assert detect_ema(flat, threshold=0.5, window_size=5) is None


def test_short_traces_have_no_event():
    frames, magnitudes = detect_laplacian_batch(np.array([[5.0, 1.0]]), 0.1)
    assert frames.tolist() == [-1]
    assert magnitudes.tolist() == [0.0]
    frames, _ = detect_ema_batch(np.array([[5.0]]), 0.1, 1)
    assert frames.tolist() == [-1]


def test_laplacian_mirrors_ends():
    lap = laplacian(np.array([1.0, 2.0, 4.0, 7.0]))
    np.testing.assert_allclose(lap[0], [2.0, 1.0, 1.0, -6.0])


def test_batch_matches_single(step_trace):
    traces = np.vstack([step_trace(seed=s) for s in range(6)])
    frames, magnitudes = detect_laplacian_batch(traces, 2.0)
    for row, (frame, magnitude) in enumerate(zip(frames, magnitudes)):
        single = detect_laplacian(traces[row], 2.0)
        if frame < 0:
            assert single is None
        else:
            assert single.frame == frame
            assert single.magnitude == pytest.approx(magnitude)


def test_detect_events_marks_bleach_spot(frap_stack, frap_stack_spot):
    mask = build_foreground_mask(frap_stack)
    detection = detect_events(frap_stack, mask, AnalysisSettings())

    assert detection.score_map.shape == (50, 64, 64)
    assert detection.score_map.dtype == np.float32
    spot_scores = detection.score_map[10][frap_stack_spot]
    assert np.all(spot_scores > 7.0)
    assert np.all(detection.score_map[:, ~mask] == 0)
    assert detection.n_events >= int(frap_stack_spot.sum())


def test_detect_events_threaded_chunks_match(frap_stack, monkeypatch):
    mask = build_foreground_mask(frap_stack)
    serial = detect_events(frap_stack, mask, AnalysisSettings(detector="ema"))
    monkeypatch.setattr(events, "CHUNK_SIZE", 256)
    threaded = detect_events(frap_stack, mask, AnalysisSettings(detector="ema", n_jobs=2))
    np.testing.assert_array_equal(serial.score_map, threaded.score_map)
    assert sorted(e.pixel_index for e in serial.events) == sorted(e.pixel_index for e in threaded.events)


def test_detect_events_rejects_wrong_mask(frap_stack):
    with pytest.raises(ValueError):
        detect_events(frap_stack, np.ones((10, 10), dtype=bool))


def test_detect_events_cancelled(frap_stack):
    token = CancellationToken()
    token.cancel()
    mask = np.ones((64, 64), dtype=bool)
    with pytest.raises(AnalysisCancelledError):
        detect_events(frap_stack, mask, token=token)
