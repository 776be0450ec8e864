import numpy as np
import pytest

from frap_kinetics.image.traces import FrameStack
from frap_kinetics.settings import Calibration


def make_frap_stack(
    *,
    n_frames: int = 50,
    size: int = 64,
    bleach_frame: int = 10,
    bleach_center: tuple[int, int] = (30, 34),
    bleach_radius: int = 5,
    koff: float = 0.15,
    noise_sd: float = 10.0,
    seed: int = 42,
    frame_interval: float = 1.0,
    time_unit: str = "frame",
) -> FrameStack:
    """Cell of constant brightness with one circular bleach that recovers as
    ``i0 + A (1 - exp(-koff t))``; uint16 with Gaussian noise."""
    rng = np.random.default_rng(seed)
    yy, xx = np.indices((size, size))
    cell = (yy - size // 2) ** 2 + (xx - size // 2) ** 2 <= 26**2
    spot = (yy - bleach_center[0]) ** 2 + (xx - bleach_center[1]) ** 2 <= bleach_radius**2

    cell_level, background_level = 1000.0, 100.0
    i0, amplitude = 300.0, 550.0
    frames = np.empty((n_frames, size, size), dtype=float)
    for t in range(n_frames):
        image = np.where(cell, cell_level, background_level)
        if t >= bleach_frame:
            dt = (t - bleach_frame) * frame_interval
            image[spot] = i0 + amplitude * (1.0 - np.exp(-koff * dt))
        frames[t] = image
    frames += rng.normal(0.0, noise_sd, frames.shape)
    frames = np.clip(np.rint(frames), 0, 65535).astype(np.uint16)
    calibration = Calibration(frame_interval=frame_interval, time_unit=time_unit)
    return FrameStack(frames=frames, calibration=calibration, name="synthetic frap.tif")


@pytest.fixture
def frap_stack():
    """50-frame 64x64 stack, radius-5 bleach at frame 10, koff = 0.15 per frame."""
    return make_frap_stack()


@pytest.fixture
def frap_stack_spot():
    yy, xx = np.indices((64, 64))
    return (yy - 30) ** 2 + (xx - 34) ** 2 <= 25


@pytest.fixture
def reaction_trace():
    """Reaction-limited recovery with known parameters and small Gaussian noise."""
    rng = np.random.default_rng(7)
    interval = 0.5
    t = np.arange(60) * interval
    params = {"i0": 0.2, "A": 0.6, "koff": 0.25}
    clean = params["i0"] + params["A"] * (1.0 - np.exp(-params["koff"] * t))
    return {"t": t, "interval": interval, "clean": clean, "noisy": clean + rng.normal(0.0, 0.005, t.size), **params}


@pytest.fixture
def diffusion_trace():
    """Soumpasis recovery for a disc of 80 pixels of 0.1 um with D = 0.05 um^2/s."""
    from scipy.special import i0e, i1e

    rng = np.random.default_rng(11)
    interval = 0.1
    size, pixel_size, d_true = 80, 0.1, 0.05
    w2 = size * pixel_size**2 / np.pi
    td = w2 / (4.0 * d_true)
    t = np.arange(100) * interval
    kernel = np.zeros_like(t)
    x = 2.0 * td / t[1:]
    kernel[1:] = i0e(x) + i1e(x)
    clean = 0.2 + 0.7 * kernel
    return {
        "t": t,
        "interval": interval,
        "size": size,
        "pixel_size": pixel_size,
        "D": d_true,
        "tD": td,
        "clean": clean,
        "noisy": clean + rng.normal(0.0, 0.003, t.size),
    }


@pytest.fixture
def step_trace():
    """Factory for a single step-down trace with Gaussian noise."""

    def _make(*, n_frames=60, step_frame=25, delta=12.0, sigma=1.0, level=100.0, seed=0):
        rng = np.random.default_rng(seed)
        trace = np.full(n_frames, level, dtype=float)
        trace[step_frame:] -= delta
        return trace + rng.normal(0.0, sigma, n_frames)

    return _make
