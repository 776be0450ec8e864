"""FRAP kinetics: bleach-event detection, region segmentation and recovery fitting."""

from __future__ import annotations

from . import core, image, io
from .cancellation import CancellationToken
from .errors import (
    AnalysisCancelledError,
    FitConvergenceError,
    FrapAnalysisError,
    InputError,
    NoForegroundError,
    StackTooShortError,
    TooManyRegionsError,
    UnsupportedPixelTypeError,
)
from .image.traces import FrameStack
from .pipeline import AnalysisResult, analyze_stack
from .settings import AnalysisSettings, Calibration

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AnalysisCancelledError",
    "AnalysisResult",
    "AnalysisSettings",
    "Calibration",
    "CancellationToken",
    "FitConvergenceError",
    "FrameStack",
    "FrapAnalysisError",
    "InputError",
    "NoForegroundError",
    "StackTooShortError",
    "TooManyRegionsError",
    "UnsupportedPixelTypeError",
    "analyze_stack",
    "core",
    "image",
    "io",
]
