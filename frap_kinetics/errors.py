"""Exception taxonomy for FRAP kinetics analysis."""

from __future__ import annotations


class FrapAnalysisError(Exception):
    """Base class for recoverable FRAP analysis failures."""


class InputError(FrapAnalysisError, ValueError):
    """Raised when the image data cannot be analysed; the run is aborted."""


class StackTooShortError(InputError):
    """Raised when the stack has fewer than two time frames."""


class NoForegroundError(InputError):
    """Raised when no foreground pixels remain to act as the reference trace."""


class TooManyRegionsError(InputError):
    """Raised when more bleached regions are found than the label space can hold."""

    def __init__(self, n_regions: int, limit: int) -> None:
        super().__init__(f"Too many bleached regions: {n_regions} (limit {limit}).")
        self.n_regions = n_regions
        self.limit = limit


class FitConvergenceError(FrapAnalysisError, RuntimeError):
    """Raised when the optimizer fails to converge for one model.

    Carries the model kind and (optionally) the region the fit was attempted for so the
    caller can log the failure and carry on with the remaining models.
    """

    def __init__(self, message: str, *, model_kind=None, region_id: int | None = None) -> None:
        super().__init__(message)
        self.model_kind = model_kind
        self.region_id = region_id

    def __str__(self) -> str:
        context = []
        if self.region_id is not None:
            context.append(f"region={self.region_id}")
        if self.model_kind is not None:
            context.append(f"model={getattr(self.model_kind, 'value', self.model_kind)}")
        base = super().__str__()
        return f"{base} ({', '.join(context)})" if context else base


class AnalysisCancelledError(FrapAnalysisError):
    """Raised when a cancellation token is set during a long-running step."""


class UnsupportedPixelTypeError(TypeError):
    """Raised for image data with a pixel type the trace extractor cannot unpack."""


__all__ = [
    "FrapAnalysisError",
    "InputError",
    "StackTooShortError",
    "NoForegroundError",
    "TooManyRegionsError",
    "FitConvergenceError",
    "AnalysisCancelledError",
    "UnsupportedPixelTypeError",
]
