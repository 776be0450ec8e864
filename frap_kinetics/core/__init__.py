"""Kinetic models, Bessel helpers and least-squares fitting."""

from .bessel import i0, i0e, i1, i1e
from .frap_fitting import (
    FitQualityWarning,
    FitResult,
    FTestResult,
    RegionFit,
    fit_decay,
    fit_model,
    fit_recovery,
    fit_regions,
    residuals_f_test,
)
from .frap_models import MODELS, ModelKind, evaluate, format_model, model_values

__all__ = [
    "FTestResult",
    "FitQualityWarning",
    "FitResult",
    "MODELS",
    "ModelKind",
    "RegionFit",
    "evaluate",
    "fit_decay",
    "fit_model",
    "fit_recovery",
    "fit_regions",
    "format_model",
    "i0",
    "i0e",
    "i1",
    "i1e",
    "model_values",
    "residuals_f_test",
]
