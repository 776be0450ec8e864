"""Levenberg–Marquardt fitting of bleaching and FRAP recovery models.

Fitting conventions
-------------------
- Unit weights; the objective is the residual sum of squares (RSS).
- Convergence on the relative change in cost (``ftol = 1e-6``) with a hard cap on
  function evaluations (``max_iterations``), which doubles as the timeout.
- Every parameter is floored at the smallest positive normal double before each model
  evaluation, so rates never become zero or negative and sub-normal arithmetic is avoided.
- A fit that does not converge raises :class:`~frap_kinetics.errors.FitConvergenceError`;
  the recovery selection treats that as "model unavailable" for the region.

Diffusion conversion
--------------------
For a region of ``size`` pixels treated as a disc of radius ``w``,
``w**2 = size * pixel_size**2 / pi`` and ``D = w**2 / (4 * tD)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence
import logging
import math
import sys
import warnings

import numpy as np
from joblib import Parallel, delayed
from scipy.optimize import least_squares
from scipy.stats import f as f_distribution

from ..cancellation import CancellationToken, check_cancelled
from ..errors import FitConvergenceError
from .frap_models import LN2, MODELS, ModelKind, evaluate, format_model, time_axis

LOGGER = logging.getLogger(__name__)

PARAMETER_FLOOR = sys.float_info.min
RELATIVE_COST_TOLERANCE = 1e-6
DEFAULT_MAX_ITERATIONS = 3000
F_TEST_ALPHA = 0.01


class FitQualityWarning(UserWarning):
    """Warning raised when a selected recovery fit is physically implausible."""


@dataclass
class FitResult:
    """Outcome of one converged least-squares fit."""

    model_kind: ModelKind
    parameters: np.ndarray
    residual_sum_of_squares: float
    iterations: int
    fitted: np.ndarray
    interval: float

    @property
    def n_params(self) -> int:
        return MODELS[self.model_kind].n_params

    @property
    def n_points(self) -> int:
        return int(self.fitted.size)

    def param(self, name: str) -> float:
        names = MODELS[self.model_kind].parameter_names
        return float(self.parameters[names.index(name)])

    def as_dict(self) -> dict[str, float]:
        names = MODELS[self.model_kind].parameter_names
        return {name: float(value) for name, value in zip(names, self.parameters)}

    def describe(self) -> str:
        return format_model(self.model_kind, self.parameters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model_kind.value,
            "parameters": self.as_dict(),
            "rss": self.residual_sum_of_squares,
            "iterations": self.iterations,
        }


@dataclass(frozen=True)
class FTestResult:
    """Residual F-test comparing a simple model with its nested extension."""

    simple: ModelKind
    extended: ModelKind
    rss_simple: float
    rss_extended: float
    f_statistic: float
    p_value: float

    @property
    def accepted(self) -> bool:
        return self.p_value < F_TEST_ALPHA


@dataclass
class RegionFit:
    """Model selection outcome for one bleached region."""

    region_id: int
    bleach_frame: int
    size: int
    selected: FitResult | None
    candidates: dict[ModelKind, FitResult] = field(default_factory=dict)
    f_tests: list[FTestResult] = field(default_factory=list)
    pixel_size: float = 1.0
    notes: list[str] = field(default_factory=list)

    @property
    def model_kind(self) -> ModelKind | None:
        return self.selected.model_kind if self.selected is not None else None

    @property
    def half_life(self) -> float | None:
        """Recovery half-life ``ln2/koff`` for reaction-limited models."""
        if self.selected is None or self.selected.model_kind.family != "reaction":
            return None
        return LN2 / self.selected.param("koff")

    @property
    def decay_half_life(self) -> float | None:
        """Half-life of the residual bleaching envelope, if the model has one."""
        if self.selected is None or not self.selected.model_kind.has_decay_envelope:
            return None
        return LN2 / self.selected.param("tau")

    @property
    def diffusion_coefficient(self) -> float | None:
        if self.selected is None or self.selected.model_kind.family != "diffusion":
            return None
        return diffusion_coefficient_from_td(self.size, self.pixel_size, self.selected.param("tD"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "bleach_frame": self.bleach_frame,
            "size": self.size,
            "model": self.model_kind.value if self.model_kind is not None else None,
            "parameters": self.selected.as_dict() if self.selected is not None else {},
            "rss": self.selected.residual_sum_of_squares if self.selected is not None else np.nan,
            "half_life": self.half_life,
            "decay_half_life": self.decay_half_life,
            "diffusion_coefficient": self.diffusion_coefficient,
            "notes": list(self.notes),
        }


def _warn_if_poor_quality(fit: FitResult, interval: float) -> list[str]:
    notes: list[str] = []
    if fit.param("A") <= PARAMETER_FLOOR * 2:
        notes.append("Recovery amplitude collapsed to zero.")
    if fit.model_kind.family == "reaction" and LN2 / fit.param("koff") < interval:
        notes.append("Half-life is shorter than the frame interval.")
    if fit.model_kind.family == "diffusion" and fit.param("tD") < interval:
        notes.append("Diffusion time is shorter than the frame interval.")
    for note in notes:
        warnings.warn(note, FitQualityWarning, stacklevel=3)
    return notes


def _floor(point: np.ndarray) -> np.ndarray:
    return np.maximum(point, PARAMETER_FLOOR)


def _as_trace(y: np.ndarray | Sequence[float]) -> np.ndarray:
    arr = np.asarray(y, dtype=float).reshape(-1)
    if not np.all(np.isfinite(arr)):
        raise ValueError("Trace contains non-finite values.")
    return arr


def fit_model(
    kind: ModelKind,
    y: np.ndarray | Sequence[float],
    start: Sequence[float],
    *,
    interval: float = 1.0,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    region_id: int | None = None,
) -> FitResult:
    """Fit one model to ``y`` sampled at ``t_i = i * interval``.

    ``max_iterations`` caps the number of model evaluations (``max_nfev``), not
    Levenberg-Marquardt iterations.

    Raises
    ------
    FitConvergenceError
        If the optimizer stops without meeting a convergence criterion.
    """
    observed = _as_trace(y)
    spec = MODELS[kind]
    if observed.size <= spec.n_params:
        raise FitConvergenceError(
            f"Too few points ({observed.size}) to fit {spec.n_params} parameters.",
            model_kind=kind,
            region_id=region_id,
        )
    t = time_axis(observed.size, interval)
    x0 = _floor(np.asarray(start, dtype=float).reshape(-1))
    if x0.size != spec.n_params:
        raise ValueError(f"{kind.value} expects {spec.n_params} start values, got {x0.size}.")

    def residuals(point: np.ndarray) -> np.ndarray:
        return evaluate(kind, _floor(point), t)[0] - observed

    def jacobian(point: np.ndarray) -> np.ndarray:
        return evaluate(kind, _floor(point), t)[1]

    try:
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            solution = least_squares(
                residuals,
                x0,
                jac=jacobian,
                method="lm",
                ftol=RELATIVE_COST_TOLERANCE,
                max_nfev=int(max_iterations),
            )
    except ValueError as exc:
        # Raised by the optimizer for non-finite residuals at the start point.
        raise FitConvergenceError(str(exc), model_kind=kind, region_id=region_id) from exc

    if solution.status <= 0:
        reason = "Too many iterations" if solution.status == 0 else solution.message
        raise FitConvergenceError(reason, model_kind=kind, region_id=region_id)

    point = _floor(solution.x)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        fitted = evaluate(kind, point, t)[0]
        rss = float(np.sum((fitted - observed) ** 2))
    if not math.isfinite(rss):
        raise FitConvergenceError("Non-finite residual sum of squares.", model_kind=kind, region_id=region_id)
    return FitResult(
        model_kind=kind,
        parameters=point,
        residual_sum_of_squares=rss,
        iterations=int(solution.nfev),
        fitted=fitted,
        interval=float(interval),
    )


def decay_initial_estimate(y: np.ndarray, interval: float) -> np.ndarray:
    """Start point ``(B, A, koff)`` for the global bleaching decay.

    ``B`` is the trace minimum; the first frame below the midpoint of the range gives
    the half-life and hence ``koff = ln2 / t_half``; ``A`` solves the half-point equation.
    """
    lo = float(np.min(y))
    hi = float(np.max(y))
    half = lo + (hi - lo) / 2.0
    frame = 1
    while frame < y.size and y[frame] > half:
        frame += 1
    t_half = frame * interval
    koff = LN2 / t_half
    amplitude = (half - lo) / math.exp(-koff * t_half)
    return np.array([lo, amplitude, koff])


def fit_decay(
    trace: np.ndarray | Sequence[float],
    *,
    interval: float = 1.0,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> FitResult:
    """Fit ``B + A exp(-koff t)`` to the whole (foreground) trace."""
    y = _as_trace(trace)
    return fit_model(
        ModelKind.DECAY,
        y,
        decay_initial_estimate(y, interval),
        interval=interval,
        max_iterations=max_iterations,
    )


def recovery_initial_estimate(y: np.ndarray, interval: float) -> tuple[float, float, float]:
    """Start values ``(i0, A, koff)`` for a trace beginning at the bleach frame.

    The half-recovery point is located with a 3-point rolling mean.
    """
    i0 = float(y[0])
    amplitude = float(y[-1]) - i0
    half = i0 + amplitude / 2.0
    frame = 1
    while frame + 1 < y.size:
        if (y[frame - 1] + y[frame] + y[frame + 1]) / 3.0 > half:
            break
        frame += 1
    return i0, amplitude, LN2 / (frame * interval)


def residuals_f_test(rss1: float, n1: int, rss2: float, n2: int, size: int) -> tuple[float, float]:
    """F statistic and p-value for nested models with ``n1 < n2`` parameters.

    The null hypothesis is that the extended model does not fit better.
    """
    if rss1 <= rss2:
        return 0.0, 1.0
    dof2 = size - n2
    if dof2 <= 0:
        return 0.0, 1.0
    if rss2 <= 0:
        return math.inf, 0.0
    f_stat = ((rss1 - rss2) / (n2 - n1)) / (rss2 / dof2)
    p_value = float(f_distribution.sf(f_stat, n2 - n1, dof2))
    return float(f_stat), p_value


def diffusion_coefficient_from_td(size: int, pixel_size: float, td: float) -> float:
    """``D = w^2 / (4 tD)`` with ``w^2 = size * pixel_size^2 / pi``."""
    w2 = pixel_size * pixel_size * size / math.pi
    return w2 / (4.0 * td)


def _try_fit(kind: ModelKind, y, start, *, interval, max_iterations, region_id) -> FitResult | None:
    try:
        result = fit_model(kind, y, start, interval=interval, max_iterations=max_iterations, region_id=region_id)
    except FitConvergenceError as exc:
        LOGGER.warning("Failed to fit %s recovery curve: %s", kind.value.replace("_", " "), exc)
        return None
    LOGGER.debug(
        "  Region [%s] %s (ss=%.6g, n=%d): %s",
        region_id,
        kind.value,
        result.residual_sum_of_squares,
        result.iterations,
        result.describe(),
    )
    return result


def _select_nested(
    simple: FitResult,
    y: np.ndarray,
    extended_kind: ModelKind,
    decay_rate: float,
    *,
    interval: float,
    max_iterations: int,
    region_id: int,
    candidates: dict[ModelKind, FitResult],
    f_tests: list[FTestResult],
) -> FitResult:
    # Seed the extension from the simple solution; B starts at a small fraction of i0.
    i0, amplitude, rate = simple.parameters
    background = i0 / 100.0
    start = [i0 - background, amplitude, rate, background, decay_rate]
    extended = _try_fit(
        extended_kind, y, start, interval=interval, max_iterations=max_iterations, region_id=region_id
    )
    if extended is None:
        return simple
    candidates[extended_kind] = extended
    f_stat, p_value = residuals_f_test(
        simple.residual_sum_of_squares,
        simple.n_params,
        extended.residual_sum_of_squares,
        extended.n_params,
        y.size,
    )
    test = FTestResult(
        simple=simple.model_kind,
        extended=extended_kind,
        rss_simple=simple.residual_sum_of_squares,
        rss_extended=extended.residual_sum_of_squares,
        f_statistic=f_stat,
        p_value=p_value,
    )
    f_tests.append(test)
    LOGGER.info(
        "  Region [%d] : rss1=%.6g, rss2=%.6g, p(F-Test=%.4g) = %.4g",
        region_id,
        test.rss_simple,
        test.rss_extended,
        f_stat,
        p_value,
    )
    return extended if test.accepted else simple


def fit_recovery(
    trace: np.ndarray | Sequence[float],
    bleach_frame: int,
    *,
    region_id: int = 0,
    size: int,
    interval: float = 1.0,
    pixel_size: float = 1.0,
    decay_rate: float | None = None,
    diffusion_coefficient: float = 1.0,
    nested: bool = False,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> RegionFit:
    """Fit reaction- and diffusion-limited recovery models to one region trace.

    Parameters
    ----------
    trace : array-like
        Full mean-intensity trace of the region (all frames).
    bleach_frame : int
        Frame of the bleach event; the fit uses ``trace[bleach_frame:]``.
    size : int
        Region size in pixels, used to seed and report the diffusion time.
    decay_rate : float, optional
        Global bleaching rate used to seed the decay envelope of nested models.
    diffusion_coefficient : float
        Assumed diffusion coefficient (``distance_unit^2 / time_unit``) seeding ``tD``.
    nested : bool
        Also fit the 5-parameter decay-envelope extensions and keep them only when the
        residual F-test gives ``p < 0.01``.

    Notes
    -----
    The reaction and diffusion families are not nested; the final choice between the
    best of each is by raw RSS.
    """
    y_full = _as_trace(trace)
    if not 0 <= bleach_frame < y_full.size:
        raise ValueError(f"bleach_frame {bleach_frame} outside trace of length {y_full.size}.")
    y = y_full[bleach_frame:]

    candidates: dict[ModelKind, FitResult] = {}
    f_tests: list[FTestResult] = []
    if decay_rate is None or not math.isfinite(decay_rate) or decay_rate <= 0:
        decay_rate = LN2 / max(y.size * interval, interval)

    i0, amplitude, koff = recovery_initial_estimate(y, interval)
    fit_kwargs = {"interval": interval, "max_iterations": max_iterations, "region_id": region_id}

    best_reaction = _try_fit(ModelKind.REACTION_SIMPLE, y, [i0, amplitude, koff], **fit_kwargs)
    if best_reaction is not None:
        candidates[ModelKind.REACTION_SIMPLE] = best_reaction
        if nested:
            best_reaction = _select_nested(
                best_reaction,
                y,
                ModelKind.REACTION_DECAY,
                decay_rate,
                candidates=candidates,
                f_tests=f_tests,
                **fit_kwargs,
            )

    # Assume the region is a disc: tD = w^2 / 4D. t is already in calibrated units.
    d_guess = diffusion_coefficient if diffusion_coefficient > 0 else 1.0
    td = pixel_size * pixel_size * size / math.pi / (4.0 * d_guess)
    best_diffusion = _try_fit(ModelKind.DIFFUSION_SIMPLE, y, [i0, amplitude, td], **fit_kwargs)
    if best_diffusion is not None:
        candidates[ModelKind.DIFFUSION_SIMPLE] = best_diffusion
        if nested:
            best_diffusion = _select_nested(
                best_diffusion,
                y,
                ModelKind.DIFFUSION_DECAY,
                decay_rate,
                candidates=candidates,
                f_tests=f_tests,
                **fit_kwargs,
            )

    selected = best_reaction
    if best_diffusion is not None and (
        selected is None or best_diffusion.residual_sum_of_squares < selected.residual_sum_of_squares
    ):
        selected = best_diffusion

    return RegionFit(
        region_id=region_id,
        bleach_frame=int(bleach_frame),
        size=int(size),
        selected=selected,
        candidates=candidates,
        f_tests=f_tests,
        pixel_size=pixel_size,
        notes=_warn_if_poor_quality(selected, interval) if selected is not None else [],
    )


def log_region_fit(fit: RegionFit, *, time_unit: str = "frame", distance_unit: str = "pixel") -> None:
    """Report the selected model of a region in the analysis log."""
    if fit.selected is None:
        LOGGER.info("Region [%d] no recovery model could be fitted", fit.region_id)
        return
    kind = fit.selected.model_kind
    equation = fit.selected.describe()
    if kind is ModelKind.REACTION_SIMPLE:
        LOGGER.info(
            "Region [%d] reaction limited recovery: %s; Half-life = %.4g %ss",
            fit.region_id, equation, fit.half_life, time_unit,
        )
    elif kind is ModelKind.REACTION_DECAY:
        LOGGER.info(
            "Region [%d] reaction limited recovery: %s; Half-life1 = %.4g %ss; Half-life2 = %.4g %ss",
            fit.region_id, equation, fit.half_life, time_unit, fit.decay_half_life, time_unit,
        )
    elif kind is ModelKind.DIFFUSION_SIMPLE:
        LOGGER.info(
            "Region [%d] diffusion limited recovery: %s; D = %.4g %s^2/%s",
            fit.region_id, equation, fit.diffusion_coefficient, distance_unit, time_unit,
        )
    else:
        LOGGER.info(
            "Region [%d] diffusion limited recovery: %s; D = %.4g %s^2/%s; Half-life2 = %.4g %ss",
            fit.region_id, equation, fit.diffusion_coefficient, distance_unit, time_unit,
            fit.decay_half_life, time_unit,
        )


def fit_regions(
    means: np.ndarray,
    regions: Sequence[Any],
    *,
    interval: float = 1.0,
    pixel_size: float = 1.0,
    decay_rate: float | None = None,
    diffusion_coefficient: float = 1.0,
    nested: bool = False,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    n_jobs: int = 1,
    token: CancellationToken | None = None,
) -> list[RegionFit]:
    """Fit every region trace; ``means[j]`` is the trace of ``regions[j]``.

    Regions are independent, so they are distributed over a thread pool when
    ``n_jobs != 1``. The token is polled before each region.
    """
    if len(regions) > means.shape[0]:
        raise ValueError("More regions than mean-intensity traces.")

    def _one(index: int) -> RegionFit:
        check_cancelled(token, "Recovery fitting")
        region = regions[index]
        return fit_recovery(
            means[index],
            region.bleach_frame,
            region_id=region.region_id,
            size=region.size,
            interval=interval,
            pixel_size=pixel_size,
            decay_rate=decay_rate,
            diffusion_coefficient=diffusion_coefficient,
            nested=nested,
            max_iterations=max_iterations,
        )

    if n_jobs == 1 or len(regions) < 2:
        fits = [_one(i) for i in range(len(regions))]
    else:
        fits = Parallel(n_jobs=n_jobs, prefer="threads")(delayed(_one)(i) for i in range(len(regions)))
    return sorted(fits, key=lambda fit: fit.region_id)


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "F_TEST_ALPHA",
    "PARAMETER_FLOOR",
    "FTestResult",
    "FitQualityWarning",
    "FitResult",
    "RegionFit",
    "decay_initial_estimate",
    "diffusion_coefficient_from_td",
    "fit_decay",
    "fit_model",
    "fit_recovery",
    "fit_regions",
    "log_region_fit",
    "recovery_initial_estimate",
    "residuals_f_test",
]
