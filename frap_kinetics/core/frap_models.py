"""Kinetic models for bleaching decay and FRAP recovery.

Every model is identified by a :class:`ModelKind` tag. The :data:`MODELS` table maps a
tag to its parameter names and to a function returning the model values and the
analytic Jacobian on a uniform time axis ``t_i = i * interval``. The fitter dispatches
on the tag; there is no per-model class hierarchy.

Models
------
``DECAY``
    ``f(t) = B + A exp(-koff t)``; parameters ``(B, A, koff)``.
``REACTION_SIMPLE``
    ``f(t) = i0 + A (1 - exp(-koff t))``; parameters ``(i0, A, koff)``.
``REACTION_DECAY``
    ``f(t) = B + (i0 + A (1 - exp(-koff t))) exp(-tau t)``;
    parameters ``(i0, A, koff, B, tau)``.
``DIFFUSION_SIMPLE``
    Soumpasis (1983): ``f(t) = i0 + A exp(-2tD/t) (I0(2tD/t) + I1(2tD/t))``;
    parameters ``(i0, A, tD)``.
``DIFFUSION_DECAY``
    ``f(t) = B + (i0 + A exp(-2tD/t) (I0(2tD/t) + I1(2tD/t))) exp(-tau t)``;
    parameters ``(i0, A, tD, B, tau)``.

References
----------
Soumpasis, D. M. (1983). Theoretical analysis of fluorescence photobleaching recovery
experiments. *Biophysical Journal*, 41(1), 95-97. DOI: 10.1016/S0006-3495(83)84410-5.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from .bessel import i0e, i1e

LN2 = float(np.log(2.0))


class ModelKind(str, Enum):
    DECAY = "decay"
    REACTION_SIMPLE = "reaction_simple"
    REACTION_DECAY = "reaction_decay"
    DIFFUSION_SIMPLE = "diffusion_simple"
    DIFFUSION_DECAY = "diffusion_decay"

    @property
    def family(self) -> str:
        if self in (ModelKind.REACTION_SIMPLE, ModelKind.REACTION_DECAY):
            return "reaction"
        if self in (ModelKind.DIFFUSION_SIMPLE, ModelKind.DIFFUSION_DECAY):
            return "diffusion"
        return "decay"

    @property
    def has_decay_envelope(self) -> bool:
        return self in (ModelKind.REACTION_DECAY, ModelKind.DIFFUSION_DECAY)


def time_axis(size: int, interval: float) -> np.ndarray:
    return np.arange(size, dtype=float) * float(interval)


def _decay(p: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    b, a, koff = p
    x = np.exp(-koff * t)
    jac = np.empty((t.size, 3))
    jac[:, 0] = 1.0
    jac[:, 1] = x
    jac[:, 2] = -a * t * x
    return b + a * x, jac


def _reaction_simple(p: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    i0, a, koff = p
    x1 = np.exp(-koff * t)
    jac = np.empty((t.size, 3))
    jac[:, 0] = 1.0
    jac[:, 1] = 1.0 - x1
    jac[:, 2] = a * t * x1
    return i0 + a * (1.0 - x1), jac


def _reaction_decay(p: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    i0, a, koff, b, tau = p
    x1 = np.exp(-koff * t)
    x2 = np.exp(-tau * t)
    ut = i0 + a * (1.0 - x1)
    jac = np.empty((t.size, 5))
    jac[:, 0] = x2
    jac[:, 1] = (1.0 - x1) * x2
    jac[:, 2] = a * t * x1 * x2
    jac[:, 3] = 1.0
    jac[:, 4] = -ut * t * x2
    return b + ut * x2, jac


def _soumpasis_kernel(td: float, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return ``exp(-x)(I0(x) + I1(x))`` and ``exp(-x) I1(x)`` for ``x = 2tD/t``.

    At ``t = 0`` the kernel limit is 0 (nothing has recovered yet).
    """
    positive = t > 0
    x = np.zeros_like(t)
    x[positive] = 2.0 * td / t[positive]
    e0 = np.zeros_like(t)
    e1 = np.zeros_like(t)
    e0[positive] = i0e(x[positive])
    e1[positive] = i1e(x[positive])
    return e0 + e1, e1


def _diffusion_simple(p: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    i0, a, td = p
    kernel, e1 = _soumpasis_kernel(td, t)
    jac = np.empty((t.size, 3))
    jac[:, 0] = 1.0
    jac[:, 1] = kernel
    # d/dtD [exp(-x)(I0 + I1)] = -exp(-x) I1(x) / tD using I0' = I1, I1' = I0 - I1/x
    jac[:, 2] = -a * e1 / td
    return i0 + a * kernel, jac


def _diffusion_decay(p: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    i0, a, td, b, tau = p
    kernel, e1 = _soumpasis_kernel(td, t)
    x2 = np.exp(-tau * t)
    x4 = (i0 + a * kernel) * x2
    jac = np.empty((t.size, 5))
    jac[:, 0] = x2
    jac[:, 1] = kernel * x2
    jac[:, 2] = -a * x2 * e1 / td
    jac[:, 3] = 1.0
    jac[:, 4] = -x4 * t
    return b + x4, jac


@dataclass(frozen=True)
class ModelSpec:
    """Dispatch-table entry for one model kind."""

    kind: ModelKind
    parameter_names: tuple[str, ...]
    function: Callable[[np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray]]
    formula: str

    @property
    def n_params(self) -> int:
        return len(self.parameter_names)


MODELS: dict[ModelKind, ModelSpec] = {
    ModelKind.DECAY: ModelSpec(
        ModelKind.DECAY,
        ("B", "A", "koff"),
        _decay,
        "f(t) = {B} + {A} * exp(-{koff} t)",
    ),
    ModelKind.REACTION_SIMPLE: ModelSpec(
        ModelKind.REACTION_SIMPLE,
        ("i0", "A", "koff"),
        _reaction_simple,
        "f(t) = {i0} + {A}(1 - exp(-{koff} t))",
    ),
    ModelKind.REACTION_DECAY: ModelSpec(
        ModelKind.REACTION_DECAY,
        ("i0", "A", "koff", "B", "tau"),
        _reaction_decay,
        "f(t) = {B} + ({i0} + {A}(1 - exp(-{koff} t))) * exp(-{tau} t)",
    ),
    ModelKind.DIFFUSION_SIMPLE: ModelSpec(
        ModelKind.DIFFUSION_SIMPLE,
        ("i0", "A", "tD"),
        _diffusion_simple,
        "f(t) = {i0} + {A}(exp(-2*{tD}/t) * (I0(2*{tD}/t) + I1(2*{tD}/t)))",
    ),
    ModelKind.DIFFUSION_DECAY: ModelSpec(
        ModelKind.DIFFUSION_DECAY,
        ("i0", "A", "tD", "B", "tau"),
        _diffusion_decay,
        "f(t) = {B} + ({i0} + {A}(exp(-2*{tD}/t) * (I0(2*{tD}/t) + I1(2*{tD}/t)))) * exp(-{tau} t)",
    ),
}


def _check_point(kind: ModelKind, params) -> np.ndarray:
    point = np.asarray(params, dtype=float).reshape(-1)
    expected = MODELS[kind].n_params
    if point.size != expected:
        raise ValueError(f"{kind.value} expects {expected} parameters, got {point.size}.")
    return point


def evaluate(kind: ModelKind, params, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Model values and Jacobian ``(len(t), n_params)`` at ``params``."""
    return MODELS[kind].function(_check_point(kind, params), np.asarray(t, dtype=float))


def model_values(kind: ModelKind, params, t: np.ndarray) -> np.ndarray:
    return evaluate(kind, params, t)[0]


def format_model(kind: ModelKind, params, digits: int = 4) -> str:
    """Human-readable model equation with the parameter values substituted."""
    spec = MODELS[kind]
    point = _check_point(kind, params)
    values = {name: f"{value:.{digits}g}" for name, value in zip(spec.parameter_names, point)}
    return spec.formula.format(**values)


__all__ = [
    "LN2",
    "ModelKind",
    "ModelSpec",
    "MODELS",
    "evaluate",
    "format_model",
    "model_values",
    "time_axis",
]
