"""Kinetic model values and analytic Jacobians."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import special

from frap_kinetics.core.frap_models import MODELS, ModelKind, evaluate, format_model, model_values, time_axis

POINTS = {
    ModelKind.DECAY: [100.0, 50.0, 0.05],
    ModelKind.REACTION_SIMPLE: [0.2, 0.6, 0.25],
    ModelKind.REACTION_DECAY: [0.2, 0.6, 0.25, 0.05, 0.01],
    ModelKind.DIFFUSION_SIMPLE: [0.2, 0.7, 1.3],
    ModelKind.DIFFUSION_DECAY: [0.2, 0.7, 1.3, 0.05, 0.01],
}


@pytest.mark.parametrize("kind", list(ModelKind))
def test_jacobian_matches_finite_differences(kind):
    t = time_axis(40, 0.5)
    point = np.asarray(POINTS[kind])
    _, jac = evaluate(kind, point, t)
    assert jac.shape == (t.size, MODELS[kind].n_params)
    for j in range(point.size):
        step = 1e-6 * max(abs(point[j]), 1.0)
        up, down = point.copy(), point.copy()
        up[j] += step
        down[j] -= step
        numeric = (model_values(kind, up, t) - model_values(kind, down, t)) / (2 * step)
        np.testing.assert_allclose(jac[:, j], numeric, rtol=1e-4, atol=1e-5)


def test_recovery_models_start_at_i0():
    t = time_axis(10, 1.0)
    assert model_values(ModelKind.REACTION_SIMPLE, [0.3, 0.5, 0.2], t)[0] == pytest.approx(0.3)
    assert model_values(ModelKind.DIFFUSION_SIMPLE, [0.3, 0.5, 2.0], t)[0] == pytest.approx(0.3)
    assert model_values(ModelKind.DIFFUSION_DECAY, [0.3, 0.5, 2.0, 0.1, 0.05], t)[0] == pytest.approx(0.4)


def test_diffusion_model_matches_soumpasis_formula():
    t = time_axis(30, 0.2)[1:]
    td = 0.8
    x = 2.0 * td / t
    expected = 0.1 + 0.9 * np.exp(-x) * (special.i0(x) + special.i1(x))
    np.testing.assert_allclose(model_values(ModelKind.DIFFUSION_SIMPLE, [0.1, 0.9, td], t), expected, rtol=2e-6)


def test_model_families():
    assert ModelKind.REACTION_DECAY.family == "reaction"
    assert ModelKind.DIFFUSION_SIMPLE.family == "diffusion"
    assert ModelKind.DECAY.family == "decay"
    assert ModelKind.DIFFUSION_DECAY.has_decay_envelope
    assert not ModelKind.REACTION_SIMPLE.has_decay_envelope


def test_wrong_parameter_count_rejected():
    with pytest.raises(ValueError):
        evaluate(ModelKind.REACTION_SIMPLE, [1.0, 2.0], time_axis(5, 1.0))


def test_format_model_substitutes_values():
    text = format_model(ModelKind.REACTION_SIMPLE, [0.2, 0.6, 0.25])
    assert text == "f(t) = 0.2 + 0.6(1 - exp(-0.25 t))"
