"""Modified Bessel functions of the first kind, orders 0 and 1.

Polynomial approximations from Abramowitz & Stegun (1964), equations 9.8.1–9.8.4:
a power series in ``(x/3.75)^2`` for ``|x| < 3.75`` and an asymptotic form in
``3.75/|x|`` scaled by ``exp(|x|)/sqrt(|x|)`` otherwise. Absolute errors of the
approximations are below ``2.2e-7`` of the (scaled) function value.

The exponentially scaled variants ``i0e(x) = exp(-|x|) I0(x)`` and
``i1e(x) = exp(-|x|) I1(x)`` are what the Soumpasis diffusion model actually needs;
computing them directly avoids the overflow of ``exp(|x|)`` for large arguments.
"""

from __future__ import annotations

import numpy as np

_SMALL = 3.75

# A&S 9.8.1: I0(x), |x| < 3.75
_I0_SMALL = (1.0, 3.5156229, 3.0899424, 1.2067492, 0.2659732, 0.0360768, 0.0045813)
# A&S 9.8.2: x^0.5 exp(-x) I0(x), x >= 3.75
_I0_LARGE = (
    0.39894228,
    0.01328592,
    0.00225319,
    -0.00157565,
    0.00916281,
    -0.02057706,
    0.02635537,
    -0.01647633,
    0.00392377,
)
# A&S 9.8.3: x^-1 I1(x), |x| < 3.75
_I1_SMALL = (0.5, 0.87890594, 0.51498869, 0.15084934, 0.02658733, 0.00301532, 0.00032411)
# A&S 9.8.4: x^0.5 exp(-x) I1(x), x >= 3.75
_I1_LARGE = (
    0.39894228,
    -0.03988024,
    -0.00362018,
    0.00163801,
    -0.01031555,
    0.02282967,
    -0.02895312,
    0.01787654,
    -0.00420059,
)


def _horner(coefficients: tuple[float, ...], y: np.ndarray) -> np.ndarray:
    result = np.full_like(y, coefficients[-1])
    for c in coefficients[-2::-1]:
        result = c + y * result
    return result


def _as_float_array(x) -> tuple[np.ndarray, bool]:
    arr = np.asarray(x, dtype=float)
    return arr, arr.ndim == 0


def _scaled(ax: np.ndarray, small: tuple[float, ...], large: tuple[float, ...], odd: bool) -> np.ndarray:
    """``exp(-ax) * I(ax)`` for ``ax >= 0``."""
    is_small = ax < _SMALL
    y_small = np.where(is_small, ax / _SMALL, 0.0) ** 2
    series = _horner(small, y_small)
    if odd:
        series = series * ax
    small_value = np.exp(-ax) * series

    ax_large = np.where(is_small, _SMALL, ax)
    large_value = _horner(large, _SMALL / ax_large) / np.sqrt(ax_large)
    return np.where(is_small, small_value, large_value)


def i0e(x):
    """Exponentially scaled ``I0``: ``exp(-|x|) * I0(x)``."""
    arr, scalar = _as_float_array(x)
    out = _scaled(np.abs(arr), _I0_SMALL, _I0_LARGE, odd=False)
    return float(out) if scalar else out


def i1e(x):
    """Exponentially scaled ``I1``: ``exp(-|x|) * I1(x)``; odd in ``x``."""
    arr, scalar = _as_float_array(x)
    out = _scaled(np.abs(arr), _I1_SMALL, _I1_LARGE, odd=True)
    out = np.where(arr < 0, -out, out)
    return float(out) if scalar else out


def i0(x):
    """Zeroth-order modified Bessel function of the first kind."""
    arr, scalar = _as_float_array(x)
    ax = np.abs(arr)
    with np.errstate(over="ignore"):
        out = _scaled(ax, _I0_SMALL, _I0_LARGE, odd=False) * np.exp(ax)
    return float(out) if scalar else out


def i1(x):
    """First-order modified Bessel function of the first kind; ``i1(-x) == -i1(x)``."""
    arr, scalar = _as_float_array(x)
    ax = np.abs(arr)
    with np.errstate(over="ignore", invalid="ignore"):
        out = _scaled(ax, _I1_SMALL, _I1_LARGE, odd=True) * np.exp(ax)
    out = np.where(arr < 0, -out, out)
    return float(out) if scalar else out


__all__ = ["i0", "i1", "i0e", "i1e"]
