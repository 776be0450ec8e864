"""Import-level checks of the public package surface."""

from __future__ import annotations


def test_top_level_exports():
    import frap_kinetics

    assert frap_kinetics.__version__ == "0.1.0"
    for name in frap_kinetics.__all__:
        assert hasattr(frap_kinetics, name), name


def test_error_hierarchy():
    from frap_kinetics import errors

    assert issubclass(errors.NoForegroundError, errors.InputError)
    assert issubclass(errors.TooManyRegionsError, ValueError)
    assert issubclass(errors.FitConvergenceError, errors.FrapAnalysisError)
    assert not issubclass(errors.UnsupportedPixelTypeError, errors.FrapAnalysisError)
    error = errors.FitConvergenceError("Too many iterations", region_id=4)
    assert str(error) == "Too many iterations (region=4)"


def test_subpackage_exports():
    from frap_kinetics import core, image, io

    for module in (core, image, io):
        for name in module.__all__:
            assert hasattr(module, name), f"{module.__name__}.{name}"


def test_reports_import_uses_agg_backend():
    import matplotlib

    from frap_kinetics.reports import plot_recovery_curves, save_figure

    assert callable(plot_recovery_curves) and callable(save_figure)
    assert matplotlib.get_backend().lower() == "agg"
