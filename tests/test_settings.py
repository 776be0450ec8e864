"""Settings validation and calibration normalization."""

from __future__ import annotations

import logging

import pytest

from frap_kinetics.settings import AnalysisSettings, Calibration


def test_defaults():
    settings = AnalysisSettings()
    assert settings.min_region_size == 100
    assert settings.score_threshold == 7.0
    assert settings.detector == "laplacian"
    assert settings.detector_threshold == 1.0
    assert settings.with_updates(detector="ema").detector_threshold == 7.0
    assert settings.min_radius == pytest.approx((100 / 3.141592653589793) ** 0.5)
    assert AnalysisSettings(min_region_size=4).min_radius == 2.0


@pytest.mark.parametrize(
    "changes",
    [
        {"min_region_size": 0},
        {"score_threshold": 0.0},
        {"ema_window_size": 0},
        {"bleached_border": 6},
        {"detector": "median"},
        {"projection": "sum"},
        {"n_jobs": 0},
        {"max_iterations": 0},
        {"max_shift": -1},
    ],
)
def test_invalid_settings(changes):
    with pytest.raises(ValueError):
        AnalysisSettings(**changes)


def test_from_mapping_ignores_unknown_keys(caplog):
    with caplog.at_level(logging.WARNING, logger="frap_kinetics.settings"):
        settings = AnalysisSettings.from_mapping({"min_region_size": 20, "colour": "red"})
    assert settings.min_region_size == 20
    assert "colour" in caplog.text
    assert AnalysisSettings.from_mapping(None) == AnalysisSettings()


def test_results_path_requires_existing_directory(tmp_path):
    assert AnalysisSettings().results_path is None
    assert AnalysisSettings(results_dir=str(tmp_path / "nope")).results_path is None
    assert AnalysisSettings(results_dir=str(tmp_path)).results_path == tmp_path


def test_with_updates_returns_new_settings():
    base = AnalysisSettings()
    changed = base.with_updates(detector="ema")
    assert changed.detector == "ema"
    assert base.detector == "laplacian"
    assert changed.to_dict()["detector"] == "ema"


@pytest.mark.parametrize(
    "unit, size, expected_unit, expected_size",
    [
        ("nm", 250.0, "µm", 0.25),
        ("nanometer", 100.0, "µm", 0.1),
        ("micron", 0.2, "µm", 0.2),
        ("um", 0.3, "µm", 0.3),
        ("pixel", 1.0, "pixel", 1.0),
        ("mm", 0.001, "mm", 0.001),
    ],
)
def test_distance_normalization(unit, size, expected_unit, expected_size):
    cal = Calibration(pixel_size=size, distance_unit=unit).normalized()
    assert cal.distance_unit == expected_unit
    assert cal.pixel_size == pytest.approx(expected_size)


def test_time_normalization():
    assert Calibration(frame_interval=250.0, time_unit="ms").normalized() == Calibration(
        frame_interval=0.25, time_unit="sec"
    )
    assert Calibration(frame_interval=0.0, time_unit="sec").normalized() == Calibration()
    assert Calibration(frame_interval=2.0, time_unit="min").normalized().time_unit == "min"


def test_invalid_calibration():
    with pytest.raises(ValueError):
        Calibration(pixel_size=0.0)
    with pytest.raises(ValueError):
        Calibration(frame_interval=-1.0)
