"""TIFF loading and CSV/TIFF output tests."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest
import tifffile

from frap_kinetics.errors import InputError, StackTooShortError
from frap_kinetics.image.traces import FrameStack
from frap_kinetics.io.frap_results import (
    output_prefix,
    read_trace_csv,
    save_label_mask,
    save_summary,
    save_traces,
    trace_table,
    write_trace_csv,
)
from frap_kinetics.io.stack_loader import _to_tyx, load_stack, save_stack
from frap_kinetics.pipeline import analyze_stack
from frap_kinetics.settings import AnalysisSettings, Calibration


def test_stack_round_trip_keeps_calibration(tmp_path):
    rng = np.random.default_rng(0)
    frames = rng.integers(0, 4000, size=(4, 8, 10), dtype=np.uint16)
    calibration = Calibration(pixel_size=0.2, distance_unit="micron", frame_interval=0.5, time_unit="sec")
    path = save_stack(FrameStack(frames, calibration, name="cell 1.tif"), tmp_path / "cell 1.tif")

    loaded = load_stack(path)
    np.testing.assert_array_equal(loaded.frames, frames)
    assert loaded.name == "cell 1.tif"
    assert loaded.calibration.distance_unit == "micron"
    assert loaded.calibration.pixel_size == pytest.approx(0.2, rel=1e-6)
    assert loaded.calibration.frame_interval == pytest.approx(0.5)
    assert loaded.calibration.time_unit == "sec"


def test_uncalibrated_file_defaults(tmp_path):
    path = tmp_path / "plain.tif"
    tifffile.imwrite(path, np.zeros((3, 5, 5), dtype=np.uint8), photometric="minisblack")
    stack = load_stack(path)
    assert stack.n_frames == 3
    assert stack.calibration == Calibration()


def test_calibration_override(tmp_path):
    path = tmp_path / "plain.tif"
    tifffile.imwrite(path, np.zeros((3, 5, 5), dtype=np.uint8), photometric="minisblack")
    override = Calibration(pixel_size=0.1, distance_unit="µm")
    assert load_stack(path, calibration=override).calibration is override


def test_single_image_is_too_short(tmp_path):
    path = tmp_path / "single.tif"
    tifffile.imwrite(path, np.zeros((5, 5), dtype=np.uint8))
    with pytest.raises(StackTooShortError):
        load_stack(path)


def test_to_tyx_reduces_extra_axes():
    data = np.arange(2 * 3 * 4 * 5).reshape(2, 3, 4, 5)
    np.testing.assert_array_equal(_to_tyx(data, "TCYX"), data[:, 0])
    np.testing.assert_array_equal(_to_tyx(data[0], "ZYX"), data[0])
    assert _to_tyx(data[0, 0], "YX").shape == (1, 4, 5)
    with pytest.raises(ValueError):
        _to_tyx(data, "TYX")


@pytest.mark.parametrize("axes", ["SYX", "TYXS", "TSYX"])
def test_to_tyx_rejects_sample_axis(axes):
    shape = {"S": 3, "T": 4, "Y": 5, "X": 6}
    data = np.zeros([shape[a] for a in axes], dtype=np.uint8)
    with pytest.raises(InputError):
        _to_tyx(data, axes)


def test_planar_three_plane_file_is_rejected(tmp_path):
    path = tmp_path / "planar.tif"
    tifffile.imwrite(path, np.zeros((3, 5, 5), dtype=np.uint8))
    with pytest.raises(InputError):
        load_stack(path)


def test_output_prefix():
    assert output_prefix("cell 1.tif") == "cell_1"
    assert output_prefix("/data/run.ome.tif") == "run.ome"


def test_trace_table_normalization():
    table = trace_table(np.arange(3.0), np.array([2.0, 4.0, 6.0]), "sec")
    assert list(table.columns) == ["Time (sec)", "Mean", "Norm"]
    np.testing.assert_allclose(table["Norm"], [0.0, 0.5, 1.0])
    flat = trace_table(np.arange(3.0), np.ones(3), "sec")
    assert flat["Norm"].isna().all()


def test_trace_csv_round_trip(tmp_path):
    table = trace_table(np.arange(4.0) * 0.5, np.array([5.0, 3.0, 4.0, 4.5]), "sec")
    path = tmp_path / "trace.csv"
    write_trace_csv(path, 37, table)
    assert path.read_text(encoding="utf-8").splitlines()[0] == "# Size = 37"
    size, loaded = read_trace_csv(path)
    assert size == 37
    pd.testing.assert_frame_equal(loaded, table)


def test_read_trace_csv_requires_header(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("Time,Mean\n0,1\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_trace_csv(path)


def test_save_traces_stops_on_write_error(frap_stack, tmp_path, caplog):
    result = analyze_stack(frap_stack, AnalysisSettings(min_region_size=50, align=False))
    with caplog.at_level(logging.WARNING, logger="frap_kinetics.io.frap_results"):
        written = save_traces(result, tmp_path / "missing")
    assert written == []
    assert caplog.text.count("Failed to save data") == 1


def test_summary_and_label_mask(frap_stack, tmp_path):
    result = analyze_stack(frap_stack, AnalysisSettings(min_region_size=50, align=False))
    summary = pd.read_csv(save_summary(result, tmp_path / "summary.csv"))
    assert summary.loc[0, "region_id"] == 1
    assert summary.loc[0, "bleach_frame"] == 10
    assert "param_koff" in summary.columns or "param_tD" in summary.columns

    mask_path = save_label_mask(result.label_mask, tmp_path / "labels.tif")
    np.testing.assert_array_equal(tifffile.imread(mask_path), result.label_mask)
