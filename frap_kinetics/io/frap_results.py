"""CSV and TIFF outputs of an analysis run."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING
import logging

import numpy as np
import pandas as pd
import tifffile

if TYPE_CHECKING:
    from ..pipeline import AnalysisResult

LOGGER = logging.getLogger(__name__)


def output_prefix(name: str) -> str:
    """File prefix from a stack name: extension removed, spaces replaced."""
    return Path(name).stem.replace(" ", "_") or "stack"


def trace_table(time: np.ndarray, means: np.ndarray, time_unit: str, *, normalized: bool = True) -> pd.DataFrame:
    """``Time (unit), Mean[, Norm]`` table; ``Norm`` rescales the means onto 0..1."""
    table = pd.DataFrame({f"Time ({time_unit})": time, "Mean": means})
    if normalized:
        lo = float(np.min(means))
        span = float(np.max(means)) - lo
        table["Norm"] = (means - lo) / span if span > 0 else np.nan
    return table


def write_trace_csv(path: Path, size: int, table: pd.DataFrame) -> None:
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(f"# Size = {size}\n")
        table.to_csv(handle, index=False)


def read_trace_csv(path: str | Path) -> tuple[int, pd.DataFrame]:
    """Read a file written by :func:`write_trace_csv`; returns ``(size, table)``."""
    with open(path, "r", encoding="utf-8") as handle:
        header = handle.readline().strip()
        if not header.startswith("# Size = "):
            raise ValueError(f"{path} has no size header.")
        size = int(header.split("=", 1)[1])
    return size, pd.read_csv(path, skiprows=1)


def save_traces(result: "AnalysisResult", directory: str | Path) -> list[Path]:
    """Write one CSV per region plus the foreground and background traces.

    An ``OSError`` is logged and the remaining trace files are skipped.
    """
    out_dir = Path(directory)
    prefix = output_prefix(result.stack.name)
    time = result.time
    unit = result.calibration.time_unit
    sizes = result.region_sizes()
    n = len(sizes)

    written: list[Path] = []
    for row in range(n):
        name = f"{prefix}_foreground.csv" if row == n - 1 else f"{prefix}_region{row + 1}.csv"
        path = out_dir / name
        try:
            write_trace_csv(path, sizes[row], trace_table(time, result.means[row], unit))
        except OSError as exc:
            LOGGER.warning("Failed to save data: %s", exc)
            break
        written.append(path)

    if result.background is not None:
        path = out_dir / f"{prefix}_background.csv"
        try:
            write_trace_csv(
                path,
                result.background.size,
                trace_table(time, result.background.means, unit, normalized=False),
            )
        except OSError as exc:
            LOGGER.warning("Failed to save background data: %s", exc)
        else:
            written.append(path)
    LOGGER.info("Saved %d trace file(s) to %s", len(written), out_dir)
    return written


def save_summary(result: "AnalysisResult", path: str | Path) -> Path:
    """One row per region: selected model, parameters and derived kinetics."""
    rows = []
    for row in result.summary_rows():
        flat = {key: value for key, value in row.items() if key not in ("parameters", "notes")}
        flat.update({f"param_{name}": value for name, value in row["parameters"].items()})
        flat["notes"] = "; ".join(row["notes"])
        rows.append(flat)
    out_path = Path(path)
    pd.DataFrame(rows).to_csv(out_path, index=False)
    return out_path


def save_label_mask(label_mask: np.ndarray, path: str | Path) -> Path:
    out_path = Path(path)
    tifffile.imwrite(out_path, np.asarray(label_mask, dtype=np.uint8))
    return out_path


__all__ = [
    "output_prefix",
    "read_trace_csv",
    "save_label_mask",
    "save_summary",
    "save_traces",
    "trace_table",
    "write_trace_csv",
]
