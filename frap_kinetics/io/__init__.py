"""Stack loading and result export."""

from .frap_results import read_trace_csv, save_label_mask, save_summary, save_traces
from .stack_loader import load_stack, read_calibration, save_stack

__all__ = [
    "load_stack",
    "read_calibration",
    "read_trace_csv",
    "save_label_mask",
    "save_stack",
    "save_summary",
    "save_traces",
]
