"""Image-analysis stages: traces, masks, events, regions and time series."""

from .alignment import AlignmentResult, align_stack
from .background import BackgroundTrace, extract_background
from .events import BleachEvent, EventDetection, detect_ema, detect_events, detect_laplacian, ema_alpha
from .masks import build_foreground_mask
from .regions import MAX_REGIONS, Region, build_label_mask, segment_regions
from .timeseries import aggregate_means
from .traces import FrameStack, extract_traces, trace_function

__all__ = [
    "AlignmentResult",
    "BackgroundTrace",
    "BleachEvent",
    "EventDetection",
    "FrameStack",
    "MAX_REGIONS",
    "Region",
    "aggregate_means",
    "align_stack",
    "build_foreground_mask",
    "build_label_mask",
    "detect_ema",
    "detect_events",
    "detect_laplacian",
    "ema_alpha",
    "extract_background",
    "extract_traces",
    "segment_regions",
    "trace_function",
]
