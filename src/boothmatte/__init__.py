"""
Background removal engine for photo booth stills and live view.

Runs ONNX matting models through onnxruntime, preferring a GPU execution
provider and falling back to the CPU, and never blocks the live-view loop.
"""

from .capture import RemovalResult, StillCapturePipeline
from .config import LiveViewMode, MattingSettings, Quality
from .errors import DimensionMismatchError, MattingError, ModelUnavailableError, SessionClosedError
from .live import LiveViewPipeline
from .registry import ModelRegistry
from .service import BackgroundRemovalService

__all__ = [
    "BackgroundRemovalService",
    "MattingSettings",
    "Quality",
    "LiveViewMode",
    "ModelRegistry",
    "StillCapturePipeline",
    "LiveViewPipeline",
    "RemovalResult",
    "MattingError",
    "ModelUnavailableError",
    "DimensionMismatchError",
    "SessionClosedError",
]
