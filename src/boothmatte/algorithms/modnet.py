from __future__ import annotations

from .base import ModelType
from .single_frame import SingleFrameMatting

__all__ = ["MODNetMatting"]


class MODNetMatting(SingleFrameMatting):
    MODEL_TYPE = ModelType.MODNET
    MODEL_NAME = "MODNet"
    FILE_NAME = "modnet.onnx"
    DESCRIPTION = "Fast, optimized for humans"
    DEFAULT_SIZE = 320
    SPEED_MULTIPLIER = 4.0
    INPUT_NAME = "input"
    OUTPUT_NAME = "output"
