from __future__ import annotations

import numpy as np
import torch

from .base import ModelType
from .single_frame import SingleFrameMatting

__all__ = ["PPLiteSegMatting"]


class PPLiteSegMatting(SingleFrameMatting):
    MODEL_TYPE = ModelType.PP_LITESEG
    MODEL_NAME = "PP-LiteSeg"
    FILE_NAME = "pp_liteseg.onnx"
    DESCRIPTION = "Ultra-fast lightweight segmentation"
    DEFAULT_SIZE = 512
    SPEED_MULTIPLIER = 6.0
    INPUT_NAME = "x"
    OUTPUT_NAME = "save_infer_model/scale_0.tmp_1"

    def extract_alpha(self, raw_output: np.ndarray) -> torch.Tensor:
        raw = np.asarray(raw_output)
        # Two-class logits: foreground probability is the softmax of class 1.
        if raw.ndim == 4 and raw.shape[1] == 2:
            logits = torch.from_numpy(raw.astype(np.float32))
            return torch.softmax(logits, dim=1)[0, 1]
        # Exported with argmax: integer label map.
        if np.issubdtype(raw.dtype, np.integer):
            labels = torch.from_numpy(raw.astype(np.float32))
            while labels.ndim > 2:
                labels = labels[0]
            return (labels > 0).float()
        return super().extract_alpha(raw)
