from __future__ import annotations

from typing import ClassVar, Optional

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image

from .base import MattingModel


class SingleFrameMatting(MattingModel):
    """
    Per-image matting backed by a fixed-resolution ONNX graph.

    The predicted matte is always returned at the model's square input size;
    callers resize it back to whatever resolution they need.
    """

    INPUT_NAME: ClassVar[Optional[str]] = None
    OUTPUT_NAME: ClassVar[Optional[str]] = None
    OUTPUT_SIGMOID: ClassVar[bool] = False

    def preprocess(self, image: Image.Image) -> torch.Tensor:
        size = self.input_size
        resized = image.convert("RGB").resize((size, size), Image.BILINEAR)
        return self.to_tensor(resized)

    def extract_alpha(self, raw_output: np.ndarray) -> torch.Tensor:
        alpha = torch.from_numpy(np.asarray(raw_output, dtype=np.float32))
        if alpha.ndim == 4:
            alpha = alpha[0, 0]
        elif alpha.ndim == 3:
            alpha = alpha[0]
        elif alpha.ndim != 2:
            raise RuntimeError(f"Unexpected output tensor shape: {tuple(alpha.shape)}")
        if self.OUTPUT_SIGMOID:
            alpha = torch.sigmoid(alpha)
        return alpha

    def predict(self, image: Image.Image) -> np.ndarray:
        """Alpha in [0, 1] with shape (input_size, input_size)."""
        tensor = self.preprocess(image)
        feeds = {self.input_name(self.INPUT_NAME): self.as_numpy(tensor)}
        outputs = self.session.run(feeds)
        if self.OUTPUT_NAME and self.OUTPUT_NAME in outputs:
            raw = outputs[self.OUTPUT_NAME]
        else:
            raw = next(iter(outputs.values()))

        alpha = self.extract_alpha(raw)
        size = self.input_size
        if tuple(alpha.shape) != (size, size):
            alpha = F.interpolate(
                alpha.unsqueeze(0).unsqueeze(0),
                size=(size, size),
                mode="bilinear",
                align_corners=False,
            )[0, 0]
        alpha = torch.nan_to_num(alpha, nan=0.0, posinf=1.0, neginf=0.0).clamp(0, 1)
        return self.as_numpy(alpha)
