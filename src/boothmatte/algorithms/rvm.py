from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, Mapping, Optional, Tuple

import numpy as np
from PIL import Image

from .base import MattingModel, ModelType

__all__ = ["RecurrentState", "RecurrentOutput", "RVMMatting"]

logger = logging.getLogger(__name__)

STATE_NAMES = ("r1", "r2", "r3", "r4")


@dataclass(frozen=True)
class RecurrentState:
    """
    Hidden state carried between consecutive recurrent inference calls.

    Instances are never mutated; each completed call produces a new state
    that replaces the previous one.
    """

    r1: np.ndarray
    r2: np.ndarray
    r3: np.ndarray
    r4: np.ndarray

    @classmethod
    def zeros(cls, depths: Tuple[int, int, int, int]) -> "RecurrentState":
        return cls(*(np.zeros((1, depth, 1, 1), dtype=np.float32) for depth in depths))

    @property
    def tensors(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        return (self.r1, self.r2, self.r3, self.r4)

    @property
    def depths(self) -> Tuple[int, ...]:
        return tuple(int(t.shape[1]) for t in self.tensors)

    def is_zero(self) -> bool:
        return all(not np.any(t) for t in self.tensors)

    def feeds(self) -> Dict[str, np.ndarray]:
        return {f"{name}i": tensor for name, tensor in zip(STATE_NAMES, self.tensors)}

    def updated(self, outputs: Mapping[str, Optional[np.ndarray]]) -> "RecurrentState":
        """
        New state from a call's `r1o`..`r4o` outputs.

        A missing output keeps the previous tensor. An output whose channel
        depth disagrees with the declared depth is replaced by zeros.
        """
        tensors = []
        for name, previous in zip(STATE_NAMES, self.tensors):
            value = outputs.get(f"{name}o")
            if value is None:
                tensors.append(previous)
                continue
            value = np.asarray(value, dtype=np.float32)
            if value.ndim != 4 or value.shape[1] != previous.shape[1]:
                logger.debug(
                    "Discarding %so with shape %s (expected %d channels).",
                    name,
                    value.shape,
                    previous.shape[1],
                )
                tensors.append(np.zeros((1, previous.shape[1], 1, 1), dtype=np.float32))
                continue
            tensors.append(np.array(value, copy=True))
        return RecurrentState(*tensors)


@dataclass(frozen=True)
class RecurrentOutput:
    alpha: np.ndarray
    foreground: Optional[np.ndarray]
    state: RecurrentState


class RVMMatting(MattingModel):
    """
    Robust Video Matting (MobileNetV3) with collapsed recurrent state.
    """

    MODEL_TYPE = ModelType.RVM
    MODEL_NAME = "RVM"
    FILE_NAME = "rvm_mobilenetv3_fp32.onnx"
    DESCRIPTION = "Recurrent video matting (MobileNetV3)"
    WEIGHTS_URL = (
        "https://github.com/PeterL1n/RobustVideoMatting/releases/download/v1.0.0/"
        "rvm_mobilenetv3_fp32.onnx"
    )
    DEFAULT_SIZE = 256
    NORMALIZE_MEAN = (0.0, 0.0, 0.0)
    NORMALIZE_STD = (1.0, 1.0, 1.0)
    SPEED_MULTIPLIER = 1.0
    RECURRENT = True
    STATE_DEPTHS: ClassVar[Tuple[int, int, int, int]] = (16, 20, 40, 64)

    def initial_state(self) -> RecurrentState:
        return RecurrentState.zeros(self.STATE_DEPTHS)

    def step(self, image: Image.Image, state: RecurrentState, downsample_ratio: float) -> RecurrentOutput:
        feeds = {"src": self.as_numpy(self.to_tensor(image))}
        feeds.update(state.feeds())
        feeds["downsample_ratio"] = np.array([downsample_ratio], dtype=np.float32)

        outputs = {name.lower(): value for name, value in self.session.run(feeds).items()}
        new_state = state.updated(outputs)

        pha = outputs.get("pha")
        if pha is None:
            raise RuntimeError("Recurrent model returned no alpha tensor.")
        alpha = np.nan_to_num(np.asarray(pha, dtype=np.float32)[0, 0], nan=0.0)

        foreground = None
        fgr = outputs.get("fgr")
        if fgr is not None:
            fgr = np.asarray(fgr, dtype=np.float32)
            if fgr.ndim == 4 and fgr.shape[1] == 3 and fgr.shape[2:] == alpha.shape:
                foreground = np.clip(np.transpose(fgr[0], (1, 2, 0)), 0.0, 1.0)
        return RecurrentOutput(alpha=alpha, foreground=foreground, state=new_state)
