from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Optional, Tuple

import numpy as np
import torch
from PIL import Image
from torchvision.transforms import functional as TF

from ..errors import ModelUnavailableError
from ..session import InferenceSession
from ..utils.downloads import download_file, sha256_file


class ModelType(str, enum.Enum):
    PP_LITESEG = "pp-liteseg"
    MODNET = "modnet"
    RVM = "rvm"


@dataclass(frozen=True)
class ModelDescriptor:
    type: ModelType
    name: str
    path: Path
    input_size: int
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]
    speed_multiplier: float
    description: str
    recurrent: bool = False


class MattingModel(abc.ABC):
    """
    Abstract base class for ONNX matting model families.

    Subclasses describe their artifact through class attributes; an instance
    wraps a loaded session and converts images to and from its tensors.
    """

    MODEL_TYPE: ClassVar[ModelType]
    MODEL_NAME: ClassVar[str]
    FILE_NAME: ClassVar[str]
    DESCRIPTION: ClassVar[str] = ""
    WEIGHTS_URL: ClassVar[Optional[str]] = None
    WEIGHTS_SHA256: ClassVar[Optional[str]] = None
    DEFAULT_SIZE: ClassVar[int] = 512
    NORMALIZE_MEAN: ClassVar[Tuple[float, float, float]] = (0.5, 0.5, 0.5)
    NORMALIZE_STD: ClassVar[Tuple[float, float, float]] = (0.5, 0.5, 0.5)
    SPEED_MULTIPLIER: ClassVar[float] = 1.0
    RECURRENT: ClassVar[bool] = False

    def __init__(self, session: InferenceSession, descriptor: Optional[ModelDescriptor] = None) -> None:
        self.session = session
        self.descriptor = descriptor or self.describe(Path("."))

    @classmethod
    def weights_path(cls, root: Path) -> Path:
        return Path(root) / cls.FILE_NAME

    @classmethod
    def describe(cls, root: Path) -> ModelDescriptor:
        return ModelDescriptor(
            type=cls.MODEL_TYPE,
            name=cls.MODEL_NAME,
            path=cls.weights_path(root),
            input_size=cls.DEFAULT_SIZE,
            mean=cls.NORMALIZE_MEAN,
            std=cls.NORMALIZE_STD,
            speed_multiplier=cls.SPEED_MULTIPLIER,
            description=cls.DESCRIPTION,
            recurrent=cls.RECURRENT,
        )

    @classmethod
    def ensure_weights(cls, root: Path) -> Path:
        path = cls.weights_path(root)
        if path.exists() and path.stat().st_size > 0:
            if not cls.WEIGHTS_SHA256 or sha256_file(path) == cls.WEIGHTS_SHA256.lower():
                return path

        if not cls.WEIGHTS_URL:
            raise ModelUnavailableError(
                f"No download source for model '{cls.MODEL_NAME}'; place {cls.FILE_NAME} in {root}."
            )
        return download_file(cls.WEIGHTS_URL, path, cls.WEIGHTS_SHA256)

    @property
    def input_size(self) -> int:
        return self.descriptor.input_size

    def to_tensor(self, image: Image.Image) -> torch.Tensor:
        """RGB image -> normalized (1, 3, H, W) float tensor."""
        tensor = TF.to_tensor(image.convert("RGB"))
        tensor = TF.normalize(tensor, mean=list(self.descriptor.mean), std=list(self.descriptor.std))
        return tensor.unsqueeze(0)

    def input_name(self, preferred: Optional[str] = None) -> str:
        names = self.session.input_names
        if preferred and preferred in names:
            return preferred
        return names[0]

    @staticmethod
    def as_numpy(tensor: torch.Tensor) -> np.ndarray:
        return tensor.detach().to("cpu").numpy().astype(np.float32, copy=False)

    def close(self) -> None:
        self.session.close()
