from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .algorithms.base import MattingModel, ModelDescriptor, ModelType
from .algorithms.modnet import MODNetMatting
from .algorithms.ppliteseg import PPLiteSegMatting
from .algorithms.rvm import RVMMatting
from .errors import ModelUnavailableError
from .session import ExecutionStatus, InferenceSession, create_session

logger = logging.getLogger(__name__)


MODEL_REGISTRY: Dict[ModelType, type[MattingModel]] = {
    ModelType.PP_LITESEG: PPLiteSegMatting,
    ModelType.MODNET: MODNetMatting,
    ModelType.RVM: RVMMatting,
}

# Fastest first.
LIGHTWEIGHT_PRIORITY: Sequence[ModelType] = (ModelType.PP_LITESEG, ModelType.MODNET)


class ModelRegistry:
    """
    Enumerates matting models in a models directory and loads them.
    """

    def __init__(self, models_dir: Path, status: Optional[ExecutionStatus] = None) -> None:
        self.models_dir = Path(models_dir).expanduser()
        self.status = status or ExecutionStatus()

    @staticmethod
    def model_class(model_type: ModelType) -> type[MattingModel]:
        try:
            return MODEL_REGISTRY[ModelType(model_type)]
        except (KeyError, ValueError):
            raise ModelUnavailableError(
                f"Unknown model '{model_type}'. Choices: {[t.value for t in MODEL_REGISTRY]}"
            ) from None

    def get_model_path(self, model_type: ModelType) -> Path:
        return self.model_class(model_type).weights_path(self.models_dir)

    def get_model_info(self, model_type: ModelType) -> ModelDescriptor:
        return self.model_class(model_type).describe(self.models_dir)

    def is_available(self, model_type: ModelType) -> bool:
        try:
            return self.get_model_path(model_type).is_file()
        except ModelUnavailableError:
            return False

    def available_models(self) -> List[ModelType]:
        return [model_type for model_type in MODEL_REGISTRY if self.is_available(model_type)]

    def lightweight_candidates(self) -> List[ModelType]:
        return list(LIGHTWEIGHT_PRIORITY)

    def load_model(self, model_type: ModelType, prefer_gpu: bool) -> InferenceSession:
        info = self.get_model_info(model_type)
        logger.info(
            "Loading %s (%s, speed %.1fx), GPU requested: %s",
            info.name,
            info.description,
            info.speed_multiplier,
            prefer_gpu,
        )
        return create_session(info.path, prefer_gpu, self.status, name=info.name)

    def create_model(self, model_type: ModelType, prefer_gpu: bool) -> MattingModel:
        model_cls = self.model_class(model_type)
        session = self.load_model(model_type, prefer_gpu)
        return model_cls(session, self.get_model_info(model_type))

    def download_model(self, model_type: ModelType) -> Path:
        return self.model_class(model_type).ensure_weights(self.models_dir)
