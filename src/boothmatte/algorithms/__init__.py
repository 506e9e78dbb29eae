from .base import MattingModel, ModelDescriptor, ModelType
from .modnet import MODNetMatting
from .ppliteseg import PPLiteSegMatting
from .rvm import RecurrentOutput, RecurrentState, RVMMatting
from .single_frame import SingleFrameMatting

__all__ = [
    "MattingModel",
    "ModelDescriptor",
    "ModelType",
    "SingleFrameMatting",
    "MODNetMatting",
    "PPLiteSegMatting",
    "RVMMatting",
    "RecurrentState",
    "RecurrentOutput",
]
