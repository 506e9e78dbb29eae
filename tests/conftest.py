"""
Pytest configuration and shared fixtures.

Model artifacts are never loaded: every model wraps a FakeOrtSession that
returns scripted tensors through the same interface onnxruntime exposes.
"""

import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from boothmatte.algorithms import MODNetMatting, ModelType, PPLiteSegMatting, RVMMatting  # noqa: E402
from boothmatte.config import MattingSettings  # noqa: E402
from boothmatte.errors import ModelUnavailableError  # noqa: E402
from boothmatte.live import InlineExecutor  # noqa: E402
from boothmatte.registry import ModelRegistry  # noqa: E402
from boothmatte.session import CPU_PROVIDER, InferenceSession  # noqa: E402


def disc_alpha(height, width, radius=0.3, value=1.0):
    """Centred solid disc, the shape of a subject in front of a backdrop."""
    yy, xx = np.mgrid[0:height, 0:width]
    cy, cx = (height - 1) / 2.0, (width - 1) / 2.0
    r = radius * min(height, width)
    inside = (yy - cy) ** 2 + (xx - cx) ** 2 <= r * r
    return np.where(inside, value, 0.0).astype(np.float32)


class FakeOrtSession:
    """Stands in for onnxruntime.InferenceSession with a scripted run()."""

    def __init__(self, inputs, outputs, handler, providers=(CPU_PROVIDER,)):
        self._inputs = [SimpleNamespace(name=name, shape=shape) for name, shape in inputs]
        self._outputs = [SimpleNamespace(name=name, shape=None) for name in outputs]
        self._handler = handler
        self._providers = list(providers)
        self.calls = 0
        self.feeds = []

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def get_providers(self):
        return self._providers

    def run(self, output_names, feeds):
        self.calls += 1
        self.feeds.append(feeds)
        results = self._handler(feeds)
        return [results.get(name) for name in output_names]


def modnet_handler(feeds):
    size = MODNetMatting.DEFAULT_SIZE
    return {"output": disc_alpha(size, size)[None, None]}


def make_modnet(models_dir, handler=modnet_handler):
    size = MODNetMatting.DEFAULT_SIZE
    fake = FakeOrtSession([("input", [1, 3, size, size])], ["output"], handler)
    model = MODNetMatting(InferenceSession(fake, CPU_PROVIDER, name="MODNet"), MODNetMatting.describe(models_dir))
    return model, fake


def make_ppliteseg(models_dir, handler):
    size = PPLiteSegMatting.DEFAULT_SIZE
    fake = FakeOrtSession(
        [("x", [1, 3, size, size])],
        [PPLiteSegMatting.OUTPUT_NAME],
        handler,
    )
    model = PPLiteSegMatting(
        InferenceSession(fake, CPU_PROVIDER, name="PP-LiteSeg"),
        PPLiteSegMatting.describe(models_dir),
    )
    return model, fake


def rvm_handler(alpha_fn, state_value=0.5):
    """RVM-shaped outputs; alpha_fn(height, width) builds the matte."""

    def handler(feeds):
        src = feeds["src"]
        _, _, height, width = src.shape
        outputs = {
            "fgr": src.copy(),
            "pha": alpha_fn(height, width)[None, None],
        }
        for index, depth in enumerate(RVMMatting.STATE_DEPTHS, start=1):
            outputs[f"r{index}o"] = np.full((1, depth, 2, 2), state_value, dtype=np.float32)
        return outputs

    return handler


RVM_INPUTS = [
    ("src", [1, 3, "height", "width"]),
    ("r1i", [1, 16, "h1", "w1"]),
    ("r2i", [1, 20, "h2", "w2"]),
    ("r3i", [1, 40, "h3", "w3"]),
    ("r4i", [1, 64, "h4", "w4"]),
    ("downsample_ratio", [1]),
]
RVM_OUTPUTS = ["fgr", "pha", "r1o", "r2o", "r3o", "r4o"]


def make_rvm(models_dir, handler):
    fake = FakeOrtSession(RVM_INPUTS, RVM_OUTPUTS, handler)
    model = RVMMatting(InferenceSession(fake, CPU_PROVIDER, name="RVM"), RVMMatting.describe(models_dir))
    return model, fake


class StubRegistry(ModelRegistry):
    """Registry whose models come from factories instead of files."""

    def __init__(self, models_dir, factories=None):
        super().__init__(models_dir)
        self.factories = dict(factories or {})
        self.created = []

    def is_available(self, model_type):
        return ModelType(model_type) in self.factories

    def create_model(self, model_type, prefer_gpu):
        model_type = ModelType(model_type)
        if model_type not in self.factories:
            raise ModelUnavailableError(f"No model file for {model_type.value}")
        self.created.append(model_type)
        return self.factories[model_type]()


def gradient_image(width, height):
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(xs, (height, 1))
    g = np.tile(ys[:, None], (1, width))
    b = np.full((height, width), 128.0, dtype=np.float32)
    return Image.fromarray(np.dstack([r, g, b]).astype(np.uint8))


def frame_bytes(width, height):
    """Raw RGB bytes as a camera would hand them over."""
    return gradient_image(width, height).tobytes()


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def settings(models_dir):
    return MattingSettings(models_dir=models_dir, use_gpu=False)


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def photo_path(tmp_path):
    path = tmp_path / "IMG_0001.png"
    gradient_image(400, 300).save(path)
    return path


@pytest.fixture
def modnet(models_dir):
    model, _ = make_modnet(models_dir)
    return model
