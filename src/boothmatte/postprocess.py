"""
Alpha post-processing shared by the still-capture and live-view pipelines.

All mattes are float32 arrays in [0, 1] with shape (H, W) unless a function
says otherwise.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
from PIL import Image
from torchvision.transforms import functional as TF

from .config import AlphaShaping, MatteHeuristics
from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

DEFAULT_SHAPING = AlphaShaping()
DEFAULT_HEURISTICS = MatteHeuristics()

# Colour decontamination pulls edge pixels toward this grey level.
DECONTAMINATION_GREY = 0.5


def resize_mask(mask: np.ndarray, width: int, height: int, resample: int = Image.LANCZOS) -> np.ndarray:
    if mask.shape == (height, width):
        return mask.astype(np.float32, copy=False)
    image = Image.fromarray(np.ascontiguousarray(mask, dtype=np.float32))
    resized = np.asarray(image.resize((width, height), resample), dtype=np.float32)
    return np.clip(resized, 0.0, 1.0)


def ensure_mask_size(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    if mask.shape == (height, width):
        return mask
    logger.warning(
        "Mask %dx%d does not match image %dx%d; resizing mask.",
        mask.shape[1] if mask.ndim > 1 else 0,
        mask.shape[0],
        width,
        height,
    )
    if mask.ndim != 2:
        raise DimensionMismatchError(f"Expected a 2-D mask, got shape {mask.shape}.")
    mask = resize_mask(mask, width, height)
    if mask.shape != (height, width):
        raise DimensionMismatchError(
            f"Image ({width}x{height}) and mask ({mask.shape[1]}x{mask.shape[0]}) dimensions must match"
        )
    return mask


def gaussian_blur(mask: np.ndarray, sigma: float) -> np.ndarray:
    if sigma <= 0:
        return mask
    kernel = 2 * int(math.ceil(3.0 * sigma)) + 1
    # Reflect padding needs the half-kernel to fit inside the mask.
    limit = 2 * (min(mask.shape) - 1) - 1
    kernel = min(kernel, limit if limit % 2 else limit - 1)
    if kernel < 3:
        return mask
    tensor = torch.from_numpy(np.ascontiguousarray(mask, dtype=np.float32)).unsqueeze(0).unsqueeze(0)
    blurred = TF.gaussian_blur(tensor, kernel_size=kernel, sigma=sigma)
    return blurred[0, 0].clamp(0, 1).numpy()


def binary_threshold(mask: np.ndarray, threshold: float) -> np.ndarray:
    return (mask >= threshold).astype(np.float32)


def refine_mask_edges(mask: np.ndarray, level: int) -> np.ndarray:
    """
    Edge refinement knob on a 0-100 scale.

    <=5 passes the mask through, 6-10 applies one binary threshold, and
    anything higher thresholds then blurs lightly.
    """
    if level <= 5:
        return mask
    if level > 10:
        return gaussian_blur(binary_threshold(mask, 0.4), 0.5)
    return binary_threshold(mask, 0.5)


def feather_radius(level: int) -> int:
    return max(1, (level * 5) // 100)


def apply_feathering(mask: np.ndarray, radius: int) -> np.ndarray:
    if radius <= 0:
        return mask
    return gaussian_blur(mask, radius * 0.5)


def to_uint8(mask: np.ndarray) -> np.ndarray:
    return np.rint(np.clip(mask, 0.0, 1.0) * 255.0).astype(np.uint8)


def decontaminate(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """
    Blend partially transparent pixels toward mid grey in proportion to
    their transparency. `rgb` is (H, W, 3) uint8, `alpha` is (H, W) uint8.
    """
    a = alpha.astype(np.float32)[..., None]
    blended = rgb.astype(np.float32) * (a / 255.0) + (255.0 - a) * DECONTAMINATION_GREY
    edge = ((alpha > 0) & (alpha < 255))[..., None]
    return np.where(edge, np.clip(blended, 0, 255).astype(np.uint8), rgb)


def apply_mask(rgb: np.ndarray, alpha: np.ndarray, decontaminate_edges: bool = True) -> np.ndarray:
    """(H, W, 3) uint8 + (H, W) uint8 alpha -> (H, W, 4) uint8 RGBA."""
    if rgb.shape[:2] != alpha.shape:
        raise DimensionMismatchError(
            f"Image ({rgb.shape[1]}x{rgb.shape[0]}) and mask ({alpha.shape[1]}x{alpha.shape[0]}) dimensions must match"
        )
    colour = decontaminate(rgb, alpha) if decontaminate_edges else rgb
    return np.dstack([colour, alpha]).astype(np.uint8, copy=False)


def shape_alpha_fast(alpha: np.ndarray, params: AlphaShaping = DEFAULT_SHAPING) -> np.ndarray:
    """Cheap per-frame remap that compensates for weak raw alpha."""
    a = alpha.astype(np.float32, copy=False)
    span = max(params.knee_high - params.knee_low, 1e-6)
    mid = np.clip((a - params.knee_low) / span * params.gain, 0.0, 1.0)
    shaped = np.select(
        [
            a < params.zero_cutoff,
            a > params.one_cutoff,
            a < params.weak_ceiling,
            a < params.knee_low,
            a > params.knee_high,
        ],
        [
            0.0,
            1.0,
            np.minimum(a * params.weak_boost, 1.0),
            0.0,
            1.0,
        ],
        default=mid,
    )
    return np.clip(shaped, 0.0, 1.0).astype(np.float32)


def shape_alpha_high_quality(alpha: np.ndarray, params: AlphaShaping = DEFAULT_SHAPING) -> np.ndarray:
    """Gamma and smoothstep remap with a soft contrast stretch around 0.5."""
    a = alpha.astype(np.float32, copy=False)
    span = max(params.knee_high - params.knee_low, 1e-6)

    weak = np.minimum(
        np.power(np.maximum(a, 0.0) * params.hq_weak_scale, params.hq_weak_power) * params.hq_weak_gain,
        1.0,
    )
    t = np.clip((a - params.knee_low) / span, 0.0, 1.0)
    t = t * t * (3.0 - 2.0 * t)
    mid = np.power(t, params.gamma) * params.gain + params.offset
    top = params.hq_top_floor + (a - params.knee_high) * params.hq_top_slope

    shaped = np.select(
        [
            a < params.hq_zero_cutoff,
            a < params.weak_ceiling,
            a <= params.knee_low,
            a >= params.knee_high,
        ],
        [0.0, weak, 0.0, top],
        default=mid,
    ).astype(np.float32)

    band = (shaped > 0.05) & (shaped < 0.95)
    s = (shaped - 0.5) * 2.0
    s = s / (1.0 + np.abs(s) * params.contrast_softness)
    shaped = np.where(band, (s + 1.0) * 0.5, shaped)
    return np.clip(shaped, 0.0, 1.0).astype(np.float32)


def light_smooth(alpha: np.ndarray) -> np.ndarray:
    """Four-neighbour average on soft interior pixels only."""
    if alpha.shape[0] < 3 or alpha.shape[1] < 3:
        return alpha
    out = alpha.copy()
    centre = alpha[1:-1, 1:-1]
    averaged = (
        centre * 2.0
        + alpha[:-2, 1:-1]
        + alpha[2:, 1:-1]
        + alpha[1:-1, :-2]
        + alpha[1:-1, 2:]
    ) / 6.0
    soft = (centre > 0.1) & (centre < 0.9)
    out[1:-1, 1:-1] = np.where(soft, averaged, centre)
    return out


def threshold_edges_fast(alpha: np.ndarray, low: float = 0.05, high: float = 0.95) -> np.ndarray:
    out = alpha.copy()
    out[alpha < low] = 0.0
    out[alpha > high] = 1.0
    return out


class TemporalSmoother:
    """
    Blends each live alpha map with the two previous ones to reduce flicker.
    History is dropped whenever the map size changes.
    """

    def __init__(self, current_weight: float = 0.8, second_weight: float = 0.9) -> None:
        self.current_weight = current_weight
        self.second_weight = second_weight
        self._lock = threading.Lock()
        self._previous: Optional[np.ndarray] = None
        self._second: Optional[np.ndarray] = None

    def apply(self, alpha: np.ndarray) -> np.ndarray:
        out = alpha.astype(np.float32, copy=True)
        with self._lock:
            previous, second = self._previous, self._second
            if previous is not None and previous.shape == out.shape:
                out = out * self.current_weight + previous * (1.0 - self.current_weight)
                if second is not None and second.shape == out.shape:
                    out = out * self.second_weight + second * (1.0 - self.second_weight)
                self._second = previous
            else:
                self._second = None
            self._previous = out.copy()
        return out

    def reset(self) -> None:
        with self._lock:
            self._previous = None
            self._second = None


@dataclass(frozen=True)
class AlphaStats:
    mean: float
    minimum: float
    maximum: float
    center_mean: float
    border_mean: float
    possibly_inverted: bool
    auto_invert: bool
    degenerate: bool

    @property
    def invert(self) -> bool:
        return self.possibly_inverted or self.auto_invert


def analyze_alpha(alpha: np.ndarray, heuristics: MatteHeuristics = DEFAULT_HEURISTICS) -> AlphaStats:
    """
    Coarse-grid statistics used to spot empty or inverted recurrent mattes.
    """
    height, width = alpha.shape
    step_y = max(1, height // heuristics.sample_grid)
    step_x = max(1, width // heuristics.sample_grid)
    ys = np.arange(0, height, step_y)
    xs = np.arange(0, width, step_x)
    samples = alpha[np.ix_(ys, xs)].astype(np.float64)

    mean = float(samples.mean()) if samples.size else 0.0
    in_x = (xs >= int(width * 0.25)) & (xs <= int(width * 0.75))
    in_y = (ys >= int(height * 0.25)) & (ys <= int(height * 0.75))
    center = np.outer(in_y, in_x)
    center_mean = float(samples[center].mean()) if center.any() else mean
    border_mean = float(samples[~center].mean()) if (~center).any() else mean
    maximum = float(samples.max()) if samples.size else 0.0

    possibly_inverted = (
        center_mean < heuristics.inverted_center
        and border_mean > center_mean * heuristics.inverted_border_ratio
    )
    auto_invert = mean < heuristics.auto_invert_mean and maximum > heuristics.auto_invert_peak
    degenerate = maximum < heuristics.degenerate_max or (
        mean < heuristics.degenerate_mean and center_mean < heuristics.degenerate_mean
    )
    return AlphaStats(
        mean=mean,
        minimum=float(samples.min()) if samples.size else 0.0,
        maximum=maximum,
        center_mean=center_mean,
        border_mean=border_mean,
        possibly_inverted=possibly_inverted,
        auto_invert=auto_invert,
        degenerate=degenerate,
    )
